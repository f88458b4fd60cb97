import csv
from io import StringIO
from typing import Dict, List

from .errors import ValidationError
from .models import parse_datetime
from .reports import CycleReport

TRUE_VALUES = {"1", "true", "yes", "y"}


def parse_csv_string(csv_text: str) -> List[Dict]:
    """
    Parse CSV text with header: meter_id,timestamp,value[,notes,is_estimated]
    Timestamp should be ISO8601, e.g. 2025-11-01T00:00:00Z
    value is the absolute meter register value, not an interval amount.
    """
    f = StringIO(csv_text.strip())
    reader = csv.DictReader(f)
    rows = []
    for line_no, row in enumerate(reader, start=2):
        if not row.get('meter_id') or not row.get('timestamp') or not row.get('value'):
            raise ValidationError(f"Missing field on line {line_no}: {row}")
        try:
            timestamp = parse_datetime(row['timestamp'])
            value = float(row['value'])
        except ValueError:
            raise ValidationError(f"Malformed timestamp or value on line {line_no}: {row}")
        if value < 0:
            raise ValidationError(f"value must be >= 0 (line {line_no})")
        rows.append({
            "meter_id": row['meter_id'].strip(),
            "timestamp": timestamp,
            "value": value,
            "notes": (row.get('notes') or "").strip(),
            "is_estimated": (row.get('is_estimated') or "").strip().lower() in TRUE_VALUES,
        })
    return rows


def report_to_csv(report: CycleReport) -> str:
    """Cycle report as CSV: summary lines, then one row per meter."""
    out = StringIO()
    writer = csv.writer(out)
    cycle = report.cycle
    writer.writerow(["ELECTRICITY BILL REPORT", ""])
    writer.writerow(["Cycle", report.label])
    writer.writerow(["Start Date", cycle.start_date.date().isoformat()])
    writer.writerow(["End Date", cycle.end_date.date().isoformat() if cycle.end_date else "N/A"])
    writer.writerow(["Status", cycle.status.upper()])
    writer.writerow(["Total Consumption", f"{report.total_units:.2f}"])
    writer.writerow(["Total Cost", f"{report.total_cost:.2f}"])
    writer.writerow([])
    writer.writerow(["Meter Name", "Type", "Units Consumed", "Cost"])
    for m in report.meter_details:
        writer.writerow([m.meter_name, m.meter_type, f"{m.units:.2f}", f"{m.cost:.2f}"])
    if cycle.notes:
        writer.writerow([])
        writer.writerow(["NOTES", cycle.notes])
    return out.getvalue()
