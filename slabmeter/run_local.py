# slabmeter/run_local.py
"""
Command line helper for the local store.

    python -m slabmeter.run_local add-meter main "Main Meter" --general
    python -m slabmeter.run_local start-cycle 2025-11-01
    python -m slabmeter.run_local import tests/sample_readings.csv
    python -m slabmeter.run_local summary
"""
import argparse
import json
import sys
from pathlib import Path

from slabmeter import config
from slabmeter.lib.billing_core.errors import BillingError
from slabmeter.lib.billing_core.io import parse_csv_string
from slabmeter.lib.billing_core.models import Meter
from slabmeter.lib.billing_service import BillingService


def build_parser():
    parser = argparse.ArgumentParser(prog="slabmeter")
    sub = parser.add_subparsers(dest="command", required=True)

    meter = sub.add_parser("add-meter")
    meter.add_argument("meter_id")
    meter.add_argument("name")
    meter.add_argument("--type", default="General")
    meter.add_argument("--general", action="store_true")

    start = sub.add_parser("start-cycle")
    start.add_argument("start_date")
    start.add_argument("--notes", default="")

    close = sub.add_parser("close-cycle")
    close.add_argument("collection_date")

    imp = sub.add_parser("import")
    imp.add_argument("csv_path")

    sub.add_parser("summary")
    return parser


def main(argv=None):
    config.configure_logging()
    args = build_parser().parse_args(argv)
    service = BillingService(config.create_store(), default_target=config.DEFAULT_CONSUMPTION_TARGET)

    try:
        if args.command == "add-meter":
            meter = service.store.put_meter(Meter(
                meter_id=args.meter_id,
                name=args.name,
                meter_type=args.type,
                is_general_purpose=args.general,
            ))
            print(f"Added meter {meter.meter_id} ({meter.name})")
        elif args.command == "start-cycle":
            cycle = service.cycles.start_cycle(args.start_date, args.notes)
            print(f"Started cycle {cycle.cycle_id} from {cycle.start_date.date()}")
        elif args.command == "close-cycle":
            transition = service.cycles.close_cycle(args.collection_date)
            print(f"Closed {transition.closed_cycle.cycle_id}, new cycle {transition.new_cycle.cycle_id}")
        elif args.command == "import":
            rows = parse_csv_string(Path(args.csv_path).read_text())
            readings = service.ledger.import_readings(rows)
            print(f"Imported {len(readings)} readings:")
            for r in readings:
                print(f" - {r.meter_id} @ {r.timestamp.isoformat()} : {r.value} (+{r.units_consumed_since_previous})")
        elif args.command == "summary":
            print(json.dumps(service.dashboard_summary().to_dict(), indent=2))
    except BillingError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
