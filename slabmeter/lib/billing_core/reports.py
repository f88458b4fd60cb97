from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .aggregator import ConsumptionAggregator, total_consumption, total_cost
from .models import ACTIVE, BillingCycle, Meter, Reading, SlabRateConfig
from .tariff import compute_cost, cost_breakdown, round_money


def short_date(value: Optional[datetime]) -> str:
    if value is None:
        return "N/A"
    return f"{value.day} {value.strftime('%b')}"


def cycle_label(cycle: BillingCycle) -> str:
    """'1 Nov - 3 Jan', or '1 Nov (Current)' for the active cycle."""
    if cycle.status == ACTIVE:
        return f"{short_date(cycle.start_date)} (Current)"
    return f"{short_date(cycle.start_date)} - {short_date(cycle.end_date)}"


@dataclass
class MeterDetail:
    meter_id: str
    meter_name: str
    meter_type: str
    units: float
    cost: float
    tiers: list = field(default_factory=list)

    def to_dict(self):
        return {
            "meter_id": self.meter_id,
            "meter_name": self.meter_name,
            "meter_type": self.meter_type,
            "units": self.units,
            "cost": self.cost,
            "tiers": [t.to_dict() for t in self.tiers],
        }


@dataclass
class CycleReport:
    cycle: BillingCycle
    label: str
    total_units: float
    total_cost: float
    meter_details: List[MeterDetail]
    config_name: Optional[str] = None

    def to_dict(self):
        data = self.cycle.to_dict()
        data.update({
            "label": self.label,
            "total_units": self.total_units,
            "total_cost": self.total_cost,
            "meter_details": [m.to_dict() for m in self.meter_details],
            "slab_config_name": self.config_name,
        })
        return data


def cycle_report(cycle: BillingCycle, readings: Iterable[Reading], meters: Iterable[Meter],
                 slab_config: Optional[SlabRateConfig]) -> CycleReport:
    """
    Units and cost of one cycle with a per-meter breakdown.

    Cost is computed per meter on that meter's own units and summed.
    """
    # bill the rounded units, as the dashboard does
    by_meter = {k: round_money(v) for k, v in ConsumptionAggregator(readings).by_meter(cycle.cycle_id).items()}
    meter_map = {m.meter_id: m for m in meters}
    details = []
    for meter_id, units in by_meter.items():
        meter = meter_map.get(meter_id)
        details.append(MeterDetail(
            meter_id=meter_id,
            meter_name=meter.name if meter else "Unknown Meter",
            meter_type=meter.meter_type if meter else "N/A",
            units=units,
            cost=compute_cost(units, slab_config),
            tiers=cost_breakdown(units, slab_config),
        ))
    details.sort(key=lambda d: d.meter_name)
    return CycleReport(
        cycle=cycle,
        label=cycle_label(cycle),
        total_units=total_consumption(by_meter),
        total_cost=total_cost(by_meter, slab_config),
        meter_details=details,
        config_name=slab_config.config_name if slab_config else None,
    )


def _readings_by_cycle(readings: Iterable[Reading]) -> Dict[str, List[Reading]]:
    grouped: Dict[str, List[Reading]] = {}
    for r in readings:
        grouped.setdefault(r.cycle_id, []).append(r)
    return grouped


def cycle_history(cycles: Iterable[BillingCycle], readings: Iterable[Reading], meters: Iterable[Meter],
                  slab_config: Optional[SlabRateConfig]) -> List[CycleReport]:
    """Reports for every cycle, newest first. Uses the currently active rates."""
    grouped = _readings_by_cycle(readings)
    meters = list(meters)
    ordered = sorted(cycles, key=lambda c: c.start_date, reverse=True)
    return [cycle_report(c, grouped.get(c.cycle_id, []), meters, slab_config) for c in ordered]


def cycle_analytics(cycles: Iterable[BillingCycle], readings: Iterable[Reading],
                    slab_config: Optional[SlabRateConfig]) -> List[dict]:
    """Consumption and cost per cycle, oldest first, for cycles with readings."""
    by_cycle = ConsumptionAggregator(readings).by_cycle_and_meter()
    series = []
    for cycle in sorted(cycles, key=lambda c: c.start_date):
        meters = by_cycle.get(cycle.cycle_id)
        if not meters:
            continue
        meters = {k: round_money(v) for k, v in meters.items()}
        series.append({
            "id": cycle.cycle_id,
            "name": cycle_label(cycle),
            "total_consumption": total_consumption(meters),
            "total_cost": total_cost(meters, slab_config),
        })
    return series


def meter_breakdown(cycles: Iterable[BillingCycle], readings: Iterable[Reading],
                    meters: Iterable[Meter]) -> List[dict]:
    """Per cycle: {'name': label, <meter name>: units, ...}, oldest first."""
    by_cycle = ConsumptionAggregator(readings).by_cycle_and_meter()
    names = {m.meter_id: m.name for m in meters}
    rows = []
    for cycle in sorted(cycles, key=lambda c: c.start_date):
        consumption = by_cycle.get(cycle.cycle_id)
        if not consumption:
            continue
        row = {"name": cycle_label(cycle)}
        for meter_id, units in consumption.items():
            row[names.get(meter_id, meter_id)] = round_money(units)
        rows.append(row)
    return rows
