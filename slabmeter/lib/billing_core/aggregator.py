from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .models import Reading, SlabRateConfig
from .tariff import compute_cost, round_money


def chronological(readings: Iterable[Reading]) -> List[Reading]:
    # reading_id breaks ties so two readings at the same instant keep a stable order
    return sorted(readings, key=lambda r: (r.timestamp, r.reading_id))


def derive_deltas(readings: Iterable[Reading]) -> List[Reading]:
    """
    Recomputes units_consumed_since_previous for one meter's readings.

    The first reading's delta is its own value; every later reading's delta is
    its value minus the value of the reading immediately before it in time.
    Returns new Reading objects in chronological order.
    """
    result = []
    previous = None
    for r in chronological(readings):
        delta = r.value if previous is None else r.value - previous.value
        result.append(replace(r, units_consumed_since_previous=delta))
        previous = r
    return result


class ConsumptionAggregator:
    def __init__(self, readings: Iterable[Reading]):
        self.readings = chronological(readings)

    def by_meter(self, cycle_id: Optional[str] = None) -> Dict[str, float]:
        """
        Sum of deltas per meter, optionally restricted to one cycle.

        Negative deltas (meter rollback) are summed as they are.
        """
        totals = defaultdict(float)
        for r in self.readings:
            if cycle_id is not None and r.cycle_id != cycle_id:
                continue
            totals[r.meter_id] += r.units_consumed_since_previous
        return dict(totals)

    def for_meter(self, meter_id: str, cycle_id: Optional[str] = None) -> float:
        return self.by_meter(cycle_id).get(meter_id, 0.0)

    def by_cycle_and_meter(self) -> Dict[str, Dict[str, float]]:
        grouped = defaultdict(lambda: defaultdict(float))
        for r in self.readings:
            grouped[r.cycle_id][r.meter_id] += r.units_consumed_since_previous
        return {cycle_id: dict(meters) for cycle_id, meters in grouped.items()}


def aggregate_consumption(readings: Iterable[Reading], cycle_id: Optional[str] = None) -> Dict[str, float]:
    return ConsumptionAggregator(readings).by_meter(cycle_id)


def meter_consumption(readings: Iterable[Reading], meter_id: str, cycle_id: Optional[str] = None) -> float:
    return ConsumptionAggregator(readings).for_meter(meter_id, cycle_id)


def total_consumption(consumption_by_meter: Dict[str, float]) -> float:
    return round_money(sum(consumption_by_meter.values()))


def total_cost(consumption_by_meter: Dict[str, float], slab_config: Optional[SlabRateConfig]) -> float:
    """
    Each meter is billed on its own consumption as if it were the sole
    consumer; the cycle cost is the sum of those bills.
    """
    return round_money(sum(compute_cost(units, slab_config) for units in consumption_by_meter.values()))
