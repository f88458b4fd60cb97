import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .aggregator import total_consumption, total_cost
from .models import DEFAULT_CONSUMPTION_TARGET, BillingCycle, Meter, SlabRateConfig
from .tariff import CurrentTier, compute_cost, current_tier, round_money

# Beyond this many days to the target the pace is simply "safe"
# (a standard bi-monthly cycle).
SAFE_PACE_DAYS = 60
TIGHT_PACE_DAYS = 10

LIMIT_EXCEEDED = "limit exceeded"
PACE_SAFE = "safe"
PACE_UNKNOWN = "-"


@dataclass(frozen=True)
class Pace:
    label: str
    days_to_limit: Optional[int] = None
    is_tight: bool = False

    def to_dict(self):
        return {"label": self.label, "days_to_limit": self.days_to_limit, "is_tight": self.is_tight}


@dataclass
class MeterSummary:
    meter_id: str
    meter_name: str
    meter_type: str
    is_general_purpose: bool
    is_currently_active_general: bool
    current_cycle_consumption: float
    current_cycle_cost: float
    average_daily_consumption: float
    percentage_to_target: float
    units_remaining_to_target: float
    units_over_limit: float
    is_over_limit: bool
    pace: Pace
    current_tier: Optional[CurrentTier]
    consumption_target: float
    previous_cycle_consumption: float

    def to_dict(self):
        return {
            "meter_id": self.meter_id,
            "meter_name": self.meter_name,
            "meter_type": self.meter_type,
            "is_general_purpose": self.is_general_purpose,
            "is_currently_active_general": self.is_currently_active_general,
            "current_cycle_consumption": self.current_cycle_consumption,
            "current_cycle_cost": self.current_cycle_cost,
            "average_daily_consumption": self.average_daily_consumption,
            "percentage_to_target": self.percentage_to_target,
            "units_remaining_to_target": self.units_remaining_to_target,
            "units_over_limit": self.units_over_limit,
            "is_over_limit": self.is_over_limit,
            "pace": self.pace.to_dict(),
            "current_tier": self.current_tier.to_dict() if self.current_tier else None,
            "consumption_target": self.consumption_target,
            "previous_cycle_consumption": self.previous_cycle_consumption,
        }


@dataclass
class DashboardSummary:
    cycle: BillingCycle
    days_in_cycle: int
    consumption_target: float
    meter_summaries: List[MeterSummary] = field(default_factory=list)
    total_consumption: float = 0.0
    total_bill: float = 0.0
    slab_config: Optional[SlabRateConfig] = None
    previous_cycle: Optional[BillingCycle] = None

    def to_dict(self):
        current = self.cycle.to_dict()
        current["days_in_cycle"] = self.days_in_cycle
        return {
            "current_billing_cycle": current,
            "previous_billing_cycle": self.previous_cycle.to_dict() if self.previous_cycle else None,
            "active_slab_configuration": {
                "config_id": self.slab_config.config_id,
                "config_name": self.slab_config.config_name,
                "effective_date": self.slab_config.effective_date.isoformat(),
            } if self.slab_config else None,
            "meter_summaries": [m.to_dict() for m in self.meter_summaries],
            "current_cycle_total_consumption": self.total_consumption,
            "current_cycle_total_bill": self.total_bill,
            "global_consumption_target": self.consumption_target,
        }


def days_in_cycle(start_date: datetime, now: Optional[datetime] = None) -> int:
    """Whole days (rounded up) since start_date, never less than 1."""
    now = now or datetime.now(timezone.utc)
    effective_now = max(now, start_date)
    days = math.ceil((effective_now - start_date) / timedelta(days=1))
    return max(days, 1)


def pace(units_remaining: float, average_daily: float, is_over_limit: bool) -> Pace:
    if is_over_limit:
        return Pace(LIMIT_EXCEEDED)
    if average_daily > 0:
        days_left = math.floor(units_remaining / average_daily)
        if days_left > SAFE_PACE_DAYS:
            return Pace(PACE_SAFE, days_to_limit=days_left)
        return Pace(f"~{days_left} days to limit", days_to_limit=days_left,
                    is_tight=days_left < TIGHT_PACE_DAYS)
    return Pace(PACE_UNKNOWN)


def build_meter_summary(meter: Meter, consumption: float, days: int, target: float,
                        slab_config: Optional[SlabRateConfig],
                        previous_consumption: float = 0.0) -> MeterSummary:
    if not target or target <= 0:
        target = DEFAULT_CONSUMPTION_TARGET
    consumption = round_money(consumption)
    average = round_money(consumption / days)
    percentage = 100 * consumption / target
    remaining = round_money(max(0.0, target - consumption))
    over_limit = percentage > 100
    return MeterSummary(
        meter_id=meter.meter_id,
        meter_name=meter.name,
        meter_type=meter.meter_type,
        is_general_purpose=meter.is_general_purpose,
        is_currently_active_general=meter.is_currently_active_general,
        current_cycle_consumption=consumption,
        current_cycle_cost=compute_cost(consumption, slab_config),
        average_daily_consumption=average,
        percentage_to_target=round_money(percentage),
        units_remaining_to_target=remaining,
        units_over_limit=round_money(max(0.0, consumption - target)),
        is_over_limit=over_limit,
        pace=pace(remaining, average, over_limit),
        current_tier=current_tier(consumption, slab_config),
        consumption_target=target,
        previous_cycle_consumption=round_money(previous_consumption),
    )


def build_summary(cycle: BillingCycle, slab_config: Optional[SlabRateConfig],
                  consumption_by_meter: Dict[str, float], target: float,
                  meters: Iterable[Meter] = (),
                  previous_consumption_by_meter: Optional[Dict[str, float]] = None,
                  previous_cycle: Optional[BillingCycle] = None,
                  now: Optional[datetime] = None) -> DashboardSummary:
    """
    Dashboard figures for `cycle`.

    Every meter in `meters` gets a summary (zero consumption if it has no
    readings); meters that only appear in consumption_by_meter are listed
    under their id. The total bill is the sum of each meter's own bill.

    A target that is not positive falls back to DEFAULT_CONSUMPTION_TARGET.
    """
    if not target or target <= 0:
        target = DEFAULT_CONSUMPTION_TARGET
    previous_consumption_by_meter = previous_consumption_by_meter or {}
    days = days_in_cycle(cycle.start_date, now)

    known = {m.meter_id: m for m in meters}
    for meter_id in consumption_by_meter:
        if meter_id not in known:
            known[meter_id] = Meter(meter_id=meter_id, name=meter_id, meter_type="N/A")

    summaries = [
        build_meter_summary(
            meter,
            consumption_by_meter.get(meter.meter_id, 0.0),
            days,
            target,
            slab_config,
            previous_consumption_by_meter.get(meter.meter_id, 0.0),
        )
        for meter in known.values()
    ]
    billed = {s.meter_id: s.current_cycle_consumption for s in summaries}
    return DashboardSummary(
        cycle=cycle,
        days_in_cycle=days,
        consumption_target=target,
        meter_summaries=summaries,
        total_consumption=total_consumption(billed),
        total_bill=total_cost(billed, slab_config),
        slab_config=slab_config,
        previous_cycle=previous_cycle,
    )
