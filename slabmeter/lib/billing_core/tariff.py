from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from .models import SlabRateConfig, Tier

# Total consumption at or below this uses the lower tier set.
TIER_SET_THRESHOLD = 500


def round_money(value: float) -> float:
    """Round to 2 decimal places with ROUND_HALF_UP (no banker's rounding)."""
    return float(Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CurrentTier:
    rate: float
    range_label: str

    def to_dict(self):
        return {"rate": self.rate, "range_label": self.range_label}


@dataclass(frozen=True)
class TierCharge:
    range_label: str
    rate: float
    units: float
    charge: float

    def to_dict(self):
        return {
            "range_label": self.range_label,
            "rate": self.rate,
            "units": self.units,
            "charge": self.charge,
        }


def select_tiers(consumed_units: float, slab_config: SlabRateConfig) -> List[Tier]:
    """
    Picks the <=500 or >500 tier set for this total, sorted by from_unit.
    The switch is a whole-set selection at the threshold, not a blend.
    """
    tiers = slab_config.slabs_up_to_500 if consumed_units <= TIER_SET_THRESHOLD else slab_config.slabs_above_500
    return sorted(tiers, key=lambda t: t.from_unit)


def _walk(consumed_units: float, tiers: Sequence[Tier]) -> List[TierCharge]:
    charges = []
    billed = 0.0
    for tier in tiers:
        if consumed_units > tier.from_unit - 1:
            units_in_tier = min(consumed_units, tier.upper) - max(billed, tier.from_unit - 1)
            if units_in_tier > 0:
                charges.append(TierCharge(
                    range_label=tier.range_label,
                    rate=tier.rate,
                    units=units_in_tier,
                    charge=units_in_tier * tier.rate,
                ))
                billed += units_in_tier
        if billed >= consumed_units:
            break
    return charges


def compute_cost(consumed_units: float, slab_config: Optional[SlabRateConfig]) -> float:
    """
    Bill consumed_units against the progressive tariff in slab_config.

    Returns 0 for non-positive consumption or a missing config.
    """
    if slab_config is None or consumed_units <= 0:
        return 0.0
    total = sum(c.charge for c in _walk(consumed_units, select_tiers(consumed_units, slab_config)))
    return round_money(total)


def cost_breakdown(consumed_units: float, slab_config: Optional[SlabRateConfig]) -> List[TierCharge]:
    """Per-tier units and charges of the same walk compute_cost performs."""
    if slab_config is None or consumed_units <= 0:
        return []
    return [
        TierCharge(c.range_label, c.rate, round_money(c.units), round_money(c.charge))
        for c in _walk(consumed_units, select_tiers(consumed_units, slab_config))
    ]


def current_tier(consumed_units: float, slab_config: Optional[SlabRateConfig]) -> Optional[CurrentTier]:
    """The last tier whose from_unit <= consumed_units. Display only."""
    if slab_config is None:
        return None
    found = None
    for tier in select_tiers(consumed_units, slab_config):
        if tier.from_unit <= consumed_units:
            found = tier
    if found is None:
        return None
    return CurrentTier(rate=found.rate, range_label=found.range_label)
