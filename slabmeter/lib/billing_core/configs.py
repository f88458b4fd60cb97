import logging
from typing import List, Sequence

from .errors import NotFoundError, ValidationError
from .models import DEFAULT_CONSUMPTION_TARGET, Settings, SlabRateConfig, Tier

logger = logging.getLogger(__name__)


def validate_tiers(tiers: Sequence[Tier], label: str):
    """
    Tiers must have non-negative bounds and rates and must not overlap.
    Order does not matter; the calculator sorts them.
    """
    for t in tiers:
        if t.from_unit < 0 or t.rate < 0:
            raise ValidationError(f"{label}: from_unit and rate must be >= 0.")
        if t.to_unit is not None and t.to_unit < t.from_unit:
            raise ValidationError(f"{label}: to_unit {t.to_unit} is below from_unit {t.from_unit}.")
    ordered = sorted(tiers, key=lambda t: t.from_unit)
    for lower, upper in zip(ordered, ordered[1:]):
        if upper.from_unit <= lower.upper:
            raise ValidationError(f"{label}: tiers {lower.range_label} and {upper.range_label} overlap.")


class SlabConfigService:
    def __init__(self, store, default_target: float = DEFAULT_CONSUMPTION_TARGET):
        self.store = store
        self.default_target = default_target

    def create_config(self, config: SlabRateConfig, activate: bool = False) -> SlabRateConfig:
        if not config.config_name:
            raise ValidationError("Config name is required.")
        if not config.slabs_up_to_500 or not config.slabs_above_500:
            raise ValidationError("Both the <=500 and >500 tier sets need at least one tier.")
        validate_tiers(config.slabs_up_to_500, "<=500 tiers")
        validate_tiers(config.slabs_above_500, ">500 tiers")
        self.store.put_config(config)
        logger.info("Created slab rate config %s (%s)", config.config_id, config.config_name)
        if activate:
            return self.activate_config(config.config_id)
        return config

    def activate_config(self, config_id: str) -> SlabRateConfig:
        config = self.store.activate_config(config_id)
        logger.info("Activated slab rate config %s", config_id)
        return config

    def get_active_config(self) -> SlabRateConfig:
        config = self.store.get_active_config()
        if config is None:
            raise NotFoundError("No active slab rate configuration found.")
        return config

    def list_configs(self) -> List[SlabRateConfig]:
        return self.store.list_configs()

    def get_consumption_target(self) -> float:
        settings = self.store.get_settings()
        if settings is None:
            return float(self.default_target)
        return settings.consumption_target

    def set_consumption_target(self, value) -> float:
        try:
            target = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Consumption target must be a number.")
        if target <= 0:
            raise ValidationError("Consumption target must be greater than 0.")
        self.store.put_settings(Settings(consumption_target=target))
        return target
