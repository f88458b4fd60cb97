"""
=============================================================================
BILLING STORE - the storage boundary of the billing engine
=============================================================================
Every backend (local file, DynamoDB) implements this interface.

The "only one active record" rules (billing cycle, slab rate config) are
enforced HERE, as one check-and-write per operation:
- insert_active_cycle fails if any cycle is already active
- close_and_open closes the active cycle and opens the next one together
- activate_config switches the active config in one step
- delete_cycle refuses to delete a cycle that still owns readings

Callers must never do "find the active cycle, then write" themselves.
=============================================================================
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from slabmeter.lib.billing_core.models import (
    BillingCycle,
    Meter,
    Reading,
    Settings,
    SlabRateConfig,
)


class BillingStore(ABC):
    backend_name = "abstract"

    # ---- meters ------------------------------------------------------------

    @abstractmethod
    def put_meter(self, meter: Meter) -> Meter:
        pass

    @abstractmethod
    def get_meter(self, meter_id: str) -> Optional[Meter]:
        pass

    @abstractmethod
    def list_meters(self) -> List[Meter]:
        pass

    # ---- billing cycles ----------------------------------------------------

    @abstractmethod
    def get_cycle(self, cycle_id: str) -> Optional[BillingCycle]:
        pass

    @abstractmethod
    def list_cycles(self) -> List[BillingCycle]:
        """All cycles, newest start_date first."""

    @abstractmethod
    def get_active_cycle(self) -> Optional[BillingCycle]:
        pass

    @abstractmethod
    def insert_active_cycle(self, cycle: BillingCycle) -> BillingCycle:
        """Store a new active cycle. Raises ConflictError if one is active."""

    @abstractmethod
    def close_and_open(self, closed: BillingCycle, opened: BillingCycle) -> None:
        """
        Replace the active cycle `closed` (already carrying its closed state)
        and insert `opened` as the new active cycle in one transaction.
        Raises NotFoundError if `closed` is no longer the active cycle.
        """

    @abstractmethod
    def update_cycle_notes(self, cycle_id: str, notes: str) -> BillingCycle:
        pass

    @abstractmethod
    def delete_cycle(self, cycle_id: str) -> None:
        """Raises NotFoundError if unknown, ConflictError if it owns readings."""

    # ---- readings ----------------------------------------------------------

    @abstractmethod
    def get_reading(self, reading_id: str) -> Optional[Reading]:
        pass

    @abstractmethod
    def list_readings(self, meter_id: Optional[str] = None, cycle_id: Optional[str] = None) -> List[Reading]:
        pass

    @abstractmethod
    def insert_reading(self, reading: Reading) -> Reading:
        """Raises NotFoundError if the reading's cycle does not exist."""

    @abstractmethod
    def update_reading_deltas(self, readings: List[Reading]) -> None:
        """Persist recomputed units_consumed_since_previous values."""

    @abstractmethod
    def delete_reading(self, reading: Reading) -> None:
        pass

    @abstractmethod
    def count_readings(self, cycle_id: str) -> int:
        pass

    # ---- slab rate configs -------------------------------------------------

    @abstractmethod
    def put_config(self, config: SlabRateConfig) -> SlabRateConfig:
        pass

    @abstractmethod
    def get_config(self, config_id: str) -> Optional[SlabRateConfig]:
        pass

    @abstractmethod
    def list_configs(self) -> List[SlabRateConfig]:
        pass

    @abstractmethod
    def get_active_config(self) -> Optional[SlabRateConfig]:
        pass

    @abstractmethod
    def activate_config(self, config_id: str) -> SlabRateConfig:
        """Make config_id the only active config. Raises NotFoundError."""

    # ---- settings ----------------------------------------------------------

    @abstractmethod
    def get_settings(self) -> Optional[Settings]:
        pass

    @abstractmethod
    def put_settings(self, settings: Settings) -> Settings:
        pass
