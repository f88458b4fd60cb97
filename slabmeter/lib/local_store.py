"""
=============================================================================
LOCAL STORE - In-process storage with optional JSON file persistence
=============================================================================
Used when DynamoDB is not enabled (development, tests, single-user setups).

All records live in dictionaries guarded by one re-entrant lock. Every
method that checks a rule and then writes (e.g. "no active cycle exists,
so insert this one") holds the lock for the whole operation, so two
requests can never both pass the check.

If a data file is given, the full state is written to it after each change
and loaded back on start-up:

    {
        "meters": {...}, "cycles": {...}, "readings": {...},
        "configs": {...}, "settings": {"consumption_target": 500}
    }
=============================================================================
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from slabmeter.lib.billing_core.errors import ConflictError, NotFoundError
from slabmeter.lib.billing_core.models import (
    ACTIVE,
    BillingCycle,
    Meter,
    Reading,
    Settings,
    SlabRateConfig,
)
from slabmeter.lib.store import BillingStore

logger = logging.getLogger(__name__)


class LocalStore(BillingStore):
    """
    Usage:
        store = LocalStore()                          # memory only
        store = LocalStore("slabmeter/data/store.json")  # persisted
    """

    backend_name = "local"

    def __init__(self, data_file: Optional[str] = None):
        self._lock = threading.RLock()
        self._meters: Dict[str, Meter] = {}
        self._cycles: Dict[str, BillingCycle] = {}
        self._readings: Dict[str, Reading] = {}
        self._configs: Dict[str, SlabRateConfig] = {}
        self._settings: Optional[Settings] = None
        self.data_file = Path(data_file) if data_file else None
        if self.data_file and self.data_file.exists():
            self._load()

    # ---- persistence -------------------------------------------------------

    def _load(self):
        with self.data_file.open("r", encoding="utf-8") as f:
            state = json.load(f)
        self._meters = {k: Meter.from_dict(v) for k, v in state.get("meters", {}).items()}
        self._cycles = {k: BillingCycle.from_dict(v) for k, v in state.get("cycles", {}).items()}
        self._readings = {k: Reading.from_dict(v) for k, v in state.get("readings", {}).items()}
        self._configs = {k: SlabRateConfig.from_dict(v) for k, v in state.get("configs", {}).items()}
        if state.get("settings"):
            self._settings = Settings(consumption_target=float(state["settings"]["consumption_target"]))
        logger.info("Loaded local store from %s (%d cycles, %d readings)",
                    self.data_file, len(self._cycles), len(self._readings))

    def _save(self):
        if not self.data_file:
            return
        state = {
            "meters": {k: v.to_dict() for k, v in self._meters.items()},
            "cycles": {k: v.to_dict() for k, v in self._cycles.items()},
            "readings": {k: v.to_dict() for k, v in self._readings.items()},
            "configs": {k: v.to_dict() for k, v in self._configs.items()},
            "settings": {"consumption_target": self._settings.consumption_target} if self._settings else None,
        }
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.data_file.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)
        tmp.replace(self.data_file)

    # ---- meters ------------------------------------------------------------

    def put_meter(self, meter: Meter) -> Meter:
        with self._lock:
            self._meters[meter.meter_id] = meter
            self._save()
            return meter

    def get_meter(self, meter_id: str) -> Optional[Meter]:
        with self._lock:
            return self._meters.get(meter_id)

    def list_meters(self) -> List[Meter]:
        with self._lock:
            return sorted(self._meters.values(), key=lambda m: m.name)

    # ---- billing cycles ----------------------------------------------------

    def get_cycle(self, cycle_id: str) -> Optional[BillingCycle]:
        with self._lock:
            return self._cycles.get(cycle_id)

    def list_cycles(self) -> List[BillingCycle]:
        with self._lock:
            return sorted(self._cycles.values(), key=lambda c: c.start_date, reverse=True)

    def get_active_cycle(self) -> Optional[BillingCycle]:
        with self._lock:
            for cycle in self._cycles.values():
                if cycle.status == ACTIVE:
                    return cycle
            return None

    def insert_active_cycle(self, cycle: BillingCycle) -> BillingCycle:
        with self._lock:
            existing = self.get_active_cycle()
            if existing is not None:
                raise ConflictError(
                    f"An active billing cycle already exists starting "
                    f"{existing.start_date.isoformat()}. Please close it first."
                )
            self._cycles[cycle.cycle_id] = cycle
            self._save()
            return cycle

    def close_and_open(self, closed: BillingCycle, opened: BillingCycle) -> None:
        with self._lock:
            current = self.get_active_cycle()
            if current is None or current.cycle_id != closed.cycle_id:
                raise NotFoundError("No active billing cycle found.")
            self._cycles[closed.cycle_id] = closed
            self._cycles[opened.cycle_id] = opened
            self._save()

    def update_cycle_notes(self, cycle_id: str, notes: str) -> BillingCycle:
        with self._lock:
            cycle = self._cycles.get(cycle_id)
            if cycle is None:
                raise NotFoundError("Billing cycle not found.")
            cycle.notes = notes
            self._save()
            return cycle

    def delete_cycle(self, cycle_id: str) -> None:
        with self._lock:
            if cycle_id not in self._cycles:
                raise NotFoundError("Billing cycle not found.")
            count = self.count_readings(cycle_id)
            if count > 0:
                raise ConflictError(f"Cannot delete cycle with {count} readings.")
            del self._cycles[cycle_id]
            self._save()

    # ---- readings ----------------------------------------------------------

    def get_reading(self, reading_id: str) -> Optional[Reading]:
        with self._lock:
            return self._readings.get(reading_id)

    def list_readings(self, meter_id: Optional[str] = None, cycle_id: Optional[str] = None) -> List[Reading]:
        with self._lock:
            readings = [
                r for r in self._readings.values()
                if (meter_id is None or r.meter_id == meter_id)
                and (cycle_id is None or r.cycle_id == cycle_id)
            ]
        return sorted(readings, key=lambda r: (r.timestamp, r.reading_id))

    def insert_reading(self, reading: Reading) -> Reading:
        with self._lock:
            if reading.cycle_id not in self._cycles:
                raise NotFoundError("Billing cycle not found.")
            self._readings[reading.reading_id] = reading
            self._save()
            return reading

    def update_reading_deltas(self, readings: List[Reading]) -> None:
        with self._lock:
            for r in readings:
                if r.reading_id in self._readings:
                    self._readings[r.reading_id].units_consumed_since_previous = r.units_consumed_since_previous
            self._save()

    def delete_reading(self, reading: Reading) -> None:
        with self._lock:
            if self._readings.pop(reading.reading_id, None) is None:
                raise NotFoundError("Reading not found.")
            self._save()

    def count_readings(self, cycle_id: str) -> int:
        with self._lock:
            return sum(1 for r in self._readings.values() if r.cycle_id == cycle_id)

    # ---- slab rate configs -------------------------------------------------

    def put_config(self, config: SlabRateConfig) -> SlabRateConfig:
        with self._lock:
            # a config only becomes active through activate_config
            config.is_currently_active = False
            self._configs[config.config_id] = config
            self._save()
            return config

    def get_config(self, config_id: str) -> Optional[SlabRateConfig]:
        with self._lock:
            return self._configs.get(config_id)

    def list_configs(self) -> List[SlabRateConfig]:
        with self._lock:
            return sorted(self._configs.values(), key=lambda c: c.effective_date, reverse=True)

    def get_active_config(self) -> Optional[SlabRateConfig]:
        with self._lock:
            for config in self._configs.values():
                if config.is_currently_active:
                    return config
            return None

    def activate_config(self, config_id: str) -> SlabRateConfig:
        with self._lock:
            target = self._configs.get(config_id)
            if target is None:
                raise NotFoundError("Slab rate configuration not found.")
            for config in self._configs.values():
                config.is_currently_active = config.config_id == config_id
            self._save()
            return target

    # ---- settings ----------------------------------------------------------

    def get_settings(self) -> Optional[Settings]:
        with self._lock:
            return self._settings

    def put_settings(self, settings: Settings) -> Settings:
        with self._lock:
            self._settings = settings
            self._save()
            return settings
