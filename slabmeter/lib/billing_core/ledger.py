import logging
import math
from typing import Dict, Iterable, List, Optional

from .aggregator import derive_deltas
from .errors import NotFoundError, ValidationError
from .models import Reading, parse_datetime

logger = logging.getLogger(__name__)


class ReadingLedger:
    """
    Adds and removes meter readings while keeping every reading's
    units_consumed_since_previous consistent with the raw sequence.

    Inserting a reading out of order, or deleting any reading, changes the
    delta of its chronological successor; both are recomputed here.
    """

    def __init__(self, store):
        self.store = store

    def add_reading(self, meter_id: str, timestamp, value: float, notes: str = "",
                    is_estimated: bool = False, cycle_id: Optional[str] = None) -> Reading:
        reading = self._prepare(meter_id, timestamp, value, notes, is_estimated, cycle_id)
        existing = self.store.list_readings(meter_id=meter_id)
        self._check_in_sequence(reading, existing)
        return self._insert(reading, existing)

    def delete_reading(self, reading_id: str) -> Reading:
        reading = self.store.get_reading(reading_id)
        if reading is None:
            raise NotFoundError("Reading not found.")
        self.store.delete_reading(reading)
        remaining = self.store.list_readings(meter_id=reading.meter_id)
        derived = {r.reading_id: r for r in derive_deltas(remaining)}
        self._persist_changed(remaining, derived)
        logger.info("Deleted reading %s for meter %s", reading_id, reading.meter_id)
        return reading

    def import_readings(self, rows: Iterable[dict]) -> List[Reading]:
        """
        Add parsed CSV rows oldest first so each one sees its predecessor.

        Every row is checked against the stored readings and the rows before
        it in the batch before anything is written, so a bad row leaves the
        store untouched.
        """
        prepared = [
            self._prepare(
                meter_id=row["meter_id"],
                timestamp=row["timestamp"],
                value=row["value"],
                notes=row.get("notes", ""),
                is_estimated=row.get("is_estimated", False),
                cycle_id=row.get("cycle_id"),
            )
            for row in rows
        ]
        prepared.sort(key=lambda r: r.timestamp)

        pending: Dict[str, List[Reading]] = {}
        for reading in prepared:
            if reading.meter_id not in pending:
                pending[reading.meter_id] = self.store.list_readings(meter_id=reading.meter_id)
            self._check_in_sequence(reading, pending[reading.meter_id])
            pending[reading.meter_id].append(reading)

        logger.info("Importing %d readings", len(prepared))
        return [self._insert(r, self.store.list_readings(meter_id=r.meter_id)) for r in prepared]

    def list_readings(self, meter_id: Optional[str] = None, cycle_id: Optional[str] = None) -> List[Reading]:
        return self.store.list_readings(meter_id=meter_id, cycle_id=cycle_id)

    def _prepare(self, meter_id, timestamp, value, notes, is_estimated, cycle_id) -> Reading:
        """Validates input and resolves the cycle; nothing is written."""
        if self.store.get_meter(meter_id) is None:
            raise NotFoundError(f"Meter {meter_id} not found.")
        if timestamp is None or timestamp == "":
            raise ValidationError("Reading timestamp is required.")
        try:
            ts = parse_datetime(timestamp)
            value = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Reading timestamp or value is malformed.")
        if not math.isfinite(value) or value < 0:
            raise ValidationError("Reading value must be a number >= 0.")

        if cycle_id is None:
            cycle = self.store.get_active_cycle()
            if cycle is None:
                raise NotFoundError("No active billing cycle found.")
            cycle_id = cycle.cycle_id
        elif self.store.get_cycle(cycle_id) is None:
            raise NotFoundError("Billing cycle not found.")

        return Reading(
            meter_id=meter_id,
            cycle_id=cycle_id,
            timestamp=ts,
            value=value,
            notes=notes or "",
            is_estimated=bool(is_estimated),
        )

    def _insert(self, reading: Reading, existing: List[Reading]) -> Reading:
        derived = {r.reading_id: r for r in derive_deltas(existing + [reading])}
        reading.units_consumed_since_previous = derived[reading.reading_id].units_consumed_since_previous
        self.store.insert_reading(reading)
        self._persist_changed(existing, derived)
        logger.info("Added reading %s for meter %s: value=%s delta=%s",
                    reading.reading_id, reading.meter_id, reading.value, reading.units_consumed_since_previous)
        return reading

    @staticmethod
    def _check_in_sequence(reading: Reading, existing: List[Reading]):
        """
        One reading per meter per instant, and a meter's actual readings never
        go down over time. Estimates are exempt from the second rule.
        """
        for r in existing:
            if r.timestamp == reading.timestamp:
                raise ValidationError(
                    f"Meter {reading.meter_id} already has a reading at {reading.timestamp.isoformat()}."
                )
        if reading.is_estimated:
            return

        actual = [r for r in existing if not r.is_estimated]
        earlier = [r for r in actual if r.timestamp < reading.timestamp]
        later = [r for r in actual if r.timestamp > reading.timestamp]
        if earlier:
            previous = max(earlier, key=lambda r: r.timestamp)
            if reading.value < previous.value:
                raise ValidationError(
                    f"Reading {reading.value} is below the previous reading "
                    f"{previous.value} taken {previous.timestamp.isoformat()}."
                )
        if later:
            following = min(later, key=lambda r: r.timestamp)
            if reading.value > following.value:
                raise ValidationError(
                    f"Reading {reading.value} is above the next reading "
                    f"{following.value} taken {following.timestamp.isoformat()}."
                )

    def _persist_changed(self, before: List[Reading], derived: dict):
        changed = [
            derived[r.reading_id] for r in before
            if r.reading_id in derived
            and derived[r.reading_id].units_consumed_since_previous != r.units_consumed_since_previous
        ]
        if changed:
            self.store.update_reading_deltas(changed)
