import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from .errors import NotFoundError, ValidationError
from .models import ACTIVE, CLOSED, BillingCycle, parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_NEW_CYCLE_NOTES = "New cycle started automatically."


@dataclass
class CycleTransition:
    closed_cycle: BillingCycle
    new_cycle: BillingCycle

    def to_dict(self):
        return {
            "message": "Cycle closed and new one started.",
            "closed_cycle": self.closed_cycle.to_dict(),
            "new_active_cycle": self.new_cycle.to_dict(),
        }


class BillingCycleManager:
    """
    Lifecycle of billing cycles: active -> closed, never reopened.

    The store performs every check-and-write, so the "at most one active
    cycle" rule holds even with concurrent callers.
    """

    def __init__(self, store):
        self.store = store

    def start_cycle(self, start_date, notes: str = "") -> BillingCycle:
        start = _require_date(start_date, "Start date is required.")
        cycle = BillingCycle(start_date=start, status=ACTIVE, notes=notes or "")
        self.store.insert_active_cycle(cycle)
        logger.info("Started billing cycle %s from %s", cycle.cycle_id, start.isoformat())
        return cycle

    def close_cycle(self, collection_date, notes_for_closed: Optional[str] = None,
                    notes_for_new: Optional[str] = None) -> CycleTransition:
        collected = _require_date(collection_date, "Government collection date is required.")
        active = self.store.get_active_cycle()
        if active is None:
            raise NotFoundError("No active billing cycle found.")
        if collected < active.start_date:
            raise ValidationError("Collection date cannot be before start date.")

        closed = replace(
            active,
            end_date=collected,
            government_collection_date=collected,
            status=CLOSED,
            notes=notes_for_closed if notes_for_closed else active.notes,
        )
        opened = BillingCycle(
            start_date=collected,
            status=ACTIVE,
            notes=notes_for_new or DEFAULT_NEW_CYCLE_NOTES,
        )
        self.store.close_and_open(closed, opened)
        logger.info("Closed billing cycle %s on %s, opened %s",
                    closed.cycle_id, collected.isoformat(), opened.cycle_id)
        return CycleTransition(closed_cycle=closed, new_cycle=opened)

    def delete_cycle(self, cycle_id: str) -> None:
        # Active cycles may be deleted too, as long as they own no readings.
        self.store.delete_cycle(cycle_id)
        logger.info("Deleted billing cycle %s", cycle_id)

    def get_active_cycle(self) -> BillingCycle:
        cycle = self.store.get_active_cycle()
        if cycle is None:
            raise NotFoundError("No active billing cycle found.")
        return cycle

    def get_cycle(self, cycle_id: str) -> BillingCycle:
        cycle = self.store.get_cycle(cycle_id)
        if cycle is None:
            raise NotFoundError("Billing cycle not found.")
        return cycle

    def list_cycles(self) -> List[BillingCycle]:
        return self.store.list_cycles()

    def update_cycle_notes(self, cycle_id: str, notes: str) -> BillingCycle:
        return self.store.update_cycle_notes(cycle_id, notes or "")

    def previous_cycle(self, cycle: BillingCycle) -> Optional[BillingCycle]:
        """Most recently closed cycle that ended on or before `cycle` started."""
        candidates = [
            c for c in self.store.list_cycles()
            if c.status == CLOSED
            and c.cycle_id != cycle.cycle_id
            and c.end_date is not None
            and c.end_date <= cycle.start_date
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.end_date)


def _require_date(value, message: str):
    if value is None or value == "":
        raise ValidationError(message)
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value!r}")
