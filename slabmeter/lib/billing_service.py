"""
=============================================================================
BILLING SERVICE - one entry point for the API, Lambda handlers and CLI
=============================================================================
Wires the engine pieces to a store:

    readings -> ConsumptionAggregator -> TariffCalculator -> SummaryBuilder

Both the dashboard and the export surfaces call into this class, so they
always report the same numbers.

Usage:
    service = BillingService(LocalStore())
    service.cycles.start_cycle("2025-11-01")
    service.dashboard_summary().to_dict()
=============================================================================
"""

import logging
from datetime import datetime
from typing import List, Optional

from slabmeter.lib.billing_core.aggregator import aggregate_consumption
from slabmeter.lib.billing_core.configs import SlabConfigService
from slabmeter.lib.billing_core.cycles import BillingCycleManager
from slabmeter.lib.billing_core.errors import NotFoundError
from slabmeter.lib.billing_core.ledger import ReadingLedger
from slabmeter.lib.billing_core.models import DEFAULT_CONSUMPTION_TARGET
from slabmeter.lib.billing_core.reports import (
    CycleReport,
    cycle_analytics,
    cycle_history,
    cycle_report,
    meter_breakdown,
)
from slabmeter.lib.billing_core.summary import DashboardSummary, build_summary
from slabmeter.lib.billing_core.tariff import compute_cost, cost_breakdown, current_tier

logger = logging.getLogger(__name__)


class BillingService:
    def __init__(self, store, default_target: float = DEFAULT_CONSUMPTION_TARGET):
        self.store = store
        self.cycles = BillingCycleManager(store)
        self.ledger = ReadingLedger(store)
        self.configs = SlabConfigService(store, default_target=default_target)

    def dashboard_summary(self, now: Optional[datetime] = None) -> DashboardSummary:
        """
        Summary of the active cycle for every meter.

        Raises NotFoundError when there is no active cycle, no active slab
        config, or no meters.
        """
        cycle = self.cycles.get_active_cycle()
        slab_config = self.configs.get_active_config()
        meters = self.store.list_meters()
        if not meters:
            raise NotFoundError("No meters found.")
        target = self.configs.get_consumption_target()

        consumption = aggregate_consumption(self.store.list_readings(cycle_id=cycle.cycle_id))
        previous = self.cycles.previous_cycle(cycle)
        previous_consumption = {}
        if previous is not None:
            previous_consumption = aggregate_consumption(self.store.list_readings(cycle_id=previous.cycle_id))

        summary = build_summary(
            cycle,
            slab_config,
            consumption,
            target,
            meters=meters,
            previous_consumption_by_meter=previous_consumption,
            previous_cycle=previous,
            now=now,
        )
        logger.debug("Dashboard summary for cycle %s: total bill %s", cycle.cycle_id, summary.total_bill)
        return summary

    def cycle_history(self) -> List[CycleReport]:
        return cycle_history(
            self.store.list_cycles(),
            self.store.list_readings(),
            self.store.list_meters(),
            self.store.get_active_config(),
        )

    def cycle_export(self, cycle_id: str) -> CycleReport:
        cycle = self.cycles.get_cycle(cycle_id)
        return cycle_report(
            cycle,
            self.store.list_readings(cycle_id=cycle_id),
            self.store.list_meters(),
            self.store.get_active_config(),
        )

    def analytics_cycle_summary(self) -> List[dict]:
        return cycle_analytics(self.store.list_cycles(), self.store.list_readings(), self.store.get_active_config())

    def analytics_meter_breakdown(self) -> List[dict]:
        return meter_breakdown(self.store.list_cycles(), self.store.list_readings(), self.store.list_meters())

    def estimate(self, units: float) -> dict:
        """Cost of `units` under the active slab config."""
        slab_config = self.configs.get_active_config()
        tier = current_tier(units, slab_config)
        return {
            "units": units,
            "config_name": slab_config.config_name,
            "estimated_cost": compute_cost(units, slab_config),
            "current_tier": tier.to_dict() if tier else None,
            "breakdown": [c.to_dict() for c in cost_breakdown(units, slab_config)],
        }
