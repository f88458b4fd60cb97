from datetime import datetime, timezone

import pytest

from slabmeter.lib.billing_core.models import Meter, SlabRateConfig, Tier
from slabmeter.lib.billing_service import BillingService
from slabmeter.lib.local_store import LocalStore


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_config(name="Domestic 2025"):
    # <=500: 1-100 @ 2.00, 101-300 @ 3.00, 301-500 @ 4.50
    # >500:  1-500 @ 5.00, 501+ @ 7.00
    return SlabRateConfig(
        config_name=name,
        effective_date=utc(2025, 4, 1),
        slabs_up_to_500=(
            Tier(1, 100, 2.0),
            Tier(101, 300, 3.0),
            Tier(301, 500, 4.5),
        ),
        slabs_above_500=(
            Tier(1, 500, 5.0),
            Tier(501, None, 7.0),
        ),
    )


@pytest.fixture
def store():
    return LocalStore()


@pytest.fixture
def service(store):
    store.put_meter(Meter("main", "Main Meter", "Residential", is_general_purpose=True,
                          is_currently_active_general=True))
    store.put_meter(Meter("shop", "Shop Meter", "Commercial"))
    svc = BillingService(store)
    svc.configs.create_config(make_config(), activate=True)
    return svc
