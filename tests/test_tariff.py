from slabmeter.lib.billing_core.models import SlabRateConfig, Tier
from slabmeter.lib.billing_core.tariff import (
    compute_cost,
    cost_breakdown,
    current_tier,
    round_money,
)

from conftest import make_config, utc


def flat_config(rate):
    tiers = (Tier(1, None, rate),)
    return SlabRateConfig("Flat", utc(2025, 1, 1), slabs_up_to_500=tiers, slabs_above_500=tiers)


def test_progressive_cost_below_500():
    # 100 x 2.00 + 150 x 3.00
    assert compute_cost(250, make_config()) == 650.00


def test_above_500_uses_other_tier_set():
    # 600 > 500 -> second set: 500 x 5 + 100 x 7
    assert compute_cost(600, make_config()) == 3200.00


def test_exactly_500_uses_lower_set():
    # 100 x 2 + 200 x 3 + 200 x 4.5
    assert compute_cost(500, make_config()) == 1700.00


def test_zero_negative_and_missing_config():
    config = make_config()
    assert compute_cost(0, config) == 0
    assert compute_cost(-12, config) == 0
    assert compute_cost(250, None) == 0


def test_single_tier_is_linear():
    config = flat_config(1.75)
    for units in [0.5, 1, 37.5, 499, 500, 501, 1234.56]:
        assert compute_cost(units, config) == round_money(units * 1.75)


def test_unsorted_tiers_give_same_cost():
    config = make_config()
    shuffled = SlabRateConfig(
        "Shuffled", config.effective_date,
        slabs_up_to_500=tuple(reversed(config.slabs_up_to_500)),
        slabs_above_500=tuple(reversed(config.slabs_above_500)),
    )
    for units in [1, 99, 250, 480, 501, 900]:
        assert compute_cost(units, shuffled) == compute_cost(units, config)


def test_tier_boundaries_are_continuous():
    config = make_config()
    assert compute_cost(100, config) == compute_cost(99, config) + 2.0
    assert compute_cost(101, config) == compute_cost(100, config) + 3.0
    assert compute_cost(301, config) == compute_cost(300, config) + 4.5


def test_cost_is_monotonic():
    config = make_config()
    costs = [compute_cost(units, config) for units in range(0, 1200, 7)]
    assert costs == sorted(costs)


def test_current_tier():
    config = make_config()
    tier = current_tier(250, config)
    assert tier.rate == 3.0
    assert tier.range_label == "101-300"
    assert current_tier(600, config).range_label == "501+"
    assert current_tier(0, config) is None


def test_cost_breakdown_matches_cost():
    breakdown = cost_breakdown(250, make_config())
    assert [(c.range_label, c.units, c.charge) for c in breakdown] == [
        ("1-100", 100, 200.0),
        ("101-300", 150, 450.0),
    ]


def test_round_money_is_half_up():
    assert round_money(2.675) == 2.68
    assert round_money(2.665) == 2.67
    assert round_money(10) == 10.0
