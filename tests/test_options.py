from __future__ import annotations

import pytest

from tokengate.errors import ConfigurationError
from tokengate.options import parse_options, parse_period, parse_rate
from tokengate.rates import RefillKind
from tokengate.store import MemoryStore


def _field(**options) -> str:
    with pytest.raises(ConfigurationError) as exc_info:
        parse_options(**options)
    return exc_info.value.field


def test_no_options():
    assert _field() == "rate"


def test_options_not_a_mapping():
    with pytest.raises(ConfigurationError) as exc_info:
        parse_options(5)  # type: ignore[arg-type]
    assert exc_info.value.field == "options"


def test_unknown_option():
    assert _field(rate="1/s", bursts=3) == "bursts"


def test_store_size_not_an_integer():
    assert _field(rate="1/s", store_size="5") == "store_size"
    assert _field(rate="1/s", store_size=-1) == "store_size"


@pytest.mark.parametrize(
    "rate",
    [5, "a/m", "1.0/m", "-1/m", "1/a", "1/M", "1/2.0m", "1/-2m", "1/0m", "0/s", "1/s:rolling"],
)
def test_invalid_rate(rate):
    assert _field(rate=rate) == "rate"


@pytest.mark.parametrize(
    "rate, expected",
    [
        ("1/s", (1, 1000, False)),
        ("3/2s", (3, 2000, False)),
        ("5/2min", (5, 120000, False)),
        ("10/day", (10, 86400000, False)),
        ("1/100ms", (1, 100, False)),
        ("7/minute", (7, 60000, False)),
        ("5/s:fixed", (5, 1000, True)),
    ],
)
def test_valid_rate(rate, expected):
    assert parse_rate(rate) == expected


def test_burst_not_a_number():
    assert _field(rate="1/s", burst="5") == "burst"
    assert _field(rate="1/s", burst=True) == "burst"
    assert _field(rate="1/s", burst=0) == "burst"


@pytest.mark.parametrize("burst", [float("nan"), float("inf"), float("-inf")])
def test_burst_must_be_finite(burst):
    assert _field(rate="1/s", burst=burst) == "burst"
    assert _field(period="1s", burst=burst) == "burst"


def test_burst_defaults_to_rate_amount():
    options = parse_options(rate="5/s")
    assert options.burst == 5
    assert options.policy.kind is RefillKind.ROLLING
    assert options.policy.rate == pytest.approx(5 / 1000)


def test_fixed_rate_uses_burst_as_window_capacity():
    options = parse_options(rate="5/s:fixed", burst=8)
    assert options.policy.kind is RefillKind.FIXED
    assert options.policy.capacity == 8
    assert options.policy.period_ms == 1000


@pytest.mark.parametrize("period", [10, "am", "1M", "1.0m", "-1m", "0m"])
def test_invalid_period(period):
    assert _field(period=period, burst=1) == "period"


@pytest.mark.parametrize(
    "period, expected",
    [
        ("s", 1000),
        ("2s", 2000),
        ("100ms", 100),
        ("100sec", 100000),
        ("100m", 6000000),
        ("100min", 6000000),
        ("100h", 360000000),
        ("100hour", 360000000),
        ("100d", 8640000000),
        ("100day", 8640000000),
    ],
)
def test_valid_period(period, expected):
    assert parse_period(period) == expected


def test_period_requires_burst():
    assert _field(period="10s") == "burst"
    assert _field(period="10s", burst="5") == "burst"


def test_key_not_a_function():
    assert _field(rate="1/s", key="ip") == "key"


def test_cost_not_a_number_or_function():
    assert _field(rate="1/s", cost="5") == "cost"
    assert _field(rate="1/s", cost=-1) == "cost"


@pytest.mark.parametrize("cost", [float("nan"), float("inf")])
def test_static_cost_must_be_finite(cost):
    assert _field(rate="1/s", cost=cost) == "cost"


def test_default_cost_is_one():
    assert parse_options(rate="1/s").cost(None) == 1


def test_hooks_not_functions():
    assert _field(rate="1/s", on_allowed=5) == "on_allowed"
    assert _field(rate="1/s", on_throttled=5) == "on_throttled"


def test_auto_drain_not_a_bool():
    assert _field(rate="1/s", auto_drain="no") == "auto_drain"


def test_store_without_get_and_set():
    assert _field(rate="1/s", store=object()) == "store"


def test_default_store_is_bounded_lru():
    options = parse_options(rate="1/s", store_size=100)
    assert isinstance(options.store, MemoryStore)
    assert options.store.size == 100
    assert parse_options(rate="1/s").store.size == 10000


def test_mapping_and_keywords_merge():
    options = parse_options({"rate": "5/m", "burst": 10}, auto_drain=False)
    assert options.burst == 10
    assert options.auto_drain is False


def test_everything_rolling_and_fixed():
    hooks = dict(
        store_size=100,
        key=lambda request: "k",
        cost=lambda request: 1,
        on_allowed=lambda request, call_next, bucket: None,
        on_throttled=lambda request, call_next, bucket: None,
    )
    assert parse_options(burst=10, rate="5/m", **hooks).policy.kind is RefillKind.ROLLING
    assert parse_options(burst=10, period="5m", **hooks).policy.kind is RefillKind.FIXED
