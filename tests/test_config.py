from __future__ import annotations

import pytest

from tokengate.config import Settings, _load_settings, options_from_settings
from tokengate.errors import ConfigurationError
from tokengate.rates import RefillKind
from tokengate.store import MemoryStore, SQLStore


def test_defaults_build_rolling_memory_throttle():
    options = options_from_settings(Settings())
    assert options.policy.kind is RefillKind.ROLLING
    assert options.burst == 10
    assert isinstance(options.store, MemoryStore)
    assert options.store.size == 10000
    assert options.auto_drain is True


def test_period_wins_over_rate():
    options = options_from_settings(Settings(THROTTLE_PERIOD="2s", THROTTLE_BURST=4))
    assert options.policy.kind is RefillKind.FIXED
    assert options.policy.period_ms == 2000
    assert options.burst == 4


def test_sql_backend_store():
    options = options_from_settings(Settings(STORE_BACKEND="sql", STORE_DB_PATH="x.db"))
    assert isinstance(options.store, SQLStore)
    assert options.store.db_path == "x.db"


def test_overrides_are_validated():
    with pytest.raises(ConfigurationError) as exc_info:
        options_from_settings(Settings(), key="not callable")
    assert exc_info.value.field == "key"


def test_invalid_rate_setting():
    with pytest.raises(ConfigurationError) as exc_info:
        options_from_settings(Settings(THROTTLE_RATE="fast"))
    assert exc_info.value.field == "rate"


def test_env_values_are_loaded(monkeypatch):
    monkeypatch.setenv("THROTTLE_RATE", "5/2min")
    monkeypatch.setenv("THROTTLE_AUTO_DRAIN", "false")
    monkeypatch.setenv("STORE_SIZE", "0")
    loaded = _load_settings()
    assert loaded.THROTTLE_RATE == "5/2min"
    assert loaded.THROTTLE_AUTO_DRAIN is False
    assert loaded.STORE_SIZE == 0


def test_env_validation_names_the_setting(monkeypatch):
    monkeypatch.setenv("STORE_SIZE", "-3")
    with pytest.raises(ConfigurationError) as exc_info:
        _load_settings()
    assert exc_info.value.field == "STORE_SIZE"


def test_purge_interval_must_be_positive(monkeypatch):
    monkeypatch.setenv("STORE_PURGE_INTERVAL_SECONDS", "0")
    with pytest.raises(ConfigurationError) as exc_info:
        _load_settings()
    assert exc_info.value.field == "STORE_PURGE_INTERVAL_SECONDS"
