from datetime import datetime, timedelta, timezone

import pytest

from hsme.decay import (
    DecayConfig,
    DecayConfigError,
    age_in_days,
    decay_factor,
    get_decay_config,
    load_decay_config,
    set_decay_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    monkeypatch.delenv("RRF_TIME_DECAY", raising=False)
    monkeypatch.delenv("RRF_HALF_LIFE_DAYS", raising=False)
    return monkeypatch


def test_defaults(clean_env):
    assert load_decay_config() == DecayConfig(enabled=False, half_life_days=14.0)


@pytest.mark.parametrize("raw, expected", [("on", True), (" on ", True), ("off", False)])
def test_decay_switch(clean_env, raw, expected):
    clean_env.setenv("RRF_TIME_DECAY", raw)
    assert load_decay_config().enabled is expected


def test_invalid_switch_raises(clean_env):
    clean_env.setenv("RRF_TIME_DECAY", "yes")
    with pytest.raises(DecayConfigError, match="RRF_TIME_DECAY"):
        load_decay_config()


def test_half_life_is_parsed(clean_env):
    clean_env.setenv("RRF_HALF_LIFE_DAYS", " 7.5 ")
    assert load_decay_config().half_life_days == 7.5


@pytest.mark.parametrize("raw", ["abc", "0", "-1"])
def test_invalid_half_life_raises(clean_env, raw):
    clean_env.setenv("RRF_HALF_LIFE_DAYS", raw)
    with pytest.raises(DecayConfigError, match="RRF_HALF_LIFE_DAYS"):
        load_decay_config()


def test_global_config_roundtrip():
    original = get_decay_config()
    try:
        config = DecayConfig(enabled=True, half_life_days=3.0)
        set_decay_config(config)
        assert get_decay_config() == config
    finally:
        set_decay_config(original)
    assert get_decay_config() == original


def test_age_in_days():
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert age_in_days(created + timedelta(days=2), created) == 2.0
    assert age_in_days(created + timedelta(hours=12), created) == 0.5
    assert age_in_days(created - timedelta(days=1), created) == 0.0


def test_decay_factor_half_life_and_edges():
    assert decay_factor(14.0, 14.0) == 0.5
    assert decay_factor(0.0, 14.0) == 1.0
    assert decay_factor(-5.0, 14.0) == 1.0
    assert decay_factor(10.0, 0.0) == 1.0
    assert decay_factor(10.0, -1.0) == 1.0


def test_decay_factor_is_monotonic():
    values = [decay_factor(age, 14.0) for age in (0, 1, 7, 30, 365)]
    assert values == sorted(values, reverse=True)
    assert all(0 < v <= 1 for v in values)