"""Time-based score decay and its environment configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

__all__ = [
    "DecayConfig",
    "DecayConfigError",
    "load_decay_config",
    "get_decay_config",
    "set_decay_config",
    "age_in_days",
    "decay_factor",
]


class DecayConfigError(ValueError):
    """Raised when decay environment variables hold invalid values."""


@dataclass(frozen=True)
class DecayConfig:
    enabled: bool = False
    half_life_days: float = 14.0


class _Settings:
    decay = DecayConfig()


def get_decay_config() -> DecayConfig:
    """Return the process-wide decay configuration."""
    return _Settings.decay


def set_decay_config(config: DecayConfig) -> None:
    """Replace the process-wide decay configuration."""
    _Settings.decay = config


def load_decay_config() -> DecayConfig:
    """Read ``RRF_TIME_DECAY`` and ``RRF_HALF_LIFE_DAYS``."""
    enabled = False
    decay_env = os.environ.get("RRF_TIME_DECAY", "").strip()
    if decay_env == "on":
        enabled = True
    elif decay_env not in ("", "off"):
        raise DecayConfigError(
            f"invalid value for RRF_TIME_DECAY: {decay_env!r} (expected 'on' or 'off')"
        )

    half_life = 14.0
    half_life_env = os.environ.get("RRF_HALF_LIFE_DAYS", "").strip()
    if half_life_env:
        try:
            if "_" in half_life_env:
                raise ValueError(half_life_env)
            value = float(half_life_env)
        except ValueError:
            raise DecayConfigError(
                f"invalid value for RRF_HALF_LIFE_DAYS: {half_life_env!r} (must be a number)"
            ) from None
        if value <= 0:
            raise DecayConfigError(
                f"invalid value for RRF_HALF_LIFE_DAYS: {value:f} (must be strictly positive)"
            )
        half_life = value

    return DecayConfig(enabled=enabled, half_life_days=half_life)


def age_in_days(reference: datetime, created_at: datetime) -> float:
    """Days between ``created_at`` and ``reference``, never negative."""
    age = (reference - created_at).total_seconds() / 86400.0
    return max(age, 0.0)


def decay_factor(age_days: float, half_life_days: float) -> float:
    """Exponential decay ``0.5 ** (max(0, age) / half_life)``; 1.0 if half-life <= 0."""
    age_days = max(age_days, 0.0)
    if half_life_days <= 0:
        return 1.0
    return 0.5 ** (age_days / half_life_days)