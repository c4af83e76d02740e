"""Observability configuration loaded from the environment."""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

__all__ = ["Level", "ObservabilityConfig", "load_config_from_env"]


class Level(str, Enum):
    """How much observability data is captured."""

    OFF = "off"
    BASIC = "basic"
    DEBUG = "debug"
    TRACE = "trace"


_DEFAULT_SLOW_THRESHOLDS = {
    "mcp.request": timedelta(milliseconds=100),
    "mcp.tools/call": timedelta(milliseconds=100),
    "worker.lease": timedelta(milliseconds=200),
    "worker.execute": timedelta(seconds=2),
    "ops.raw_to_minute": timedelta(seconds=2),
    "ops.retention": timedelta(seconds=2),
}

_UNIT_MICROSECONDS = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}
_NUMBER = r"(?:\d+\.?\d*|\.\d+)"
_UNIT = r"(?:ns|us|µs|μs|ms|h|s|m)"
_DURATION_RE = re.compile(rf"[+-]?(?:{_NUMBER}{_UNIT})+")
_PART_RE = re.compile(rf"({_NUMBER})({_UNIT})")
_INT_RE = re.compile(r"[+-]?\d+")


@dataclass
class ObservabilityConfig:
    """Settings that control tracing, sampling, thresholds and retention."""

    level: Level = Level.OFF
    default_sample_rate: float = 0.10
    slow_thresholds: dict[str, timedelta] = field(default_factory=dict)
    raw_retention_days: int = 7
    minute_retention_days: int = 7
    hour_retention_days: int = 30
    day_retention_days: int = 365
    flush_interval: timedelta = timedelta(seconds=60)

    def enabled(self) -> bool:
        return self.level is not Level.OFF

    def capture_spans(self) -> bool:
        return self.level in (Level.DEBUG, Level.TRACE)

    def capture_diagnostics(self) -> bool:
        return self.level is Level.TRACE

    def should_sample(self) -> bool:
        """Decide whether the current trace is sampled."""
        if self.level is Level.TRACE:
            return True
        if self.level is Level.OFF:
            return False
        if self.default_sample_rate >= 1:
            return True
        if self.default_sample_rate <= 0:
            return False
        return (time.time_ns() % 1000) / 1000.0 < self.default_sample_rate

    def slow_threshold(self, key: str) -> timedelta:
        """Threshold for ``key``, falling back to ``default``, else zero."""
        if key in self.slow_thresholds:
            return self.slow_thresholds[key]
        return self.slow_thresholds.get("default", timedelta(0))


def load_config_from_env() -> ObservabilityConfig:
    """Build a configuration from the ``HSME_OBS_*`` environment variables."""
    env = os.environ.get
    thresholds = _parse_thresholds(env("HSME_OBS_SLOW_THRESHOLDS", ""))
    if not thresholds:
        thresholds = dict(_DEFAULT_SLOW_THRESHOLDS)
    return ObservabilityConfig(
        level=_parse_level(env("HSME_OBS_LEVEL", "")),
        default_sample_rate=_parse_float(env("HSME_OBS_SAMPLE_RATE", ""), 0.10),
        slow_thresholds=thresholds,
        raw_retention_days=_parse_int(env("HSME_OBS_RAW_RETENTION_DAYS", ""), 7),
        minute_retention_days=_parse_int(env("HSME_OBS_MINUTE_RETENTION_DAYS", ""), 7),
        hour_retention_days=_parse_int(env("HSME_OBS_HOUR_RETENTION_DAYS", ""), 30),
        day_retention_days=_parse_int(env("HSME_OBS_DAY_RETENTION_DAYS", ""), 365),
        flush_interval=timedelta(
            seconds=_parse_int(env("HSME_OBS_FLUSH_INTERVAL_SECONDS", ""), 60)
        ),
    )


def _parse_level(value: str) -> Level:
    normalized = value.strip().lower()
    for level in (Level.BASIC, Level.DEBUG, Level.TRACE):
        if normalized == level.value:
            return level
    return Level.OFF


def _parse_int(value: str, fallback: int) -> int:
    if not _INT_RE.fullmatch(value):
        return fallback
    return int(value)


def _parse_float(value: str, fallback: float) -> float:
    if not value or value != value.strip() or "_" in value:
        return fallback
    try:
        number = float(value)
    except ValueError:
        return fallback
    if number < 0:
        return 0.0
    if number > 1:
        return 1.0
    return number


def _parse_duration(text: str) -> timedelta:
    """Parse durations such as ``100ms``, ``2s`` or ``1h30m``."""
    if text in ("0", "+0", "-0"):
        return timedelta(0)
    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration {text!r}")
    sign = -1 if text.startswith("-") else 1
    total = sum(
        float(number) * _UNIT_MICROSECONDS[unit]
        for number, unit in _PART_RE.findall(text)
    )
    return timedelta(microseconds=sign * total)


def _parse_thresholds(value: str) -> dict[str, timedelta]:
    out: dict[str, timedelta] = {}
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, raw = part.partition("=")
        if not sep:
            continue
        try:
            out[key.strip()] = _parse_duration(raw.strip())
        except ValueError:
            continue
    return out