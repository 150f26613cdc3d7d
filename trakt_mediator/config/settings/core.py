from __future__ import annotations

import os
import re
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from trakt_mediator.backend.common.errors import (
    ConfigError,
    IntervalConfigError,
    RateLimitConfigError,
)
from trakt_mediator.backend.network_handlers.request_queue import RateBudget

from . import paths as _paths  # noqa: F401  (loads .env)

_SETTINGS_LOCK = threading.Lock()
_SETTINGS_SINGLETON: Optional["Settings"] = None

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([a-zA-Z]+)\s*$")
_BUDGET_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d+(?:\.\d+)?)\s*$")

_CACHE_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_INTERVAL_UNITS = {"h": 3600, "d": 86400}


@dataclass(frozen=True)
class Settings:
    app_name: str
    env: str
    log_level: str
    cache_ttl_seconds: int
    history_fetch_interval_seconds: int
    read_budget: RateBudget
    write_budget: RateBudget
    request_timeout: float
    watched_marker: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_cache_duration(raw: str) -> int:
    """``"30m"`` -> 1800. Accepts s/m/h/d; a bare integer means seconds."""

    value = raw.strip()
    if value.isdigit():
        return int(value)

    match = _DURATION_RE.match(value)
    if not match or match.group(2).lower() not in _CACHE_UNITS:
        raise ConfigError(f"Invalid cache duration: {raw!r}")

    return int(match.group(1)) * _CACHE_UNITS[match.group(2).lower()]


def parse_fetch_interval(raw: str) -> int:
    """History refresh interval, ``<int>h`` or ``<int>d``, in seconds."""

    match = _DURATION_RE.match(raw)
    if not match:
        raise IntervalConfigError(f"Invalid TRAKT_HISTORY_FETCH_INTERVAL: {raw!r}")

    unit = match.group(2)
    if unit not in _INTERVAL_UNITS:
        raise IntervalConfigError(f"Invalid time unit in TRAKT_HISTORY_FETCH_INTERVAL: {raw!r}")

    return int(match.group(1)) * _INTERVAL_UNITS[unit]


def parse_rate_budget(raw: str, *, max_concurrent: int, name: str) -> RateBudget:
    """``"1000/300"`` -> at most 1000 dispatches per 300 seconds."""

    match = _BUDGET_RE.match(raw)
    if not match:
        raise RateLimitConfigError(f"Invalid {name}: expected '<requests>/<seconds>', got {raw!r}")

    return RateBudget(
        max_concurrent=max_concurrent,
        max_requests=int(match.group(1)),
        per_seconds=float(match.group(2)),
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RateLimitConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _build_settings() -> Settings:
    read_budget = parse_rate_budget(
        os.getenv("TRAKT_RATE_LIMIT_READ", "1000/300"),
        max_concurrent=_int_env("TRAKT_READ_CONCURRENCY", 10),
        name="TRAKT_RATE_LIMIT_READ",
    )
    write_budget = parse_rate_budget(
        os.getenv("TRAKT_RATE_LIMIT_WRITE", "1/1"),
        max_concurrent=_int_env("TRAKT_WRITE_CONCURRENCY", 1),
        name="TRAKT_RATE_LIMIT_WRITE",
    )
    read_budget.validate()
    write_budget.validate()

    return Settings(
        app_name=os.getenv("MEDIATOR_APP_NAME", "Trakt Mediator"),
        env=os.getenv("MEDIATOR_ENV", "development"),
        log_level=os.getenv("MEDIATOR_LOG_LEVEL", "INFO").upper(),
        cache_ttl_seconds=parse_cache_duration(os.getenv("TRAKT_CACHE_DURATION", "1d")),
        history_fetch_interval_seconds=parse_fetch_interval(os.getenv("TRAKT_HISTORY_FETCH_INTERVAL", "24h")),
        read_budget=read_budget,
        write_budget=write_budget,
        request_timeout=_float_env("MEDIATOR_REQUEST_TIMEOUT", 20.0),
        watched_marker=os.getenv("MEDIATOR_WATCHED_MARKER", "✔️"),
    )


def get_settings(*, reload: bool = False) -> Settings:
    global _SETTINGS_SINGLETON
    with _SETTINGS_LOCK:
        if _SETTINGS_SINGLETON is None or reload:
            _SETTINGS_SINGLETON = _build_settings()

        return _SETTINGS_SINGLETON


__all__ = [
    "Settings",
    "get_settings",
    "parse_cache_duration",
    "parse_fetch_interval",
    "parse_rate_budget",
]
