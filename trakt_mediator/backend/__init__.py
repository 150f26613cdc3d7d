"""Backend public interfaces with lazy loading to avoid circular imports."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

__all__ = [
    "CacheAsideClient",
    "Database",
    "FanartManager",
    "HistorySyncEngine",
    "HttpSession",
    "JobKind",
    "RateBudget",
    "RateLimitedQueue",
    "ResponseCacheStore",
    "TokenLifecycleManager",
    "TraktManager",
    "select_logo",
]

_MODULE_EXPORTS = {
    "network_handlers.request_queue": {
        "JobKind",
        "RateBudget",
        "RateLimitedQueue",
    },
    "network_handlers.session": {
        "HttpSession",
    },
    "information_handlers.cache": {
        "ResponseCacheStore",
    },
    "information_handlers.cached_client": {
        "CacheAsideClient",
    },
    "information_handlers.trakt_auth": {
        "TokenLifecycleManager",
    },
    "information_handlers.history_sync": {
        "HistorySyncEngine",
    },
    "information_handlers.trakt_manager": {
        "TraktManager",
    },
    "information_handlers.fanart_manager": {
        "FanartManager",
        "select_logo",
    },
    "persistence": {
        "Database",
    },
}

if TYPE_CHECKING:  # pragma: no cover - for static analysis only
    from .information_handlers.cache import ResponseCacheStore
    from .information_handlers.cached_client import CacheAsideClient
    from .information_handlers.fanart_manager import FanartManager, select_logo
    from .information_handlers.history_sync import HistorySyncEngine
    from .information_handlers.trakt_auth import TokenLifecycleManager
    from .information_handlers.trakt_manager import TraktManager
    from .network_handlers.request_queue import JobKind, RateBudget, RateLimitedQueue
    from .network_handlers.session import HttpSession
    from .persistence import Database


def __getattr__(name: str) -> Any:
    for module_name, symbols in _MODULE_EXPORTS.items():
        if name in symbols:
            module = importlib.import_module(f"{__name__}.{module_name}")
            value = getattr(module, name)
            globals()[name] = value
            return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:
    exported = set(__all__)
    for symbols in _MODULE_EXPORTS.values():
        exported.update(symbols)
    exported.update(globals().keys())
    return sorted(exported)
