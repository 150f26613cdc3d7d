from __future__ import annotations

import sqlite3
import sys
from dataclasses import dataclass
from typing import Optional

from trakt_mediator.backend.common.logging import get_logger, init_logging
from trakt_mediator.backend.common.types import HealthReport
from trakt_mediator.backend.information_handlers.cache import ResponseCacheStore
from trakt_mediator.backend.information_handlers.cached_client import CacheAsideClient
from trakt_mediator.backend.information_handlers.fanart_manager import FanartManager
from trakt_mediator.backend.information_handlers.history_sync import HistorySyncEngine
from trakt_mediator.backend.information_handlers.trakt_auth import TokenLifecycleManager
from trakt_mediator.backend.information_handlers.trakt_manager import TraktManager
from trakt_mediator.backend.network_handlers.request_queue import RateBudget, RateLimitedQueue
from trakt_mediator.backend.network_handlers.session import HttpSession
from trakt_mediator.backend.network_handlers.url_manager import URLManager
from trakt_mediator.backend.persistence.sqlite import Database
from trakt_mediator.config.settings import Settings, get_settings

# fanart.tv is a separate service with its own (looser) limits
FANART_BUDGET = RateBudget(max_concurrent=4, max_requests=10, per_seconds=1)


@dataclass
class MediatorServices:
    settings: Settings
    database: Database
    store: ResponseCacheStore
    transport: HttpSession
    queue: RateLimitedQueue
    fanart_queue: RateLimitedQueue
    client: CacheAsideClient
    fanart_client: CacheAsideClient
    tokens: TokenLifecycleManager
    history: HistorySyncEngine
    trakt: TraktManager
    fanart: FanartManager

    def close(self) -> None:
        self.queue.close(wait=True)
        self.fanart_queue.close(wait=True)
        self.transport.close()

    def __enter__(self) -> "MediatorServices":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_services(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    store: Optional[ResponseCacheStore] = None,
    transport: Optional[HttpSession] = None,
    urls: Optional[URLManager] = None,
) -> MediatorServices:
    """Wire one independent set of queue, cache and managers."""

    settings = settings or get_settings()
    urls = urls or URLManager()
    database = database or Database()
    store = store or ResponseCacheStore()
    transport = transport or HttpSession(timeout=settings.request_timeout)

    queue = RateLimitedQueue(settings.read_budget, settings.write_budget, name="trakt")
    fanart_queue = RateLimitedQueue(FANART_BUDGET, FANART_BUDGET, name="fanart")

    client = CacheAsideClient(
        queue,
        store,
        transport,
        default_ttl=settings.cache_ttl_seconds,
        namespace="trakt",
        default_headers=urls.service_headers("trakt"),
    )
    fanart_client = CacheAsideClient(
        fanart_queue,
        store,
        transport,
        default_ttl=settings.cache_ttl_seconds,
        namespace="fanart",
    )

    tokens = TokenLifecycleManager(client, database, urls=urls)
    history = HistorySyncEngine(
        tokens,
        database,
        fetch_interval_seconds=settings.history_fetch_interval_seconds,
        watched_marker=settings.watched_marker,
        urls=urls,
    )

    return MediatorServices(
        settings=settings,
        database=database,
        store=store,
        transport=transport,
        queue=queue,
        fanart_queue=fanart_queue,
        client=client,
        fanart_client=fanart_client,
        tokens=tokens,
        history=history,
        trakt=TraktManager(client, tokens, database, urls=urls),
        fanart=FanartManager(fanart_client, urls=urls),
    )


def quick_self_check(services: MediatorServices) -> HealthReport:
    components = {
        "python": "ok" if sys.version_info >= (3, 10) else "degraded",
        "logging": "ok",
        "config": "ok",
    }

    try:
        with services.database.connection() as conn:
            conn.execute("SELECT 1").fetchone()
        components["database"] = "ok"
    except sqlite3.Error:
        components["database"] = "fail"

    components["cache"] = "ok" if services.store.cache_dir.exists() else "degraded"

    if "fail" in components.values():
        status = "fail"
    elif all(v == "ok" for v in components.values()):
        status = "ok"
    else:
        status = "degraded"

    return {"status": status, "components": components}


def main() -> int:
    settings = get_settings()

    init_logging(settings.log_level)
    log = get_logger("startup")

    log.info("boot_begin", extra={"app": settings.app_name, "env": settings.env, "log_level": settings.log_level})

    with build_services(settings) as services:
        health = quick_self_check(services)
        log.info("health_report", extra=dict(health))

    log.info("boot_ready", extra={"version": __import__("trakt_mediator").__version__})

    return 0 if health["status"] != "fail" else 1


if __name__ == "__main__":
    raise SystemExit(main())
