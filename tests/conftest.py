from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

import pytest

from trakt_mediator.backend.common.types import TransportResponse
from trakt_mediator.backend.information_handlers.cached_client import CacheAsideClient
from trakt_mediator.backend.information_handlers.trakt_auth import TokenLifecycleManager
from trakt_mediator.backend.network_handlers.request_queue import RateBudget, RateLimitedQueue
from trakt_mediator.backend.network_handlers.url_manager import URLManager
from trakt_mediator.backend.persistence.sqlite import Database

TRAKT = "https://api.trakt.tv"


@pytest.fixture(autouse=True)
def _mediator_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("TRAKT_CLIENT_ID", "client-id")
    monkeypatch.setenv("TRAKT_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("BASE_URL", "http://localhost:7000")
    monkeypatch.setenv("FANART_API_KEY", "fanart-key")
    monkeypatch.setenv("MEDIATOR_DATABASE_PATH", str(tmp_path / "default.db"))
    monkeypatch.setenv("MEDIATOR_CACHE_DIR", str(tmp_path / "cache"))
    for name in (
        "TRAKT_CACHE_DURATION",
        "TRAKT_HISTORY_FETCH_INTERVAL",
        "TRAKT_RATE_LIMIT_READ",
        "TRAKT_RATE_LIMIT_WRITE",
        "TRAKT_READ_CONCURRENCY",
        "TRAKT_WRITE_CONCURRENCY",
        "MEDIATOR_WATCHED_MARKER",
    ):
        monkeypatch.delenv(name, raising=False)


@dataclass
class TransportCall:
    method: str
    url: str
    headers: Dict[str, str]
    body: Any


Handler = Callable[[str, str, Dict[str, str], Any], Any]


class FakeTransport:
    """Stands in for HttpSession; ``handler`` returns a payload or an exception to raise."""

    def __init__(self, handler: Optional[Handler] = None) -> None:
        self.handler: Handler = handler or (lambda method, url, headers, body: {})
        self.calls: List[TransportCall] = []
        self._lock = threading.Lock()

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Any] = None,
    ) -> TransportResponse:
        call = TransportCall(method, url, dict(headers or {}), body)
        with self._lock:
            self.calls.append(call)
        result = self.handler(method, url, call.headers, body)
        if isinstance(result, Exception):
            raise result
        return TransportResponse(status_code=200, payload=result, headers={})

    def calls_to(self, fragment: str) -> List[TransportCall]:
        with self._lock:
            return [call for call in self.calls if fragment in call.url]

    def close(self) -> None:
        pass


class MemoryStore:
    """Dict-backed CacheStore that records every write."""

    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.sets: List[tuple[str, int]] = []
        self.gets = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            self.gets += 1
            return self.data.get(key)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self.data[key] = value
            self.sets.append((key, ttl_seconds))


@dataclass
class FakeClock:
    now: datetime = field(default_factory=lambda: datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def queue() -> Iterator[RateLimitedQueue]:
    budget = RateBudget(max_concurrent=8, max_requests=1000, per_seconds=1)
    with RateLimitedQueue(budget, budget, name="test") as q:
        yield q


@pytest.fixture
def urls() -> URLManager:
    return URLManager()


@pytest.fixture
def client(queue: RateLimitedQueue, store: MemoryStore, transport: FakeTransport, urls: URLManager) -> CacheAsideClient:
    return CacheAsideClient(
        queue,
        store,
        transport,  # type: ignore[arg-type]
        default_ttl=3600,
        default_headers=urls.service_headers("trakt"),
    )


@pytest.fixture
def database(tmp_path: Path) -> Database:
    return Database(tmp_path / "mediator.db")


@pytest.fixture
def tokens(client: CacheAsideClient, database: Database, urls: URLManager) -> TokenLifecycleManager:
    return TokenLifecycleManager(client, database, urls=urls)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
