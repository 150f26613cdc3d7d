from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from conftest import FakeClock, FakeTransport, MemoryStore
from trakt_mediator.backend.common.errors import AuthExpiredError, ReconciliationError, TransientRemoteError
from trakt_mediator.backend.common.types import SyncStatus
from trakt_mediator.backend.information_handlers import history_sync
from trakt_mediator.backend.information_handlers.history_sync import HistorySyncEngine
from trakt_mediator.backend.information_handlers.models import MediaType, parse_history
from trakt_mediator.backend.information_handlers.trakt_auth import TokenLifecycleManager
from trakt_mediator.backend.network_handlers.url_manager import URLManager
from trakt_mediator.backend.persistence.sqlite import Database, get_last_fetched_at, list_history, migrate

DAY = 86400

MOVIES: List[Dict[str, Any]] = [
    {
        "plays": 2,
        "last_watched_at": "2024-04-01T10:00:00.000Z",
        "movie": {"title": "Dune", "year": 2021, "ids": {"trakt": 1, "imdb": "tt1160419", "tmdb": 438631}},
    },
    {
        "plays": 1,
        "last_watched_at": "2024-04-03T21:30:00.000Z",
        "movie": {"title": "Obscure Short", "year": 1999, "ids": {"trakt": 2, "tmdb": 555}},
    },
    {
        "plays": 1,
        "last_watched_at": "2024-04-04T08:00:00.000Z",
        "movie": {"title": "Unidentified", "ids": {"trakt": 3}},
    },
]

SHOWS: List[Dict[str, Any]] = [
    {
        "plays": 9,
        "last_watched_at": "2024-04-02T20:00:00.000Z",
        "show": {"title": "Severance", "year": 2022, "ids": {"trakt": 10, "imdb": "tt11280740", "tmdb": 95396, "tvdb": 371980}},
        "seasons": [],
    },
]


def _feed(method: str, url: str, headers: Dict[str, str], body: Any) -> Any:
    if url.endswith("/watched/movies"):
        return MOVIES
    if url.endswith("/watched/shows"):
        return SHOWS
    return {}


@pytest.fixture
def engine(tokens: TokenLifecycleManager, database: Database, urls: URLManager, clock: FakeClock) -> HistorySyncEngine:
    tokens.store_tokens("bob", "access", "refresh")
    return HistorySyncEngine(tokens, database, fetch_interval_seconds=DAY, urls=urls, clock=clock)


@pytest.fixture
def feed(transport: FakeTransport) -> FakeTransport:
    transport.handler = _feed
    return transport


def _last_fetched(database: Database, username: str = "bob") -> datetime | None:
    with database.connection() as conn:
        return get_last_fetched_at(conn, username)


def _rows(database: Database, username: str = "bob") -> Dict[str, Any]:
    with database.connection() as conn:
        return {record.external_id: record for record in list_history(conn, username)}


def test_first_sync_reconciles_movies_and_shows(engine: HistorySyncEngine, feed: FakeTransport, database: Database, clock: FakeClock) -> None:
    assert engine.sync("bob") is SyncStatus.SYNCED

    rows = _rows(database)
    assert set(rows) == {"tt1160419", "tmdb:movie:555", "tt11280740"}
    assert rows["tt1160419"].media_type is MediaType.MOVIE
    assert rows["tt11280740"].media_type is MediaType.SHOW
    assert rows["tmdb:movie:555"].imdb_id is None
    assert rows["tmdb:movie:555"].tmdb_id == "555"
    assert _last_fetched(database) == clock.now
    assert len(feed.calls_to("/watched/")) == 2
    assert all(call.headers["Authorization"] == "Bearer access" for call in feed.calls)


def test_second_sync_within_interval_makes_no_remote_calls(engine: HistorySyncEngine, feed: FakeTransport, clock: FakeClock) -> None:
    engine.sync("bob")
    calls = len(feed.calls)

    clock.advance(hours=23, minutes=59)
    assert engine.sync("bob") is SyncStatus.SKIPPED
    assert len(feed.calls) == calls


def test_sync_is_due_again_after_interval(engine: HistorySyncEngine, feed: FakeTransport, database: Database, clock: FakeClock) -> None:
    engine.sync("bob")
    clock.advance(days=1)

    assert engine.is_due("bob")
    assert engine.sync("bob") is SyncStatus.SYNCED
    assert _last_fetched(database) == clock.now


def test_due_sync_always_fetches_a_fresh_feed(engine: HistorySyncEngine, feed: FakeTransport, store: MemoryStore, clock: FakeClock) -> None:
    engine.sync("bob")
    clock.advance(days=1)
    engine.sync("bob")

    assert len(feed.calls_to("/watched/")) == 4
    assert not any("/watched/" in key for key, _ in store.sets)


def test_expired_token_is_refreshed_once_during_sync(engine: HistorySyncEngine, transport: FakeTransport, database: Database) -> None:
    refreshes: List[str] = []

    def handler(method: str, url: str, headers: Dict[str, str], body: Any) -> Any:
        if url.endswith("/oauth/token"):
            refreshes.append(body["refresh_token"])
            return {"access_token": "fresh", "refresh_token": "fresh-refresh"}
        if headers.get("Authorization") != "Bearer fresh":
            return AuthExpiredError("401 Unauthorized", status_code=401, url=url)
        return _feed(method, url, headers, body)

    transport.handler = handler

    assert engine.sync("bob") is SyncStatus.SYNCED
    assert refreshes == ["refresh"]
    assert len(_rows(database)) == 3


def test_fetch_failure_leaves_state_untouched(engine: HistorySyncEngine, transport: FakeTransport, database: Database) -> None:
    def handler(method: str, url: str, headers: Dict[str, str], body: Any) -> Any:
        if url.endswith("/watched/shows"):
            return TransientRemoteError("503 Upstream error", status_code=503, url=url)
        return _feed(method, url, headers, body)

    transport.handler = handler

    assert engine.sync("bob") is SyncStatus.FAILED
    assert _rows(database) == {}
    assert _last_fetched(database) is None


def test_reconcile_failure_does_not_advance_last_fetched(
    engine: HistorySyncEngine, feed: FakeTransport, database: Database, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_insert(*args: Any, **kwargs: Any) -> int:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(history_sync, "insert_history", broken_insert)

    assert engine.sync("bob") is SyncStatus.FAILED
    assert _last_fetched(database) is None
    assert _rows(database) == {}


def test_sync_without_stored_tokens_fails_softly(engine: HistorySyncEngine, feed: FakeTransport) -> None:
    assert engine.sync("stranger") is SyncStatus.FAILED
    assert feed.calls == []


def test_reconcile_twice_is_idempotent(engine: HistorySyncEngine, database: Database) -> None:
    items = parse_history(MOVIES) + parse_history(SHOWS)

    first = engine.reconcile("bob", items)
    second = engine.reconcile("bob", items)

    assert (first.inserted, first.updated) == (3, 0)
    assert (second.inserted, second.updated) == (0, 3)
    with database.connection() as conn:
        duplicates = conn.execute(
            "SELECT COUNT(*) FROM (SELECT 1 FROM trakt_history GROUP BY username, external_id HAVING COUNT(*) > 1)"
        ).fetchone()[0]
        total = conn.execute("SELECT COUNT(*) FROM trakt_history").fetchone()[0]
    assert duplicates == 0
    assert total == 3


def _movie(imdb: str, title: str, watched_at: str) -> Dict[str, Any]:
    return {"last_watched_at": watched_at, "movie": {"title": title, "ids": {"imdb": imdb}}}


def test_new_item_inserted_and_existing_item_updated(engine: HistorySyncEngine, database: Database) -> None:
    engine.reconcile("bob", parse_history([_movie("tt0000002", "B", "2024-01-01T00:00:00Z")]))

    result = engine.reconcile(
        "bob",
        parse_history(
            [
                _movie("tt0000001", "A", "2024-03-01T00:00:00Z"),
                _movie("tt0000002", "B (Director's Cut)", "2024-03-05T00:00:00Z"),
            ]
        ),
    )

    assert (result.inserted, result.updated) == (1, 1)
    rows = _rows(database)
    assert rows["tt0000001"].title == "A"
    assert rows["tt0000002"].watched_at == datetime(2024, 3, 5, tzinfo=timezone.utc)
    assert rows["tt0000002"].title == "B (Director's Cut)"


def test_mid_batch_failure_rolls_back_whole_batch(
    engine: HistorySyncEngine, database: Database, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine.reconcile("bob", parse_history([_movie("tt0000002", "B", "2024-01-01T00:00:00Z")]))

    def broken_update(*args: Any, **kwargs: Any) -> None:
        raise sqlite3.IntegrityError("simulated failure on B")

    monkeypatch.setattr(history_sync, "update_history", broken_update)

    with pytest.raises(ReconciliationError):
        engine.reconcile(
            "bob",
            parse_history(
                [
                    _movie("tt0000001", "A", "2024-03-01T00:00:00Z"),
                    _movie("tt0000002", "B", "2024-03-05T00:00:00Z"),
                ]
            ),
        )

    rows = _rows(database)
    assert set(rows) == {"tt0000002"}
    assert rows["tt0000002"].watched_at == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_history_is_scoped_per_user(engine: HistorySyncEngine, database: Database) -> None:
    items = parse_history([_movie("tt0000001", "A", "2024-03-01T00:00:00Z")])

    engine.reconcile("bob", items)
    engine.reconcile("carol", items)

    assert set(_rows(database, "bob")) == {"tt0000001"}
    assert set(_rows(database, "carol")) == {"tt0000001"}


def test_movie_and_show_sharing_a_tmdb_number_stay_separate(engine: HistorySyncEngine, database: Database) -> None:
    items = parse_history(
        [
            {"last_watched_at": "2024-03-01T00:00:00Z", "movie": {"title": "Movie 550", "ids": {"tmdb": 550}}},
            {"last_watched_at": "2024-03-02T00:00:00Z", "show": {"title": "Show 550", "ids": {"tmdb": 550}}},
        ]
    )

    result = engine.reconcile("bob", items)

    assert (result.inserted, result.updated) == (2, 0)
    rows = _rows(database)
    assert set(rows) == {"tmdb:movie:550", "tmdb:show:550"}
    assert rows["tmdb:movie:550"].media_type is MediaType.MOVIE
    assert rows["tmdb:show:550"].title == "Show 550"

    movies = engine.annotate("bob", "movie", [{"id": "tmdb:550", "name": "M"}, {"id": "tmdb:movie:550", "name": "M"}])
    shows = engine.annotate("bob", "tv", [{"id": "tmdb:550", "name": "S"}])
    assert [item["name"] for item in movies] == ["✔️ M", "✔️ M"]
    assert shows[0]["name"] == "✔️ S"


def test_legacy_tmdb_keys_are_rewritten_on_migrate(database: Database) -> None:
    with database.connection() as conn:
        conn.execute(
            "INSERT INTO trakt_history (username, external_id, imdb_id, tmdb_id, type, title) VALUES (?, ?, NULL, ?, ?, ?)",
            ("bob", "tmdb:555", "555", "movie", "Obscure Short"),
        )
        migrate(conn)

    assert set(_rows(database)) == {"tmdb:movie:555"}


def test_annotate_marks_watched_items_only(engine: HistorySyncEngine, feed: FakeTransport) -> None:
    engine.sync("bob")
    calls = len(feed.calls)
    catalog = [
        {"id": "tt11280740", "name": "Severance"},
        {"id": "tt0903747", "name": "Breaking Bad"},
        {"id": "tt1160419", "name": "Dune"},
    ]

    annotated = engine.annotate("bob", "series", catalog)

    assert [item["name"] for item in annotated] == ["✔️ Severance", "Breaking Bad", "Dune"]
    assert catalog[0]["name"] == "Severance"
    assert len(feed.calls) == calls


def test_annotate_uses_title_when_name_missing_and_custom_marker(engine: HistorySyncEngine, feed: FakeTransport) -> None:
    engine.sync("bob")

    annotated = engine.annotate("bob", "movies", [{"id": "tt1160419", "title": "Dune"}, {"id": "tmdb:555"}], marker="[seen]")

    assert annotated[0]["name"] == "[seen] Dune"
    assert annotated[1]["name"] == "[seen]"


def test_annotate_rejects_unknown_media_type(engine: HistorySyncEngine) -> None:
    with pytest.raises(ValueError):
        engine.annotate("bob", "podcast", [])


def test_sync_and_annotate_falls_back_to_stale_history(engine: HistorySyncEngine, transport: FakeTransport, database: Database) -> None:
    engine.reconcile("bob", parse_history(MOVIES))
    transport.handler = lambda method, url, headers, body: TransientRemoteError("timeout", url=url)

    annotated = engine.sync_and_annotate("bob", "movie", [{"id": "tt1160419", "name": "Dune"}])

    assert annotated == [{"id": "tt1160419", "name": "✔️ Dune"}]
    assert _last_fetched(database) is None
    assert len(transport.calls) == 2
