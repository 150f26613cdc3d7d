"""Periodic pull of a user's Trakt watched feed into local storage.

``sync`` is gated by ``last_fetched_at``: inside the configured interval it
returns :attr:`SyncStatus.SKIPPED` without touching the network. Otherwise the
movie and show feeds are fetched concurrently and reconciled, together with
the new ``last_fetched_at`` (the sync start time), in a single transaction.
Any failure leaves both the history rows and ``last_fetched_at`` as they were,
so the next attempt happens one interval after the last success.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union
from urllib.parse import quote

from trakt_mediator.backend.common.errors import MediatorError, ReconciliationError
from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.common.types import SyncStatus
from trakt_mediator.backend.information_handlers.models import (
    HistoryRecord,
    MediaType,
    MovieHistoryItem,
    ReconcileResult,
    ShowHistoryItem,
    parse_history,
)
from trakt_mediator.backend.information_handlers.trakt_auth import SERVICE, TokenLifecycleManager
from trakt_mediator.backend.network_handlers.url_manager import URLManager
from trakt_mediator.backend.persistence.sqlite import (
    Database,
    get_history_row,
    get_last_fetched_at,
    insert_history,
    list_history_ids,
    update_history,
    update_last_fetched_at,
)

log = get_logger(__name__)

HistoryEntry = Union[MovieHistoryItem, ShowHistoryItem]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistorySyncEngine:
    def __init__(
        self,
        tokens: TokenLifecycleManager,
        database: Database,
        *,
        fetch_interval_seconds: int,
        watched_marker: str = "✔️",
        urls: Optional[URLManager] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._tokens = tokens
        self._db = database
        self._interval = int(fetch_interval_seconds)
        self._marker = watched_marker
        self._urls = urls or URLManager()
        self._clock = clock

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    def is_due(self, username: str, now: Optional[datetime] = None) -> bool:
        with self._db.connection() as conn:
            last_fetched = get_last_fetched_at(conn, username)
        if last_fetched is None:
            return True

        elapsed = ((now or self._clock()) - last_fetched).total_seconds()
        return elapsed >= self._interval

    def sync(self, username: str) -> SyncStatus:
        started = self._clock()
        if not self.is_due(username, started):
            log.debug("History for user %s is fresh; skipping fetch", username)
            return SyncStatus.SKIPPED

        log.info("Fetching Trakt history for user %s", username)
        try:
            items = self.fetch_history(username)
        except (MediatorError, ValueError) as exc:
            log.error("Error fetching Trakt history for user %s: %s", username, exc)
            return SyncStatus.FAILED

        try:
            result = self.reconcile(username, items, fetched_at=started)
        except ReconciliationError as exc:
            log.error("Error committing history for user %s: %s", username, exc)
            return SyncStatus.FAILED

        log.info(
            "History saved for user %s",
            username,
            extra={"inserted": result.inserted, "updated": result.updated},
        )
        return SyncStatus.SYNCED

    def fetch_history(self, username: str) -> List[HistoryEntry]:
        """Fetch the movie and show feeds in parallel and return both, movies first."""

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="history-fetch") as pool:
            movies = pool.submit(self._fetch, username, MediaType.MOVIE)
            shows = pool.submit(self._fetch, username, MediaType.SHOW)
            return movies.result() + shows.result()

    def _fetch(self, username: str, media_type: MediaType) -> List[HistoryEntry]:
        endpoint = self._urls.endpoint(
            SERVICE,
            "users",
            "watched",
            username=quote(username, safe=""),
            media_type=media_type.plural,
        )
        # Never cached: sync() already gates on last_fetched_at.
        payload = self._tokens.call_authenticated(username, endpoint, use_cache=False)
        items = parse_history(payload)
        if not items:
            log.warning("No %s history to save for user %s", media_type.value, username)
        return items

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile(
        self,
        username: str,
        items: Iterable[HistoryEntry],
        *,
        fetched_at: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Upsert ``items`` for ``username`` all-or-nothing.

        Rows are keyed by ``(username, external_id)``: an existing row has its
        watched time, title, ids and type overwritten, otherwise a row is
        inserted. When ``fetched_at`` is given it is written in the same
        transaction.
        """

        inserted = updated = 0
        try:
            with self._db.transaction() as conn:
                for item in items:
                    record = HistoryRecord.from_item(username, item)
                    row = get_history_row(conn, username, record.external_id)
                    if row is None:
                        insert_history(conn, record)
                        inserted += 1
                    else:
                        update_history(conn, int(row["id"]), record)
                        updated += 1
                if fetched_at is not None:
                    update_last_fetched_at(conn, username, fetched_at)
        except Exception as exc:
            raise ReconciliationError(f"History reconciliation for {username} rolled back: {exc}") from exc

        return ReconcileResult(inserted=inserted, updated=updated)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------
    def annotate(
        self,
        username: str,
        media_type: Union[str, MediaType],
        items: Sequence[Mapping[str, Any]],
        *,
        marker: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return copies of ``items`` with watched titles prefixed by the marker.

        Reads local history only. An item counts as watched when its ``id``
        matches a stored key, IMDb id or ``tmdb:<id>`` for this user and type.
        """

        kind = MediaType.from_alias(media_type)
        with self._db.connection() as conn:
            watched = list_history_ids(conn, username, kind)

        prefix = marker if marker is not None else self._marker
        annotated: List[Dict[str, Any]] = []
        for item in items:
            entry = dict(item)
            content_id = entry.get("id")
            if content_id is not None and str(content_id) in watched:
                label = entry.get("name") or entry.get("title") or ""
                entry["name"] = f"{prefix} {label}" if label else prefix
            annotated.append(entry)

        log.debug(
            "Annotated %d %s items for user %s (%d watched ids)",
            len(annotated),
            kind.value,
            username,
            len(watched),
        )
        return annotated

    def sync_and_annotate(
        self,
        username: str,
        media_type: Union[str, MediaType],
        items: Sequence[Mapping[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Sync when due, then annotate; a failed sync falls back to stale history."""

        status = self.sync(username)
        if status is SyncStatus.FAILED:
            log.warning("Annotating %s with stale history for user %s", MediaType.from_alias(media_type).value, username)
        return self.annotate(username, media_type, items)


__all__ = ["HistorySyncEngine"]
