"""SQLite connection helpers and the persistence primitives of the mediator."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Set, Union

from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.information_handlers.models import (
    Genre,
    HistoryRecord,
    MediaType,
    TokenPair,
)
from trakt_mediator.config.settings import get_database_path

log = get_logger(__name__)


def _resolve_path(path: Optional[Union[str, Path]]) -> Path:
    db_path = Path(path or get_database_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


def connect(path: Optional[Union[str, Path]] = None, *, apply_migrations: bool = True) -> sqlite3.Connection:
    """Open an autocommit connection; transactions are issued explicitly."""

    db_path = _resolve_path(path)
    connection = sqlite3.connect(str(db_path), isolation_level=None, timeout=30.0, check_same_thread=False)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute("PRAGMA journal_mode = WAL")
    if apply_migrations:
        migrate(connection)
    return connection


class Database:
    """Connection factory bound to one SQLite file.

    Every :meth:`transaction` opens its own connection, so concurrent callers
    on different threads never share a cursor. ``BEGIN IMMEDIATE`` takes the
    write lock up front: two writers serialize instead of failing on upgrade.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = _resolve_path(path)
        self._migrated = False
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            apply = not self._migrated
            self._migrated = True
        return connect(self.path, apply_migrations=apply)

    def migrate(self) -> None:
        with self.connection() as conn:
            migrate(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection for reads and single-statement writes."""

        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


def migrate(connection: sqlite3.Connection) -> None:
    """Create required tables if they are missing."""

    connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS trakt_tokens (
            username TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            last_fetched_at TEXT,
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS trakt_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL,
            external_id TEXT NOT NULL,
            imdb_id TEXT,
            tmdb_id TEXT,
            type TEXT NOT NULL,
            watched_at TEXT,
            title TEXT,
            UNIQUE(username, external_id)
        );

        CREATE INDEX IF NOT EXISTS idx_trakt_history_user_type
            ON trakt_history(username, type);

        CREATE TABLE IF NOT EXISTS genres (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            genre_slug TEXT NOT NULL,
            genre_name TEXT NOT NULL,
            media_type TEXT NOT NULL,
            UNIQUE(genre_slug, media_type)
        );

        -- TMDb fallback keys predating the media-type prefix.
        UPDATE OR IGNORE trakt_history
            SET external_id = 'tmdb:' || type || ':' || tmdb_id
            WHERE imdb_id IS NULL AND external_id = 'tmdb:' || tmdb_id;
        """
    )


# ----------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------
def get_token_pair(connection: sqlite3.Connection, username: str) -> Optional[TokenPair]:
    row = connection.execute(
        "SELECT username, access_token, refresh_token, last_fetched_at FROM trakt_tokens WHERE username = ?",
        (username,),
    ).fetchone()
    if row is None:
        return None

    return TokenPair(
        username=row["username"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        last_fetched_at=_parse_timestamp(row["last_fetched_at"]),
    )


def save_token_pair(connection: sqlite3.Connection, username: str, access_token: str, refresh_token: str) -> None:
    """Insert or replace the credential pair; ``last_fetched_at`` is preserved."""

    connection.execute(
        """
        INSERT INTO trakt_tokens (username, access_token, refresh_token, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(username) DO UPDATE SET
            access_token=excluded.access_token,
            refresh_token=excluded.refresh_token,
            updated_at=excluded.updated_at
        """,
        (username, access_token, refresh_token, _utcnow()),
    )


def get_last_fetched_at(connection: sqlite3.Connection, username: str) -> Optional[datetime]:
    row = connection.execute(
        "SELECT last_fetched_at FROM trakt_tokens WHERE username = ?",
        (username,),
    ).fetchone()
    return None if row is None else _parse_timestamp(row["last_fetched_at"])


def update_last_fetched_at(connection: sqlite3.Connection, username: str, fetched_at: datetime) -> None:
    connection.execute(
        "UPDATE trakt_tokens SET last_fetched_at = ? WHERE username = ?",
        (_format_timestamp(fetched_at), username),
    )


# ----------------------------------------------------------------------
# History
# ----------------------------------------------------------------------
def get_history_row(connection: sqlite3.Connection, username: str, external_id: str) -> Optional[sqlite3.Row]:
    return connection.execute(
        "SELECT * FROM trakt_history WHERE username = ? AND external_id = ?",
        (username, external_id),
    ).fetchone()


def insert_history(connection: sqlite3.Connection, record: HistoryRecord) -> int:
    cursor = connection.execute(
        """
        INSERT INTO trakt_history (username, external_id, imdb_id, tmdb_id, type, watched_at, title)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.username,
            record.external_id,
            record.imdb_id,
            record.tmdb_id,
            record.media_type.value,
            _format_timestamp(record.watched_at),
            record.title,
        ),
    )
    return int(cursor.lastrowid)


def update_history(connection: sqlite3.Connection, row_id: int, record: HistoryRecord) -> None:
    connection.execute(
        """
        UPDATE trakt_history
        SET watched_at = ?,
            title = ?,
            imdb_id = ?,
            tmdb_id = ?,
            type = ?
        WHERE id = ?
        """,
        (
            _format_timestamp(record.watched_at),
            record.title,
            record.imdb_id,
            record.tmdb_id,
            record.media_type.value,
            row_id,
        ),
    )


def list_history(connection: sqlite3.Connection, username: str) -> list[HistoryRecord]:
    rows = connection.execute(
        "SELECT * FROM trakt_history WHERE username = ? ORDER BY id",
        (username,),
    ).fetchall()
    return [
        HistoryRecord(
            username=row["username"],
            external_id=row["external_id"],
            imdb_id=row["imdb_id"],
            tmdb_id=row["tmdb_id"],
            media_type=MediaType(row["type"]),
            watched_at=_parse_timestamp(row["watched_at"]),
            title=row["title"],
        )
        for row in rows
    ]


def list_history_ids(connection: sqlite3.Connection, username: str, media_type: MediaType) -> Set[str]:
    """Ids of every watched title of ``media_type`` for ``username``.

    Holds the stored key plus the IMDb id and the bare ``tmdb:<id>`` form, which
    is unambiguous once the type is fixed.
    """

    rows = connection.execute(
        "SELECT external_id, imdb_id, tmdb_id FROM trakt_history WHERE username = ? AND type = ?",
        (username, MediaType.from_alias(media_type).value),
    ).fetchall()
    ids: Set[str] = set()
    for row in rows:
        ids.add(str(row["external_id"]))
        if row["imdb_id"]:
            ids.add(str(row["imdb_id"]))
        if row["tmdb_id"]:
            ids.add(f"tmdb:{row['tmdb_id']}")
    return ids


# ----------------------------------------------------------------------
# Genres
# ----------------------------------------------------------------------
def insert_genres(connection: sqlite3.Connection, genres: Iterable[Genre]) -> int:
    """Seed genres, ignoring rows that already exist. Returns the number inserted."""

    inserted = 0
    for genre in genres:
        cursor = connection.execute(
            """
            INSERT INTO genres (genre_slug, genre_name, media_type)
            VALUES (?, ?, ?)
            ON CONFLICT(genre_slug, media_type) DO NOTHING
            """,
            (genre.slug, genre.name, genre.media_type.value),
        )
        inserted += cursor.rowcount if cursor.rowcount > 0 else 0
    return inserted


def list_genres(connection: sqlite3.Connection, media_type: Optional[MediaType] = None) -> list[Genre]:
    if media_type is None:
        rows = connection.execute("SELECT * FROM genres ORDER BY media_type, genre_slug").fetchall()
    else:
        rows = connection.execute(
            "SELECT * FROM genres WHERE media_type = ? ORDER BY genre_slug",
            (MediaType.from_alias(media_type).value,),
        ).fetchall()
    return [
        Genre(slug=row["genre_slug"], name=row["genre_name"], media_type=MediaType(row["media_type"]))
        for row in rows
    ]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        log.warning("Ignoring unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "Database",
    "connect",
    "get_history_row",
    "get_last_fetched_at",
    "get_token_pair",
    "insert_genres",
    "insert_history",
    "list_genres",
    "list_history",
    "list_history_ids",
    "migrate",
    "save_token_pair",
    "update_history",
    "update_last_fetched_at",
]
