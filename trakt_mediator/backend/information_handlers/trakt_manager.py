"""Trakt.tv endpoint helpers.

Thin wrappers over :class:`CacheAsideClient` (public endpoints) and
:class:`TokenLifecycleManager` (user endpoints). Payloads are returned as
decoded JSON; only list items get local sorting and genres get persisted.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

from pydantic import ValidationError

from trakt_mediator.backend.common.errors import MediatorError
from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.information_handlers.cached_client import CacheAsideClient
from trakt_mediator.backend.information_handlers.models import Genre, MediaType, UserProfile
from trakt_mediator.backend.information_handlers.trakt_auth import SERVICE, TokenLifecycleManager
from trakt_mediator.backend.network_handlers.url_manager import URLManager
from trakt_mediator.backend.persistence.sqlite import Database, insert_genres

log = get_logger(__name__)

MediaSelector = Union[str, MediaType]

LIST_SORT_FIELDS = ("rank", "listed_at", "title", "year")
RECOMMENDATION_LIMIT = 100


def _media_of(entry: Mapping[str, Any]) -> Mapping[str, Any]:
    media = entry.get("movie") or entry.get("show") or {}
    return media if isinstance(media, Mapping) else {}


_SORT_KEYS: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "rank": lambda entry: entry.get("rank") or 0,
    "listed_at": lambda entry: str(entry.get("listed_at") or ""),
    "title": lambda entry: str(_media_of(entry).get("title") or "").lower(),
    "year": lambda entry: _media_of(entry).get("year") or 0,
}


def sort_list_items(items: List[Mapping[str, Any]], sort_by: str, sort_how: str = "asc") -> List[Mapping[str, Any]]:
    key = _SORT_KEYS.get(sort_by)
    if key is None:
        return list(items)
    return sorted(items, key=key, reverse=sort_how == "desc")


class TraktManager:
    def __init__(
        self,
        client: CacheAsideClient,
        tokens: TokenLifecycleManager,
        database: Database,
        *,
        urls: Optional[URLManager] = None,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._db = database
        self._urls = urls or URLManager()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def get_profile(self, username: str) -> UserProfile:
        payload = self._get(self._endpoint("users", "profile", username="me"), username=username)
        return UserProfile.model_validate(payload)

    def lookup_trakt_id(self, tmdb_id: Union[str, int], media_type: str, *, username: Optional[str] = None) -> int:
        payload = self._get(
            self._endpoint("search", "tmdb", tmdb_id=tmdb_id),
            {"type": media_type},
            username=username,
        )
        if isinstance(payload, list) and payload:
            first = payload[0]
            media = first.get(media_type) if isinstance(first, Mapping) and first.get("type") == media_type else None
            trakt_id = (media or {}).get("ids", {}).get("trakt")
            if trakt_id is not None:
                return int(trakt_id)

        log.error("No Trakt ID found for TMDB ID %s", tmdb_id)
        raise LookupError(f"No Trakt ID found for TMDB ID {tmdb_id}")

    def mark_as_watched(
        self,
        username: str,
        media_type: MediaSelector,
        trakt_id: int,
        watched_at: Optional[datetime] = None,
    ) -> Any:
        kind = MediaType.from_alias(media_type)
        stamp = (watched_at or datetime.now(timezone.utc)).isoformat()
        body = {kind.plural: [{"ids": {"trakt": trakt_id}, "watched_at": stamp}]}
        return self._tokens.authenticated_post(username, self._endpoint("sync", "history"), body)

    def watchlist(self, username: str, media_type: MediaSelector = "movie", page: int = 1, limit: int = 20) -> Any:
        endpoint = self._endpoint(
            "users",
            "watchlist",
            username=quote(username, safe=""),
            media_type=MediaType.from_alias(media_type).plural,
        )
        return self._tokens.authenticated_get(username, endpoint, {"page": page, "limit": limit})

    def recommendations(
        self,
        username: str,
        media_type: MediaSelector = "movies",
        *,
        ignore_collected: bool = True,
        ignore_watchlisted: bool = True,
    ) -> Any:
        endpoint = self._urls.endpoint(SERVICE, "recommendations", media_type=MediaType.from_alias(media_type).plural)
        params = {
            "ignore_collected": str(ignore_collected).lower(),
            "ignore_watchlisted": str(ignore_watchlisted).lower(),
            "limit": RECOMMENDATION_LIMIT,
        }
        return self._tokens.authenticated_get(username, endpoint, params)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------
    def trending_lists(self, page: int = 1, limit: int = 10, *, username: Optional[str] = None) -> Any:
        return self._get(self._endpoint("lists", "trending"), {"page": page, "limit": limit}, username=username)

    def popular_lists(self, page: int = 1, limit: int = 10, *, username: Optional[str] = None) -> Any:
        return self._get(self._endpoint("lists", "popular"), {"page": page, "limit": limit}, username=username)

    def search_lists(self, query: str, page: int = 1, limit: int = 10, *, username: Optional[str] = None) -> Any:
        return self._get(
            self._endpoint("search", "list"),
            {"query": query, "page": page, "limit": limit},
            username=username,
        )

    def get_list(self, list_id: Union[str, int], *, username: Optional[str] = None) -> Any:
        return self._get(self._endpoint("lists", "detail", list_id=list_id), username=username)

    def list_items(
        self,
        list_id: Union[str, int],
        page: int = 1,
        limit: int = 20,
        sort_by: Optional[str] = None,
        sort_how: str = "asc",
        *,
        username: Optional[str] = None,
    ) -> Any:
        """Items of a list. With ``sort_by`` the whole list is fetched and sorted locally."""

        params = None if sort_by else {"page": page, "limit": limit}
        data = self._get(self._endpoint("lists", "items", list_id=list_id), params, username=username)
        if sort_by and isinstance(data, list):
            return sort_list_items(data, sort_by, sort_how)
        return data

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def trending_items(self, media_type: MediaSelector, page: int = 1, limit: int = 20, genre: Optional[str] = None) -> Any:
        return self._catalog("trending", media_type, page, limit, genre)

    def popular_items(self, media_type: MediaSelector, page: int = 1, limit: int = 20, genre: Optional[str] = None) -> Any:
        return self._catalog("popular", media_type, page, limit, genre)

    def _catalog(self, which: str, media_type: MediaSelector, page: int, limit: int, genre: Optional[str]) -> Any:
        kind = MediaType.from_alias(media_type)
        endpoint = self._endpoint("catalog", which, media_type=kind.plural)
        log.debug("Fetching %s %s, page %s, limit %s, genre %s", which, kind.plural, page, limit, genre)
        return self._get(endpoint, {"page": page, "limit": limit, "genres": genre or None})

    # ------------------------------------------------------------------
    # Genres
    # ------------------------------------------------------------------
    def fetch_genres(self, media_type: MediaSelector) -> List[Genre]:
        kind = MediaType.from_alias(media_type)
        payload = self._get(self._urls.endpoint(SERVICE, "genres", media_type=kind.plural)) or []
        genres: List[Genre] = []
        for raw in payload:
            try:
                genres.append(Genre(slug=raw["slug"], name=raw["name"], media_type=kind))
            except (KeyError, TypeError, ValidationError):
                log.debug("Skipping malformed genre entry %r", raw)
        log.debug("Genres retrieved for %s", kind.plural)
        return genres

    def fetch_and_store_genres(self) -> Dict[str, int]:
        """Seed movie and show genres. Failures are logged, never raised."""

        inserted: Dict[str, int] = {}
        try:
            fetched = {kind: self.fetch_genres(kind) for kind in (MediaType.MOVIE, MediaType.SHOW)}
            with self._db.transaction() as conn:
                for kind, genres in fetched.items():
                    inserted[kind.value] = insert_genres(conn, genres)
        except (MediatorError, ValueError, sqlite3.Error) as exc:
            log.error("Error fetching/storing genres: %s", exc)
            return {}

        log.info("Genres fetched and stored", extra={"inserted": inserted})
        return inserted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _endpoint(self, *keys: str, **fmt: Any) -> str:
        return self._urls.endpoint(SERVICE, *keys, **fmt)

    def _get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None, *, username: Optional[str] = None) -> Any:
        if username:
            return self._tokens.authenticated_get(username, endpoint, params)
        url, _ = self._urls.build(SERVICE, endpoint, params)
        return self._client.get(url)


__all__ = ["LIST_SORT_FIELDS", "TraktManager", "sort_list_items"]
