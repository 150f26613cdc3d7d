"""Typed structures for the Trakt and fanart.tv payloads the mediator consumes.

Remote payloads are validated once, at ingestion, into these models so the
rest of the code never probes dictionaries for optional keys. Watch-history
entries come in two shapes (``{"movie": ...}`` and ``{"show": ...}``) and are
represented as a tagged union resolved by :func:`parse_history_item`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Iterable, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, ValidationError

from trakt_mediator.backend.common.logging import get_logger

log = get_logger(__name__)


class MediaType(str, Enum):
    """Local media categories for history rows and genre reference data."""

    MOVIE = "movie"
    SHOW = "show"

    @property
    def plural(self) -> str:
        """Path segment used by the remote API (``movies`` / ``shows``)."""

        return f"{self.value}s"

    @classmethod
    def from_alias(cls, value: Union[str, "MediaType"]) -> "MediaType":
        if isinstance(value, MediaType):
            return value

        key = str(value or "").strip().lower()
        try:
            return _MEDIA_ALIASES[key]
        except KeyError:
            raise ValueError(f"Unsupported media type: {value!r}") from None


_MEDIA_ALIASES = {
    "movie": MediaType.MOVIE,
    "movies": MediaType.MOVIE,
    "series": MediaType.SHOW,
    "show": MediaType.SHOW,
    "shows": MediaType.SHOW,
    "tv": MediaType.SHOW,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class MediaIds(_Payload):
    trakt: Optional[int] = None
    slug: Optional[str] = None
    imdb: Optional[str] = None
    tmdb: Optional[int] = None
    tvdb: Optional[int] = None

    def external_id_for(self, media_type: MediaType) -> Optional[str]:
        """Stable identifier: IMDb first, else TMDb scoped by media type.

        TMDb numbers movies and TV separately, so the fallback carries the type.
        """

        if self.imdb:
            return self.imdb
        if self.tmdb is not None:
            return f"tmdb:{MediaType(media_type).value}:{self.tmdb}"

        return None


class MediaSummary(_Payload):
    title: Optional[str] = None
    year: Optional[int] = None
    ids: MediaIds = Field(default_factory=MediaIds)


class _HistoryItem(_Payload):
    plays: Optional[int] = None
    last_watched_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    @property
    def media(self) -> MediaSummary:
        raise NotImplementedError

    @property
    def media_type(self) -> MediaType:
        raise NotImplementedError

    @property
    def ids(self) -> MediaIds:
        return self.media.ids

    @property
    def external_id(self) -> Optional[str]:
        return self.media.ids.external_id_for(self.media_type)

    @property
    def title(self) -> Optional[str]:
        return self.media.title

    @property
    def watched_at(self) -> Optional[datetime]:
        return self.last_watched_at


class MovieHistoryItem(_HistoryItem):
    kind: Literal["movie"] = "movie"
    movie: MediaSummary

    @property
    def media(self) -> MediaSummary:
        return self.movie

    @property
    def media_type(self) -> MediaType:
        return MediaType.MOVIE


class ShowHistoryItem(_HistoryItem):
    kind: Literal["show"] = "show"
    show: MediaSummary

    @property
    def media(self) -> MediaSummary:
        return self.show

    @property
    def media_type(self) -> MediaType:
        return MediaType.SHOW


def _history_tag(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        if "movie" in value:
            return "movie"
        if "show" in value:
            return "show"
        return None

    return getattr(value, "kind", None)


HistoryItem = Annotated[
    Union[
        Annotated[MovieHistoryItem, Tag("movie")],
        Annotated[ShowHistoryItem, Tag("show")],
    ],
    Discriminator(_history_tag),
]

_HISTORY_ITEM = TypeAdapter(HistoryItem)


def parse_history_item(payload: Any) -> Union[MovieHistoryItem, ShowHistoryItem]:
    return _HISTORY_ITEM.validate_python(payload)


def parse_history(payload: Any) -> List[Union[MovieHistoryItem, ShowHistoryItem]]:
    """Validate a watched feed, dropping entries that cannot be identified.

    Entries that fail validation or carry neither an IMDb nor a TMDb id are
    logged and skipped; they have no stable key to reconcile against.
    """

    if not payload:
        return []
    if not isinstance(payload, Iterable) or isinstance(payload, (str, bytes, Mapping)):
        raise ValueError("Watched history payload must be a list")

    items: List[Union[MovieHistoryItem, ShowHistoryItem]] = []
    for raw in payload:
        try:
            item = parse_history_item(raw)
        except ValidationError as exc:
            log.warning("Skipping malformed history entry: %s", exc.errors()[:1])
            continue
        if item.external_id is None:
            log.warning("Skipping history entry without imdb/tmdb id: %s", item.title)
            continue
        items.append(item)

    return items


class HistoryRecord(BaseModel):
    """Reconciled local view of one watched title for one user."""

    username: str
    external_id: str
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    media_type: MediaType
    watched_at: Optional[datetime] = None
    title: Optional[str] = None

    @classmethod
    def from_item(cls, username: str, item: Union[MovieHistoryItem, ShowHistoryItem]) -> "HistoryRecord":
        if item.external_id is None:
            raise ValueError("History item has no usable identifier")

        return cls(
            username=username,
            external_id=item.external_id,
            imdb_id=item.ids.imdb,
            tmdb_id=None if item.ids.tmdb is None else str(item.ids.tmdb),
            media_type=item.media_type,
            watched_at=item.watched_at,
            title=item.title,
        )


class TokenPair(BaseModel):
    username: str
    access_token: str
    refresh_token: str
    last_fetched_at: Optional[datetime] = None


class OAuthToken(_Payload):
    """Response body of ``POST /oauth/token``."""

    access_token: str
    refresh_token: str
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    created_at: Optional[int] = None


class UserProfile(_Payload):
    username: str
    name: Optional[str] = None
    private: Optional[bool] = None
    vip: Optional[bool] = None


class Genre(BaseModel):
    slug: str
    name: str
    media_type: MediaType


class LogoCandidate(_Payload):
    id: Optional[str] = None
    url: str
    lang: str = ""
    likes: int = 0


class ReconcileResult(BaseModel):
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


__all__ = [
    "Genre",
    "HistoryItem",
    "HistoryRecord",
    "LogoCandidate",
    "MediaIds",
    "MediaSummary",
    "MediaType",
    "MovieHistoryItem",
    "OAuthToken",
    "ReconcileResult",
    "ShowHistoryItem",
    "TokenPair",
    "UserProfile",
    "parse_history",
    "parse_history_item",
]
