"""fanart.tv logo lookup.

Only the logo pick is implemented: highest-liked logo in the preferred
language, then in English, otherwise nothing. Every failure path degrades to
an empty string; a missing logo must never block the caller.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from trakt_mediator.backend.common.errors import MediatorError
from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.information_handlers.cached_client import CacheAsideClient
from trakt_mediator.backend.information_handlers.models import LogoCandidate
from trakt_mediator.backend.network_handlers.url_manager import URLManager

log = get_logger(__name__)

_SERVICE_NAME = "fanart"
FALLBACK_LANGUAGE = "en"


def force_https(url: str) -> str:
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def _best(candidates: List[LogoCandidate], lang: str) -> Optional[LogoCandidate]:
    best: Optional[LogoCandidate] = None
    for candidate in candidates:
        if candidate.lang != lang:
            continue
        # strict comparison keeps the earliest candidate on ties
        if best is None or candidate.likes > best.likes:
            best = candidate
    return best


def select_logo(candidates: Iterable[Union[LogoCandidate, Mapping[str, Any]]], preferred_lang: str) -> str:
    logos = [c if isinstance(c, LogoCandidate) else LogoCandidate.model_validate(c) for c in candidates]

    chosen = _best(logos, preferred_lang)
    if chosen is None:
        chosen = _best(logos, FALLBACK_LANGUAGE)
    if chosen is None:
        return ""

    return force_https(chosen.url)


class FanartManager:
    def __init__(self, client: CacheAsideClient, *, urls: Optional[URLManager] = None) -> None:
        self._client = client
        self._urls = urls or URLManager()

    def get_logo(self, media_id: Optional[Union[str, int]], preferred_lang: str, media_type: str = "movie") -> str:
        is_tv = media_type in ("tv", "series")
        id_type = "thetvdb" if is_tv else "tmdb"
        if not media_id:
            log.warning("No %s ID provided for type %s", id_type, media_type)
            return ""

        path = self._urls.endpoint(_SERVICE_NAME, "tv" if is_tv else "movie", media_id=media_id)
        url, _ = self._urls.build(_SERVICE_NAME, path)
        try:
            payload = self._client.get(url)
        except MediatorError as exc:
            log.error("Error fetching logos from Fanart.tv for %s ID %s: %s", id_type, media_id, exc)
            return ""

        logos = payload.get("hdtvlogo" if is_tv else "hdmovielogo") if isinstance(payload, Mapping) else None
        if not isinstance(logos, list):
            log.debug("No logos listed for %s ID %s", id_type, media_id)
            return ""

        candidates: List[LogoCandidate] = []
        for raw in logos:
            try:
                candidates.append(LogoCandidate.model_validate(raw))
            except ValidationError:
                log.debug("Skipping malformed logo entry for %s ID %s", id_type, media_id)

        return select_logo(candidates, preferred_lang)


__all__ = ["FALLBACK_LANGUAGE", "FanartManager", "force_https", "select_logo"]
