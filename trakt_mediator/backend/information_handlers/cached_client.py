"""Cache-aside access to a remote JSON API through the rate limited queue.

Reads and writes both consult the shared TTL store first. A miss is queued on
the lane matching the HTTP method (GET -> read, everything else -> write) and
a successful response is written back exactly once. Failures are never
cached. Concurrent misses on one key are not coalesced: each caller queues its
own call and the last write to the store wins.
"""

from __future__ import annotations

import hashlib
import json
import logging
from concurrent.futures import Future
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.information_handlers.cache import CacheStore
from trakt_mediator.backend.network_handlers.request_queue import JobKind, RateLimitedQueue
from trakt_mediator.backend.network_handlers.session import HttpSession

log = get_logger(__name__)

PUBLIC_SCOPE = "public"

# Query parameters carrying secrets; never written into a cache key.
SECRET_QUERY_PARAMS = frozenset({"api_key", "client_secret"})


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def credential_scope(credential: Optional[str]) -> str:
    """Cache partition for a credential; the raw token never appears in a key."""

    if not credential:
        return PUBLIC_SCOPE

    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:32]


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url

    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in SECRET_QUERY_PARAMS]
    return urlunsplit(parts._replace(query=urlencode(query)))


def build_cache_key(
    namespace: str,
    method: str,
    url: str,
    *,
    body: Optional[Any] = None,
    credential: Optional[str] = None,
) -> str:
    parts = [namespace, method.upper(), credential_scope(credential), redact_url(url)]
    if body is not None:
        parts.append(canonical_json(body))

    return ":".join(parts)


class CacheAsideClient:
    def __init__(
        self,
        queue: RateLimitedQueue,
        store: CacheStore,
        transport: HttpSession,
        *,
        default_ttl: int,
        namespace: str = "trakt",
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._transport = transport
        self._default_ttl = default_ttl
        self._namespace = namespace
        self._default_headers = dict(default_headers or {})

    @property
    def namespace(self) -> str:
        return self._namespace

    def get(self, url: str, credential: Optional[str] = None, **kwargs: Any) -> Any:
        return self.request("GET", url, credential=credential, **kwargs)

    def post(self, url: str, body: Any, credential: Optional[str] = None, **kwargs: Any) -> Any:
        return self.request("POST", url, body=body, credential=credential, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        body: Optional[Any] = None,
        credential: Optional[str] = None,
        *,
        ttl: Optional[int] = None,
        use_cache: bool = True,
    ) -> Any:
        """Return the decoded payload for ``method url``, from cache when possible.

        ``use_cache=False`` skips both the lookup and the write-back; token
        exchanges go through this path. Remote failures propagate unchanged
        (they carry ``status_code``) so callers can react to a 401.
        """

        method = method.upper()
        key = build_cache_key(self._namespace, method, url, body=body, credential=credential)

        if use_cache:
            cached = self._lookup(key)
            if cached is not None:
                log.debug("Cache hit for %s URL: %s", method, url)
                return cached[0]

        future = self._submit(method, url, body, credential)
        try:
            payload = future.result()
        except Exception as exc:
            log.log(
                logging.WARNING if getattr(exc, "status_code", None) == 401 else logging.ERROR,
                "API %s request failed for URL: %s - %s",
                method,
                url,
                exc,
            )
            raise

        log.debug("API %s request successful for URL: %s", method, url)
        if use_cache:
            self._write_back(key, payload, ttl)

        return payload

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _submit(self, method: str, url: str, body: Optional[Any], credential: Optional[str]) -> Future:
        headers = self._headers(credential)
        kind = JobKind.READ if method == "GET" else JobKind.WRITE

        def _work() -> Any:
            return self._transport.send(method, url, headers=headers, body=body).payload

        return self._queue.enqueue(kind, _work)

    def _headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = dict(self._default_headers)
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        else:
            log.debug("No access token provided, making unauthenticated request.")

        return headers

    def _lookup(self, key: str) -> Optional[tuple[Any]]:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return (json.loads(raw.decode("utf-8")),)
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("Discarding undecodable cache entry for key %s", key)
            return None

    def _write_back(self, key: str, payload: Any, ttl: Optional[int]) -> None:
        try:
            encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError):
            log.warning("Response for key %s is not JSON serializable; not cached", key)
            return

        self._store.set(key, encoded, self._default_ttl if ttl is None else ttl)


__all__ = [
    "CacheAsideClient",
    "PUBLIC_SCOPE",
    "build_cache_key",
    "canonical_json",
    "credential_scope",
]
