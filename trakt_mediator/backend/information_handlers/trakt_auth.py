"""Per-user Trakt credentials and the refresh-on-401 protocol.

Every authenticated call goes through :meth:`TokenLifecycleManager.call_authenticated`:

1. look up the stored pair for the user,
2. call through the cache-aside client with the access token,
3. on :class:`AuthExpiredError` exchange the refresh token once, persist the
   new pair and replay the call exactly once with it.

A second 401 (or any failure of the replay) is surfaced unchanged. Other
failures never trigger a refresh. Refreshes are serialized per username;
the refresh token is single use, so two concurrent exchanges would burn it.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from trakt_mediator.backend.common.errors import (
    AuthExpiredError,
    AuthRefreshFailedError,
    ConfigError,
    MissingTokenError,
    RemoteError,
)
from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.information_handlers.cached_client import CacheAsideClient
from trakt_mediator.backend.information_handlers.models import OAuthToken, TokenPair, UserProfile
from trakt_mediator.backend.network_handlers.url_manager import URLManager
from trakt_mediator.backend.persistence.sqlite import Database, get_token_pair, save_token_pair
from trakt_mediator.config.settings import get_trakt_keys

log = get_logger(__name__)

SERVICE = "trakt"


class TokenLifecycleManager:
    def __init__(
        self,
        client: CacheAsideClient,
        database: Database,
        *,
        urls: Optional[URLManager] = None,
    ) -> None:
        self._client = client
        self._db = database
        self._urls = urls or URLManager()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Authenticated calls
    # ------------------------------------------------------------------
    def call_authenticated(
        self,
        username: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        method: str = "GET",
        body: Optional[Any] = None,
        ttl: Optional[int] = None,
        use_cache: bool = True,
    ) -> Any:
        pair = self.get_tokens(username)
        url = self.url_for(endpoint, params)

        try:
            return self._client.request(
                method, url, body=body, credential=pair.access_token, ttl=ttl, use_cache=use_cache
            )
        except AuthExpiredError:
            log.warning("Token expired for user %s, refreshing token...", username)

        fresh = self.refresh(username, stale_access_token=pair.access_token)
        return self._client.request(
            method, url, body=body, credential=fresh.access_token, ttl=ttl, use_cache=use_cache
        )

    def authenticated_get(self, username: str, endpoint: str, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Any:
        return self.call_authenticated(username, endpoint, params, method="GET", **kwargs)

    def authenticated_post(
        self,
        username: str,
        endpoint: str,
        body: Any,
        params: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> Any:
        return self.call_authenticated(username, endpoint, params, method="POST", body=body, **kwargs)

    def url_for(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
        url, _ = self._urls.build(SERVICE, endpoint, params)
        return url

    # ------------------------------------------------------------------
    # Token storage
    # ------------------------------------------------------------------
    def get_tokens(self, username: str) -> TokenPair:
        with self._db.connection() as conn:
            pair = get_token_pair(conn, username)
        if pair is None:
            raise MissingTokenError(username)
        return pair

    def store_tokens(self, username: str, access_token: str, refresh_token: str) -> TokenPair:
        with self._db.transaction() as conn:
            save_token_pair(conn, username, access_token, refresh_token)
            pair = get_token_pair(conn, username)
        if pair is None:
            raise MissingTokenError(username)
        log.info("Tokens stored for user %s", username)
        return pair

    # ------------------------------------------------------------------
    # OAuth grants
    # ------------------------------------------------------------------
    def refresh(self, username: str, *, stale_access_token: Optional[str] = None) -> TokenPair:
        """Exchange the stored refresh token and persist the new pair.

        When ``stale_access_token`` is given and another caller already
        rotated it while this one waited for the lock, the stored pair is
        returned without a second exchange.
        """

        with self._user_lock(username):
            current = self.get_tokens(username)
            if stale_access_token is not None and current.access_token != stale_access_token:
                log.debug("Token for user %s already refreshed by a concurrent caller", username)
                return current

            try:
                token = self._grant({"refresh_token": current.refresh_token, "grant_type": "refresh_token"})
            except (RemoteError, ValidationError, ConfigError) as exc:
                log.error("Error refreshing Trakt token for user %s: %s", username, exc)
                raise AuthRefreshFailedError(username, str(exc)) from exc

            pair = self.store_tokens(username, token.access_token, token.refresh_token)
            log.info("Token refreshed for user %s", username)
            return pair

    def exchange_code(self, code: str) -> OAuthToken:
        """Authorization-code grant; the response is never cached."""

        return self._grant({"code": code, "grant_type": "authorization_code"})

    def fetch_profile(self, access_token: str) -> UserProfile:
        url = self.url_for(self._urls.endpoint(SERVICE, "users", "profile", username="me"))
        payload = self._client.request("GET", url, credential=access_token, use_cache=False)
        return UserProfile.model_validate(payload)

    def authorize(self, code: str) -> TokenPair:
        """Exchange ``code``, resolve the Trakt username and store the pair under it."""

        token = self.exchange_code(code)
        profile = self.fetch_profile(token.access_token)
        return self.store_tokens(profile.username, token.access_token, token.refresh_token)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _grant(self, grant: Mapping[str, str]) -> OAuthToken:
        keys = get_trakt_keys()
        if not keys["client_id"] or not keys["client_secret"]:
            raise ConfigError("TRAKT_CLIENT_ID and TRAKT_CLIENT_SECRET must be set")

        body = {
            **grant,
            "client_id": keys["client_id"],
            "client_secret": keys["client_secret"],
            "redirect_uri": keys["redirect_uri"],
        }
        url = self.url_for(self._urls.endpoint(SERVICE, "oauth", "token"))
        payload = self._client.request("POST", url, body=body, use_cache=False)
        return OAuthToken.model_validate(payload)

    def _user_lock(self, username: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(username)
            if lock is None:
                lock = self._locks[username] = threading.Lock()
            return lock


__all__ = ["TokenLifecycleManager"]
