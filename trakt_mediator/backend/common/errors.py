from __future__ import annotations

from typing import Optional


class MediatorError(Exception):
    """Base for all trakt_mediator exceptions."""


class ConfigError(MediatorError):
    """Configuration related issues."""


class IntervalConfigError(ConfigError):
    """Unparseable history refresh interval."""


class RateLimitConfigError(ConfigError):
    """Malformed rate/concurrency budget."""


class TaskError(MediatorError):
    """Request queue scheduling issues."""


class RemoteError(MediatorError):
    """A call to the remote service failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class TransientRemoteError(RemoteError):
    """Network failure, timeout or 5xx."""


class AuthExpiredError(RemoteError):
    """The presented credential was rejected (HTTP 401)."""


class RateLimitedError(RemoteError):
    """The remote service answered 429."""


class RemoteRequestError(RemoteError):
    """Any other non-retryable 4xx."""


class AuthRefreshFailedError(MediatorError):
    """Exchanging the refresh token for a new pair failed."""

    def __init__(self, username: str, reason: str) -> None:
        super().__init__(f"Token refresh failed for {username}: {reason}")
        self.username = username
        self.reason = reason


class MissingTokenError(MediatorError):
    """No token pair is stored for the user."""

    def __init__(self, username: str) -> None:
        super().__init__(f"No access token found for user {username}")
        self.username = username


class ReconciliationError(MediatorError):
    """The history upsert transaction was rolled back."""
