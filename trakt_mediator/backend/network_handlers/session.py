from __future__ import annotations

import socket
from typing import Any, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter

from trakt_mediator.backend.common.errors import (
    AuthExpiredError,
    RateLimitedError,
    RemoteError,
    RemoteRequestError,
    TransientRemoteError,
)
from trakt_mediator.backend.common.logging import get_logger
from trakt_mediator.backend.common.types import TransportResponse

log = get_logger(__name__)


def _map_http_error(status: int, url: str) -> RemoteError:
    if status == 401: return AuthExpiredError("401 Unauthorized", status_code=status, url=url)
    if status == 429: return RateLimitedError("429 Too Many Requests", status_code=status, url=url)
    if status == 408: return TransientRemoteError("408 Request Timeout", status_code=status, url=url)
    if 500 <= status < 600: return TransientRemoteError(f"{status} Upstream error", status_code=status, url=url)

    return RemoteRequestError(f"{status} HTTP error", status_code=status, url=url)


class HttpSession:
    """
    Transport used underneath the request queue:
      - exactly one attempt per call; ``timeout`` is the only deadline
      - 401 surfaces as AuthExpiredError, distinct from every other failure
      - JSON bodies are decoded before returning
    """

    def __init__(self, timeout: float = 20, *, pool_maxsize: int = 16) -> None:
        self.timeout = timeout

        self._session = requests.Session()
        self._session.mount("http://", HTTPAdapter(pool_connections=8, pool_maxsize=pool_maxsize))
        self._session.mount("https://", HTTPAdapter(pool_connections=8, pool_maxsize=pool_maxsize))

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Any] = None,
    ) -> TransportResponse:
        try:
            resp = self._session.request(
                method=method.upper(),
                url=url,
                headers=dict(headers or {}),
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientRemoteError(f"Timeout: {e}", url=url) from e
        except requests.exceptions.ConnectionError as e:
            if isinstance(getattr(e, "__cause__", None), socket.gaierror):
                raise TransientRemoteError(f"DNS failure: {e}", url=url) from e
            raise TransientRemoteError(f"Connection failed: {e}", url=url) from e
        except requests.exceptions.RequestException as e:
            raise TransientRemoteError(str(e), url=url) from e

        status = resp.status_code
        if status >= 400:
            raise _map_http_error(status, url)

        return TransportResponse(
            status_code=status,
            payload=self._decode(resp, url),
            headers=dict(resp.headers or {}),
        )

    def close(self) -> None:
        self._session.close()

    def _decode(self, resp: requests.Response, url: str) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientRemoteError("Remote returned invalid JSON", status_code=resp.status_code, url=url) from exc


__all__ = ["HttpSession"]
