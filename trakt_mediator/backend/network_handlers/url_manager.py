from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

from trakt_mediator.config.settings import providers as provider_settings


# ----------------------------
# Data views (read-only access)
# ----------------------------

@dataclass(frozen=True)
class ServiceView:
    name: str
    base_url: str
    default_headers: Dict[str, str]
    endpoints: Dict[str, Any]


# ----------------------------
# URL Manager
# ----------------------------

class URLManager:
    """
    Builds service URLs and default headers from provider settings, without
    doing any network I/O.

    - Trakt: default headers carry ``trakt-api-version`` and ``trakt-api-key``
    - Fanart: ``api_key`` travels in the query string
    """

    def __init__(self, service_overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._overrides = {svc: dict(cfg or {}) for svc, cfg in (service_overrides or {}).items()}

    # -------- Public API --------

    def build(self, service: str, path: str, params: Optional[Mapping[str, Any]] = None) -> Tuple[str, Dict[str, str]]:
        """
        Build a full URL for a service-relative path. Returns (url, headers).
        ``None`` params are dropped; the remaining order is preserved.
        """
        view = self.view(service)
        query = {k: v for k, v in (params or {}).items() if v is not None}

        if service == "fanart":
            api_key = self._raw(service).get("api_key")
            if api_key and "api_key" not in query:
                query["api_key"] = api_key

        url = view.base_url.rstrip("/") + "/" + path.lstrip("/")
        if query:
            url = f"{url}?{urlencode(query, doseq=True)}"

        return url, dict(view.default_headers)

    def endpoint(self, service: str, *keys: str, **fmt: Any) -> str:
        """Resolve a nested endpoint template, e.g. ``endpoint("trakt", "users", "watched", ...)``."""

        node: Any = self.view(service).endpoints
        for key in keys:
            if not isinstance(node, Mapping) or key not in node:
                raise ValueError(f"Unknown endpoint {'.'.join(keys)!r} for service {service!r}")
            node = node[key]
        if not isinstance(node, str):
            raise ValueError(f"Endpoint {'.'.join(keys)!r} for service {service!r} is not a path template")

        return node.format(**fmt)

    def service_headers(self, service: str) -> Dict[str, str]:
        return dict(self.view(service).default_headers)

    def view(self, service: str) -> ServiceView:
        raw = self._raw(service)
        if not raw:
            raise ValueError(f"Unknown service '{service}'")

        return ServiceView(
            name=service,
            base_url=str(raw.get("base_url") or ""),
            default_headers={str(k): str(v) for k, v in (raw.get("default_headers") or {}).items()},
            endpoints=dict(raw.get("endpoints") or {}),
        )

    # -------- Internals --------

    def _raw(self, service: str) -> Dict[str, Any]:
        merged = dict(provider_settings.get_service_config(service) or {})
        merged.update(self._overrides.get(service, {}))
        return merged
