from __future__ import annotations

import threading
from typing import Any, Dict, Mapping, Optional

from .paths import expand_env, get_provider_settings_path, read_json

_LOCK = threading.Lock()
_RAW_SETTINGS: Optional[Dict[str, Any]] = None


def load_information_provider_settings(*, reload: bool = False) -> Dict[str, Any]:
    """Return the raw (unexpanded) provider settings document."""

    global _RAW_SETTINGS
    with _LOCK:
        if _RAW_SETTINGS is None or reload:
            _RAW_SETTINGS = read_json(get_provider_settings_path())

        return _RAW_SETTINGS


def _provider_settings() -> Dict[str, Any]:
    return load_information_provider_settings().get("providers", {}) or {}


def list_provider_configs() -> Dict[str, Dict[str, Any]]:
    providers = _provider_settings()
    result: Dict[str, Dict[str, Any]] = {}
    for name, cfg in providers.items():
        if isinstance(cfg, Mapping):
            result[name] = expand_env(dict(cfg))
        else:
            result[name] = {}

    return result


def get_service_config(service: str) -> Optional[Dict[str, Any]]:
    """Provider block with ``${VAR}`` references expanded at call time."""

    cfg = _provider_settings().get(service)
    if not isinstance(cfg, Mapping):
        return None

    return expand_env(dict(cfg))


def get_default_headers(service: str) -> Dict[str, str]:
    cfg = get_service_config(service) or {}
    headers = cfg.get("default_headers", {}) or {}

    return {str(k): str(v) for k, v in headers.items()}


def get_base_url(service: str) -> Optional[str]:
    cfg = get_service_config(service)
    if not cfg:
        return None

    return cfg.get("base_url")


def get_trakt_keys() -> Dict[str, Optional[str]]:
    cfg = get_service_config("trakt") or {}

    return {
        "client_id": cfg.get("client_id") or None,
        "client_secret": cfg.get("client_secret") or None,
        "redirect_uri": cfg.get("redirect_uri") or None,
    }


def get_fanart_api_key() -> Optional[str]:
    cfg = get_service_config("fanart") or {}

    return cfg.get("api_key") or None


def get_provider_endpoints(service: str) -> Mapping[str, Any]:
    cfg = get_service_config(service) or {}

    return cfg.get("endpoints", {}) or {}


__all__ = [
    "get_base_url",
    "get_default_headers",
    "get_fanart_api_key",
    "get_provider_endpoints",
    "get_service_config",
    "get_trakt_keys",
    "list_provider_configs",
    "load_information_provider_settings",
]
