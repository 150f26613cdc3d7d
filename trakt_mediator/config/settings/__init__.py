from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

__all__ = [
    "Settings",
    "core",
    "paths",
    "providers",
    "expand_env",
    "get_base_url",
    "get_cache_root",
    "get_database_path",
    "get_default_headers",
    "get_fanart_api_key",
    "get_info_providers_cache_dir",
    "get_provider_endpoints",
    "get_service_config",
    "get_settings",
    "get_trakt_keys",
    "list_provider_configs",
    "load_information_provider_settings",
    "parse_cache_duration",
    "parse_fetch_interval",
    "parse_rate_budget",
]

_MODULE_EXPORTS = {
    "core": {
        "Settings",
        "get_settings",
        "parse_cache_duration",
        "parse_fetch_interval",
        "parse_rate_budget",
    },
    "paths": {
        "expand_env",
        "get_cache_root",
        "get_database_path",
        "get_info_providers_cache_dir",
    },
    "providers": {
        "get_base_url",
        "get_default_headers",
        "get_fanart_api_key",
        "get_provider_endpoints",
        "get_service_config",
        "get_trakt_keys",
        "list_provider_configs",
        "load_information_provider_settings",
    },
}

_SUBMODULE_NAMES = {"core", "paths", "providers"}

if TYPE_CHECKING:  # pragma: no cover - only for static analysis
    from . import core, paths, providers
    from .core import Settings, get_settings, parse_cache_duration, parse_fetch_interval, parse_rate_budget
    from .paths import expand_env, get_cache_root, get_database_path, get_info_providers_cache_dir
    from .providers import (
        get_base_url,
        get_default_headers,
        get_fanart_api_key,
        get_provider_endpoints,
        get_service_config,
        get_trakt_keys,
        list_provider_configs,
        load_information_provider_settings,
    )


def __getattr__(name: str) -> Any:
    if name in _SUBMODULE_NAMES:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module

    for module_name, symbols in _MODULE_EXPORTS.items():
        if name in symbols:
            module = importlib.import_module(f"{__name__}.{module_name}")
            value = getattr(module, name)
            globals()[name] = value
            return value

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:
    exported = set(__all__)
    exported.update(_SUBMODULE_NAMES)
    for symbols in _MODULE_EXPORTS.values():
        exported.update(symbols)
    exported.update(globals().keys())
    return sorted(exported)
