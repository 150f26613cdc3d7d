from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

_CONFIG_DIR = Path(__file__).resolve().parent.parent
_PACKAGE_ROOT = _CONFIG_DIR.parent

load_dotenv(_PACKAGE_ROOT / ".env")
load_dotenv()

_DEFAULT_CONFIG_PATHS = {
    "information_provider_settings": str(_CONFIG_DIR / "informationproviderservicesettings.json"),
    "cache_root": str(_PACKAGE_ROOT / "var" / "cache"),
    "info_providers_cache": str(_PACKAGE_ROOT / "var" / "cache" / "info_providers"),
    "database": str(_PACKAGE_ROOT / "var" / "trakt_mediator.db"),
}

# Environment variables that override a default path.
_ENV_OVERRIDES = {
    "information_provider_settings": "MEDIATOR_PROVIDER_SETTINGS",
    "info_providers_cache": "MEDIATOR_CACHE_DIR",
    "database": "MEDIATOR_DATABASE_PATH",
}

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def expand_env_in_str(value: str) -> str:
    """Expand ``${VAR}`` tokens within a string."""

    def _repl(match: re.Match[str]) -> str:
        var = match.group(1)
        return os.getenv(var, "")

    return _ENV_PATTERN.sub(_repl, value)


def expand_env(obj: Any) -> Any:
    """Recursively expand environment variables in nested structures."""
    if isinstance(obj, str):
        return expand_env_in_str(obj)
    if isinstance(obj, list):
        return [expand_env(v) for v in obj]
    if isinstance(obj, dict):
        return {k: expand_env(v) for k, v in obj.items()}

    return obj


def read_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def load_config_paths() -> Dict[str, str]:
    merged = dict(_DEFAULT_CONFIG_PATHS)
    for key, env_var in _ENV_OVERRIDES.items():
        override = os.getenv(env_var)
        if override:
            merged[key] = override

    return {key: str(Path(value).expanduser().resolve()) for key, value in merged.items()}


def get_path(key: str) -> str:
    # Resolved per call so environment overrides set after import still apply.
    return load_config_paths()[key]


def get_provider_settings_path() -> Path:
    return Path(get_path("information_provider_settings"))


def get_cache_root() -> str:
    return get_path("cache_root")


def get_info_providers_cache_dir() -> str:
    return get_path("info_providers_cache")


def get_database_path() -> Path:
    path = Path(get_path("database"))
    path.parent.mkdir(parents=True, exist_ok=True)

    return path


__all__ = [
    "expand_env",
    "expand_env_in_str",
    "get_cache_root",
    "get_database_path",
    "get_info_providers_cache_dir",
    "get_path",
    "get_provider_settings_path",
    "load_config_paths",
    "read_json",
]
