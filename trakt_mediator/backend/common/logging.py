from __future__ import annotations

import json
import logging
import sys
import time
from typing import Any, MutableMapping, Optional, TextIO

_ROOT_LOGGER = "trakt_mediator"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: MutableMapping[str, Any] = {
            "ts": int(time.time() * 1000),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for k, v in record.__dict__.items():
            if k not in _RECORD_ATTRS:
                payload[k] = v

        return json.dumps(payload, ensure_ascii=False, default=str)


def resolve_level(level: str) -> int:
    return _LEVELS.get(level.strip().upper(), logging.INFO)


def init_logging(level: str = "INFO", *, stream: Optional[TextIO] = None) -> None:
    root = logging.getLogger(_ROOT_LOGGER)

    # Idempotent: clear existing handlers to avoid duplication
    for h in list(root.handlers):
        root.removeHandler(h)

    root.setLevel(resolve_level(level))
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.propagate = False


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(_ROOT_LOGGER)
    if name == _ROOT_LOGGER or name.startswith(_ROOT_LOGGER + "."):
        return logging.getLogger(name)

    return logging.getLogger(f"{_ROOT_LOGGER}.{name}")
