from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, TypedDict


class HealthReport(TypedDict):
    status: Literal["ok", "degraded", "fail"]
    components: dict[str, Literal["ok", "degraded", "fail"]]


class SyncStatus(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    payload: Any
    headers: Mapping[str, str] = field(default_factory=dict)
