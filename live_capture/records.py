"""Value types exchanged between the scheduler and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


def normalize_username(raw: str) -> str:
    """Strip whitespace and any leading ``@`` from an account handle."""

    return raw.strip().lstrip("@").strip()


class AuditStatus(str, Enum):
    CHECKING = "checking"
    CAPTURED = "captured"
    NOT_LIVE = "not_live"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class AccountRef:
    username: str
    country: Optional[str] = None
    account_id: Optional[str] = None


@dataclass(slots=True)
class ScreenshotArtifact:
    username: str
    data: bytes
    captured_at: datetime
    capture_method: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class SchedulerAuditRecord:
    """One row of the append-only scheduler audit trail."""

    username: str
    status: AuditStatus
    message: str
    error: Optional[str] = None
    duration_ms: int = 0
    screenshot_id: Optional[str] = None
    black_warnings: int = 0
    render_timeouts: int = 0
    recovered_captures: int = 0
    details: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(slots=True, frozen=True)
class ExpiredScreenshot:
    id: str
    storage_path: Optional[str]


__all__ = [
    "AccountRef",
    "AuditStatus",
    "ExpiredScreenshot",
    "SchedulerAuditRecord",
    "ScreenshotArtifact",
    "normalize_username",
]
