"""Rate-limit records and limiter decisions."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from evidence_guard.utils.time import isoformat

DEFAULT_BLOCK_REASON = "Too many requests"


@dataclass(frozen=True)
class HitRecord:
    """One attempted action by an identity key."""

    key: str
    action: str
    timestamp: datetime
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class Block:
    """Deny-all state for a ``(key, action)`` pair until ``blocked_until``."""

    key: str
    action: str
    blocked_until: datetime
    reason: str = DEFAULT_BLOCK_REASON
    violation_count: int = 1
    created_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.blocked_until > now


@dataclass(frozen=True)
class Violation:
    """Append-only audit entry written when a threshold is crossed."""

    key: str
    action: str
    timestamp: datetime
    attempt_count: int
    details: Dict[str, Any] = field(default_factory=dict)
    user_agent: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class Decision:
    """Outcome of a rate-limit check."""

    allowed: bool
    hits: int
    limit: int
    remaining: int
    window_seconds: int
    retry_after_seconds: Optional[int] = None
    blocked_until: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def warning(self) -> bool:
        return False

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "allowed": self.allowed,
            "current_attempts": self.hits,
            "max_attempts": self.limit,
            "remaining_attempts": self.remaining,
            "window_seconds": self.window_seconds,
        }
        if self.warning:
            payload["warning"] = True
        if self.retry_after_seconds is not None:
            payload["retry_after_seconds"] = self.retry_after_seconds
            payload["retry_after_minutes"] = round(self.retry_after_seconds / 60, 1)
        if self.blocked_until is not None:
            payload["blocked_until"] = isoformat(self.blocked_until)
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass(frozen=True, kw_only=True)
class Allowed(Decision):
    allowed: bool = True


@dataclass(frozen=True, kw_only=True)
class AllowedWithWarning(Allowed):
    """Allowed, but within the configured margin of the threshold."""

    @property
    def warning(self) -> bool:
        return True


@dataclass(frozen=True, kw_only=True)
class Denied(Decision):
    allowed: bool = False
