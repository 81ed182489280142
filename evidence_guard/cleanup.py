"""Retention sweep for raw rate-limit hits."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from evidence_guard.errors import StoreError, ValidationError
from evidence_guard.store.base import RateLimitStore
from evidence_guard.utils.time import Clock, SystemClock

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7


@dataclass(frozen=True)
class CleanupResult:
    deleted: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"deleted": self.deleted}
        if self.error is not None:
            payload["error"] = self.error
        return payload


def cleanup_old_records(
    store: RateLimitStore,
    retention_days: float = DEFAULT_RETENTION_DAYS,
    clock: Optional[Clock] = None,
) -> CleanupResult:
    """Delete hits older than ``retention_days``.

    Blocks and violations follow their own retention and are left alone. Store
    failures are reported in the result rather than raised; retrying is up to
    the scheduler that invoked the sweep.
    """

    if retention_days < 0:
        raise ValidationError("retention_days cannot be negative.")
    cutoff = (clock or SystemClock()).now() - timedelta(days=retention_days)
    try:
        deleted = store.delete_hits_older_than(cutoff)
    except StoreError as exc:
        LOGGER.error("rate-limit cleanup failed", extra={"detail": str(exc)})
        return CleanupResult(deleted=0, error=str(exc))
    LOGGER.info("rate-limit cleanup finished", extra={"deleted": deleted})
    return CleanupResult(deleted=deleted)
