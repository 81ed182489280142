"""File-backed cache of aggregate submission statistics.

The cron refresh rebuilds the cache from the backend once a day; readers only
ever see the last successfully written snapshot or an empty fallback.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from evidence_guard.errors import EvidenceGuardError
from evidence_guard.utils.time import Clock, SystemClock, isoformat, parse_timestamp

LOGGER = logging.getLogger(__name__)

CACHE_VERSION = "1.0"

_NEGATIVE_CMS_RESPONSES = {
    "told_irrelevant",
    "cannot_change",
    "couldnt_get_through",
    "complaint_ignored",
}


class SubmissionSource(Protocol):
    def fetch_submissions(self) -> List[Dict[str, Any]]:
        ...


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _evidence(submission: Dict[str, Any]) -> Dict[str, Any]:
    data = submission.get("evidence_data")
    return data if isinstance(data, dict) else {}


def _children(submission: Dict[str, Any]) -> int:
    evidence = _evidence(submission)
    for value in (
        evidence.get("children_affected"),
        submission.get("children_affected"),
        evidence.get("total_children"),
    ):
        if value in (None, ""):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return 0


def _parent_type(submission: Dict[str, Any]) -> Optional[str]:
    return _evidence(submission).get("parent_type") or submission.get("parent_type")


def _communication_failure(evidence: Dict[str, Any]) -> bool:
    if evidence.get("welfare_raised") in ("no", "not_sure_how"):
        return True
    responses = evidence.get("cms_response") or []
    return any(response in _NEGATIVE_CMS_RESPONSES for response in responses)


# Survey answer predicates for each reported percentage.
_PERCENTAGES = {
    "pct_welfare_failures": lambda e: e.get("welfare_assessment") in ("no_ignored", "never_asked"),
    "pct_affordability_problems": lambda e: bool(e.get("financial_impact"))
    and e.get("financial_impact") not in ("maintain_provision", "fully_covers"),
    "pct_severe_mental_health": lambda e: e.get("mental_health_scale") in ("severe", "crisis"),
    "pct_children_impacted": lambda e: e.get("children_severity")
    in ("moderate", "severe", "critical"),
    "pct_communication_failures": _communication_failure,
    "pct_serious_enforcement": lambda e: e.get("enforcement_impact")
    in ("severe", "crisis", "no_enforcement_despite_nonpayment"),
    "pct_shared_care_problems": lambda e: e.get("shared_care")
    in ("barely_recognized", "not_recognized", "unfair", "very_unfair"),
}


def empty_statistics(now: datetime) -> Dict[str, Any]:
    stamp = isoformat(now)
    stats: Dict[str, Any] = {
        "total_submissions": 0,
        "paying_parents": 0,
        "receiving_parents": 0,
        "total_children_affected": 0,
    }
    stats.update({name: 0 for name in _PERCENTAGES})
    stats.update(first_submission=stamp, last_submission=stamp, stats_generated_at=stamp)
    return stats


def calculate_statistics(submissions: Iterable[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    """Aggregate raw submission rows into the published statistics."""

    rows = list(submissions)
    total = len(rows)
    stats = empty_statistics(now)
    if not total:
        return stats

    stats["total_submissions"] = total
    stats["paying_parents"] = sum(1 for row in rows if _parent_type(row) == "paying")
    stats["receiving_parents"] = sum(1 for row in rows if _parent_type(row) == "receiving")
    stats["total_children_affected"] = sum(_children(row) for row in rows)
    for name, predicate in _PERCENTAGES.items():
        matches = sum(1 for row in rows if predicate(_evidence(row)))
        stats[name] = round(matches / total * 100)

    created = sorted(
        stamp for stamp in (parse_timestamp(row.get("created_at")) for row in rows) if stamp
    )
    if created:
        stats["first_submission"] = isoformat(created[0])
        stats["last_submission"] = isoformat(created[-1])
    return stats


class StatisticsCache:
    """JSON file holding ``{data, lastUpdated, source, version}``."""

    def __init__(
        self,
        path: str | Path,
        source: Optional[SubmissionSource] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._path = Path(path)
        self._source = source
        self._clock = clock or SystemClock()

    def fallback(self) -> Dict[str, Any]:
        now = self._clock.now()
        return {
            "data": empty_statistics(now),
            "lastUpdated": isoformat(now),
            "source": "fallback",
            "version": CACHE_VERSION,
        }

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            cached = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            LOGGER.warning("statistics cache unreadable", extra={"detail": str(exc)})
            return None
        if not isinstance(cached, dict) or cached.get("version") != CACHE_VERSION:
            LOGGER.warning("statistics cache version mismatch", extra={"path": str(self._path)})
            return None
        return cached

    def get(self) -> Dict[str, Any]:
        """Return the cached snapshot, or the empty fallback."""

        return self._read() or self.fallback()

    def set(self, data: Dict[str, Any], source: str = "database") -> None:
        payload = {
            "data": data,
            "lastUpdated": isoformat(self._clock.now()),
            "source": source,
            "version": CACHE_VERSION,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".statistics-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def exists(self) -> bool:
        return self._read() is not None

    def get_last_updated(self) -> datetime:
        stamp = parse_timestamp(self.get().get("lastUpdated"))
        return stamp or self._clock.now()

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)

    def update_from_database(self) -> RefreshResult:
        """Rebuild the snapshot from the backend.

        On failure an existing snapshot is kept; without one the empty
        fallback is written so readers always find a file.
        """

        try:
            if self._source is None:
                raise EvidenceGuardError("No submission source configured")
            submissions = self._source.fetch_submissions()
            stats = calculate_statistics(submissions, self._clock.now())
            self.set(stats, "database")
        except (EvidenceGuardError, OSError, ValueError) as exc:
            message = str(exc) or exc.__class__.__name__
            LOGGER.error("statistics refresh failed", extra={"detail": message})
            if not self.exists():
                self.set(empty_statistics(self._clock.now()), "fallback")
            return RefreshResult(success=False, error=message)
        return RefreshResult(success=True, data=stats)
