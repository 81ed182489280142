"""Sliding-window rate limiter with blocking and violation logging."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Mapping, Optional, Sequence

from evidence_guard.errors import StoreError, ValidationError
from evidence_guard.models import (
    DEFAULT_BLOCK_REASON,
    Allowed,
    AllowedWithWarning,
    Decision,
    Denied,
)
from evidence_guard.store.base import RateLimitStore, RateLimitUnit
from evidence_guard.utils.paths import path_matches
from evidence_guard.utils.time import Clock, SystemClock

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationPolicy:
    """Longer blocks for repeat offenders.

    A violation is a repeat when the partition's previous block ended no more
    than ``window_seconds`` before it.
    """

    multiplier: float = 2.0
    window_seconds: int = 86400
    max_block_seconds: int = 86400


@dataclass(frozen=True)
class RateLimitConfig:
    """Thresholds for one rate-limit domain."""

    max_hits: int
    window_seconds: int
    block_duration_seconds: int = 3600
    warning_margin: int = 0
    escalation: Optional[EscalationPolicy] = None
    fail_open: bool = False
    reason: str = DEFAULT_BLOCK_REASON


@dataclass(frozen=True)
class RateLimitRule:
    """Maps a request path pattern to an action label and its thresholds."""

    pattern: str
    action: str
    config: RateLimitConfig
    message: str = "Too many requests. Please slow down."


def _validate(key: str, action: str, config: RateLimitConfig) -> None:
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("Rate-limit key must be a non-empty string.")
    if not isinstance(action, str) or not action.strip():
        raise ValidationError("Rate-limit action must be a non-empty string.")
    if config.max_hits < 1:
        raise ValidationError("max_hits must be at least 1.")
    if config.window_seconds <= 0:
        raise ValidationError("window_seconds must be positive.")
    if config.block_duration_seconds <= 0:
        raise ValidationError("block_duration_seconds must be positive.")
    if config.warning_margin < 0:
        raise ValidationError("warning_margin cannot be negative.")
    policy = config.escalation
    if policy is not None:
        if policy.multiplier < 1:
            raise ValidationError("Escalation multiplier must be at least 1.")
        if policy.window_seconds < 0 or policy.max_block_seconds <= 0:
            raise ValidationError("Escalation window and maximum block must be positive.")


def _seconds_until(instant: datetime, now: datetime) -> int:
    return max(0, math.ceil((instant - now).total_seconds()))


class RateLimiter:
    """Decides allow/deny per identity key and action against a shared store.

    The whole read-count, write-hit, block and violation sequence for one
    request runs inside a single ``run_atomic`` unit, so concurrent requests
    for the same ``(key, action)`` cannot both pass on a stale count.
    """

    def __init__(
        self,
        store: RateLimitStore,
        clock: Optional[Clock] = None,
        default_config: Optional[RateLimitConfig] = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.default_config = default_config or RateLimitConfig(max_hits=30, window_seconds=60)

    def check(
        self,
        key: str,
        action: str,
        config: Optional[RateLimitConfig] = None,
        *,
        user_agent: Optional[str] = None,
    ) -> Decision:
        """Record an attempt and return the decision.

        Raises:
            ValidationError: malformed key, action or config; nothing is written.
            StoreError: the store failed; nothing is written.
        """

        config = config or self.default_config
        _validate(key, action, config)
        return self._store.run_atomic(
            key, action, lambda unit: self._decide(unit, key, action, config, user_agent)
        )

    def guard(
        self,
        key: str,
        action: str,
        config: Optional[RateLimitConfig] = None,
        *,
        user_agent: Optional[str] = None,
    ) -> Decision:
        """Like :meth:`check`, resolving store failures by ``config.fail_open``."""

        config = config or self.default_config
        try:
            return self.check(key, action, config, user_agent=user_agent)
        except StoreError:
            LOGGER.exception(
                "rate-limit store unavailable",
                extra={"key": key, "action": action, "fail_open": config.fail_open},
            )
            if config.fail_open:
                return Allowed(
                    hits=0,
                    limit=config.max_hits,
                    remaining=config.max_hits,
                    window_seconds=config.window_seconds,
                )
            return Denied(
                hits=0,
                limit=config.max_hits,
                remaining=0,
                window_seconds=config.window_seconds,
                retry_after_seconds=config.window_seconds,
                message="Rate limiting is temporarily unavailable. Please try again later.",
            )

    def status(
        self, key: str, action: str, config: Optional[RateLimitConfig] = None
    ) -> Decision:
        """Return the current decision without recording an attempt."""

        config = config or self.default_config
        _validate(key, action, config)
        now = self._clock.now()
        block = self._store.get_active_block(key, action, now)
        count = self._store.count_hits_since(
            key, action, now - timedelta(seconds=config.window_seconds)
        )
        common = dict(hits=count, limit=config.max_hits, window_seconds=config.window_seconds)
        if block is not None:
            return Denied(
                remaining=0,
                retry_after_seconds=_seconds_until(block.blocked_until, now),
                blocked_until=block.blocked_until,
                **common,
            )
        if count >= config.max_hits:
            return Denied(remaining=0, **common)
        return Allowed(remaining=config.max_hits - count, **common)

    def has_already_submitted(
        self, key: str, action: str, config: Optional[RateLimitConfig] = None
    ) -> bool:
        """Return ``True`` when the key has any attempt inside the window."""

        config = config or self.default_config
        _validate(key, action, config)
        since = self._clock.now() - timedelta(seconds=config.window_seconds)
        return self._store.count_hits_since(key, action, since) > 0

    def _decide(
        self,
        unit: RateLimitUnit,
        key: str,
        action: str,
        config: RateLimitConfig,
        user_agent: Optional[str],
    ) -> Decision:
        # Read under the partition lock, after any wait for it.
        now = self._clock.now()
        block = unit.get_active_block(key, action, now)
        if block is not None:
            retry_after = _seconds_until(block.blocked_until, now)
            return Denied(
                hits=config.max_hits,
                limit=config.max_hits,
                remaining=0,
                window_seconds=config.window_seconds,
                retry_after_seconds=retry_after,
                blocked_until=block.blocked_until,
                message=(
                    "You are temporarily blocked. "
                    f"Please try again in {math.ceil(retry_after / 60)} minutes."
                ),
            )

        unit.insert_hit(key, action, now, user_agent)
        since = now - timedelta(seconds=config.window_seconds)
        count = unit.count_hits_since(key, action, since)

        if count <= config.max_hits:
            remaining = config.max_hits - count
            decision_type = Allowed
            if config.warning_margin and remaining <= config.warning_margin:
                decision_type = AllowedWithWarning
            return decision_type(
                hits=count,
                limit=config.max_hits,
                remaining=remaining,
                window_seconds=config.window_seconds,
            )

        duration, violation_count = self._block_duration(unit, key, action, config, now)
        blocked_until = now + timedelta(seconds=duration)
        unit.upsert_block(key, action, blocked_until, config.reason, violation_count)
        unit.insert_violation(
            key,
            action,
            now,
            count,
            {
                "window_seconds": config.window_seconds,
                "max_attempts": config.max_hits,
                "block_seconds": duration,
                "violation_count": violation_count,
            },
            user_agent,
        )
        LOGGER.warning(
            "rate limit exceeded",
            extra={"key": key, "action": action, "hits": count, "block_seconds": duration},
        )
        retry_after = _seconds_until(blocked_until, now)
        return Denied(
            hits=count,
            limit=config.max_hits,
            remaining=0,
            window_seconds=config.window_seconds,
            retry_after_seconds=retry_after,
            blocked_until=blocked_until,
            message=f"Too many attempts. Please try again in {math.ceil(retry_after / 60)} minutes.",
        )

    def _block_duration(
        self,
        unit: RateLimitUnit,
        key: str,
        action: str,
        config: RateLimitConfig,
        now: datetime,
    ) -> tuple[int, int]:
        base = config.block_duration_seconds
        previous = unit.get_block(key, action)
        policy = config.escalation
        if previous is None or policy is None:
            return base, 1
        if previous.blocked_until < now - timedelta(seconds=policy.window_seconds):
            return base, 1
        violation_count = previous.violation_count + 1
        duration = base * policy.multiplier ** (violation_count - 1)
        return int(min(duration, policy.max_block_seconds)), violation_count


def _per(max_hits: int, window_seconds: int) -> RateLimitConfig:
    return RateLimitConfig(max_hits=max_hits, window_seconds=window_seconds)


DEFAULT_RULES: Sequence[RateLimitRule] = (
    RateLimitRule(
        "/api/auth/signin",
        "sign_in",
        _per(5, 900),
        "Too many login attempts. Please try again later.",
    ),
    RateLimitRule(
        "/api/auth/signup",
        "sign_up",
        _per(3, 3600),
        "Too many signup attempts. Please try again later.",
    ),
    RateLimitRule(
        "/api/submit-evidence",
        "submit_evidence",
        _per(10, 3600),
        "Too many submissions. Please try again later.",
    ),
    RateLimitRule(
        "/api/delete-account",
        "delete_account",
        _per(2, 86400),
        "Account deletion rate limit exceeded.",
    ),
    RateLimitRule("/api/*", "api", _per(30, 60)),
    RateLimitRule("/*", "page", _per(60, 60)),
)


def resolve_rule(path: str, rules: Sequence[RateLimitRule] = DEFAULT_RULES) -> Optional[RateLimitRule]:
    """Return the first rule whose pattern matches ``path``."""

    for rule in rules:
        if path_matches(path, rule.pattern):
            return rule
    return None


def with_policy(rules: Sequence[RateLimitRule], base: RateLimitConfig) -> tuple[RateLimitRule, ...]:
    """Apply the deployment's blocking policy to each rule, keeping its thresholds."""

    return tuple(
        replace(
            rule,
            config=replace(
                base,
                max_hits=rule.config.max_hits,
                window_seconds=rule.config.window_seconds,
            ),
        )
        for rule in rules
    )


def client_identifier(headers: Mapping[str, str], fallback: str = "unknown") -> str:
    """Pick the identity key for a request: user id, then forwarded IP, then peer."""

    user_id = (headers.get("x-user-id") or "").strip()
    if user_id:
        return f"user:{user_id}"
    forwarded = headers.get("x-forwarded-for") or ""
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or fallback


__all__ = [
    "DEFAULT_RULES",
    "EscalationPolicy",
    "RateLimitConfig",
    "RateLimitRule",
    "RateLimiter",
    "client_identifier",
    "resolve_rule",
    "with_policy",
]
