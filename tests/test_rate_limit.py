from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest import mock

import pytest

from evidence_guard.errors import StoreError, StoreTimeoutError, ValidationError
from evidence_guard.models import Allowed, AllowedWithWarning, Denied
from evidence_guard.rate_limit import (
    DEFAULT_RULES,
    EscalationPolicy,
    RateLimitConfig,
    RateLimiter,
    client_identifier,
    resolve_rule,
    with_policy,
)
from evidence_guard.store import InMemoryRateLimitStore

KEY = "203.0.113.7"
ACTION = "submit_evidence"


def hits_in_window(store, clock, config):
    return store.count_hits_since(KEY, ACTION, clock.now() - timedelta(seconds=config.window_seconds))


def test_allows_up_to_max_hits(store, clock):
    config = RateLimitConfig(max_hits=3, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)

    decisions = [limiter.check(KEY, ACTION, config) for _ in range(3)]

    assert all(isinstance(d, Allowed) for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]
    assert store.get_active_block(KEY, ACTION, clock.now()) is None


def test_hit_after_max_is_denied_and_blocks(store, clock):
    config = RateLimitConfig(max_hits=3, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)
    for _ in range(3):
        limiter.check(KEY, ACTION, config)

    decision = limiter.check(KEY, ACTION, config, user_agent="curl/8.0")

    assert isinstance(decision, Denied)
    assert decision.retry_after_seconds == 300
    block = store.get_active_block(KEY, ACTION, clock.now())
    assert block is not None
    assert block.blocked_until == clock.now() + timedelta(seconds=300)
    assert block.violation_count == 1
    violations = store.recent_violations(10)
    assert len(violations) == 1
    assert violations[0].attempt_count == 4
    assert violations[0].user_agent == "curl/8.0"
    assert violations[0].details["max_attempts"] == 3


def test_active_block_denies_without_recording_hits(store, clock):
    config = RateLimitConfig(max_hits=1, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)
    before = hits_in_window(store, clock, config)

    clock.advance(10)
    decision = limiter.check(KEY, ACTION, config)

    assert isinstance(decision, Denied)
    assert decision.retry_after_seconds == 290
    assert "temporarily blocked" in decision.message
    assert store.count_hits_since(KEY, ACTION, clock.now() - timedelta(seconds=3600)) == before
    assert len(store.recent_violations(10)) == 1


def test_allows_again_after_block_expires(store, clock):
    config = RateLimitConfig(max_hits=1, window_seconds=60, block_duration_seconds=120)
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)

    clock.advance(120)
    assert isinstance(limiter.check(KEY, ACTION, config), Allowed)


def test_block_ends_exactly_at_blocked_until(store, clock):
    config = RateLimitConfig(max_hits=1, window_seconds=10, block_duration_seconds=30)
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)

    clock.advance(29)
    assert isinstance(limiter.check(KEY, ACTION, config), Denied)
    clock.advance(1)
    assert isinstance(limiter.check(KEY, ACTION, config), Allowed)


def test_five_per_minute_scenario(store, clock):
    config = RateLimitConfig(max_hits=5, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)
    decisions = []
    for second in range(6):
        if second:
            clock.advance(1)
        decisions.append(limiter.check(KEY, ACTION, config))

    assert all(isinstance(d, Allowed) for d in decisions[:5])
    assert isinstance(decisions[5], Denied)
    assert decisions[5].retry_after_seconds == 300

    clock.advance(301)
    assert isinstance(limiter.check(KEY, ACTION, config), Allowed)


def test_window_slides(store, clock):
    config = RateLimitConfig(max_hits=2, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    clock.advance(30)
    limiter.check(KEY, ACTION, config)
    clock.advance(31)

    decision = limiter.check(KEY, ACTION, config)

    assert isinstance(decision, Allowed)
    assert decision.hits == 2


def test_actions_and_keys_are_independent(store, clock):
    config = RateLimitConfig(max_hits=1, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)

    assert isinstance(limiter.check(KEY, "sign_in", config), Allowed)
    assert isinstance(limiter.check("198.51.100.1", ACTION, config), Allowed)


def test_warning_margin(store, clock):
    config = RateLimitConfig(max_hits=3, window_seconds=60, warning_margin=1)
    limiter = RateLimiter(store, clock=clock)

    first, second, third = (limiter.check(KEY, ACTION, config) for _ in range(3))

    assert type(first) is Allowed
    assert isinstance(second, AllowedWithWarning)
    assert second.remaining == 1
    assert second.as_dict()["warning"] is True
    assert isinstance(third, AllowedWithWarning)


def test_escalation_doubles_repeat_blocks(store, clock):
    policy = EscalationPolicy(multiplier=2, window_seconds=1000, max_block_seconds=350)
    config = RateLimitConfig(
        max_hits=1, window_seconds=10, block_duration_seconds=100, escalation=policy
    )
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    clock.advance(1)
    assert limiter.check(KEY, ACTION, config).retry_after_seconds == 100

    clock.advance(101)
    assert isinstance(limiter.check(KEY, ACTION, config), Allowed)
    clock.advance(1)
    second = limiter.check(KEY, ACTION, config)
    assert second.retry_after_seconds == 200
    assert store.get_block(KEY, ACTION).violation_count == 2

    clock.advance(201)
    limiter.check(KEY, ACTION, config)
    clock.advance(1)
    assert limiter.check(KEY, ACTION, config).retry_after_seconds == 350


def test_escalation_resets_outside_its_window(store, clock):
    policy = EscalationPolicy(multiplier=3, window_seconds=50, max_block_seconds=10_000)
    config = RateLimitConfig(
        max_hits=1, window_seconds=10, block_duration_seconds=100, escalation=policy
    )
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)

    clock.advance(200)
    limiter.check(KEY, ACTION, config)
    decision = limiter.check(KEY, ACTION, config)

    assert decision.retry_after_seconds == 100
    assert store.get_block(KEY, ACTION).violation_count == 1


def test_without_escalation_every_block_uses_base_duration(store, clock):
    config = RateLimitConfig(max_hits=1, window_seconds=10, block_duration_seconds=100)
    limiter = RateLimiter(store, clock=clock)
    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)
    clock.advance(101)
    limiter.check(KEY, ACTION, config)

    assert limiter.check(KEY, ACTION, config).retry_after_seconds == 100


@pytest.mark.parametrize(
    ("key", "action", "config"),
    [
        ("", ACTION, RateLimitConfig(max_hits=1, window_seconds=60)),
        ("   ", ACTION, RateLimitConfig(max_hits=1, window_seconds=60)),
        (KEY, "", RateLimitConfig(max_hits=1, window_seconds=60)),
        (KEY, ACTION, RateLimitConfig(max_hits=0, window_seconds=60)),
        (KEY, ACTION, RateLimitConfig(max_hits=1, window_seconds=0)),
        (KEY, ACTION, RateLimitConfig(max_hits=1, window_seconds=60, block_duration_seconds=0)),
        (KEY, ACTION, RateLimitConfig(max_hits=1, window_seconds=60, warning_margin=-1)),
        (
            KEY,
            ACTION,
            RateLimitConfig(
                max_hits=1, window_seconds=60, escalation=EscalationPolicy(multiplier=0.5)
            ),
        ),
    ],
)
def test_invalid_input_rejected_before_store_access(key, action, config):
    fake_store = mock.Mock()
    limiter = RateLimiter(fake_store)

    with pytest.raises(ValidationError):
        limiter.check(key, action, config)
    with pytest.raises(ValidationError):
        limiter.guard(key, action, config)

    assert fake_store.mock_calls == []


def test_check_raises_store_error():
    broken = mock.Mock()
    broken.run_atomic.side_effect = StoreTimeoutError("timed out")
    limiter = RateLimiter(broken)

    with pytest.raises(StoreError):
        limiter.check(KEY, ACTION)


def test_guard_fails_closed_by_default():
    broken = mock.Mock()
    broken.run_atomic.side_effect = StoreError("database down")
    config = RateLimitConfig(max_hits=5, window_seconds=60)

    decision = RateLimiter(broken).guard(KEY, ACTION, config)

    assert isinstance(decision, Denied)
    assert decision.retry_after_seconds == 60


def test_guard_fails_open_when_configured():
    broken = mock.Mock()
    broken.run_atomic.side_effect = StoreError("database down")
    config = RateLimitConfig(max_hits=5, window_seconds=60, fail_open=True)

    decision = RateLimiter(broken).guard(KEY, ACTION, config)

    assert isinstance(decision, Allowed)
    assert decision.remaining == 5


def test_status_and_already_submitted_do_not_write(store, clock):
    config = RateLimitConfig(max_hits=2, window_seconds=60)
    limiter = RateLimiter(store, clock=clock)

    assert limiter.has_already_submitted(KEY, ACTION, config) is False
    status = limiter.status(KEY, ACTION, config)
    assert isinstance(status, Allowed)
    assert status.remaining == 2
    assert hits_in_window(store, clock, config) == 0

    limiter.check(KEY, ACTION, config)
    limiter.check(KEY, ACTION, config)
    assert limiter.has_already_submitted(KEY, ACTION, config) is True
    assert isinstance(limiter.status(KEY, ACTION, config), Denied)

    limiter.check(KEY, ACTION, config)
    blocked = limiter.status(KEY, ACTION, config)
    assert blocked.blocked_until is not None
    assert blocked.retry_after_seconds == config.block_duration_seconds


def test_concurrent_checks_never_exceed_max_hits(store, clock):
    config = RateLimitConfig(max_hits=3, window_seconds=60, block_duration_seconds=300)
    limiter = RateLimiter(store, clock=clock)
    callers = config.max_hits + 5
    barrier = threading.Barrier(callers)

    def attempt(_):
        barrier.wait()
        return limiter.check(KEY, ACTION, config)

    with ThreadPoolExecutor(max_workers=callers) as pool:
        decisions = list(pool.map(attempt, range(callers)))

    assert sum(1 for d in decisions if d.allowed) == 3
    assert sum(1 for d in decisions if not d.allowed) == 5
    assert len(store.recent_violations(10)) == 1


class DelayedStore:
    """Memory store whose atomic units start after the clock has moved on."""

    def __init__(self, clock, delay_seconds):
        self._store = InMemoryRateLimitStore()
        self._clock = clock
        self._delay = delay_seconds

    def run_atomic(self, key, action, fn):
        self._clock.advance(self._delay)
        return self._store.run_atomic(key, action, fn)

    def __getattr__(self, name):
        return getattr(self._store, name)


def test_decision_uses_the_clock_after_waiting_for_the_partition(clock):
    config = RateLimitConfig(max_hits=1, window_seconds=60, block_duration_seconds=300)
    store = DelayedStore(clock, delay_seconds=7)
    limiter = RateLimiter(store, clock=clock)

    limiter.check(KEY, ACTION, config)
    decision = limiter.check(KEY, ACTION, config)

    assert decision.blocked_until == clock.now() + timedelta(seconds=300)
    assert decision.retry_after_seconds == 300
    assert [hit.timestamp for hit in store.recent_hits(2)] == [
        clock.now(),
        clock.now() - timedelta(seconds=7),
    ]


def test_resolve_rule_picks_most_specific_first():
    sign_in = resolve_rule("/api/auth/signin")
    assert sign_in.action == "sign_in"
    assert (sign_in.config.max_hits, sign_in.config.window_seconds) == (5, 900)
    assert "login" in sign_in.message
    sign_up = resolve_rule("/api/auth/signup")
    assert sign_up.action == "sign_up"
    assert (sign_up.config.max_hits, sign_up.config.window_seconds) == (3, 3600)
    assert resolve_rule("/api/auth/session").action == "api"
    assert resolve_rule("/api/submit-evidence").action == "submit_evidence"
    assert resolve_rule("/api/delete-account/").action == "delete_account"
    assert resolve_rule("/api/health").action == "api"
    assert resolve_rule("/about").action == "page"
    assert resolve_rule("/").action == "page"


def test_with_policy_keeps_rule_thresholds():
    base = RateLimitConfig(max_hits=99, window_seconds=1, block_duration_seconds=42, fail_open=True)

    rules = with_policy(DEFAULT_RULES, base)

    submit = resolve_rule("/api/submit-evidence", rules)
    assert submit.config.max_hits == 10
    assert submit.config.window_seconds == 3600
    assert submit.config.block_duration_seconds == 42
    assert submit.config.fail_open is True


def test_client_identifier_prefers_user_then_forwarded_ip():
    assert client_identifier({"x-user-id": "abc"}, "10.0.0.1") == "user:abc"
    assert client_identifier({"x-forwarded-for": "203.0.113.9, 10.0.0.2"}, "10.0.0.1") == "203.0.113.9"
    assert client_identifier({}, "10.0.0.1") == "10.0.0.1"
