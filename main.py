"""FastAPI application guarding the evidence portal's API with rate limits."""
from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from evidence_guard.auth import verify_bearer
from evidence_guard.cache import TTLCache
from evidence_guard.cleanup import cleanup_old_records
from evidence_guard.clients.backend import SubmissionsClient
from evidence_guard.config import Settings, get_settings
from evidence_guard.errors import (
    AuthorizationError,
    ConfigurationError,
    StoreError,
    ValidationError,
)
from evidence_guard.logging_config import configure_logging
from evidence_guard.models import Decision
from evidence_guard.monitor import RateLimitMonitor, check_with_monitoring
from evidence_guard.rate_limit import (
    DEFAULT_RULES,
    RateLimiter,
    RateLimitRule,
    client_identifier,
    resolve_rule,
    with_policy,
)
from evidence_guard.statistics import StatisticsCache
from evidence_guard.store import (
    RateLimitStore,
    SQLRateLimitStore,
    create_store_engine,
    create_tables,
)
from evidence_guard.utils import is_static_asset, isoformat, utcnow

configure_logging()
LOGGER = logging.getLogger(__name__)

STATISTICS_KEY = "statistics"
STALE_AFTER = timedelta(days=1)


def build_submission_source(app_settings: Settings) -> Optional[SubmissionsClient]:
    try:
        return SubmissionsClient(app_settings)
    except ConfigurationError as exc:
        LOGGER.warning("statistics refresh disabled", extra={"detail": str(exc)})
        return None


settings = get_settings()
engine = create_store_engine(settings.database_url, settings.store_timeout_seconds)
create_tables(engine)
store = SQLRateLimitStore(engine, settings.store_timeout_seconds)
rate_limiter = RateLimiter(store, default_config=settings.rate_limit_config)
monitor = RateLimitMonitor(store)
rules = with_policy(DEFAULT_RULES, settings.rate_limit_config)
statistics_cache = StatisticsCache(
    settings.statistics_cache_file, build_submission_source(settings)
)
statistics_reads = TTLCache(settings.statistics_read_ttl_seconds)

app = FastAPI(title="Evidence Portal Guard")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _rate_limit_headers(decision: Decision) -> Dict[str, str]:
    reset_at = decision.blocked_until or utcnow() + timedelta(seconds=decision.window_seconds)
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(0, decision.remaining)),
        "X-RateLimit-Reset": isoformat(reset_at) or "",
    }
    if not decision.allowed and decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


@app.middleware("http")
async def apply_rate_limiting(request: Request, call_next):  # type: ignore[override]
    path = request.url.path
    rule = None if is_static_asset(path) else resolve_rule(path, rules)
    if rule is None:
        return await call_next(request)

    peer = request.client.host if request.client else "unknown"
    client_ip = client_identifier(request.headers, peer)
    decision = await run_in_threadpool(
        check_with_monitoring,
        rate_limiter,
        monitor,
        client_ip,
        rule.action,
        rule.config,
        user_agent=request.headers.get("user-agent"),
    )
    headers = _rate_limit_headers(decision)
    if not decision.allowed:
        LOGGER.warning(
            "request rate limited",
            extra={"client_ip": client_ip, "action": rule.action, "path": path},
        )
        return JSONResponse(
            status_code=429,
            content={"error": rule.message, "retryAfter": decision.retry_after_seconds},
            headers=headers,
        )

    try:
        response = await call_next(request)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Unhandled exception", extra={"client_ip": client_ip})
        raise exc
    response.headers.update(headers)
    return response


def get_store() -> RateLimitStore:
    """Provide the process-wide rate-limit store."""

    return store


def get_limiter() -> RateLimiter:
    return rate_limiter


def get_monitor() -> RateLimitMonitor:
    return monitor


def get_statistics_cache() -> StatisticsCache:
    return statistics_cache


def _rule_for_action(action: str) -> Optional[RateLimitRule]:
    return next((rule for rule in rules if rule.action == action), None)


def _auth_failure(exc: Exception) -> JSONResponse:
    if isinstance(exc, ConfigurationError):
        LOGGER.error("cron secret missing", extra={"detail": str(exc)})
        return JSONResponse(
            status_code=500,
            content={"error": "Server configuration error", "message": str(exc)},
        )
    LOGGER.warning("rejected bearer token", extra={"detail": str(exc)})
    return JSONResponse(status_code=401, content={"error": "Unauthorized", "message": str(exc)})


@app.get("/api/health")
def health() -> dict:
    """Liveness probe."""

    return {"status": "ok", "timestamp": isoformat(utcnow())}


@app.get("/api/cleanup")
def cleanup(
    rate_store: RateLimitStore = Depends(get_store),
    app_settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Delete raw rate-limit hits past the retention horizon."""

    result = cleanup_old_records(rate_store, app_settings.retention_days)
    if result.error:
        return JSONResponse(status_code=500, content={"success": False, "error": result.error})
    return JSONResponse(
        content={
            "success": True,
            "deleted": result.deleted,
            "message": f"Deleted {result.deleted} old rate limit records",
        }
    )


@app.post("/api/cron/update-statistics")
def update_statistics(
    authorization: Optional[str] = Header(None),
    cache: StatisticsCache = Depends(get_statistics_cache),
    app_settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Rebuild the statistics cache; called by the daily scheduler."""

    try:
        verify_bearer(authorization, app_settings)
    except (ConfigurationError, AuthorizationError) as exc:
        return _auth_failure(exc)

    try:
        before_exists = cache.exists()
        before_last_updated = cache.get_last_updated() if before_exists else None
        started = time.perf_counter()
        result = cache.update_from_database()
        duration_ms = round((time.perf_counter() - started) * 1000)
        statistics_reads.invalidate(STATISTICS_KEY)
        before = {"existed": before_exists, "last_updated": isoformat(before_last_updated)}

        if not result.success:
            LOGGER.error(
                "statistics refresh failed",
                extra={"detail": result.error, "duration_ms": duration_ms},
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "message": "Failed to update statistics cache",
                    "error": result.error,
                    "timestamp": isoformat(utcnow()),
                    "duration_ms": duration_ms,
                    "cache_info": {"before": before, "fallback_used": True},
                },
            )

        data = result.data or {}
        LOGGER.info("statistics refreshed", extra={"duration_ms": duration_ms})
        return JSONResponse(
            content={
                "success": True,
                "message": "Statistics cache updated successfully",
                "timestamp": isoformat(utcnow()),
                "duration_ms": duration_ms,
                "cache_info": {
                    "before": before,
                    "after": {
                        "last_updated": isoformat(cache.get_last_updated()),
                        "source": "database",
                    },
                },
                "statistics": {
                    "total_submissions": data.get("total_submissions", 0),
                    "total_children_affected": data.get("total_children_affected", 0),
                    "last_submission": data.get("last_submission"),
                },
            }
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("cron job error")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Cron job failed with unexpected error",
                "error": str(exc),
                "timestamp": isoformat(utcnow()),
            },
        )


@app.get("/api/cron/update-statistics")
def statistics_cache_health(
    cache: StatisticsCache = Depends(get_statistics_cache),
) -> JSONResponse:
    """Report whether the statistics cache exists and how old it is."""

    now = utcnow()
    try:
        exists = cache.exists()
        last_updated = cache.get_last_updated() if exists else None
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("statistics health check failed")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": str(exc), "timestamp": isoformat(now)},
        )

    age = now - last_updated if last_updated else None
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": isoformat(now),
            "cache": {
                "exists": exists,
                "last_updated": isoformat(last_updated),
                "is_stale": age is None or age > STALE_AFTER,
                "age_hours": round(age.total_seconds() / 3600) if age is not None else None,
            },
            "next_update": "Daily at 2:00 AM UTC",
        }
    )


@app.api_route("/api/cron/update-statistics", methods=["PUT", "DELETE", "PATCH"])
def statistics_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": "Method not allowed. Use POST for cron updates."},
    )


@app.get("/api/statistics")
def read_statistics(cache: StatisticsCache = Depends(get_statistics_cache)) -> dict:
    """Serve the cached statistics snapshot."""

    cached = statistics_reads.get(STATISTICS_KEY)
    if cached is None:
        cached = cache.get()
        statistics_reads.set(STATISTICS_KEY, cached)
    else:
        LOGGER.debug("statistics read cache hit")
    return cached


@app.get("/api/rate-limit/status")
def rate_limit_status(
    request: Request,
    action: str = Query("submit_evidence", description="Action label to inspect."),
    limiter: RateLimiter = Depends(get_limiter),
) -> JSONResponse:
    """Show the caller's standing for an action without recording an attempt."""

    rule = _rule_for_action(action)
    if rule is None:
        return JSONResponse(status_code=400, content={"error": f"Unknown action: {action}"})
    peer = request.client.host if request.client else "unknown"
    key = client_identifier(request.headers, peer)
    try:
        decision = limiter.status(key, action, rule.config)
        already_submitted = limiter.has_already_submitted(key, action, rule.config)
    except StoreError as exc:
        LOGGER.error("rate-limit status unavailable", extra={"detail": str(exc)})
        return JSONResponse(status_code=503, content={"error": "Rate limit status unavailable"})
    return JSONResponse(
        content={"action": action, "already_submitted": already_submitted, **decision.as_dict()}
    )


@app.get("/api/admin/rate-limits")
def rate_limit_metrics(
    timeframe: str = Query("hour", description="One of hour, day or week."),
    limit: int = Query(50, ge=1, le=500),
    authorization: Optional[str] = Header(None),
    rate_monitor: RateLimitMonitor = Depends(get_monitor),
    app_settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Operator view of recent rate-limit activity."""

    try:
        verify_bearer(authorization, app_settings)
    except (ConfigurationError, AuthorizationError) as exc:
        return _auth_failure(exc)

    try:
        metrics = rate_monitor.metrics(timeframe)
        activity = rate_monitor.recent_activity(limit)
        statuses = rate_monitor.statuses(
            (item["key"], item["action"]) for item in metrics["topBlocked"]
        )
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except StoreError as exc:
        LOGGER.error("rate-limit metrics unavailable", extra={"detail": str(exc)})
        return JSONResponse(status_code=503, content={"error": "Rate limit metrics unavailable"})
    return JSONResponse(
        content={"metrics": metrics, "recent_activity": activity, "statuses": statuses}
    )
