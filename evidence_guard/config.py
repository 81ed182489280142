"""Application settings and environment loading utilities."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from evidence_guard.errors import ConfigurationError
from evidence_guard.rate_limit import EscalationPolicy, RateLimitConfig


def _load_dotenv() -> None:
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


_load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("true", "1", "yes")


def _env_str(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration derived from environment variables."""

    database_url: str = "sqlite:///./evidence_guard.db"
    cron_auth_key: Optional[str] = None
    backend_url: Optional[str] = None
    backend_service_key: Optional[str] = None
    rate_limit_max_hits: int = 30
    rate_limit_window_seconds: int = 60
    rate_limit_block_seconds: int = 3600
    rate_limit_warning_margin: int = 0
    rate_limit_escalation_multiplier: Optional[float] = None
    rate_limit_escalation_window_seconds: int = 86400
    rate_limit_max_block_seconds: int = 86400
    rate_limit_fail_open: bool = False
    store_timeout_seconds: float = 5.0
    retention_days: int = 7
    statistics_cache_file: str = ".cache/statistics.json"
    statistics_read_ttl_seconds: int = 30
    backend_timeout_seconds: int = 30

    @property
    def rate_limit_config(self) -> RateLimitConfig:
        escalation = None
        if self.rate_limit_escalation_multiplier:
            escalation = EscalationPolicy(
                multiplier=self.rate_limit_escalation_multiplier,
                window_seconds=self.rate_limit_escalation_window_seconds,
                max_block_seconds=self.rate_limit_max_block_seconds,
            )
        return RateLimitConfig(
            max_hits=self.rate_limit_max_hits,
            window_seconds=self.rate_limit_window_seconds,
            block_duration_seconds=self.rate_limit_block_seconds,
            warning_margin=self.rate_limit_warning_margin,
            escalation=escalation,
            fail_open=self.rate_limit_fail_open,
        )

    def require_cron_auth_key(self) -> str:
        """Return the cron secret or raise when the deployment has none."""

        if not self.cron_auth_key:
            raise ConfigurationError("CRON_AUTH_KEY not configured")
        return self.cron_auth_key

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env_str("DATABASE_URL") or cls.database_url,
            cron_auth_key=_env_str("CRON_AUTH_KEY", "CRON_SECRET_TOKEN"),
            backend_url=_env_str("SUPABASE_URL"),
            backend_service_key=_env_str("SUPABASE_SERVICE_ROLE_KEY"),
            rate_limit_max_hits=_env_int("RATE_LIMIT_MAX_HITS", 30),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 60),
            rate_limit_block_seconds=_env_int("RATE_LIMIT_BLOCK_SECONDS", 3600),
            rate_limit_warning_margin=_env_int("RATE_LIMIT_WARNING_MARGIN", 0),
            rate_limit_escalation_multiplier=_env_float("RATE_LIMIT_ESCALATION_MULTIPLIER", None),
            rate_limit_escalation_window_seconds=_env_int(
                "RATE_LIMIT_ESCALATION_WINDOW_SECONDS", 86400
            ),
            rate_limit_max_block_seconds=_env_int("RATE_LIMIT_MAX_BLOCK_SECONDS", 86400),
            rate_limit_fail_open=_env_bool("RATE_LIMIT_FAIL_OPEN", False),
            store_timeout_seconds=_env_float("RATE_LIMIT_STORE_TIMEOUT_SECONDS", 5.0) or 5.0,
            retention_days=_env_int("RATE_LIMIT_RETENTION_DAYS", 7),
            statistics_cache_file=_env_str("STATISTICS_CACHE_FILE") or cls.statistics_cache_file,
            statistics_read_ttl_seconds=_env_int("STATISTICS_READ_TTL_SECONDS", 30),
            backend_timeout_seconds=_env_int("SUPABASE_TIMEOUT_SECONDS", 30),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings.from_env()
