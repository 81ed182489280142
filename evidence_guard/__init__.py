"""Application package exports commonly used helpers for convenience."""

from .config import Settings, get_settings
from .logging_config import configure_logging
from .rate_limit import RateLimitConfig, RateLimiter

__all__ = ["Settings", "get_settings", "configure_logging", "RateLimitConfig", "RateLimiter"]
