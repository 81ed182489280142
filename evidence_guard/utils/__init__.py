"""Utility helpers."""
from .paths import (  # noqa: F401
    is_static_asset,
    normalize_path,
    path_has_wildcard,
    path_matches,
)
from .time import (  # noqa: F401
    Clock,
    ManualClock,
    SystemClock,
    ensure_utc,
    isoformat,
    parse_timestamp,
    utcnow,
)
