"""Rate-limit persistence: the store protocol and its implementations."""
from .base import RateLimitStore, RateLimitUnit
from .memory import InMemoryRateLimitStore
from .sql import SQLRateLimitStore, create_store_engine, create_tables

__all__ = [
    "RateLimitStore",
    "RateLimitUnit",
    "InMemoryRateLimitStore",
    "SQLRateLimitStore",
    "create_store_engine",
    "create_tables",
]
