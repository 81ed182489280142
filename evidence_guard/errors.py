"""Error taxonomy shared by the rate limiter, stores and HTTP layer."""
from __future__ import annotations


class EvidenceGuardError(RuntimeError):
    """Base class for errors raised by this package."""


class ConfigurationError(EvidenceGuardError):
    """Raised when a required secret or setting is missing or malformed."""


class AuthorizationError(EvidenceGuardError):
    """Raised when a caller-presented credential does not match."""


class ValidationError(EvidenceGuardError):
    """Raised for malformed keys, actions or limiter configuration."""


class StoreError(EvidenceGuardError):
    """Raised when the rate-limit store is unavailable or a transaction fails."""


class StoreTimeoutError(StoreError):
    """Raised when a store call does not complete within its time bound."""


class BackendError(EvidenceGuardError):
    """Raised when the backend provider's REST API returns an error."""
