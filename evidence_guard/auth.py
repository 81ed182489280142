"""Bearer-token check for the scheduler and operator endpoints."""
from __future__ import annotations

import hmac
from typing import Optional

from evidence_guard.config import Settings
from evidence_guard.errors import AuthorizationError


def verify_bearer(authorization: Optional[str], settings: Settings) -> None:
    """Raise unless ``authorization`` is ``Bearer <CRON_AUTH_KEY>``.

    Raises:
        ConfigurationError: no secret is configured for this deployment.
        AuthorizationError: the header is missing or does not match.
    """

    expected = f"Bearer {settings.require_cron_auth_key()}"
    if not authorization or not hmac.compare_digest(
        authorization.encode("utf-8"), expected.encode("utf-8")
    ):
        raise AuthorizationError("Invalid or missing authorization header")
