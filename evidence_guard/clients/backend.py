"""Backend provider REST client for evidence submissions."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests
from requests import Response

from evidence_guard.config import Settings
from evidence_guard.errors import BackendError, ConfigurationError

LOGGER = logging.getLogger(__name__)

SUBMISSION_COLUMNS = "parent_type,children_affected,created_at,evidence_data"


class SubmissionsClient:
    """Small HTTP client that pages through the evidence submissions table."""

    TABLE = "evidence_submissions"

    def __init__(self, settings: Settings) -> None:
        if not settings.backend_url or not settings.backend_service_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        self._settings = settings
        self._base_url = settings.backend_url.rstrip("/")
        self._session = requests.Session()
        self._session.headers.update(
            {
                "apikey": settings.backend_service_key,
                "Authorization": f"Bearer {settings.backend_service_key}",
                "Content-Type": "application/json",
            }
        )

    def fetch_submissions(self, *, page_size: int = 1000) -> List[Dict[str, Any]]:
        """Return every submission row, oldest first."""

        url = f"{self._base_url}/rest/v1/{self.TABLE}"
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            params = {
                "select": SUBMISSION_COLUMNS,
                "order": "created_at.asc",
                "limit": page_size,
                "offset": offset,
            }
            try:
                response = self._session.get(
                    url, params=params, timeout=self._settings.backend_timeout_seconds
                )
            except requests.RequestException as exc:
                LOGGER.error("backend request failed", extra={"detail": str(exc)})
                raise BackendError(f"Backend unreachable: {exc}") from exc
            self._raise_for_status(response)
            page = response.json()
            rows.extend(page)
            if len(page) < page_size:
                return rows
            offset += page_size

    def _raise_for_status(self, response: Response) -> None:
        """Raise descriptive errors for backend responses."""

        if response.ok:
            return
        status = response.status_code
        detail = response.text
        if status == 401:
            message = "Unauthorized: verify SUPABASE_SERVICE_ROLE_KEY."
        elif status == 403:
            message = "Forbidden: the service key cannot read submissions."
        elif status == 404:
            message = "Submissions table or project not found."
        else:
            message = f"Backend error ({status})."
        LOGGER.error("backend request failed", extra={"status": status, "detail": detail})
        raise BackendError(f"{message} Response: {detail[:200]}")
