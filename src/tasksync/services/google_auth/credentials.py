"""Google credential provider for the Calendar API."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import google.oauth2.credentials
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request

logger = logging.getLogger(__name__)

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
SCOPES = [CALENDAR_SCOPE]


def _extract_token_scopes(token_data: Dict[str, Any]) -> set[str]:
    """Extract OAuth scopes from a stored token payload."""

    scopes_field = token_data.get("scopes")
    if isinstance(scopes_field, list):
        return set(scopes_field)

    scope_field = token_data.get("scope")
    if isinstance(scope_field, str):
        return set(scope_field.split())

    return set()


class GoogleCredentialProvider:
    """Load an authorized-user token file and keep its access token fresh.

    Obtaining the token in the first place (the consent flow) happens
    elsewhere; this class only reads, refreshes and rewrites the file.
    """

    def __init__(self, token_path: Path) -> None:
        self._token_path = token_path
        self._credentials: Optional[Any] = None
        self._lock = asyncio.Lock()

    @property
    def access_token(self) -> Optional[str]:
        if self._credentials is None:
            return None
        return self._credentials.token

    def _load(self) -> Optional[Any]:
        if not self._token_path.exists():
            logger.warning("Google token file not found at %s", self._token_path)
            return None
        try:
            token_data = json.loads(self._token_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read Google token %s: %s", self._token_path, exc)
            return None

        if not set(SCOPES).issubset(_extract_token_scopes(token_data)):
            logger.warning("Google token at %s lacks the calendar scope", self._token_path)
            return None

        try:
            return google.oauth2.credentials.Credentials.from_authorized_user_info(
                token_data, SCOPES
            )
        except ValueError as exc:
            logger.warning("Invalid Google token %s: %s", self._token_path, exc)
            return None

    def _store(self, credentials: Any) -> None:
        self._token_path.parent.mkdir(parents=True, exist_ok=True)
        self._token_path.write_text(credentials.to_json(), encoding="utf-8")

    def _refresh(self, credentials: Any) -> None:
        credentials.refresh(Request())
        self._store(credentials)

    async def ensure(self) -> bool:
        """Return True when a valid access token is available."""

        async with self._lock:
            if self._credentials is None:
                self._credentials = self._load()
            creds = self._credentials
            if creds is None:
                return False
            if creds.valid:
                return True
            if not creds.refresh_token:
                logger.warning("Google credential expired and has no refresh token")
                return False
            try:
                await asyncio.to_thread(self._refresh, creds)
            except (RefreshError, TransportError, OSError) as exc:
                logger.error("Failed to refresh Google credential: %s", exc)
                return False
            logger.info("Refreshed Google access token")
            return bool(creds.valid)

    def invalidate(self) -> None:
        """Drop the cached credential so the next ``ensure`` reloads the file."""

        self._credentials = None


__all__ = ["CALENDAR_SCOPE", "GoogleCredentialProvider", "SCOPES"]
