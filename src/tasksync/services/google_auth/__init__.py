"""Google Authentication services."""

from tasksync.services.google_auth.credentials import (
    CALENDAR_SCOPE,
    SCOPES,
    GoogleCredentialProvider,
)

__all__ = ["CALENDAR_SCOPE", "GoogleCredentialProvider", "SCOPES"]
