"""Reconciliation core: models, identity, mapping, recurrence and transport."""

from .errors import ClientNotReadyError, CredentialError, ErrorKind, SyncError, TransportError
from .identity import IdentityOptions, identity_key, reminder_fingerprint
from .models import CalendarEvent, EventDateTime, Operation, OperationKind, OperationResult, Task

__all__ = [
    "CalendarEvent",
    "ClientNotReadyError",
    "CredentialError",
    "ErrorKind",
    "EventDateTime",
    "IdentityOptions",
    "Operation",
    "OperationKind",
    "OperationResult",
    "SyncError",
    "Task",
    "TransportError",
    "identity_key",
    "reminder_fingerprint",
]
