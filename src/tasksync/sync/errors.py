"""Error taxonomy shared by the transport and the reconciliation engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """How a failure is handled.

    transient: retried with backoff, surfaced only at the retry ceiling.
    benign: resolved locally by mapping cleanup, never surfaced.
    permanent: recorded and reported at the end of the run.
    fatal: aborts the run immediately.
    """

    TRANSIENT = "transient"
    BENIGN = "benign"
    PERMANENT = "permanent"
    FATAL = "fatal"


TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


class SyncError(RuntimeError):
    """Base class for failures raised while synchronising."""

    kind: ErrorKind = ErrorKind.FATAL


class CredentialError(SyncError):
    """Raised when no valid credential can be obtained."""


class ClientNotReadyError(SyncError):
    """Raised when the transport is used before it has an HTTP client."""


class TransportError(SyncError):
    """Wrap HTTP or decoding failures at the transport boundary.

    ``status_code`` is ``0`` for network failures that never produced a
    response.
    """

    def __init__(
        self,
        status_code: int,
        detail: Any,
        *,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail
        self.retry_after = retry_after
        self.kind = (
            ErrorKind.TRANSIENT
            if status_code == 0 or status_code in TRANSIENT_STATUSES
            else ErrorKind.PERMANENT
        )

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


__all__ = [
    "ClientNotReadyError",
    "CredentialError",
    "ErrorKind",
    "SyncError",
    "TRANSIENT_STATUSES",
    "TransportError",
]
