from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class SessionError(Exception):
    """Base exception for the assistant-session package."""


class TransportClosedError(SessionError):
    """Raised when the underlying transport fails, disconnects, or is closed."""


class SessionTimeoutError(SessionError):
    """Raised when a pending exchange exceeds its deadline."""

    def __init__(self, message: str, *, correlation_id: str, timeout: float) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id
        self.timeout = timeout


class DecodeError(SessionError):
    """Raised when an inbound frame cannot be decoded into an envelope.

    The raw frame is kept for diagnostics; the session logs and drops it.
    """

    def __init__(self, message: str, *, frame: Any) -> None:
        super().__init__(message)
        self.frame = frame


class EncodeError(SessionError):
    """Raised when an outbound envelope fails payload validation."""


class UnknownTaskError(SessionError, LookupError):
    """Raised when an operation names a task this session is not tracking."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"unknown task {task_id!r}")
        self.task_id = task_id


class BackendError(SessionError):
    """Raised when the backend answers a request with an `error` envelope."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: str,
        code: int | str | None = None,
        data: Any = None,
    ) -> None:
        """Create a backend error.

        Args:
            message: Backend-supplied description.
            correlation_id: Id of the request that failed.
            code: Optional backend error code.
            data: Optional backend-provided error payload.
        """
        super().__init__(message)
        self.correlation_id = correlation_id
        self.code = code
        self.data = data


@dataclass(slots=True)
class ProtocolAnomaly:
    """Record of an inbound event that could not be applied.

    Anomalies are logged, never raised to callers.
    """

    reason: str
    correlation_id: str
    kind: str
    task_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        task = f" task={self.task_id}" if self.task_id else ""
        return f"{self.reason} (kind={self.kind} id={self.correlation_id}{task})"
