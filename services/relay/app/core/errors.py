"""
Error taxonomy for the relay.

Every error the service raises on purpose derives from RelayError and carries
the HTTP status and a stable machine-readable code; the app-level exception
handler in main.py renders them as ``{"detail": code, "message": ...}``.
"""
from __future__ import annotations

from typing import Any


class RelayError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.code
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.code, "message": self.message}


class ValidationError(RelayError):
    """Malformed or missing input. Never retried."""

    status_code = 400
    code = "invalid_request"


class UnauthorizedError(RelayError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(RelayError):
    status_code = 404
    code = "not_found"


class ConflictError(RelayError):
    """Idempotency key in flight or already resolved.

    ``result`` holds the recorded response when the original request has
    completed, so the caller can accept it instead of polling.
    """

    status_code = 409
    code = "idempotency_conflict"

    def __init__(
        self, message: str | None = None, *, code: str | None = None, result: Any = None
    ) -> None:
        super().__init__(message, code=code)
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.result is not None:
            body["result"] = self.result
        return body


class UpstreamRejected(RelayError):
    """The external command executor refused the command."""

    status_code = 422
    code = "command_rejected"


class CommandRejected(UpstreamRejected):
    """Raised by command executors; ``reason`` is the external failure reason."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TransientInfraError(RelayError):
    """Store, cache, or upstream momentarily unavailable."""

    status_code = 503
    code = "service_unavailable"


class DeliveryFailure(RelayError):
    """One webhook attempt failed. Recorded on the delivery row, never raised to producers."""

    status_code = 502
    code = "delivery_failed"

    def __init__(self, message: str, *, response_code: int | None = None) -> None:
        super().__init__(message)
        self.response_code = response_code
