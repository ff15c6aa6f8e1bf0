"""Error taxonomy shared by the control plane and its gateways.

Every error carries the HTTP status it maps to and a client-safe message.
Handlers raise these; the application renders them into the
``{"message": ..., "error": ...}`` envelope.
"""

from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, message: str, *, error: Any = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.error = error
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ConfigurationError(ServiceError):
    """A required credential or identifier is missing."""

    status_code = 500


class AuthError(ServiceError):
    status_code = 401


class ForbiddenError(ServiceError):
    status_code = 403


class ValidationError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class AutoUndeployedError(ConflictError):
    """The deployment outlived its TTL and was torn down instead of serving the request."""

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["autoUndeployed"] = True
        return payload


class PayloadTooLargeError(ServiceError):
    status_code = 413


class StoreError(ServiceError):
    """A backing-store read or write failed.

    ``operation`` names the failed step for logs; it is never sent to clients.
    """

    status_code = 500

    def __init__(self, operation: str, message: str = "Database operation failed") -> None:
        super().__init__(message)
        self.operation = operation


class RemoteServiceError(ServiceError):
    """An outbound call to the CI platform or tunnel service failed."""

    status_code = 502


class TunnelUnreachableError(RemoteServiceError):
    status_code = 503


class PartialFailureError(ServiceError):
    """Local state changed but a dependent write failed and needs reconciliation."""

    status_code = 207
