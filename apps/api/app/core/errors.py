from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for service-layer failures surfaced through the error envelope."""

    error = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ValidationError(CRMError):
    """Raised when operation parameters are malformed or out of range."""

    error = "validation_error"
    status_code = 422


class NotFoundError(CRMError):
    """Raised when the requested row is absent for the caller's tenant."""

    error = "not_found"
    status_code = 404


class DataAccessError(CRMError):
    """Raised when the underlying fetch fails; the original exception is chained as the cause."""

    error = "data_access_error"
    status_code = 503


class TenantContextError(CRMError):
    error = "tenant_context_error"
    status_code = 400


class TenantMismatchError(TenantContextError):
    status_code = 403
