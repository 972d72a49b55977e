from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for tenant isolation failures."""


class TenantIsolationError(AuthorizationError):
    """Raised when a row or payload belongs to a tenant other than the caller's."""

    def __init__(self, resource: str, tenant_id: str | None) -> None:
        self.resource = resource
        self.tenant_id = tenant_id
        super().__init__(f"Out-of-tenant record for resource '{resource}'")
