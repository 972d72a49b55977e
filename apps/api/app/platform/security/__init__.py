from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, TenantIsolationError
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_tenant_filter, validate_tenant_read, validate_tenant_write

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "TenantIsolationError",
    "BaseRepository",
    "apply_tenant_filter",
    "validate_tenant_read",
    "validate_tenant_write",
]
