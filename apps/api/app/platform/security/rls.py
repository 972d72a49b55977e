from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.sql import Select

from app.metrics import observe_tenant_isolation_denied
from app.platform.security.context import AuthContext
from app.platform.security.errors import TenantIsolationError


logger = logging.getLogger("app.security")


def _as_tenant_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def apply_tenant_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict every tenant-owned entity in the query to the caller's tenant."""

    tenant_id = _as_tenant_uuid(ctx.tenant_id)
    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "tenant_id"):
            query = query.where(getattr(model, "tenant_id") == tenant_id)
    return query


def validate_tenant_read(resource: str, ctx: AuthContext, *, tenant_id: Any, action: str = "read") -> None:
    """Reject records loaded by id that are owned by another tenant."""

    if tenant_id is None or str(tenant_id) == str(ctx.tenant_id):
        return
    _emit_tenant_denied(resource=resource, action=action, ctx=ctx)
    raise TenantIsolationError(resource, str(tenant_id))


def validate_tenant_write(resource: str, payload: dict[str, Any], ctx: AuthContext, *, action: str = "write") -> None:
    value = payload.get("tenant_id")
    if value is None or str(value) == str(ctx.tenant_id):
        return
    _emit_tenant_denied(resource=resource, action=action, ctx=ctx)
    raise TenantIsolationError(resource, str(value))


def _emit_tenant_denied(*, resource: str, action: str, ctx: AuthContext) -> None:
    observe_tenant_isolation_denied(resource=resource)
    logger.warning(
        "tenant_isolation.denied",
        extra={
            "operation": f"{resource}.{action}",
            "tenant_id": ctx.tenant_id,
            "user_id": ctx.user_id,
        },
    )
