from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Caller identity used by tenant isolation checks."""

    user_id: str
    tenant_id: str
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)
