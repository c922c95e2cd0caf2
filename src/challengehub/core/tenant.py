"""Per-request identity context and its contextvars propagation.

IdentityContext is built once per request by the request context dependency
(see api/deps.py) and discarded when the request ends. It is never cached
across requests. The contextvar copy exists so that code without access to
the request (Sentry hooks, log processors) can still tag events with the
tenant.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass

from src.challengehub.core.roles import AccessLevel, Capabilities, Role
from src.challengehub.core.scoping import TenantScope


@dataclass(frozen=True)
class IdentityContext:
    """Immutable identity/tenant/role tuple for the current request."""

    tenant_id: str
    whop_company_id: str
    whop_user_id: str
    user_id: str  # internal users.id
    whop_experience_id: str | None
    role: Role
    access_level: AccessLevel
    capabilities: Capabilities
    role_source: str

    @property
    def scope(self) -> TenantScope:
        return TenantScope(tenant_id=self.tenant_id, whop_company_id=self.whop_company_id)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


_request_context: contextvars.ContextVar[IdentityContext] = contextvars.ContextVar("request_context")


def get_current_context() -> IdentityContext:
    """Get the identity context for the current request.

    Raises RuntimeError if no context has been set (i.e., the call is not
    within a tenant-scoped request).
    """
    try:
        return _request_context.get()
    except LookupError:
        raise RuntimeError("No identity context set -- request is not tenant-scoped")


def set_request_context(ctx: IdentityContext) -> contextvars.Token[IdentityContext]:
    """Set the identity context for the current request. Returns a token for reset."""
    return _request_context.set(ctx)


def reset_request_context(token: contextvars.Token[IdentityContext]) -> None:
    _request_context.reset(token)
