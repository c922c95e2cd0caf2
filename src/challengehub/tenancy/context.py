"""Per-request identity context construction.

RequestContextBuilder is the single place where a request's raw identity is
turned into an IdentityContext:

    RequestIdentity
      -> company id from the experience when only an experience id is known
      -> user id from the verified user token, when one is present
      -> tenant resolution + local user lookup   } concurrently
      -> platform access check                   }
      -> role decision
      -> user row created or refreshed
      -> IdentityContext

The access check is started immediately and cancelled if the local user turns
out to be an admin already.
"""

from __future__ import annotations

import structlog

from src.challengehub.clients.exceptions import InvalidUserTokenError, WhopAPIError
from src.challengehub.config import Settings
from src.challengehub.core.identity import RequestIdentity
from src.challengehub.core.roles import (
    AccessOracle,
    Role,
    RoleDecision,
    derive_role,
    discard_oracle,
    start_oracle,
)
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.tenancy.resolver import TenantResolver
from src.challengehub.tenancy.schemas import TenantRead, UserRead
from src.challengehub.tenancy.users import UserProvisioner

logger = structlog.get_logger(__name__)


class ContextError(Exception):
    """The request does not carry enough identity to build a context.

    ``status_code`` is 400 for a missing company and 401 for a missing or
    invalid user. ``hint`` lists where the value was looked for.
    """

    def __init__(self, status_code: int, message: str, hint: dict | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.hint = hint or {}


def _company_hint(settings: Settings) -> dict:
    return {
        "tried": [
            "x-whop-company-id header",
            "x-company-id header",
            f"{settings.WHOP_APP_CONFIG_COOKIE} cookie",
            f"{settings.WHOP_PLATFORM_DOMAIN}/dashboard/<company> referer",
            "experience lookup",
        ]
    }


def _user_hint(settings: Settings) -> dict:
    return {
        "tried": [
            "x-whop-user-token header",
            f"{settings.WHOP_USER_TOKEN_COOKIE} cookie",
            "Authorization: Bearer",
            "x-whop-user-id header",
            "x-user-id header",
        ]
    }


def stored_role(decision: RoleDecision, existing: UserRead | None) -> str:
    """Role value written to the user row for a decision.

    An admin granted only by the outage fallback is not persisted; otherwise
    the next request would take the local-admin fast path forever.
    """
    if decision.source == "oracle_fallback":
        return existing.role if existing is not None else Role.GUEST.value
    return decision.role.value


class RequestContextBuilder:
    """Build the IdentityContext for one request.

    Args:
        resolver: Tenant resolver (auto-provisions unseen companies).
        users: User provisioner for the tenant-local user row.
        oracle: Platform access oracle (WhopClient in production).
        settings: Application settings.
    """

    def __init__(
        self,
        resolver: TenantResolver,
        users: UserProvisioner,
        oracle: AccessOracle,
        settings: Settings,
    ) -> None:
        self._resolver = resolver
        self._users = users
        self._oracle = oracle
        self._settings = settings

    async def complete_identity(self, identity: RequestIdentity) -> RequestIdentity:
        """Fill the company id from the experience and the user id from the token.

        Raises:
            ContextError: No company id (400), or no valid user id (401).
        """
        if not identity.whop_company_id and identity.whop_experience_id:
            try:
                company_id = await self._oracle.get_experience_company(identity.whop_experience_id)
            except WhopAPIError as exc:
                logger.warning(
                    "context.experience_lookup_failed",
                    whop_experience_id=identity.whop_experience_id,
                    error=str(exc),
                )
                company_id = None
            if company_id:
                identity = identity.with_company(company_id, "experience")

        if not identity.whop_company_id:
            raise ContextError(400, "Company context required", _company_hint(self._settings))

        if identity.user_token:
            try:
                token_user_id = await self._oracle.verify_user_token(identity.user_token)
            except InvalidUserTokenError as exc:
                logger.info("context.invalid_user_token", error=str(exc))
                raise ContextError(401, "Invalid user token", _user_hint(self._settings)) from exc
            if identity.whop_user_id and identity.whop_user_id != token_user_id:
                raise ContextError(401, "User id does not match user token", _user_hint(self._settings))
            identity = identity.with_user(token_user_id)

        if not identity.whop_user_id:
            raise ContextError(401, "Authentication required", _user_hint(self._settings))

        return identity

    async def _tenant_and_user(self, identity: RequestIdentity) -> tuple[TenantRead, UserRead | None]:
        tenant = await self._resolver.resolve(identity.whop_company_id)
        user = await self._users.get_user(tenant, identity.whop_user_id)
        return tenant, user

    async def build(self, identity: RequestIdentity) -> IdentityContext:
        identity = await self.complete_identity(identity)

        oracle_task = start_oracle(self._oracle, identity)
        try:
            tenant, local_user = await self._tenant_and_user(identity)
        except BaseException:
            discard_oracle(oracle_task)
            raise

        decision = await derive_role(identity, local_user, oracle_task, self._settings)

        user = await self._users.ensure_user(
            tenant,
            identity.whop_user_id,
            role=stored_role(decision, local_user),
            whop_experience_id=identity.whop_experience_id,
            existing=local_user,
        )

        return IdentityContext(
            tenant_id=tenant.id,
            whop_company_id=tenant.whop_company_id,
            whop_user_id=identity.whop_user_id,
            user_id=user.id,
            whop_experience_id=identity.whop_experience_id,
            role=decision.role,
            access_level=decision.access_level,
            capabilities=decision.capabilities,
            role_source=decision.source,
        )
