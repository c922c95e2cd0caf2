"""Role derivation from local user flags and the platform access check.

Priority order:

1. A local user row already flagged ADMIN is trusted without asking the
   platform again.
2. Otherwise the access oracle is asked, experience-scoped first and then
   company-scoped. ``admin`` maps to ADMIN, ``customer`` to MEMBER and
   ``no_access`` to GUEST.
3. If the oracle is unavailable and the request comes from the platform's
   embedding iframe, the caller is treated as an admin of the company
   (controlled by ORACLE_FAILURE_ADMIN_FALLBACK). This keeps installers from
   being locked out during platform outages at the cost of a weaker check.

Capabilities are a fixed function of the role.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog

from src.challengehub.clients.exceptions import WhopUnavailableError
from src.challengehub.config import Settings
from src.challengehub.core.identity import RequestIdentity, is_platform_embedded
from src.challengehub.core.monitoring import access_oracle_failures_total, role_decisions_total

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    GUEST = "GUEST"


class AccessLevel(str, Enum):
    admin = "admin"
    customer = "customer"
    no_access = "no_access"


@dataclass(frozen=True)
class AccessCheck:
    """Answer of the platform access check for one resource."""

    has_access: bool
    access_level: AccessLevel
    resource_id: str | None = None


class AccessOracle(Protocol):
    """Platform collaborator that knows who may access a company/experience."""

    async def check_access(self, whop_user_id: str, resource_id: str) -> AccessCheck: ...

    async def verify_user_token(self, token: str) -> str: ...

    async def get_experience_company(self, experience_id: str) -> str | None: ...


@dataclass(frozen=True)
class Capabilities:
    can_create: bool = False
    can_manage: bool = False
    can_participate: bool = False
    can_view_analytics: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "can_create": self.can_create,
            "can_manage": self.can_manage,
            "can_participate": self.can_participate,
            "can_view_analytics": self.can_view_analytics,
        }


ROLE_CAPABILITIES: dict[Role, Capabilities] = {
    Role.ADMIN: Capabilities(can_create=True, can_manage=True, can_participate=True, can_view_analytics=True),
    Role.MEMBER: Capabilities(can_participate=True),
    Role.GUEST: Capabilities(),
}

_LEVEL_TO_ROLE: dict[AccessLevel, Role] = {
    AccessLevel.admin: Role.ADMIN,
    AccessLevel.customer: Role.MEMBER,
    AccessLevel.no_access: Role.GUEST,
}


@dataclass(frozen=True)
class RoleDecision:
    role: Role
    access_level: AccessLevel
    capabilities: Capabilities
    source: str  # local_admin | oracle | oracle_fallback | local_member | default


class LocalUserLike(Protocol):
    role: str


def _decision(role: Role, access_level: AccessLevel, source: str) -> RoleDecision:
    return RoleDecision(
        role=role,
        access_level=access_level,
        capabilities=ROLE_CAPABILITIES[role],
        source=source,
    )


async def query_access(oracle: AccessOracle, identity: RequestIdentity) -> AccessCheck | None:
    """Ask the oracle about the caller, experience first, company second.

    Returns None when there is nothing to ask about (no user id, or neither an
    experience nor a company id). Raises WhopUnavailableError on outage.
    """
    if not identity.whop_user_id:
        return None

    experience_check: AccessCheck | None = None
    if identity.whop_experience_id:
        experience_check = await oracle.check_access(identity.whop_user_id, identity.whop_experience_id)
        if experience_check.has_access:
            return experience_check

    if identity.whop_company_id:
        return await oracle.check_access(identity.whop_user_id, identity.whop_company_id)

    return experience_check


def decide_role(
    identity: RequestIdentity,
    access: AccessCheck | None,
    local_user: LocalUserLike | None,
    oracle_failed: bool,
    settings: Settings,
) -> RoleDecision:
    """Combine the oracle answer with local flags. Pure; see module docstring."""
    if local_user is not None and local_user.role == Role.ADMIN.value:
        return _decision(Role.ADMIN, AccessLevel.admin, "local_admin")

    if not oracle_failed and access is not None:
        level = access.access_level if access.has_access else AccessLevel.no_access
        return _decision(_LEVEL_TO_ROLE[level], level, "oracle")

    if oracle_failed:
        if settings.ORACLE_FAILURE_ADMIN_FALLBACK and is_platform_embedded(
            identity.referer, settings.WHOP_PLATFORM_DOMAIN
        ):
            return _decision(Role.ADMIN, AccessLevel.admin, "oracle_fallback")
        if local_user is not None and local_user.role == Role.MEMBER.value:
            return _decision(Role.MEMBER, AccessLevel.customer, "local_member")

    return _decision(Role.GUEST, AccessLevel.no_access, "default")


async def ask_oracle(oracle: AccessOracle, identity: RequestIdentity) -> tuple[AccessCheck | None, bool]:
    """Run query_access, turning an outage into ``(None, True)``.

    Only WhopUnavailableError counts as an outage. A definite error answer
    (4xx) propagates to the caller.
    """
    try:
        return await query_access(oracle, identity), False
    except WhopUnavailableError as exc:
        access_oracle_failures_total.inc()
        logger.warning(
            "role.oracle_unavailable",
            whop_user_id=identity.whop_user_id,
            whop_company_id=identity.whop_company_id,
            error=str(exc),
        )
        return None, True


def record_decision(identity: RequestIdentity, decision: RoleDecision) -> None:
    if decision.source == "oracle_fallback":
        logger.warning(
            "role.oracle_failed_admin_fallback",
            whop_user_id=identity.whop_user_id,
            whop_company_id=identity.whop_company_id,
            referer=identity.referer,
        )
    role_decisions_total.labels(role=decision.role.value, source=decision.source).inc()


OracleAnswer = tuple[AccessCheck | None, bool]


def start_oracle(oracle: AccessOracle, identity: RequestIdentity) -> asyncio.Task[OracleAnswer]:
    """Start the access check in the background so it overlaps local lookups."""
    return asyncio.create_task(ask_oracle(oracle, identity))


def _consume(task: asyncio.Task[OracleAnswer]) -> None:
    if not task.cancelled():
        task.exception()


def discard_oracle(task: asyncio.Task[OracleAnswer]) -> None:
    """Drop an access check whose answer is no longer needed.

    A check that already failed has its exception retrieved; one still
    running is cancelled.
    """
    if task.done():
        _consume(task)
    else:
        task.add_done_callback(_consume)
        task.cancel()


async def derive_role(
    identity: RequestIdentity,
    local_user: LocalUserLike | None,
    oracle_task: asyncio.Task[OracleAnswer],
    settings: Settings,
) -> RoleDecision:
    """Decide the role from the local user and a started access check.

    A local admin does not wait for the platform; the check is discarded.
    """
    if local_user is not None and local_user.role == Role.ADMIN.value:
        discard_oracle(oracle_task)
        access, oracle_failed = None, False
    else:
        access, oracle_failed = await oracle_task

    decision = decide_role(identity, access, local_user, oracle_failed, settings)
    record_decision(identity, decision)
    return decision
