"""Identity endpoints for the embedded app.

access-level is what the UI calls on load to pick the admin or member view.
context shows how identity was extracted, for diagnosing embedding problems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from src.challengehub.api.deps import get_context_builder, get_identity_context
from src.challengehub.config import get_settings
from src.challengehub.core.identity import extract_identity, is_platform_embedded
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.tenancy.context import ContextError

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


class AccessLevelResponse(BaseModel):
    tenant_id: str
    whop_company_id: str
    whop_user_id: str
    user_id: str
    whop_experience_id: str | None = None
    role: str
    access_level: str
    is_admin: bool
    capabilities: dict[str, bool] = Field(default_factory=dict)
    source: str


class ExtractionResponse(BaseModel):
    whop_user_id: str | None = None
    whop_company_id: str | None = None
    whop_experience_id: str | None = None
    company_source: str | None = None
    has_user_token: bool = False
    embedded: bool = False


class ContextResponse(BaseModel):
    extracted: ExtractionResponse
    resolved: AccessLevelResponse | None = None
    error: str | None = None
    hint: dict = Field(default_factory=dict)


def _to_access_level(ctx: IdentityContext) -> AccessLevelResponse:
    return AccessLevelResponse(
        tenant_id=ctx.tenant_id,
        whop_company_id=ctx.whop_company_id,
        whop_user_id=ctx.whop_user_id,
        user_id=ctx.user_id,
        whop_experience_id=ctx.whop_experience_id,
        role=ctx.role.value,
        access_level=ctx.access_level.value,
        is_admin=ctx.is_admin,
        capabilities=ctx.capabilities.as_dict(),
        source=ctx.role_source,
    )


@router.get("/access-level", response_model=AccessLevelResponse)
async def access_level(ctx: IdentityContext = Depends(get_identity_context)) -> AccessLevelResponse:
    """Role, access level and capabilities of the caller."""
    return _to_access_level(ctx)


@router.get("/context", response_model=ContextResponse)
async def identity_context(request: Request) -> ContextResponse:
    """Extraction result plus the resolved context, or why it failed.

    Tokens are reported as present or absent, never echoed.
    """
    settings = get_settings()
    identity = extract_identity(request.headers, request.cookies, settings)
    extracted = ExtractionResponse(
        whop_user_id=identity.whop_user_id,
        whop_company_id=identity.whop_company_id,
        whop_experience_id=identity.whop_experience_id,
        company_source=identity.company_source,
        has_user_token=identity.user_token is not None,
        embedded=is_platform_embedded(identity.referer, settings.WHOP_PLATFORM_DOMAIN),
    )

    builder = get_context_builder(request)
    try:
        ctx = await builder.build(identity)
    except ContextError as exc:
        return ContextResponse(extracted=extracted, error=exc.message, hint=exc.hint)
    return ContextResponse(extracted=extracted, resolved=_to_access_level(ctx))
