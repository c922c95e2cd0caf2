"""Caller identity extraction from inbound request headers and cookies.

The Whop platform embeds the app in an iframe and forwards the caller's
identity in several historical ways. extract_identity() walks an ordered
fallback chain per field and returns whatever it could find:

    company id:    x-whop-company-id / x-company-id header
                   -> "did" claim of the app-config cookie (base64url JWT payload)
                   -> /dashboard/<biz_...> segment of the Referer
    user id:       x-whop-user-id / x-user-id header
    experience id: x-whop-experience-id / x-experience-id header
                   -> /experiences/<exp_...> segment of the Referer
    user token:    x-whop-user-token header -> user-token cookie -> Authorization: Bearer

Extraction never raises. Callers decide which missing fields make the request
unauthenticated (401) or context-less (400).
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlparse

import structlog

from src.challengehub.config import Settings

logger = structlog.get_logger(__name__)

USER_ID_HEADERS = ("x-whop-user-id", "x-user-id")
COMPANY_ID_HEADERS = ("x-whop-company-id", "x-company-id")
EXPERIENCE_ID_HEADERS = ("x-whop-experience-id", "x-experience-id")
USER_TOKEN_HEADER = "x-whop-user-token"

# Minimum length of a normalized company id taken from the app-config cookie.
_MIN_COOKIE_COMPANY_ID_LENGTH = 11

_EXPERIENCE_PATH = re.compile(r"/experiences/(exp_[^/?#]+)", re.IGNORECASE)
_BEARER = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class RequestIdentity:
    """Best-effort identity triple (plus credential) pulled from one request."""

    whop_user_id: str | None = None
    whop_company_id: str | None = None
    whop_experience_id: str | None = None
    user_token: str | None = None
    referer: str | None = None
    company_source: str | None = None  # header | app_config_cookie | referer | experience

    def with_company(self, company_id: str, source: str) -> RequestIdentity:
        """Return a copy with the company id filled in from a later source."""
        return RequestIdentity(
            whop_user_id=self.whop_user_id,
            whop_company_id=company_id,
            whop_experience_id=self.whop_experience_id,
            user_token=self.user_token,
            referer=self.referer,
            company_source=source,
        )

    def with_user(self, user_id: str) -> RequestIdentity:
        """Return a copy whose user id comes from a verified token."""
        return RequestIdentity(
            whop_user_id=user_id,
            whop_company_id=self.whop_company_id,
            whop_experience_id=self.whop_experience_id,
            user_token=self.user_token,
            referer=self.referer,
            company_source=self.company_source,
        )


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    """Return the first non-empty header among names (case-insensitive)."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value and value.strip():
            return value.strip()
    return None


def normalize_company_id(raw: str, prefix: str = "biz_") -> str:
    """Prepend the canonical company prefix when it is missing."""
    raw = raw.strip()
    return raw if raw.startswith(prefix) else f"{prefix}{raw}"


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def company_from_app_config(cookie_value: str | None, prefix: str = "biz_") -> str | None:
    """Read the company id from the ``did`` claim of the app-config cookie.

    The cookie is JWT-shaped (header.payload.signature). Only the payload is
    decoded; the value is used as a routing hint, not as a credential.
    """
    if not cookie_value:
        return None
    parts = cookie_value.split(".")
    if len(parts) < 2 or not parts[1]:
        return None
    try:
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    did = payload.get("did")
    if not isinstance(did, str) or not did.strip():
        return None
    company_id = normalize_company_id(did, prefix)
    if len(company_id) < _MIN_COOKIE_COMPANY_ID_LENGTH:
        return None
    return company_id


def company_from_referer(referer: str | None, domain: str = "whop.com", prefix: str = "biz_") -> str | None:
    """Extract ``biz_...`` from a ``<domain>/dashboard/<company>`` Referer URL."""
    if not referer:
        return None
    pattern = re.compile(
        rf"{re.escape(domain)}/dashboard/({re.escape(prefix)}[^/?#]+)",
        re.IGNORECASE,
    )
    match = pattern.search(referer)
    return match.group(1) if match else None


def experience_from_referer(referer: str | None) -> str | None:
    """Extract ``exp_...`` from an ``/experiences/<id>`` Referer URL."""
    if not referer:
        return None
    match = _EXPERIENCE_PATH.search(referer)
    return match.group(1) if match else None


def extract_user_token(headers: Mapping[str, str], cookies: Mapping[str, str], cookie_name: str) -> str | None:
    """Return the user token from header, cookie, or bearer auth, in that order."""
    header_token = _first_header(headers, (USER_TOKEN_HEADER,))
    if header_token:
        return header_token
    cookie_token = cookies.get(cookie_name)
    if cookie_token:
        return cookie_token
    authorization = _first_header(headers, ("authorization",))
    if authorization:
        match = _BEARER.match(authorization)
        if match:
            return match.group(1).strip()
    return None


def is_platform_embedded(referer: str | None, domain: str = "whop.com") -> bool:
    """Heuristic: does the request come from the platform's embedding iframe?"""
    if not referer:
        return False
    try:
        host = (urlparse(referer).hostname or "").lower()
    except ValueError:
        return False
    domain = domain.lower()
    return host == domain or host.endswith(f".{domain}")


def extract_identity(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    settings: Settings,
) -> RequestIdentity:
    """Build a RequestIdentity from headers and cookies. Never raises."""
    referer = _first_header(headers, ("referer",))
    prefix = settings.COMPANY_ID_PREFIX

    company_id = _first_header(headers, COMPANY_ID_HEADERS)
    company_source = "header" if company_id else None

    if not company_id:
        company_id = company_from_app_config(cookies.get(settings.WHOP_APP_CONFIG_COOKIE), prefix)
        if company_id:
            company_source = "app_config_cookie"

    if not company_id:
        company_id = company_from_referer(referer, settings.WHOP_PLATFORM_DOMAIN, prefix)
        if company_id:
            company_source = "referer"

    experience_id = _first_header(headers, EXPERIENCE_ID_HEADERS) or experience_from_referer(referer)

    identity = RequestIdentity(
        whop_user_id=_first_header(headers, USER_ID_HEADERS),
        whop_company_id=company_id,
        whop_experience_id=experience_id,
        user_token=extract_user_token(headers, cookies, settings.WHOP_USER_TOKEN_COOKIE),
        referer=referer,
        company_source=company_source,
    )

    logger.debug(
        "identity.extracted",
        has_user_id=identity.whop_user_id is not None,
        has_company_id=identity.whop_company_id is not None,
        has_experience_id=identity.whop_experience_id is not None,
        has_token=identity.user_token is not None,
        company_source=company_source,
    )
    return identity
