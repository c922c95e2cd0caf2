"""Async HTTP client for the Whop platform API.

WhopClient is the access oracle used by role derivation plus the handful of
mutating calls the app makes (charges, promo codes). Reads are retried with
tenacity (3 attempts, exponential backoff 1-10s) on WhopUnavailableError;
mutating calls are never retried.

Error mapping:
- transport failures, timeouts and 5xx responses -> WhopUnavailableError
- other non-2xx responses -> WhopAPIError (status code and body attached)
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from jose import JWTError, jwt
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.challengehub.clients.exceptions import InvalidUserTokenError, WhopAPIError, WhopUnavailableError
from src.challengehub.config import Settings
from src.challengehub.core.roles import AccessCheck, AccessLevel

logger = structlog.get_logger(__name__)

_whop_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(WhopUnavailableError),
    reraise=True,
)


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    body = response.text
    if response.status_code >= 500:
        raise WhopUnavailableError(
            f"Whop API unavailable ({response.status_code})",
            status_code=response.status_code,
            body=body,
        )
    raise WhopAPIError(
        f"Whop API error ({response.status_code}): {body[:200]}",
        status_code=response.status_code,
        body=body,
    )


class WhopClient:
    """Async client for the Whop REST API.

    Args:
        api_key: App API key sent as a bearer token.
        base_url: API origin (default https://api.whop.com).
        company_api_key: Secondary key used only when a promo-code creation
            with the app key fails.
        app_id: Expected audience of user tokens, when set.
        public_key: PEM-encoded ES256 key user tokens are signed with.
        token_issuer: Expected ``iss`` claim of user tokens.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    ACCESS_PATH = "/api/v1/users/{user_id}/access/{resource_id}"
    EXPERIENCE_PATH = "/api/v1/experiences/{experience_id}"
    CHARGE_PATH = "/api/v1/payments/charge_user"
    PROMO_CODES_PATH = "/api/v2/promo_codes"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.whop.com",
        company_api_key: str = "",
        app_id: str = "",
        public_key: str = "",
        token_issuer: str = "urn:whopcom:exp-proxy",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._company_api_key = company_api_key
        self._app_id = app_id
        self._public_key = public_key
        self._token_issuer = token_issuer
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> WhopClient:
        return cls(
            api_key=settings.WHOP_API_KEY,
            base_url=settings.WHOP_API_BASE_URL,
            company_api_key=settings.WHOP_COMPANY_API_KEY,
            app_id=settings.WHOP_APP_ID,
            public_key=settings.WHOP_PUBLIC_KEY,
            token_issuer=settings.WHOP_TOKEN_ISSUER,
            timeout=settings.WHOP_API_TIMEOUT,
        )

    def _client(self, api_key: str | None = None, company_id: str | None = None) -> httpx.AsyncClient:
        """Create a new httpx client authenticated with the given key."""
        headers = {
            "Authorization": f"Bearer {api_key or self._api_key}",
            "Content-Type": "application/json",
        }
        if company_id:
            headers["X-Whop-Company-ID"] = company_id
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        api_key: str | None = None,
        company_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            async with self._client(api_key, company_id) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise WhopUnavailableError(f"Whop API unreachable: {exc}") from exc
        _raise_for_status(response)
        return response

    # ── Access oracle ─────────────────────────────────────────────────────────

    @_whop_retry
    async def check_access(self, whop_user_id: str, resource_id: str) -> AccessCheck:
        """Ask whether a user may access a company or experience.

        GET /api/v1/users/{user_id}/access/{resource_id} answers with
        ``{"has_access": bool, "access_level": "admin"|"customer"|"no_access"}``.
        Unknown access levels and 403/404 answers are treated as no_access.
        """
        try:
            response = await self._request(
                "GET",
                self.ACCESS_PATH.format(user_id=whop_user_id, resource_id=resource_id),
            )
        except WhopAPIError as exc:
            if isinstance(exc, WhopUnavailableError) or exc.status_code not in (403, 404):
                raise
            return AccessCheck(has_access=False, access_level=AccessLevel.no_access, resource_id=resource_id)
        data = response.json()
        try:
            level = AccessLevel(data.get("access_level", AccessLevel.no_access.value))
        except ValueError:
            level = AccessLevel.no_access
        has_access = bool(data.get("has_access", False)) and level != AccessLevel.no_access
        logger.debug(
            "whop.access_checked",
            whop_user_id=whop_user_id,
            resource_id=resource_id,
            has_access=has_access,
            access_level=level.value,
        )
        return AccessCheck(has_access=has_access, access_level=level, resource_id=resource_id)

    @_whop_retry
    async def get_experience_company(self, experience_id: str) -> str | None:
        """Return the company id that owns an experience, or None if unknown."""
        try:
            response = await self._request(
                "GET",
                self.EXPERIENCE_PATH.format(experience_id=experience_id),
            )
        except WhopAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        data = response.json()
        company = data.get("company") or {}
        company_id = company.get("id") if isinstance(company, dict) else None
        return company_id or data.get("company_id")

    async def verify_user_token(self, token: str) -> str:
        """Verify a platform user token and return its ``sub`` (the user id).

        Raises:
            InvalidUserTokenError: No public key is configured, or the token's
                signature, issuer, audience or subject is invalid.
        """
        if not self._public_key:
            raise InvalidUserTokenError("WHOP_PUBLIC_KEY is not configured")
        try:
            claims = jwt.decode(
                token,
                self._public_key,
                algorithms=["ES256"],
                audience=self._app_id or None,
                issuer=self._token_issuer,
                options={"verify_aud": bool(self._app_id)},
            )
        except JWTError as exc:
            raise InvalidUserTokenError(str(exc)) from exc
        subject = claims.get("sub")
        if not subject:
            raise InvalidUserTokenError("Token has no subject")
        return subject

    # ── Payments ──────────────────────────────────────────────────────────────

    async def create_charge(
        self,
        whop_user_id: str,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        product_id: str | None = None,
    ) -> dict[str, Any]:
        """Create an in-app charge for a user.

        Returns the platform's charge object (``id``, ``amount``, ``currency``
        and a checkout url the client opens).
        """
        payload: dict[str, Any] = {
            "user_id": whop_user_id,
            "amount": amount_cents,
            "currency": currency,
            "metadata": metadata,
        }
        if product_id:
            payload["product_id"] = product_id
        response = await self._request("POST", self.CHARGE_PATH, json=payload)
        data = response.json()
        logger.info(
            "whop.charge_created",
            charge_id=data.get("id"),
            whop_user_id=whop_user_id,
            amount=amount_cents,
        )
        return data

    # ── Promo codes ───────────────────────────────────────────────────────────

    async def create_promo_code(self, company_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a promo code on behalf of a company.

        The app key is tried first. If that fails and a secondary company key
        is configured, the call is repeated once with it. The error of the
        last attempt is raised otherwise.
        """
        try:
            response = await self._request(
                "POST", self.PROMO_CODES_PATH, company_id=company_id, json=payload
            )
        except WhopAPIError as exc:
            if not self._company_api_key:
                raise
            logger.warning(
                "whop.promo_code_primary_failed",
                whop_company_id=company_id,
                status_code=exc.status_code,
                error=str(exc),
            )
            response = await self._request(
                "POST",
                self.PROMO_CODES_PATH,
                api_key=self._company_api_key,
                company_id=company_id,
                json=payload,
            )
        data = response.json()
        logger.info("whop.promo_code_created", whop_company_id=company_id, promo_code_id=data.get("id"))
        return data

    @_whop_retry
    async def list_promo_codes(self, company_id: str) -> list[dict[str, Any]]:
        response = await self._request("GET", self.PROMO_CODES_PATH, company_id=company_id)
        data = response.json()
        if isinstance(data, dict):
            return data.get("data", [])
        return data
