"""Errors raised by outbound platform calls."""

from __future__ import annotations


class WhopAPIError(Exception):
    """The Whop API answered with an error response."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class WhopUnavailableError(WhopAPIError):
    """The Whop API could not be reached or failed server-side (5xx, timeout)."""


class InvalidUserTokenError(Exception):
    """The user token failed signature, issuer, or claim validation."""
