"""Inbound webhook signature verification and event parsing."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

SIGNATURE_HEADERS = ("x-whop-signature", "whop-signature")


class InvalidWebhookError(Exception):
    """Webhook body or signature is not acceptable."""


class WebhookSignatureError(InvalidWebhookError):
    """Signature missing, wrong, or impossible to check without a secret."""


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, headers: Mapping[str, str], secret: str, required: bool = True) -> None:
    """Check the HMAC-SHA256 signature of a raw webhook body.

    Accepts a bare hex digest or one prefixed with ``sha256=``. Without a
    secret the body cannot be authenticated: that is an error unless
    ``required`` is False (development only).

    Raises:
        WebhookSignatureError: No secret while required, or the signature
            header is missing or not matching.
    """
    if not secret:
        if required:
            raise WebhookSignatureError("Webhook secret not configured")
        return
    provided = next((headers[name] for name in SIGNATURE_HEADERS if headers.get(name)), None)
    if not provided:
        raise WebhookSignatureError("Missing webhook signature")
    provided = provided.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(provided.lower(), compute_signature(body, secret)):
        raise WebhookSignatureError("Invalid webhook signature")


def normalize_event(name: str) -> str:
    """``payment.succeeded`` and ``payment_succeeded`` name the same event."""
    return name.strip().lower().replace(".", "_")


def parse_event(body: bytes) -> tuple[str, dict[str, Any]]:
    """Return (normalized event name, data object) from a webhook body.

    The event name is read from ``action`` and falls back to ``type``.
    """
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidWebhookError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidWebhookError("Webhook body must be a JSON object")

    name = payload.get("action") or payload.get("type")
    if not isinstance(name, str) or not name:
        raise InvalidWebhookError("Webhook event name missing")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise InvalidWebhookError("Webhook data object missing")
    return normalize_event(name), data
