# ============================================================================
# kbase/core/billing/stripe_client.py
# ============================================================================
# Minimal async client for the Stripe REST API plus webhook signature
# verification. Only the calls the subscription flow needs are covered:
#   - price lookup by lookup key
#   - checkout session creation
#   - billing portal session creation
#
# Environment-driven configuration (see settings in config.py):
#   - settings.stripe_api_key (secret key; sent as Bearer token)
#   - settings.stripe_api_base (default: https://api.stripe.com/v1)
#   - settings.stripe_webhook_secret / settings.stripe_webhook_tolerance
# ============================================================================

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Dict, List, Optional

import httpx

from kbase.config import settings

logger = logging.getLogger("kbase.billing.stripe")


class StripeError(RuntimeError):
    """Raised when the Stripe API fails or returns an invalid response."""


class WebhookSignatureError(ValueError):
    """Raised when a webhook payload does not carry a valid Stripe-Signature."""


def verify_signature(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    """
    Verify a ``Stripe-Signature`` header (``t=<ts>,v1=<hex>[,v1=<hex>]``).

    The signed message is ``"<ts>.<raw body>"`` under HMAC-SHA256 with the
    endpoint secret.

    Raises:
        WebhookSignatureError: Missing/malformed header, no matching v1
            signature, or timestamp outside the tolerance
    """
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    timestamp: Optional[str] = None
    signatures: List[str] = []
    for item in sig_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not timestamp.isdigit() or not signatures:
        raise WebhookSignatureError("Malformed Stripe-Signature header")

    signed = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(secrets.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("No signature matches the expected signature for the payload")

    tolerance = settings.stripe_webhook_tolerance if tolerance is None else tolerance
    current = time.time() if now is None else now
    if tolerance and abs(current - int(timestamp)) > tolerance:
        raise WebhookSignatureError("Timestamp outside the tolerance zone")


def construct_event(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: Optional[int] = None,
) -> Dict[str, Any]:
    """Verify and parse a webhook payload into an event dict."""
    verify_signature(payload, sig_header, secret, tolerance=tolerance)
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e
    if not isinstance(event, dict) or "type" not in event:
        raise WebhookSignatureError("Webhook payload is not an event")
    return event


class StripeClient:
    """Async client for the Stripe REST API (form-encoded requests)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key or settings.stripe_api_key
        self.api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self.api_key:
            raise StripeError("STRIPE_API_KEY not set")

        async with httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.RequestError as e:
                raise StripeError(f"Stripe request {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise StripeError(f"Stripe HTTP {response.status_code} on {path}: {response.text[:1000]}")
        return response.json()

    async def list_prices(self, lookup_key: str) -> List[Dict[str, Any]]:
        """Prices registered under a lookup key (normally zero or one)."""
        body = await self._request(
            "GET",
            "/prices",
            params={"lookup_keys[]": lookup_key, "expand[]": "data.product"},
        )
        return body.get("data", [])

    async def create_checkout_session(
        self,
        price_id: str,
        client_reference_id: str,
        customer_email: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = {
            "mode": "subscription",
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": "1",
            "success_url": settings.stripe_session_success_url,
            "cancel_url": settings.stripe_session_cancel_url,
            "client_reference_id": client_reference_id,
        }
        if customer_id:
            data["customer"] = customer_id
        elif customer_email:
            data["customer_email"] = customer_email

        session = await self._request("POST", "/checkout/sessions", data=data)
        logger.info(f"Created checkout session {session.get('id')} for {client_reference_id}")
        return session

    async def create_portal_session(self, customer_id: str) -> Dict[str, Any]:
        session = await self._request(
            "POST",
            "/billing_portal/sessions",
            data={"customer": customer_id, "return_url": settings.stripe_portal_return_url},
        )
        logger.info(f"Created billing portal session for customer {customer_id}")
        return session


stripe_client = StripeClient()
