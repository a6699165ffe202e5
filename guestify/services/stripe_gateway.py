"""Stripe gateway — the one place the service talks to the Stripe SDK.

Constructed once at startup and injected into routes; nothing here sets the
global ``stripe.api_key``.
"""

import asyncio
import json
import logging
from typing import Any

import stripe
from fastapi import Request

from guestify.config import Settings
from guestify.constants import STRIPE_SIGNATURE_TOLERANCE

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin async wrapper around ``stripe.StripeClient`` plus webhook verification."""

    def __init__(self, secret_key: str, webhook_secret: str, api_version: str | None = None):
        self._webhook_secret = webhook_secret
        self._client: stripe.StripeClient | None = None
        if secret_key:
            self._client = stripe.StripeClient(secret_key, stripe_version=api_version)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
        )

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            raise RuntimeError("Stripe API key not configured")
        return self._client

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the signature over the raw body and parse it.

        Raises ``stripe.SignatureVerificationError`` on a bad or stale
        signature and ``ValueError`` if the body is not JSON.
        """
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            self._webhook_secret,
            STRIPE_SIGNATURE_TOLERANCE,
        )
        return json.loads(payload)

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        sub = await asyncio.to_thread(self.client.v1.subscriptions.retrieve, subscription_id)
        return sub.to_dict()

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        customer = await asyncio.to_thread(self.client.v1.customers.retrieve, customer_id)
        return customer.to_dict()

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a Stripe Customer Portal session and return the URL."""
        session = await asyncio.to_thread(
            self.client.v1.billing_portal.sessions.create,
            {"customer": customer_id, "return_url": return_url},
        )
        return session.url

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        sub = await asyncio.to_thread(self.client.v1.subscriptions.cancel, subscription_id)
        logger.info(f"Cancelled Stripe subscription {subscription_id}: status={sub.status}")
        return sub.to_dict()


def get_stripe(request: Request) -> StripeGateway:
    """FastAPI dependency returning the gateway built at startup."""
    return request.app.state.stripe
