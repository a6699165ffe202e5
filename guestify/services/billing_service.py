"""Host-facing billing operations — customer portal, trial cancellation."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from guestify.config import get_settings
from guestify.models.enums import SubscriptionStatus
from guestify.models.profile import Profile
from guestify.services import subscription_store as store
from guestify.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class BillingRequestError(ValueError):
    """The request can't be served for this user's billing state."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


async def create_portal_session(user: Profile, db: AsyncSession, gateway: StripeGateway) -> str:
    """Create a Stripe Customer Portal session for the user's latest subscription."""
    sub = await store.get_latest_subscription_for_user(db, user.id)
    if not sub or not sub.stripe_customer_id:
        raise BillingRequestError("No active subscription or Stripe customer ID found.")

    return await gateway.create_billing_portal_session(
        sub.stripe_customer_id, get_settings().portal_return_url
    )


async def cancel_trial(
    user: Profile, subscription_id: int, db: AsyncSession, gateway: StripeGateway
) -> None:
    """Cancel a trialing subscription on Stripe.

    The local record is left alone; the customer.subscription.deleted
    webhook moves it to CANCELLED.
    """
    sub = await store.get_subscription_by_id(db, subscription_id)
    if not sub:
        raise BillingRequestError("Subscription not found.", status_code=404)
    if sub.user_id != user.id:
        raise BillingRequestError("User is not allowed to access the resource", status_code=403)
    if sub.status != SubscriptionStatus.TRIALING:
        raise BillingRequestError("Only trialing subscriptions can be canceled.")

    result = await gateway.cancel_subscription(sub.stripe_subscription_id)
    if result.get("status") != "canceled":
        raise RuntimeError(f"Stripe did not cancel subscription {sub.stripe_subscription_id}")
    logger.info(f"User {user.id} cancelled trial subscription {sub.stripe_subscription_id}")
