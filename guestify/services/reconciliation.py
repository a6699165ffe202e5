"""Stripe event reconciliation — projects webhook payloads onto local billing records.

Each handler takes the event's ``data.object`` and a ``WebhookContext`` and
performs at most one keyed write through ``subscription_store``. Handlers are
safe to run more than once and in any order relative to each other.
"""

import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from guestify.constants import SECONDS_PER_DAY
from guestify.models.enums import CheckoutSessionStatus, SubscriptionPlan, SubscriptionStatus
from guestify.services import subscription_store as store
from guestify.services.errors import (
    CheckoutSessionNotFoundError,
    MalformedEventError,
    SubscriptionNotFoundError,
    UserNotFoundError,
)
from guestify.services.stripe_gateway import StripeGateway
from guestify.utils import from_unix

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"


# Stripe billing interval -> local plan
PLAN_BY_INTERVAL: dict[str, SubscriptionPlan] = {
    "month": SubscriptionPlan.MONTHLY,
    "year": SubscriptionPlan.YEARLY,
}

# Stripe subscription status -> local status
STATUS_BY_STRIPE_STATUS: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.UNPAID,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.PAUSED,
}


@dataclass(frozen=True)
class WebhookContext:
    """Collaborators for one webhook delivery."""

    db: AsyncSession
    stripe: StripeGateway
    now: datetime

    @property
    def now_ts(self) -> int:
        return int(self.now.timestamp())


Handler = Callable[[dict[str, Any], WebhookContext], Awaitable[str]]


# --- Pure mapping and arithmetic ---


def map_status(
    stripe_status: str | None, default: SubscriptionStatus = SubscriptionStatus.PENDING
) -> SubscriptionStatus:
    """Map a Stripe subscription status to the local vocabulary. Never raises."""
    if not stripe_status:
        return default
    return STATUS_BY_STRIPE_STATUS.get(stripe_status, default)


def map_plan(interval: str | None) -> SubscriptionPlan | None:
    if not interval:
        return None
    return PLAN_BY_INTERVAL.get(interval.lower())


def trial_remaining_days(trial_end: int | None, now: int) -> int:
    """Whole days left in a trial, rounded up; 0 once lapsed or without a trial."""
    if not trial_end:
        return 0
    return max(0, math.ceil((trial_end - now) / SECONDS_PER_DAY))


# --- Payload extraction ---


def _id_of(value: Any) -> str | None:
    """Stripe references arrive either as an ID or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None:
        raise MalformedEventError(f"Event object is missing '{key}'")
    return value


def _first_item(stripe_sub: dict[str, Any]) -> dict[str, Any]:
    try:
        return stripe_sub["items"]["data"][0]
    except (KeyError, TypeError, IndexError):
        return {}


def _period_timestamps(stripe_sub: dict[str, Any]) -> tuple[int | None, int | None]:
    """Extract current_period_start/end, handling Stripe API version differences.

    Newer API versions (2025-03-31+) moved these fields to items.data[0].
    """
    if stripe_sub.get("current_period_start") and stripe_sub.get("current_period_end"):
        return stripe_sub["current_period_start"], stripe_sub["current_period_end"]
    item = _first_item(stripe_sub)
    return item.get("current_period_start"), item.get("current_period_end")


def _interval_of(item: dict[str, Any]) -> str | None:
    """Billing interval of a subscription item or invoice line."""
    price = item.get("price") or {}
    recurring = price.get("recurring") or {}
    if recurring.get("interval"):
        return recurring["interval"]
    plan = item.get("plan") or {}
    return plan.get("interval")


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription referenced by an invoice; moved under ``parent`` in 2025 API versions."""
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def _invoice_first_line(invoice: dict[str, Any]) -> dict[str, Any]:
    try:
        return invoice["lines"]["data"][0]
    except (KeyError, TypeError, IndexError):
        return {}


def _subscription_fields(stripe_sub: dict[str, Any], now: int) -> dict[str, Any]:
    """Columns derived from a full Stripe subscription object."""
    interval = _interval_of(_first_item(stripe_sub))
    plan = map_plan(interval)
    if plan is None:
        raise MalformedEventError(f"Unsupported billing interval: {interval!r}")

    period_start, period_end = _period_timestamps(stripe_sub)
    has_trial = bool(stripe_sub.get("trial_start") and stripe_sub.get("trial_end"))
    trial_end = stripe_sub.get("trial_end") if has_trial else None

    return {
        "plan_type": plan,
        "recurring": not stripe_sub.get("cancel_at_period_end", False),
        "status": map_status(stripe_sub.get("status")),
        "current_period_start": from_unix(period_start),
        "current_period_end": from_unix(period_end),
        "trial_start": from_unix(stripe_sub.get("trial_start")) if has_trial else None,
        "trial_end": from_unix(trial_end),
        "trial_remaining_days": trial_remaining_days(trial_end, now),
    }


# --- User resolution ---


async def _resolve_user_by_email(email: str | None, ctx: WebhookContext) -> str:
    if email:
        profile = await store.get_profile_by_email(ctx.db, email)
        if profile:
            return profile.id
    raise UserNotFoundError(f"No profile for billing email {email!r}")


async def _customer_email(customer_id: str | None, ctx: WebhookContext) -> str | None:
    if not customer_id:
        return None
    customer = await ctx.stripe.retrieve_customer(customer_id)
    return customer.get("email")


async def _resolve_user_by_customer(customer_id: str | None, ctx: WebhookContext) -> str:
    if customer_id:
        profile = await store.get_profile_by_customer_id(ctx.db, customer_id)
        if profile:
            return profile.id
    email = await _customer_email(customer_id, ctx)
    return await _resolve_user_by_email(email, ctx)


# --- Checkout sessions ---


async def _set_checkout_status(
    session: dict[str, Any], status: CheckoutSessionStatus, ctx: WebhookContext
) -> str:
    session_id = _require(session, "id")
    if await store.update_checkout_session_status(ctx.db, session_id, status) is None:
        raise CheckoutSessionNotFoundError(f"Checkout session {session_id} not found")
    return f"Checkout session {status.lower()}"


async def handle_checkout_completed(session: dict[str, Any], ctx: WebhookContext) -> str:
    return await _set_checkout_status(session, CheckoutSessionStatus.COMPLETED, ctx)


async def handle_checkout_expired(session: dict[str, Any], ctx: WebhookContext) -> str:
    return await _set_checkout_status(session, CheckoutSessionStatus.EXPIRED, ctx)


# --- Invoices ---


async def handle_invoice_created(invoice: dict[str, Any], ctx: WebhookContext) -> str:
    """Record a new subscription from its first invoice (insert-if-absent)."""
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info(f"Invoice {invoice.get('id')} has no subscription, nothing to record")
        return "Invoice is not for a subscription"

    if await store.get_subscription(ctx.db, subscription_id):
        return "Subscription already recorded"

    customer_id = _id_of(invoice.get("customer"))
    email = invoice.get("customer_email") or await _customer_email(customer_id, ctx)
    user_id = await _resolve_user_by_email(email, ctx)

    line = _invoice_first_line(invoice)
    interval = _interval_of(line)
    if interval is None:
        stripe_sub = await ctx.stripe.retrieve_subscription(subscription_id)
        interval = _interval_of(_first_item(stripe_sub))
    plan = map_plan(interval)
    if plan is None:
        raise MalformedEventError(f"Unsupported billing interval: {interval!r}")

    period = line.get("period") or {}
    is_trial = invoice.get("amount_due") == 0
    trial_end = period.get("end") if is_trial else None

    inserted = await store.insert_subscription_if_absent(ctx.db, {
        "user_id": user_id,
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription_id,
        "plan_type": plan,
        "status": SubscriptionStatus.PENDING,
        "recurring": True,
        "current_period_start": from_unix(period.get("start")),
        "current_period_end": from_unix(period.get("end")),
        "trial_start": from_unix(period.get("start")) if is_trial else None,
        "trial_end": from_unix(trial_end),
        "trial_remaining_days": trial_remaining_days(trial_end, ctx.now_ts),
    })
    if not inserted:
        return "Subscription already recorded"
    logger.info(f"Recorded subscription {subscription_id} for user {user_id} ({plan})")
    return "Invoice created processed"


async def handle_invoice_payment_succeeded(invoice: dict[str, Any], ctx: WebhookContext) -> str:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return "Invoice is not for a subscription"

    amount_paid = _require(invoice, "amount_paid")
    updates: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE}
    if amount_paid == 0:
        updates = {"status": SubscriptionStatus.TRIALING, "trial_consumed": True}

    if await store.update_subscription(ctx.db, subscription_id, updates) is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return "Invoice payment succeeded handled"


async def handle_invoice_payment_failed(invoice: dict[str, Any], ctx: WebhookContext) -> str:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return "Invoice is not for a subscription"

    updates = {"status": SubscriptionStatus.UNPAID}
    if await store.update_subscription(ctx.db, subscription_id, updates) is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return "Subscription status updated to unpaid"


# --- Subscriptions ---


async def handle_subscription_created(stripe_sub: dict[str, Any], ctx: WebhookContext) -> str:
    """Upsert the full subscription; an already-advanced status is kept."""
    subscription_id = _require(stripe_sub, "id")
    customer_id = _id_of(stripe_sub.get("customer"))

    existing = await store.get_subscription(ctx.db, subscription_id)
    if existing:
        user_id = existing.user_id
    else:
        user_id = await _resolve_user_by_customer(customer_id, ctx)

    values = _subscription_fields(stripe_sub, ctx.now_ts)
    values.update(
        user_id=user_id,
        stripe_customer_id=customer_id,
        stripe_subscription_id=subscription_id,
    )
    await store.upsert_subscription(ctx.db, values, preserve_status=True)
    return "Subscription created processed"


async def handle_subscription_updated(stripe_sub: dict[str, Any], ctx: WebhookContext) -> str:
    subscription_id = _require(stripe_sub, "id")

    updates = _subscription_fields(stripe_sub, ctx.now_ts)
    updates["canceled_at"] = from_unix(stripe_sub.get("canceled_at"))
    # Trial ran out or was cancelled mid-way
    if updates["trial_remaining_days"] == 0 or stripe_sub.get("status") == "canceled":
        updates["trial_consumed"] = True

    if await store.update_subscription(ctx.db, subscription_id, updates) is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return "Subscription updated handled"


async def handle_subscription_deleted(stripe_sub: dict[str, Any], ctx: WebhookContext) -> str:
    subscription_id = _require(stripe_sub, "id")

    updates = {
        "status": map_status(stripe_sub.get("status"), default=SubscriptionStatus.CANCELLED),
        "canceled_at": ctx.now,
        "trial_remaining_days": trial_remaining_days(stripe_sub.get("trial_end"), ctx.now_ts),
        "trial_consumed": True,
    }
    if await store.update_subscription(ctx.db, subscription_id, updates) is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return "Subscription deleted handled"


async def handle_subscription_paused(stripe_sub: dict[str, Any], ctx: WebhookContext) -> str:
    subscription_id = _require(stripe_sub, "id")

    updates = {"status": SubscriptionStatus.PAUSED}
    if await store.update_subscription(ctx.db, subscription_id, updates) is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return "Subscription paused"


EVENT_HANDLERS: dict[EventType, Handler] = {
    EventType.CHECKOUT_SESSION_COMPLETED: handle_checkout_completed,
    EventType.CHECKOUT_SESSION_EXPIRED: handle_checkout_expired,
    EventType.INVOICE_CREATED: handle_invoice_created,
    EventType.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
    EventType.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    EventType.SUBSCRIPTION_CREATED: handle_subscription_created,
    EventType.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EventType.SUBSCRIPTION_RESUMED: handle_subscription_updated,
    EventType.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventType.SUBSCRIPTION_PAUSED: handle_subscription_paused,
}
