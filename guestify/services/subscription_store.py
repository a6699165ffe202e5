"""Keyed, single-statement writes and lookups for subscription state.

Every write is one atomic statement against a unique key
(``stripe_subscription_id`` or ``session_id``), so concurrent or repeated
deliveries of the same event cannot create duplicates.
"""

import logging
from datetime import datetime, UTC
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from guestify.models.checkout_session import CheckoutSession
from guestify.models.enums import CheckoutSessionStatus, SubscriptionStatus
from guestify.models.profile import Profile
from guestify.models.subscription import Subscription
from guestify.utils import now_utc

logger = logging.getLogger(__name__)

# Columns an upsert never rewrites on conflict
_IMMUTABLE_ON_CONFLICT = {"user_id", "stripe_subscription_id", "created_at"}


def _insert(db: AsyncSession, model):
    """Dialect-specific INSERT so ON CONFLICT is available on PostgreSQL and SQLite."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


async def insert_subscription_if_absent(db: AsyncSession, values: dict[str, Any]) -> bool:
    """Insert a subscription unless one already exists for its Stripe ID.

    Returns True if a row was inserted.
    """
    stmt = (
        _insert(db, Subscription)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["stripe_subscription_id"])
        .returning(Subscription.id)
    )
    result = await db.execute(stmt)
    inserted = result.scalar_one_or_none() is not None
    await db.commit()
    return inserted


async def upsert_subscription(
    db: AsyncSession, values: dict[str, Any], preserve_status: bool = False
) -> None:
    """Create or update a subscription keyed by ``stripe_subscription_id``.

    ``user_id`` is only written on insert. With ``preserve_status`` the stored
    status survives the conflict unless it is still PENDING.
    """
    values = {**values, "updated_at": now_utc()}
    stmt = _insert(db, Subscription).values(**values)

    updates = {
        key: stmt.excluded[key] for key in values if key not in _IMMUTABLE_ON_CONFLICT
    }
    if preserve_status and "status" in updates:
        updates["status"] = case(
            (Subscription.status == SubscriptionStatus.PENDING, stmt.excluded.status),
            else_=Subscription.status,
        )

    stmt = stmt.on_conflict_do_update(index_elements=["stripe_subscription_id"], set_=updates)
    await db.execute(stmt)
    await db.commit()


async def update_subscription(
    db: AsyncSession, stripe_subscription_id: str, updates: dict[str, Any]
) -> int | None:
    """Update a subscription in place. Returns its id, or None if no row matched."""
    result = await db.execute(
        update(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .values(**updates)
        .returning(Subscription.id)
    )
    row_id = result.scalar_one_or_none()
    await db.commit()
    return row_id


async def update_checkout_session_status(
    db: AsyncSession, session_id: str, status: CheckoutSessionStatus
) -> int | None:
    result = await db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.session_id == session_id)
        .values(status=status)
        .returning(CheckoutSession.id)
    )
    row_id = result.scalar_one_or_none()
    await db.commit()
    return row_id


async def get_subscription(db: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_id(db: AsyncSession, subscription_id: int) -> Subscription | None:
    return await db.get(Subscription, subscription_id)


async def get_profile_by_email(db: AsyncSession, email: str) -> Profile | None:
    result = await db.execute(select(Profile).where(Profile.email == email))
    return result.scalar_one_or_none()


async def get_profile_by_customer_id(db: AsyncSession, customer_id: str) -> Profile | None:
    result = await db.execute(select(Profile).where(Profile.stripe_customer_id == customer_id))
    return result.scalar_one_or_none()


async def get_latest_subscription_for_user(db: AsyncSession, user_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_active_subscription_for_user(
    db: AsyncSession, user_id: str, now: datetime | None = None
) -> Subscription | None:
    """Return the user's currently valid subscription, if any.

    Valid means trialing with the trial still running, or active / paused
    with the current period still running.
    """
    now = now or now_utc()
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(
                [SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED]
            ),
        )
        .order_by(Subscription.current_period_end.desc())
        .limit(1)
    )
    sub = result.scalar_one_or_none()
    if not sub:
        return None

    if sub.status == SubscriptionStatus.TRIALING:
        valid = sub.trial_end is not None and _aware(sub.trial_end) > now
    else:
        valid = sub.current_period_end is not None and _aware(sub.current_period_end) > now

    if not valid:
        logger.warning(f"Subscription {sub.stripe_subscription_id} is {sub.status} but has lapsed")
        return None
    return sub


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
