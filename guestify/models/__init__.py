"""SQLAlchemy models for the billing service."""

from .base import Base
from .enums import CheckoutSessionStatus, SubscriptionPlan, SubscriptionStatus
from .profile import Profile
from .subscription import Subscription
from .checkout_session import CheckoutSession

__all__ = [
    "Base",
    "Profile",
    "Subscription",
    "CheckoutSession",
    "SubscriptionStatus",
    "SubscriptionPlan",
    "CheckoutSessionStatus",
]
