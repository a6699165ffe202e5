"""Local vocabularies for subscription and checkout state."""

from enum import StrEnum


class SubscriptionStatus(StrEnum):
    PENDING = "PENDING"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    UNPAID = "UNPAID"
    CANCELLED = "CANCELLED"


class SubscriptionPlan(StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CheckoutSessionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    INACTIVE = "INACTIVE"
