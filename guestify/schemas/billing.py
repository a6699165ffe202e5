"""Billing API Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SubscriptionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stripe_subscription_id: str
    plan_type: str
    status: str
    recurring: bool
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    trial_remaining_days: int = 0
    trial_consumed: bool = False
    canceled_at: datetime | None = None


class ActiveSubscriptionResponse(BaseModel):
    subscription: SubscriptionInfo | None = None


class PortalSessionResponse(BaseModel):
    url: str


class CancelSubscriptionRequest(BaseModel):
    subscription_id: int


class CancelSubscriptionResponse(BaseModel):
    message: str
