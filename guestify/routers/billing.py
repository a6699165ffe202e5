"""Billing API routes — JSON endpoints for the host dashboard."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from guestify.db.session import get_db
from guestify.models.profile import Profile
from guestify.schemas.billing import (
    ActiveSubscriptionResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    PortalSessionResponse,
    SubscriptionInfo,
)
from guestify.services import subscription_store as store
from guestify.services.auth_service import get_current_user
from guestify.services.billing_service import BillingRequestError, cancel_trial, create_portal_session
from guestify.services.stripe_gateway import StripeGateway, get_stripe

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/subscription", response_model=ActiveSubscriptionResponse)
async def active_subscription(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    sub = await store.get_active_subscription_for_user(db, user.id)
    if not sub:
        return ActiveSubscriptionResponse()
    return ActiveSubscriptionResponse(subscription=SubscriptionInfo.model_validate(sub))


@router.post("/portal", response_model=PortalSessionResponse)
async def billing_portal(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe),
):
    try:
        url = await create_portal_session(user, db, gateway)
    except BillingRequestError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return PortalSessionResponse(url=url)


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    body: CancelSubscriptionRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe),
):
    try:
        await cancel_trial(user, body.subscription_id, db, gateway)
    except BillingRequestError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return CancelSubscriptionResponse(
        message="Subscription was in trial and has been canceled successfully."
    )
