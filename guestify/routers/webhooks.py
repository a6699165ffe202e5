"""Webhook routes — Stripe."""

import logging
from typing import Any

import stripe
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from guestify.db.session import get_db
from guestify.schemas.webhook import WebhookAck
from guestify.services.errors import MalformedEventError, MissingEntityError
from guestify.services.reconciliation import EVENT_HANDLERS, WebhookContext
from guestify.services.stripe_gateway import StripeGateway, get_stripe
from guestify.utils import now_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _respond(status_code: int, message: str, error: bool = False) -> JSONResponse:
    ack = WebhookAck(error=error, message=message)
    return JSONResponse(status_code=status_code, content=ack.model_dump())


def _parse_envelope(event: Any) -> tuple[str, str | None, dict[str, Any]]:
    if not isinstance(event, dict):
        raise MalformedEventError("Event body is not an object")
    event_type = event.get("type")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_type, str) or not isinstance(obj, dict):
        raise MalformedEventError("Event must carry 'type' and 'data.object'")
    return event_type, event.get("id"), obj


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe),
):
    if not stripe_signature:
        return _respond(400, "Missing Stripe-Signature header", error=True)

    # Verification needs the exact bytes Stripe signed
    payload = await request.body()
    try:
        event = gateway.construct_event(payload, stripe_signature)
        event_type, event_id, data = _parse_envelope(event)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook rejected: {e}")
        return _respond(400, "Webhook Error: invalid signature", error=True)
    except (ValueError, MalformedEventError) as e:
        logger.warning(f"Stripe webhook malformed: {e}")
        return _respond(400, f"Webhook Error: {e}", error=True)

    logger.info(f"Stripe webhook: {event_type} ({event_id})")

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled Stripe event type: {event_type}")
        return _respond(200, f"Unhandled event: {event_type}")

    ctx = WebhookContext(db=db, stripe=gateway, now=now_utc())
    try:
        message = await handler(data, ctx)
    except MissingEntityError as e:
        logger.warning(f"{event_type} ({event_id}) dropped: {e}")
        return _respond(404, str(e), error=True)
    except MalformedEventError as e:
        logger.warning(f"{event_type} ({event_id}) malformed: {e}")
        return _respond(400, str(e), error=True)
    except Exception:
        logger.exception(f"Failed to process {event_type} ({event_id})")
        await db.rollback()
        return _respond(500, "Internal server error", error=True)

    return _respond(200, message)
