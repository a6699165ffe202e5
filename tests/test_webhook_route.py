import time

from factories import DAY, encode, make_event, make_invoice, make_subscription, sign
from guestify.models.enums import SubscriptionPlan, SubscriptionStatus
from guestify.services.reconciliation import EVENT_HANDLERS, EventType

URL = "/webhooks/stripe"


async def _post(client, event: dict, signature: str | None = None):
    payload = encode(event)
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature or sign(payload)
    return await client.post(URL, content=payload, headers=headers)


async def test_end_to_end_trial_then_cancel(client, profile, load_subscription):
    now = int(time.time())
    invoice = make_invoice(start=now, end=now + 14 * DAY)

    resp = await _post(client, make_event("invoice.created", invoice, "evt_1"))
    assert resp.status_code == 200
    assert resp.json() == {"data": {}, "error": False, "message": "Invoice created processed"}
    sub = await load_subscription("sub_1")
    assert sub.user_id == "user_42"
    assert sub.status == SubscriptionStatus.PENDING
    assert sub.plan_type == SubscriptionPlan.MONTHLY

    resp = await _post(client, make_event("invoice.payment_succeeded", make_invoice(amount_paid=0), "evt_2"))
    assert resp.status_code == 200
    sub = await load_subscription("sub_1")
    assert sub.status == SubscriptionStatus.TRIALING
    assert sub.trial_consumed is True

    deleted = make_subscription(status="canceled", trial_start=now, trial_end=now + 14 * DAY)
    resp = await _post(client, make_event("customer.subscription.deleted", deleted, "evt_3"))
    assert resp.status_code == 200
    sub = await load_subscription("sub_1")
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.canceled_at is not None
    assert sub.trial_consumed is True


async def test_out_of_order_created_keeps_active(client, profile, load_subscription):
    await _post(client, make_event("invoice.created", make_invoice(amount_due=2900), "evt_1"))
    await _post(client, make_event("invoice.payment_succeeded", make_invoice(amount_paid=2900), "evt_2"))

    resp = await _post(client, make_event("customer.subscription.created", make_subscription(status="incomplete"), "evt_3"))

    assert resp.status_code == 200
    sub = await load_subscription("sub_1")
    assert sub.status == SubscriptionStatus.ACTIVE


async def test_invalid_signature_is_rejected_without_writing(client, profile, count_subscriptions):
    payload = encode(make_event("invoice.created", make_invoice()))
    bad = sign(payload, secret="whsec_someone_else")

    resp = await client.post(URL, content=payload, headers={"Stripe-Signature": bad})

    assert resp.status_code == 400
    assert resp.json()["error"] is True
    assert await count_subscriptions() == 0


async def test_signature_over_different_body_is_rejected(client, profile, count_subscriptions):
    original = encode(make_event("invoice.created", make_invoice()))
    tampered = encode(make_event("invoice.created", make_invoice(email="attacker@example.com")))

    resp = await client.post(URL, content=tampered, headers={"Stripe-Signature": sign(original)})

    assert resp.status_code == 400
    assert await count_subscriptions() == 0


async def test_stale_signature_is_rejected(client, profile, count_subscriptions):
    payload = encode(make_event("invoice.created", make_invoice()))
    stale = sign(payload, timestamp=int(time.time()) - 3600)

    resp = await client.post(URL, content=payload, headers={"Stripe-Signature": stale})

    assert resp.status_code == 400
    assert await count_subscriptions() == 0


async def test_missing_signature_header(client, profile, count_subscriptions):
    resp = await client.post(URL, content=encode(make_event("invoice.created", make_invoice())))

    assert resp.status_code == 400
    assert resp.json()["message"] == "Missing Stripe-Signature header"
    assert await count_subscriptions() == 0


async def test_signed_body_that_is_not_json(client):
    payload = b"not json"

    resp = await client.post(URL, content=payload, headers={"Stripe-Signature": sign(payload)})

    assert resp.status_code == 400


async def test_envelope_without_data_object(client):
    payload = encode({"id": "evt_1", "type": "invoice.created", "data": {}})

    resp = await client.post(URL, content=payload, headers={"Stripe-Signature": sign(payload)})

    assert resp.status_code == 400


async def test_unknown_event_type_is_acknowledged(client, count_subscriptions):
    resp = await _post(client, make_event("charge.refunded", {"id": "ch_1"}))

    assert resp.status_code == 200
    assert resp.json()["message"] == "Unhandled event: charge.refunded"
    assert await count_subscriptions() == 0


async def test_missing_subscription_is_client_error(client):
    resp = await _post(client, make_event("invoice.payment_failed", make_invoice(sub_id="sub_missing")))

    assert resp.status_code == 404
    assert resp.json()["error"] is True


async def test_unknown_user_is_client_error(client, profile, count_subscriptions):
    resp = await _post(client, make_event("invoice.created", make_invoice(email="nobody@example.com")))

    assert resp.status_code == 404
    assert await count_subscriptions() == 0


async def test_unsupported_interval_is_malformed(client, profile):
    resp = await _post(client, make_event("invoice.created", make_invoice(interval="week")))

    assert resp.status_code == 400


async def test_handler_failure_is_server_error(client, monkeypatch):
    async def boom(data, ctx):
        raise ConnectionError("database unavailable")

    monkeypatch.setitem(EVENT_HANDLERS, EventType.INVOICE_PAYMENT_FAILED, boom)

    resp = await _post(client, make_event("invoice.payment_failed", make_invoice()))

    assert resp.status_code == 500
    assert resp.json() == {"data": {}, "error": True, "message": "Internal server error"}


async def test_duplicate_delivery_is_acknowledged(client, profile, count_subscriptions):
    event = make_event("customer.subscription.created", make_subscription(), "evt_dup")

    first = await _post(client, event)
    second = await _post(client, event)

    assert first.status_code == second.status_code == 200
    assert await count_subscriptions() == 1
