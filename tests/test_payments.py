import json
from datetime import timedelta

import pytest
import requests
from bson import ObjectId

from royal_jewels import cart, giftcards, orders
from royal_jewels.database import utcnow
from royal_jewels.errors import SignatureError, UpstreamFailure
from royal_jewels.payments import LineItem, StripeGateway, parse_event, session_form, verify_signature

from tests.conftest import WEBHOOK_SECRET, completed_event, headers_for, make_product, make_user, sign


@pytest.fixture
def order(db, gateway, ctx):
    pid = make_product(db, name="Ruby Pendant", price=12000.0)
    cart.add_or_update(db, ctx, pid, 1)
    order_id = orders.create_order(db, gateway, ctx)["orderId"]
    return db["order"].find_one({"_id": ObjectId(order_id)})


def _status(db, order):
    return db["order"].find_one({"_id": order["_id"]})["status"]


def test_verify_requires_paid_session(client, db, order, auth_headers):
    resp = client.post("/api/payment/verify", json={"sessionId": order["payment_session_id"]}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Payment not completed"
    assert _status(db, order) == "Pending"


def test_verify_is_idempotent(client, db, gateway, mailer, order, user, auth_headers):
    gateway.pay(order["payment_session_id"])
    body = {"sessionId": order["payment_session_id"]}

    first = client.post("/api/payment/verify", json=body, headers=auth_headers)
    second = client.post("/api/payment/verify", json=body, headers=auth_headers)

    assert first.status_code == second.status_code == 200
    assert first.json()["status"] == second.json()["status"] == "Processing"
    confirmations = mailer.of_kind("order")
    assert len(confirmations) == 1
    assert confirmations[0][1] == user["email"]


def test_verify_unknown_session(client, auth_headers):
    resp = client.post("/api/payment/verify", json={"sessionId": "cs_missing"}, headers=auth_headers)
    assert resp.status_code == 404


def test_verify_other_users_order(client, db, gateway, order):
    gateway.pay(order["payment_session_id"])
    other = make_user(db, email="ravi@example.com", name="Ravi")
    resp = client.post("/api/payment/verify", json={"sessionId": order["payment_session_id"]}, headers=headers_for(other))
    assert resp.status_code == 403
    assert _status(db, order) == "Pending"


def test_checkout_returns_the_orders_session(client, db, gateway, mailer, order, auth_headers):
    first_session = order["payment_session_id"]
    for _ in range(2):
        resp = client.post("/api/payment/checkout", json={"orderId": str(order["_id"])}, headers=auth_headers)
        assert resp.json() == {"url": order["checkout_url"], "status": "Pending"}
    assert list(gateway.sessions) == [first_session]

    # paying the url handed out at order creation still settles the order
    gateway.pay(first_session)
    verified = client.post("/api/payment/verify", json={"sessionId": first_session}, headers=auth_headers)
    assert verified.json() == {"success": True, "status": "Processing"}
    assert len(mailer.of_kind("order")) == 1


def test_session_replaced_by_discount_still_settles(client, db, gateway, order, auth_headers, webhook_secret):
    first_session = order["payment_session_id"]
    card = giftcards.issue(db, 5000)
    client.post(
        "/api/payment/checkout",
        json={"orderId": str(order["_id"]), "giftCardCode": card["code"]},
        headers=auth_headers,
    )
    stored = db["order"].find_one({"_id": order["_id"]})
    assert stored["payment_session_id"] != first_session
    assert stored["payment_session_ids"] == [first_session, stored["payment_session_id"]]

    gateway.pay(first_session)
    payload = completed_event(gateway.sessions[first_session])
    client.post("/api/payment/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert _status(db, order) == "Completed"


def test_checkout_rejects_non_pending_order(client, db, order, auth_headers):
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": "Processing"}})
    resp = client.post("/api/payment/checkout", json={"orderId": str(order["_id"])}, headers=auth_headers)
    assert resp.status_code == 400


def test_checkout_applies_gift_card_atomically(client, db, gateway, order, auth_headers):
    card = giftcards.issue(db, 5000)
    resp = client.post(
        "/api/payment/checkout",
        json={"orderId": str(order["_id"]), "giftCardCode": card["code"]},
        headers=auth_headers,
    )
    assert resp.status_code == 200

    stored = db["order"].find_one({"_id": order["_id"]})
    assert stored["discount"] == 5000
    assert stored["total_value"] == 12000.0
    [item] = gateway.last["items"]
    assert item.unit_amount == 7000.0

    redeemed = db["giftcard"].find_one({"code": card["code"]})
    assert redeemed["is_redeemed"] is True
    assert redeemed["applied_to_order"] == str(order["_id"])


def test_gift_card_covering_total_settles_order(client, db, gateway, mailer, ctx, auth_headers):
    pid = make_product(db, name="Silver Toe Ring", price=4500.0)
    cart.add_or_update(db, ctx, pid, 1)
    order_id = orders.create_order(db, gateway, ctx)["orderId"]
    sessions_before = len(gateway.sessions)
    card = giftcards.issue(db, 5000)

    resp = client.post("/api/payment/checkout", json={"orderId": order_id, "giftCardCode": card["code"]}, headers=auth_headers)
    assert resp.json() == {"url": None, "status": "Processing"}
    assert len(gateway.sessions) == sessions_before
    assert len(mailer.of_kind("order")) == 1


def test_gateway_failure_releases_gift_card(client, db, gateway, order, auth_headers):
    card = giftcards.issue(db, 5000)
    gateway.fail = True
    resp = client.post(
        "/api/payment/checkout",
        json={"orderId": str(order["_id"]), "giftCardCode": card["code"]},
        headers=auth_headers,
    )
    assert resp.status_code == 502

    assert db["giftcard"].find_one({"code": card["code"]})["is_redeemed"] is False
    stored = db["order"].find_one({"_id": order["_id"]})
    assert "discount" not in stored
    assert "gift_card_code" not in stored


def test_second_gift_card_on_same_order_rejected(client, db, order, auth_headers):
    first = giftcards.issue(db, 5000)
    second = giftcards.issue(db, 6000)
    client.post("/api/payment/checkout", json={"orderId": str(order["_id"]), "giftCardCode": first["code"]}, headers=auth_headers)
    resp = client.post(
        "/api/payment/checkout",
        json={"orderId": str(order["_id"]), "giftCardCode": second["code"]},
        headers=auth_headers,
    )
    assert resp.status_code == 409
    assert db["giftcard"].find_one({"code": second["code"]})["is_redeemed"] is False


def test_webhook_rejects_bad_signature(client, db, gateway, order, webhook_secret):
    gateway.pay(order["payment_session_id"])
    payload = completed_event(gateway.sessions[order["payment_session_id"]])

    forged = client.post("/api/payment/webhook", content=payload, headers={"Stripe-Signature": sign(payload, "whsec_other")})
    missing = client.post("/api/payment/webhook", content=payload)

    assert forged.status_code == 400
    assert missing.status_code == 400
    assert _status(db, order) == "Pending"


def test_webhook_completes_order_once(client, db, gateway, mailer, order, webhook_secret):
    gateway.pay(order["payment_session_id"])
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": "Processing"}})
    payload = completed_event(gateway.sessions[order["payment_session_id"]])

    for _ in range(2):
        resp = client.post("/api/payment/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
        assert resp.status_code == 200
    assert _status(db, order) == "Completed"
    # already confirmed when it moved to Processing
    assert mailer.of_kind("order") == []


def test_webhook_on_unverified_order_sends_confirmation(client, db, gateway, mailer, order, webhook_secret):
    gateway.pay(order["payment_session_id"])
    payload = completed_event(gateway.sessions[order["payment_session_id"]])
    client.post("/api/payment/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert _status(db, order) == "Completed"
    assert len(mailer.of_kind("order")) == 1


def test_webhook_ignores_other_events(client, webhook_secret):
    payload = json.dumps({"type": "payment_intent.created", "data": {"object": {}}}).encode()
    resp = client.post("/api/payment/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_verify_signature_rejects_stale_timestamp():
    payload = b"{}"
    header = sign(payload, timestamp=1_000_000)
    with pytest.raises(SignatureError):
        verify_signature(payload, header, WEBHOOK_SECRET, tolerance=300, now=1_000_000 + 301)
    verify_signature(payload, header, WEBHOOK_SECRET, tolerance=300, now=1_000_000 + 299)


def test_verify_signature_fails_closed_without_secret():
    payload = b"{}"
    with pytest.raises(SignatureError):
        verify_signature(payload, sign(payload), "")
    with pytest.raises(SignatureError):
        verify_signature(payload, "garbage", WEBHOOK_SECRET)


def test_parse_event_checks_signature_before_decoding():
    with pytest.raises(SignatureError):
        parse_event(b"not json", "t=1,v1=abc", WEBHOOK_SECRET)


def test_session_form_encoding():
    form = session_form(
        [LineItem(name="Gold Ring", unit_amount=25000.5, quantity=2)],
        "https://shop/ok",
        "https://shop/cancel",
        {"kind": "order", "order_id": "abc"},
        "inr",
    )
    assert form["line_items[0][price_data][unit_amount]"] == 2500050
    assert form["line_items[0][price_data][currency]"] == "inr"
    assert form["line_items[0][quantity]"] == 2
    assert form["metadata[order_id]"] == "abc"
    assert form["mode"] == "payment"


def test_gateway_without_key_fails_upstream():
    with pytest.raises(UpstreamFailure):
        StripeGateway(secret_key="").retrieve_session("cs_1")


def test_gateway_transport_error_is_upstream_failure(monkeypatch):
    gw = StripeGateway(secret_key="sk_test", max_retries=0)

    def boom(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(gw.session, "request", boom)
    with pytest.raises(UpstreamFailure) as excinfo:
        gw.retrieve_session("cs_1")
    assert "refused" not in excinfo.value.message


def test_expired_gift_card_cannot_be_applied(client, db, order, auth_headers):
    card = giftcards.issue(db, 5000, now=utcnow() - timedelta(days=400))
    resp = client.post(
        "/api/payment/checkout",
        json={"orderId": str(order["_id"]), "giftCardCode": card["code"]},
        headers=auth_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Gift card expired"
