"""
HTTP-level tests through FastAPI's TestClient, with the Stripe SDK patched out.
Covers the payment, refund/void, details, webhook and webhook-ensure routes plus
the end-to-end refund and void scenarios.
"""
from unittest.mock import MagicMock, patch

import stripe

from app.gateways.stripe_adapter import WEBHOOK_EVENTS
from app.models import AttemptKind, PaymentAttempt, PaymentStatus
from tests.conftest import encode, make_attempt, make_gateway, stripe_signature

PAYMENT = {
    "user_id": 1,
    "store_id": "7",
    "amount": "100.00",
    "member_email": "member@example.com",
    "member_name": "Ada Member",
    "payment_method_id": "tok_visa",
    "temp_order_number": "4321",
}


def post_stripe_event(client, event_type, obj, event_id, user_id=1):
    body = encode({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})
    return client.post(
        f"/webhook/stripe/user/{user_id}",
        content=body,
        headers={"Stripe-Signature": stripe_signature(body)},
    )


def stripe_refund_event(client, refund_attempt_id, event_id="evt_refund"):
    return post_stripe_event(client, "refund.updated", {
        "id": "re_1", "amount": 4000, "charge": "ch_1", "payment_intent": "pi_1", "status": "succeeded",
        "metadata": {"user_id": "1", "refund_attempt_id": str(refund_attempt_id)},
    }, event_id)


def refund_rows(db):
    return db.query(PaymentAttempt).filter_by(kind=AttemptKind.REFUND.value).all()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
class TestHealth:
    def test_health_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert "environment" in resp.json()


# ---------------------------------------------------------------------------
# POST /api/v1/payments/process
# ---------------------------------------------------------------------------
class TestProcessPayment:
    def test_charge_then_webhook_marks_paid(self, client, db):
        make_gateway(db)
        create = MagicMock(return_value={"id": "pi_1", "status": "requires_confirmation"})
        confirm = MagicMock(return_value={"id": "pi_1", "status": "succeeded", "latest_charge": "ch_1"})

        with patch.object(stripe.PaymentIntent, "create", create), \
                patch.object(stripe.PaymentIntent, "confirm", confirm):
            resp = client.post("/api/v1/payments/process", json=PAYMENT)

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["transaction_id"] == "pi_1"

        attempt = db.query(PaymentAttempt).one()
        assert attempt.status == PaymentStatus.ATTEMPT

        hook = post_stripe_event(client, "payment_intent.succeeded", {
            "id": "pi_1", "latest_charge": "ch_1",
            "metadata": {"user_id": "1", "payment_attempt_id": str(data["attempt_id"])},
        }, "evt_paid")

        assert hook.status_code == 200
        assert hook.json() == {"received": True, "outcome": "applied", "attempt_id": data["attempt_id"]}
        db.refresh(attempt)
        assert attempt.status == PaymentStatus.PAID

    def test_declined_card(self, client, db):
        make_gateway(db)
        confirm = MagicMock(side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))

        with patch.object(stripe.PaymentIntent, "create", MagicMock(return_value={"id": "pi_1"})), \
                patch.object(stripe.PaymentIntent, "confirm", confirm):
            resp = client.post("/api/v1/payments/process", json=PAYMENT)

        assert resp.status_code == 402
        body = resp.json()
        assert body["success"] is False
        assert body["error_code"] == "card_declined"
        assert body["error_message"] == "Your card was declined."
        assert db.query(PaymentAttempt).one().status == PaymentStatus.ERROR

    def test_no_active_gateway(self, client):
        resp = client.post("/api/v1/payments/process", json=PAYMENT)
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "gateway_not_configured"

    def test_missing_credentials(self, client, db):
        make_gateway(db, credentials={"publishable_key": "pk_test_123"})
        resp = client.post("/api/v1/payments/process", json=PAYMENT)
        assert resp.status_code == 422
        assert resp.json()["error_message"] == "Missing required credentials: secret_key"

    def test_pos_payment_requires_stripe(self, client, db):
        make_gateway(db, gateway="authorize.net")
        resp = client.post("/api/v1/payments/process", json={**PAYMENT, "descriptor": "POS_PAY"})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "terminal_requires_stripe"

    def test_terminal_intent_then_pos_payment(self, client, db):
        make_gateway(db)
        create = MagicMock(return_value={"id": "pi_pos", "client_secret": "pi_pos_secret",
                                         "status": "requires_payment_method"})
        with patch.object(stripe.PaymentIntent, "create", create):
            intent = client.post("/api/v1/payments/terminal-intent",
                                 json={"user_id": 1, "amount": "12.00", "store_id": "7"})

        assert intent.status_code == 200
        reference = intent.json()["pos_payment_method_id"]

        resp = client.post("/api/v1/payments/process",
                           json={**PAYMENT, "descriptor": "POS_PAY", "payment_method_id": reference})
        assert resp.status_code == 200
        assert resp.json()["attempt_id"] == intent.json()["attempt_id"]
        assert db.query(PaymentAttempt).one().gateway == "Stripe POS Terminal"

    def test_connection_token_uses_stripe_even_when_another_gateway_is_active(self, client, db):
        make_gateway(db, gateway="authorize.net")
        make_gateway(db, active=False)
        create = MagicMock(return_value={"secret": "pst_test_abc"})
        with patch.object(stripe.terminal.ConnectionToken, "create", create):
            resp = client.post("/api/v1/payments/terminal/connection-token", json={"user_id": 1})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "secret": "pst_test_abc"}
        assert create.call_args.kwargs["api_key"] == "sk_test_123"

    def test_connection_token_without_stripe(self, client, db):
        make_gateway(db, gateway="authorize.net")
        resp = client.post("/api/v1/payments/terminal/connection-token", json={"user_id": 1})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "terminal_requires_stripe"

    def test_non_positive_amount_rejected(self, client):
        resp = client.post("/api/v1/payments/process", json={**PAYMENT, "amount": "0"})
        assert resp.status_code == 422

    def test_invalid_email_rejected(self, client):
        resp = client.post("/api/v1/payments/process", json={**PAYMENT, "member_email": "nope"})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Refunds and voids
# ---------------------------------------------------------------------------
class TestRefundScenarios:
    def test_partial_refund_confirmed_by_webhook(self, client, db):
        make_gateway(db)
        make_attempt(db, transaction_id="pi_1", charge_id="ch_1")

        with patch.object(stripe.Refund, "create", MagicMock(return_value={"id": "re_1", "status": "pending"})):
            resp = client.post("/api/v1/payments/refund",
                               json={"transaction_id": "pi_1", "user_id": 1, "amount": "40.00"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["refund_id"] == "re_1"
        assert data["transaction_status"] == "2"
        assert data["refunded_amount"] == 40.0
        assert data["remaining_refundable"] == 60.0

        hook = stripe_refund_event(client, data["attempt_id"])
        assert hook.json()["outcome"] == "applied"

        details = client.get("/api/v1/payments/re_1", params={"user_id": 1})
        assert details.status_code == 200
        assert details.json()["transaction"]["status"] == int(PaymentStatus.REFUND)
        assert details.json()["transaction"]["amount"] == -40.0

    def test_pending_refund_blocks_over_refund(self, client, db):
        make_gateway(db)
        make_attempt(db, transaction_id="pi_1", charge_id="ch_1")
        create = MagicMock(return_value={"id": "re_1", "status": "pending"})

        with patch.object(stripe.Refund, "create", create):
            first = client.post("/api/v1/payments/refund",
                                json={"transaction_id": "pi_1", "user_id": 1, "amount": "40.00"})
            second = client.post("/api/v1/payments/refund",
                                 json={"transaction_id": "pi_1", "user_id": 1, "amount": "70.00"})
            third = client.post("/api/v1/payments/refund",
                                json={"transaction_id": "pi_1", "user_id": 1, "amount": "60.00"})

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error_message"] == "Requested refund exceeds the remaining refundable amount."
        assert third.status_code == 200
        assert create.call_count == 2
        assert len(refund_rows(db)) == 2

    def test_void_then_refund_rejected(self, client, db):
        make_gateway(db)
        make_attempt(db, transaction_id="pi_1", charge_id="ch_1")
        retrieve = MagicMock(return_value={"id": "ch_1", "captured": False, "payment_intent": "pi_1"})
        cancel = MagicMock(return_value={"id": "pi_1", "status": "canceled"})

        with patch.object(stripe.Charge, "retrieve", retrieve), \
                patch.object(stripe.PaymentIntent, "cancel", cancel):
            voided = client.post("/api/v1/payments/void", json={"transaction_id": "pi_1", "user_id": 1})

        assert voided.status_code == 200
        assert voided.json()["transaction_status"] == "5"

        pending = client.post("/api/v1/payments/refund", json={"transaction_id": "pi_1", "user_id": 1})
        assert pending.status_code == 400
        assert pending.json()["error_code"] == "void_in_progress"

        hook = post_stripe_event(client, "refund.updated", {
            "id": "re_void", "amount": 10000, "charge": "ch_1", "payment_intent": "pi_1", "status": "succeeded",
            "metadata": {"user_id": "1"}, "destination_details": {"card": {"type": "reversal"}},
        }, "evt_void")
        assert hook.json()["outcome"] == "applied"

        refund = client.post("/api/v1/payments/refund", json={"transaction_id": "pi_1", "user_id": 1})
        assert refund.status_code == 400
        assert refund.json()["error_message"] == (
            "Unable to process refund since the payment with transaction ID pi_1 has already been voided."
        )
        again = client.post("/api/v1/payments/void", json={"transaction_id": "pi_1", "user_id": 1})
        assert again.json()["error_message"] == "This transaction has already been voided."
        assert refund_rows(db) == []

    def test_external_refund(self, client, db):
        make_gateway(db)
        intent = MagicMock(return_value={"id": "pi_ext", "latest_charge": "ch_ext"})
        charge = MagicMock(return_value={"id": "ch_ext", "paid": True, "captured": True,
                                         "amount": 5000, "amount_refunded": 0})
        create = MagicMock(return_value={"id": "re_ext", "status": "succeeded"})

        with patch.object(stripe.PaymentIntent, "retrieve", intent), \
                patch.object(stripe.Charge, "retrieve", charge), \
                patch.object(stripe.Refund, "create", create):
            resp = client.post("/api/v1/payments/refund", json={"transaction_id": "pi_ext", "user_id": 1})

        assert resp.status_code == 200
        assert resp.json()["is_external"] is True
        assert resp.json()["refunded_amount"] == 50.0
        assert create.call_args.kwargs["charge"] == "ch_ext"
        row = refund_rows(db)[0]
        assert row.comment == "External Refund initiated, awaiting webhook confirmation"

    def test_unknown_transaction_is_404(self, client, db):
        make_gateway(db)
        error = stripe.InvalidRequestError("No such payment_intent: 'pi_nope'", "intent", http_status=404)

        with patch.object(stripe.PaymentIntent, "retrieve", MagicMock(side_effect=error)):
            resp = client.post("/api/v1/payments/void", json={"transaction_id": "pi_nope", "user_id": 1})

        assert resp.status_code == 404
        assert resp.json()["error_message"].startswith("External transaction not found: pi_nope.")


# ---------------------------------------------------------------------------
# GET /api/v1/payments/{transaction_id}
# ---------------------------------------------------------------------------
class TestTransactionDetails:
    def test_local_snapshot(self, client, db):
        make_gateway(db)
        make_attempt(db, transaction_id="pi_1")
        resp = client.get("/api/v1/payments/pi_1", params={"user_id": 1})
        assert resp.status_code == 200
        assert resp.json()["transaction"]["status_label"] == "Paid"
        assert "live_details" not in resp.json()["transaction"]

    def test_live_snapshot(self, client, db):
        make_gateway(db)
        make_attempt(db, transaction_id="pi_1")
        intent = MagicMock(return_value={"id": "pi_1", "status": "succeeded", "amount": 10000,
                                         "amount_received": 10000, "currency": "usd"})
        with patch.object(stripe.PaymentIntent, "retrieve", intent):
            resp = client.get("/api/v1/payments/pi_1", params={"user_id": 1, "is_live": "true"})
        assert resp.json()["transaction"]["live_details"]["status"] == "succeeded"

    def test_other_tenant_cannot_read(self, client, db):
        make_gateway(db, user_id=2)
        make_attempt(db, transaction_id="pi_1")
        resp = client.get("/api/v1/payments/pi_1", params={"user_id": 2})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Webhook routes
# ---------------------------------------------------------------------------
class TestWebhookRoutes:
    def test_unknown_gateway(self, client):
        resp = client.post("/webhook/paypal/user/1", content=b"{}")
        assert resp.status_code == 404

    def test_malformed_json(self, client):
        resp = client.post("/webhook/stripe/user/1", content=b"{oops")
        assert resp.status_code == 400

    def test_wrongly_shaped_event_is_400(self, client):
        numeric_type = client.post("/webhook/stripe/user/1", content=encode({"type": 123, "data": {}}))
        string_data = client.post("/webhook/stripe/user/1",
                                  content=encode({"type": "charge.succeeded", "data": "x"}))
        list_payload = client.post("/webhook/authorize/user/1",
                                   content=encode({"eventType": "net.authorize.payment.void.created",
                                                   "payload": []}))

        assert numeric_type.status_code == 400
        assert string_data.status_code == 400
        assert list_payload.status_code == 400

    def test_bad_authorize_net_signature(self, client, db):
        make_gateway(db, gateway="authorize.net")
        resp = client.post("/webhook/authorize/user/1", content=encode({"eventType": "x"}),
                           headers={"X-ANET-Signature": "sha512=00"})
        assert resp.status_code == 401

    def test_missing_signing_secret(self, client, db):
        make_gateway(db, credentials={"publishable_key": "pk", "secret_key": "sk"})
        resp = post_stripe_event(client, "payment_intent.succeeded", {"id": "pi_1"}, "evt_1")
        assert resp.status_code == 500

    def test_foreign_tenant_acknowledged(self, client):
        resp = post_stripe_event(client, "payment_intent.succeeded",
                                 {"id": "pi_1", "metadata": {"user_id": "9"}}, "evt_1")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "tenant_mismatch"


class TestEnsureWebhookRoute:
    def test_valid_registration_unchanged(self, client, db):
        make_gateway(db)
        endpoint = {"id": "we_current", "url": "https://pay.example.com/webhook/stripe/user/1",
                    "status": "enabled", "enabled_events": list(WEBHOOK_EVENTS)}
        with patch.object(stripe.WebhookEndpoint, "retrieve", MagicMock(return_value=endpoint)):
            resp = client.post("/api/v1/webhooks/1/ensure")

        assert resp.status_code == 200
        assert resp.json()["action"] == "unchanged"
        assert resp.json()["webhook_id"] == "we_current"

    def test_no_gateway(self, client):
        resp = client.post("/api/v1/webhooks/1/ensure")
        assert resp.status_code == 404
