from unittest.mock import patch

import pytest
import stripe


@pytest.fixture
def completed_booking(app):
    engine = app.extensions["booking_engine"]
    booking_id = engine.reserve_slot("cust-1", "prov-1", "2026-03-10", "10:00", 60)
    engine.accept_booking(booking_id)
    code = engine.start_job(booking_id, engine.get_booking(booking_id).start_code)
    engine.complete_job(booking_id, code, 650, "Painted two rooms")
    return booking_id


def _event(event_type, booking_id, payment_intent="pi_123"):
    return {
        "type": event_type,
        "data": {"object": {
            "id": "cs_test_1",
            "payment_intent": payment_intent,
            "metadata": {"booking_id": booking_id},
        }},
    }


def _post(client):
    return client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "t=1,v1=sig"})


@patch("routes.stripe_webhook.stripe.Webhook.construct_event")
def test_completed_checkout_records_payment(mock_construct, client, app, completed_booking):
    mock_construct.return_value = _event("checkout.session.completed", completed_booking)

    resp = _post(client)

    assert resp.status_code == 200
    assert resp.get_json()["recorded"] is True
    mock_construct.assert_called_once_with(b"{}", "t=1,v1=sig", "whsec_test")
    booking = app.extensions["booking_engine"].get_booking(completed_booking)
    assert booking.final_payment_status == "completed"
    assert booking.final_payment_id == "pi_123"
    assert booking.payment_method == "online"

    history = client.get(f"/bookings/{completed_booking}/history").get_json()
    assert history[-1]["action"] == "PAYMENT_GATEWAY"


@patch("routes.stripe_webhook.stripe.Webhook.construct_event")
def test_expired_checkout_records_failure(mock_construct, client, app, completed_booking):
    mock_construct.return_value = _event("checkout.session.expired", completed_booking, payment_intent=None)

    _post(client)

    booking = app.extensions["booking_engine"].get_booking(completed_booking)
    assert booking.final_payment_status == "failed"
    assert booking.final_payment_id == "cs_test_1"


@patch("routes.stripe_webhook.stripe.Webhook.construct_event")
def test_bad_signature(mock_construct, client):
    mock_construct.side_effect = stripe.SignatureVerificationError("bad", "t=1,v1=sig")
    assert _post(client).status_code == 400


@patch("routes.stripe_webhook.stripe.Webhook.construct_event")
def test_unrelated_events_are_acknowledged(mock_construct, client):
    mock_construct.return_value = {"type": "customer.created", "data": {"object": {}}}
    resp = _post(client)
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}


@patch("routes.stripe_webhook.stripe.Webhook.construct_event")
def test_event_for_unbilled_booking_is_acknowledged(mock_construct, client, app):
    engine = app.extensions["booking_engine"]
    booking_id = engine.reserve_slot("cust-1", "prov-1", "2026-03-10", "10:00", 60)
    mock_construct.return_value = _event("checkout.session.completed", booking_id)

    resp = _post(client)

    assert resp.status_code == 200
    assert resp.get_json()["recorded"] is False
    assert resp.get_json()["error"] == "invalid_transition"
    assert engine.get_booking(booking_id).final_payment_status is None


def test_missing_secret(app, client):
    app.config["STRIPE_WEBHOOK_SECRET"] = None
    assert _post(client).status_code == 500
