import logging

import stripe
from flask import Blueprint, request, jsonify, current_app

from services.errors import BookingError
from utils.audit import log_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")

OUTCOMES = {
    "checkout.session.completed": "completed",
    "checkout.session.expired": "failed",
    "checkout.session.async_payment_failed": "failed",
}


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.data

    if not endpoint_secret:
        return jsonify(error="Webhook secret not configured"), 500

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        return jsonify(error="Invalid webhook signature"), 400

    event_type = event.get("type")
    outcome = OUTCOMES.get(event_type)
    if outcome is None:
        return jsonify(received=True), 200

    session = event["data"]["object"]
    session_id = session.get("id")
    meta = session.get("metadata", {}) or {}
    booking_id = meta.get("booking_id")
    payment_id = session.get("payment_intent") or session_id

    if not booking_id:
        logger.warning("Stripe %s for session %s carries no booking_id", event_type, session_id)
        return jsonify(received=True), 200

    try:
        current_app.extensions["booking_engine"].record_gateway_payment(booking_id, payment_id, outcome)
    except BookingError as exc:
        # acknowledged so Stripe stops retrying; the failure stays in the audit log
        logger.warning("Stripe %s for booking %s not recorded: %s", event_type, booking_id, exc.message)
        log_event("PAYMENT_GATEWAY_FAIL", entity="booking", entity_id=booking_id,
                  metadata={"stripe_session_id": session_id, "payment_id": payment_id, "error": exc.code})
        return jsonify(received=True, recorded=False, error=exc.code), 200

    log_event("PAYMENT_GATEWAY", entity="booking", entity_id=booking_id,
              metadata={"stripe_session_id": session_id, "payment_id": payment_id, "outcome": outcome})
    return jsonify(received=True, recorded=True), 200
