from flask import Blueprint, request, jsonify, current_app

from services.errors import BookingError, ValidationError
from utils.audit import log_event

booking_bp = Blueprint("booking", __name__)


def _engine():
    return current_app.extensions["booking_engine"]


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def _actor():
    # identity is established upstream; callers declare it for the audit trail
    return (request.headers.get("X-Actor-Id") or "").strip() or None


def _audited(action: str, booking_id, fn, metadata=None):
    """Run an engine call and record the outcome in the audit log either way."""
    try:
        result = fn()
    except BookingError as exc:
        log_event(f"{action}_FAIL", actor_id=_actor(), entity="booking", entity_id=booking_id,
                  metadata=dict(metadata or {}, error=exc.code))
        raise
    log_event(action, actor_id=_actor(), entity="booking", entity_id=booking_id, metadata=metadata)
    return result


# ---------- CUSTOMERS: reserve a slot ----------
@booking_bp.post("/bookings")
def create_booking():
    data = _payload()
    engine = _engine()
    meta = {"provider_id": data.get("provider_id"), "date": data.get("date"), "start_time": data.get("start_time")}

    try:
        booking_id = engine.reserve_slot(
            customer_id=data.get("customer_id"),
            provider_id=data.get("provider_id"),
            date=data.get("date"),
            start_time=data.get("start_time"),
            duration_minutes=data.get("duration_minutes"),
            price=data.get("price"),
            notes=data.get("notes"),
            customer_name=data.get("customer_name"),
            provider_name=data.get("provider_name"),
            address=data.get("address"),
            end_time=data.get("end_time"),
        )
    except BookingError as exc:
        # SlotTakenError names the occupied booking
        log_event("BOOKING_CREATE_FAIL", actor_id=_actor(), entity="booking",
                  entity_id=exc.details.get("booking_id"), metadata=dict(meta, error=exc.code))
        raise

    log_event("BOOKING_CREATE", actor_id=_actor(), entity="booking", entity_id=booking_id, metadata=meta)
    booking = engine.get_booking(booking_id)
    return jsonify(id=booking.id, status=booking.status, start_code=booking.start_code), 201


# ---------- reads ----------
@booking_bp.get("/bookings/<booking_id>")
def get_booking(booking_id: str):
    booking = _engine().get_booking(booking_id)
    return jsonify(booking.to_dict()), 200


@booking_bp.get("/bookings")
def list_bookings():
    engine = _engine()
    customer_id = request.args.get("customer_id")
    provider_id = request.args.get("provider_id")
    start = request.args.get("from")
    end = request.args.get("to")

    if customer_id:
        rows = engine.list_customer_bookings(customer_id)
    elif provider_id and (start or end):
        if not (start and end):
            raise ValidationError("'from' and 'to' must be given together")
        rows = engine.list_bookings_in_range(provider_id, start, end)
    elif provider_id:
        rows = engine.list_provider_bookings(provider_id)
    else:
        raise ValidationError("customer_id or provider_id is required")

    return jsonify([b.to_dict() for b in rows]), 200


@booking_bp.get("/providers/<provider_id>/booked-slots")
def booked_slots(provider_id: str):
    date_str = request.args.get("date")
    if not date_str:
        raise ValidationError("date is required", field="date")
    slots = _engine().list_booked_slots(provider_id, date_str)
    return jsonify(provider_id=provider_id, date=date_str, booked=slots), 200


# ---------- PROVIDERS: accept / decline ----------
@booking_bp.post("/bookings/<booking_id>/accept")
def accept_booking(booking_id: str):
    _audited("BOOKING_ACCEPT", booking_id, lambda: _engine().accept_booking(booking_id))
    return jsonify(message="Confirmed", status="confirmed"), 200


@booking_bp.post("/bookings/<booking_id>/decline")
def decline_booking(booking_id: str):
    reason = _payload().get("reason")
    _audited("BOOKING_DECLINE", booking_id, lambda: _engine().decline_booking(booking_id, reason=reason),
             metadata={"reason": reason})
    return jsonify(message="Declined", status="cancelled"), 200


@booking_bp.post("/bookings/<booking_id>/cancel")
def cancel_booking(booking_id: str):
    data = _payload()
    reason = data.get("reason")
    cancelled_by = data.get("cancelled_by")
    _audited(
        "BOOKING_CANCEL",
        booking_id,
        lambda: _engine().cancel_booking(booking_id, reason=reason, cancelled_by=cancelled_by),
        metadata={"reason": reason, "cancelled_by": cancelled_by},
    )
    return jsonify(message="Cancelled", status="cancelled"), 200


# ---------- job start / completion ----------
@booking_bp.post("/bookings/<booking_id>/start")
def start_job(booking_id: str):
    start_code = _payload().get("start_code")
    engine = _engine()
    completion_code = _audited("JOB_START", booking_id, lambda: engine.start_job(booking_id, start_code))
    booking = engine.get_booking(booking_id)
    return jsonify(
        status=booking.status,
        completion_code=completion_code,
        code_expires_at=booking.code_expires_at.isoformat() if booking.code_expires_at else None,
    ), 200


@booking_bp.post("/bookings/<booking_id>/complete")
def complete_job(booking_id: str):
    data = _payload()
    amount = data.get("amount")
    _audited(
        "JOB_COMPLETE",
        booking_id,
        lambda: _engine().complete_job(booking_id, data.get("completion_code"), amount, data.get("details")),
        metadata={"amount": amount},
    )
    return jsonify(message="Completed", status="completed", final_payment_status="pending"), 200


@booking_bp.post("/bookings/<booking_id>/completion-code")
def regenerate_completion_code(booking_id: str):
    engine = _engine()
    code = _audited("COMPLETION_CODE_REGENERATE", booking_id,
                    lambda: engine.regenerate_completion_code(booking_id))
    booking = engine.get_booking(booking_id)
    return jsonify(
        completion_code=code,
        code_expires_at=booking.code_expires_at.isoformat() if booking.code_expires_at else None,
    ), 200


# ---------- payments ----------
@booking_bp.post("/bookings/<booking_id>/payment-status")
def update_payment_status(booking_id: str):
    data = _payload()
    payment_status = data.get("payment_status")
    engine = _engine()
    _audited(
        "PAYMENT_STATUS_UPDATE",
        booking_id,
        lambda: engine.update_payment_status(booking_id, payment_status, data.get("payment_intent_id")),
        metadata={"payment_status": payment_status},
    )
    booking = engine.get_booking(booking_id)
    return jsonify(status=booking.status, payment_status=booking.payment_status), 200


@booking_bp.post("/bookings/<booking_id>/payments/cash")
def record_cash_payment(booking_id: str):
    _audited("PAYMENT_CASH", booking_id, lambda: _engine().record_cash_payment(booking_id))
    return jsonify(final_payment_status="completed", payment_method="cash"), 200


@booking_bp.post("/bookings/<booking_id>/payments/gateway")
def record_gateway_payment(booking_id: str):
    data = _payload()
    payment_id = data.get("payment_id")
    outcome = data.get("outcome")
    engine = _engine()
    _audited(
        "PAYMENT_GATEWAY",
        booking_id,
        lambda: engine.record_gateway_payment(booking_id, payment_id, outcome),
        metadata={"payment_id": payment_id, "outcome": outcome},
    )
    booking = engine.get_booking(booking_id)
    return jsonify(final_payment_status=booking.final_payment_status,
                   payment_method=booking.payment_method), 200
