"""
Booking lifecycle engine.

Owns slot reservation, the status state machine, start/completion code
checks and bill/payment bookkeeping. Stateless: every operation re-reads the
booking document and writes back with a compare-and-set on the version it
read, so a stale caller cannot overwrite a newer state.
"""
import logging
import math
from datetime import datetime

from security.codes import CodeGenerator
from services.booking import (
    ACTIVE_STATUSES,
    BOOKINGS,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    FINAL_PAYMENT_COMPLETED,
    FINAL_PAYMENT_PENDING,
    FREE_STATUSES,
    GATEWAY_OUTCOMES,
    IN_PROGRESS,
    PAYMENT_STATUSES,
    PENDING,
    Booking,
    assert_transition,
    booking_id_for,
)
from services.errors import (
    BookingNotFoundError,
    CodeExpiredError,
    CodeLockedError,
    InvalidCodeError,
    InvalidTransitionError,
    SlotTakenError,
    ValidationError,
)
from store.base import (
    SERVER_TIMESTAMP,
    DocumentNotFound,
    Filter,
    OrderBy,
    Precondition,
    PreconditionFailed,
)
from utils.timeutil import add_minutes, normalize_booking_date, parse_hhmm, utcnow

logger = logging.getLogger(__name__)

CANCELLED_BY = ("customer", "provider")


def _require_id(name, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", field=name)
    value = value.strip()
    if "/" in value:
        raise ValidationError(f"{name} may not contain '/'", field=name)
    return value


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _optional_text(name, value):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", field=name)
    return value.strip() or None


class BookingEngine:

    def __init__(self, store, notifier=None, codes=None, clock=utcnow, timezone="UTC",
                 visiting_charge=99, max_code_attempts=3, require_start_code=False):
        self._store = store
        self._notifier = notifier
        self._codes = codes or CodeGenerator()
        self._clock = clock
        self._tz = timezone
        self._visiting_charge = visiting_charge
        self._max_attempts = max_code_attempts
        self._require_start_code = require_start_code

    @classmethod
    def from_config(cls, config, store, notifier=None, clock=utcnow):
        codes = CodeGenerator(
            length=config.get("CODE_LENGTH", 6),
            ttl_seconds=config.get("COMPLETION_CODE_TTL_SECONDS", 24 * 60 * 60),
        )
        return cls(
            store,
            notifier=notifier,
            codes=codes,
            clock=clock,
            timezone=config.get("BOOKING_TIMEZONE", "UTC"),
            visiting_charge=config.get("VISITING_CHARGE", 99),
            max_code_attempts=config.get("COMPLETION_CODE_MAX_ATTEMPTS", 3),
            require_start_code=config.get("REQUIRE_START_CODE", False),
        )

    # ---------- helpers ----------
    def _normalize_date(self, value, name="date") -> datetime:
        try:
            return normalize_booking_date(value, self._tz)
        except ValueError:
            raise ValidationError("Invalid date. Use YYYY-MM-DD", field=name) from None

    def _notify(self, recipient_id, title, body, metadata):
        if self._notifier is not None:
            self._notifier.send(recipient_id, title, body, metadata)

    def _load(self, booking_id) -> Booking:
        doc = self._store.get(BOOKINGS, booking_id)
        if doc is None:
            raise BookingNotFoundError(booking_id)
        return Booking.from_document(doc)

    def _write(self, booking: Booking, changes: dict, action: str) -> None:
        changes = dict(changes, updatedAt=SERVER_TIMESTAMP)
        try:
            self._store.update(BOOKINGS, booking.id, changes,
                               precondition=Precondition.version_is(booking.version))
        except DocumentNotFound:
            raise BookingNotFoundError(booking.id) from None
        except PreconditionFailed:
            current = self._load(booking.id)
            logger.warning("Booking %s changed while trying to %s (now %s)", booking.id, action, current.status)
            raise InvalidTransitionError(
                booking.id,
                current.status,
                action,
                message=f"Booking {booking.id} was modified while trying to {action}; "
                        f"it is now {current.status}. Reload and try again.",
            ) from None

    def _transition(self, booking: Booking, target: str, action: str, changes: dict) -> None:
        assert_transition(booking.id, booking.status, target, action)
        self._write(booking, dict(changes, status=target), action)
        logger.info("Booking %s: %s -> %s", booking.id, booking.status, target)

    # ---------- reservation ----------
    def reserve_slot(self, customer_id, provider_id, date, start_time, duration_minutes,
                     price=None, notes=None, customer_name=None, provider_name=None,
                     address=None, end_time=None) -> str:
        """
        Reserve (provider, day, start time) for a customer and return the booking id.

        The id is derived from the slot, so reserving is create-or-reject on
        one document. A cancelled slot is overwritten by the new booking.
        Raises SlotTakenError when an active booking holds the slot, including
        when another caller wins a race between our read and our write.
        """
        customer_id = _require_id("customer_id", customer_id)
        provider_id = _require_id("provider_id", provider_id)
        day = self._normalize_date(date)

        try:
            start = parse_hhmm(start_time)
        except ValueError as exc:
            raise ValidationError(f"start_time: {exc}", field="start_time") from None

        if not isinstance(duration_minutes, int) or isinstance(duration_minutes, bool) or duration_minutes <= 0:
            raise ValidationError("duration_minutes must be a positive integer", field="duration_minutes")

        try:
            end = parse_hhmm(end_time) if end_time is not None else add_minutes(start, duration_minutes)
        except ValueError as exc:
            raise ValidationError(f"end_time: {exc}", field="end_time") from None

        if price is None:
            price = self._visiting_charge
        elif not _is_number(price) or price < 0:
            raise ValidationError("price must be a non-negative number", field="price")

        booking_id = booking_id_for(provider_id, int(day.timestamp()), start)

        existing = self._store.get(BOOKINGS, booking_id)
        if existing is not None and existing.get("status") not in FREE_STATUSES:
            logger.info("Slot %s already held (%s)", booking_id, existing.get("status"))
            raise SlotTakenError(booking_id, provider_id, start)

        previous_code = existing.get("startCode") if existing is not None else None
        document = {
            "customerId": customer_id,
            "providerId": provider_id,
            "date": day,
            "startTime": start,
            "endTime": end,
            "durationMinutes": duration_minutes,
            "totalPrice": price,
            "notes": _optional_text("notes", notes),
            "customerName": _optional_text("customer_name", customer_name),
            "providerName": _optional_text("provider_name", provider_name),
            "address": _optional_text("address", address),
            "status": PENDING,
            "paymentStatus": "unpaid",
            "startCode": self._codes.generate(exclude=previous_code),
            "codeAttempts": 0,
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }

        if existing is None:
            precondition = Precondition.absent()
        else:
            precondition = Precondition.version_is(existing.version)

        try:
            self._store.set(BOOKINGS, booking_id, document, precondition=precondition)
        except PreconditionFailed:
            logger.info("Lost the race for slot %s", booking_id)
            raise SlotTakenError(booking_id, provider_id, start) from None

        logger.info("Booking %s reserved by %s", booking_id, customer_id)
        self._notify(
            provider_id,
            "New Booking Request",
            f"You have a new booking request from {document['customerName'] or 'a customer'}",
            {"bookingId": booking_id, "type": "booking_request"},
        )
        return booking_id

    def list_booked_slots(self, provider_id, date) -> list:
        """Start times of the provider's active bookings on that day."""
        provider_id = _require_id("provider_id", provider_id)
        day = self._normalize_date(date)
        docs = self._store.query(BOOKINGS, where=[
            Filter("providerId", "==", provider_id),
            Filter("date", "==", day),
            Filter("status", "in", list(ACTIVE_STATUSES)),
        ])
        return sorted(d.get("startTime") for d in docs if d.get("startTime"))

    # ---------- reads ----------
    def get_booking(self, booking_id) -> Booking:
        return self._load(booking_id)

    def list_customer_bookings(self, customer_id) -> list:
        customer_id = _require_id("customer_id", customer_id)
        docs = self._store.query(
            BOOKINGS,
            where=[Filter("customerId", "==", customer_id)],
            order_by=[OrderBy("date", descending=True)],
        )
        return [Booking.from_document(d) for d in docs]

    def list_provider_bookings(self, provider_id) -> list:
        provider_id = _require_id("provider_id", provider_id)
        docs = self._store.query(
            BOOKINGS,
            where=[Filter("providerId", "==", provider_id)],
            order_by=[OrderBy("date", descending=True)],
        )
        return [Booking.from_document(d) for d in docs]

    def list_bookings_in_range(self, provider_id, start, end) -> list:
        provider_id = _require_id("provider_id", provider_id)
        first = self._normalize_date(start, "from")
        last = self._normalize_date(end, "to")
        if last < first:
            raise ValidationError("'to' must not be before 'from'", field="to")
        docs = self._store.query(
            BOOKINGS,
            where=[
                Filter("providerId", "==", provider_id),
                Filter("date", ">=", first),
                Filter("date", "<=", last),
            ],
            order_by=[OrderBy("date"), OrderBy("startTime")],
        )
        return [Booking.from_document(d) for d in docs]

    # ---------- status transitions ----------
    def accept_booking(self, booking_id) -> None:
        booking = self._load(booking_id)
        self._transition(booking, CONFIRMED, "accept", {})
        self._notify(
            booking.customer_id,
            "Booking Confirmed",
            f"Your booking with {booking.provider_name or 'your provider'} has been confirmed!",
            {"bookingId": booking.id, "type": "booking_status"},
        )

    def decline_booking(self, booking_id, reason=None) -> None:
        booking = self._load(booking_id)
        if booking.status != PENDING:
            raise InvalidTransitionError(booking.id, booking.status, "decline", target_status=CANCELLED)
        self._cancel(booking, reason, "provider", "decline")

    def cancel_booking(self, booking_id, reason=None, cancelled_by=None) -> None:
        if cancelled_by is not None and cancelled_by not in CANCELLED_BY:
            raise ValidationError("cancelled_by must be 'customer' or 'provider'", field="cancelled_by")
        booking = self._load(booking_id)
        self._cancel(booking, reason, cancelled_by, "cancel")

    def _cancel(self, booking: Booking, reason, cancelled_by, action) -> None:
        reason = _optional_text("reason", reason)
        self._transition(booking, CANCELLED, action, {
            "cancelledAt": SERVER_TIMESTAMP,
            "cancelledBy": cancelled_by,
            "cancelReason": reason,
        })
        metadata = {"bookingId": booking.id, "type": "booking_cancelled"}
        self._notify(
            booking.provider_id,
            "Booking Cancelled",
            f"Booking with {booking.customer_name or 'your customer'} was cancelled.",
            metadata,
        )
        self._notify(
            booking.customer_id,
            "Booking Cancelled",
            f"Your booking with {booking.provider_name or 'your provider'} was cancelled.",
            metadata,
        )

    # ---------- verification codes ----------
    def start_job(self, booking_id, start_code) -> str:
        """
        Move a confirmed booking to in_progress once the provider presents the
        customer's start code. Returns the freshly issued completion code.
        """
        booking = self._load(booking_id)
        assert_transition(booking.id, booking.status, IN_PROGRESS, "start")

        if booking.start_code is None:
            if self._require_start_code:
                raise InvalidCodeError("start", message="This booking has no start code on record.")
            logger.warning("Booking %s has no start code; starting without verification", booking.id)
        elif not self._codes.validate(start_code, booking.start_code):
            logger.warning("Rejected start code for booking %s", booking.id)
            raise InvalidCodeError("start")

        completion_code = self._codes.generate(exclude=booking.completion_code)
        self._transition(booking, IN_PROGRESS, "start", {
            "jobStartedAt": SERVER_TIMESTAMP,
            "completionCode": completion_code,
            "codeExpiresAt": self._codes.expires_at(self._clock()),
            "codeAttempts": 0,
        })
        self._notify(
            booking.customer_id,
            "Job Started",
            f"Your service with {booking.provider_name or 'your provider'} has started!",
            {"bookingId": booking.id, "type": "job_started"},
        )
        return completion_code

    def regenerate_completion_code(self, booking_id) -> str:
        """Issue a new completion code; the previous one stops working at once."""
        booking = self._load(booking_id)
        if booking.status != IN_PROGRESS:
            raise InvalidTransitionError(
                booking.id, booking.status, "regenerate the completion code for",
                message=f"Booking {booking.id} is {booking.status}; completion codes exist only while in_progress",
            )

        new_code = self._codes.generate(exclude=booking.completion_code)
        self._write(booking, {
            "completionCode": new_code,
            "codeExpiresAt": self._codes.expires_at(self._clock()),
            "codeAttempts": 0,
        }, "regenerate the completion code for")
        logger.info("Completion code regenerated for booking %s", booking.id)
        return new_code

    def complete_job(self, booking_id, completion_code, amount, details) -> None:
        """
        Close an in_progress booking with the customer's completion code and
        the provider's final bill, in a single write.
        """
        booking = self._load(booking_id)
        if booking.status != IN_PROGRESS or not booking.completion_code:
            raise InvalidTransitionError(
                booking.id, booking.status, "complete", target_status=COMPLETED,
                message=f"Booking {booking.id} is {booking.status}: the job has not been started",
            )

        if booking.code_attempts >= self._max_attempts:
            raise CodeLockedError(booking.code_attempts)

        now = self._clock()
        if booking.code_expires_at is not None and self._codes.is_expired(booking.code_expires_at, now):
            raise CodeExpiredError(booking.code_expires_at)

        if not self._codes.validate(completion_code, booking.completion_code):
            attempts = booking.code_attempts + 1
            self._write(booking, {"codeAttempts": attempts}, "complete")
            logger.warning("Rejected completion code for booking %s (attempt %d)", booking.id, attempts)
            if attempts >= self._max_attempts:
                raise CodeLockedError(attempts)
            raise InvalidCodeError("completion", attempts_remaining=self._max_attempts - attempts)

        if not _is_number(amount) or amount <= 0:
            raise ValidationError("Bill amount must be greater than 0", field="amount")
        if not isinstance(details, str) or not details.strip():
            raise ValidationError("Work summary is required", field="details")

        self._transition(booking, COMPLETED, "complete", {
            "jobCompletedAt": SERVER_TIMESTAMP,
            "finalBillAmount": amount,
            "billDetails": details.strip(),
            "billSubmittedAt": SERVER_TIMESTAMP,
            "finalPaymentStatus": FINAL_PAYMENT_PENDING,
        })
        self._notify(
            booking.customer_id,
            "Job Completed",
            f"Your service is complete. Final bill: {amount}",
            {"bookingId": booking.id, "type": "job_completed"},
        )

    # ---------- payments ----------
    def _load_billed(self, booking_id, action) -> Booking:
        booking = self._load(booking_id)
        if booking.status != COMPLETED:
            raise InvalidTransitionError(
                booking.id, booking.status, action,
                message=f"Booking {booking.id} is {booking.status}; payments are recorded after completion",
            )
        return booking

    def record_cash_payment(self, booking_id) -> None:
        booking = self._load_billed(booking_id, "record a cash payment for")
        if booking.final_payment_status == FINAL_PAYMENT_COMPLETED:
            logger.info("Booking %s already paid; cash payment ignored", booking.id)
            return
        self._write(booking, {
            "finalPaymentStatus": FINAL_PAYMENT_COMPLETED,
            "paymentMethod": "cash",
            "paidAt": SERVER_TIMESTAMP,
        }, "record a cash payment for")

    def record_gateway_payment(self, booking_id, payment_id, outcome) -> None:
        if outcome not in GATEWAY_OUTCOMES:
            raise ValidationError("outcome must be 'completed' or 'failed'", field="outcome")
        if not isinstance(payment_id, str) or not payment_id.strip():
            raise ValidationError("payment_id is required", field="payment_id")

        booking = self._load_billed(booking_id, "record a gateway payment for")
        if booking.final_payment_status == FINAL_PAYMENT_COMPLETED:
            logger.info("Booking %s already paid; gateway %s for %s ignored", booking.id, outcome, payment_id)
            return

        changes = {
            "finalPaymentId": payment_id.strip(),
            "finalPaymentStatus": outcome,
            "paymentMethod": "online",
        }
        if outcome == FINAL_PAYMENT_COMPLETED:
            changes["paidAt"] = SERVER_TIMESTAMP
        self._write(booking, changes, "record a gateway payment for")

        if outcome == FINAL_PAYMENT_COMPLETED:
            self._notify(
                booking.provider_id,
                "Payment Received",
                f"{booking.customer_name or 'Your customer'} paid the final bill of {booking.final_bill_amount}.",
                {"bookingId": booking.id, "type": "payment_received"},
            )

    def update_payment_status(self, booking_id, payment_status, payment_intent_id=None) -> None:
        """Up-front payment bookkeeping. A paid pending booking is confirmed."""
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError("payment_status must be unpaid, paid or refunded", field="payment_status")

        booking = self._load(booking_id)
        changes = {"paymentStatus": payment_status}
        if payment_intent_id:
            changes["paymentIntentId"] = payment_intent_id

        if payment_status == "paid" and booking.status == PENDING:
            self._transition(booking, CONFIRMED, "confirm", changes)
            self._notify(
                booking.customer_id,
                "Booking Confirmed",
                f"Your booking with {booking.provider_name or 'your provider'} has been confirmed!",
                {"bookingId": booking.id, "type": "booking_status"},
            )
            return

        self._write(booking, changes, "update the payment status of")
