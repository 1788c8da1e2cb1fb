import threading
from datetime import datetime, timezone

import pytest

from services.booking import BOOKINGS, booking_id_for
from services.booking_engine import BookingEngine
from services.errors import (
    BookingNotFoundError,
    CodeExpiredError,
    CodeLockedError,
    InvalidCodeError,
    InvalidTransitionError,
    SlotTakenError,
    ValidationError,
)
from services.notifications import notifications_collection
from store.base import SERVER_TIMESTAMP, Precondition

MARCH_10 = int(datetime(2026, 3, 10, tzinfo=timezone.utc).timestamp())


def _wrong(code):
    return "1" * len(code) if code != "1" * len(code) else "2" * len(code)


def _start(engine, booking_id):
    engine.accept_booking(booking_id)
    start_code = engine.get_booking(booking_id).start_code
    return engine.start_job(booking_id, start_code)


def _titles(store, recipient):
    return [d.get("title") for d in store.query(notifications_collection(recipient))]


# ---------- reservation ----------
def test_reserve_slot_creates_pending_booking(engine, reserve):
    booking_id = reserve()

    assert booking_id == f"bk_prov-1_{MARCH_10}_10:00"
    booking = engine.get_booking(booking_id)
    assert booking.status == "pending"
    assert booking.payment_status == "unpaid"
    assert booking.end_time == "11:00"
    assert booking.total_price == 99
    assert booking.code_attempts == 0
    assert len(booking.start_code) == 6
    assert booking.date == datetime(2026, 3, 10, tzinfo=timezone.utc)


def test_same_day_at_different_hours_maps_to_one_slot(reserve):
    first = reserve(date="2026-03-10T08:30:00")
    with pytest.raises(SlotTakenError):
        reserve(date=datetime(2026, 3, 10, 22, 15), customer_id="cust-2")
    assert first == booking_id_for("prov-1", MARCH_10, "10:00")


def test_reserve_rejects_taken_slot(engine, reserve):
    booking_id = reserve()
    with pytest.raises(SlotTakenError) as exc:
        reserve(customer_id="cust-2")
    assert exc.value.booking_id == booking_id
    assert engine.get_booking(booking_id).customer_id == "cust-1"


def test_other_start_time_is_a_different_slot(reserve):
    assert reserve() != reserve(start_time="11:00", customer_id="cust-2")


@pytest.mark.parametrize("status", ["confirmed", "in_progress", "completed"])
def test_active_statuses_hold_the_slot(engine, reserve, store, status):
    booking_id = reserve()
    store.update(BOOKINGS, booking_id, {"status": status})
    with pytest.raises(SlotTakenError):
        reserve(customer_id="cust-2")


@pytest.mark.parametrize("status", ["cancelled", "rejected"])
def test_freed_slot_can_be_reserved_again(engine, reserve, store, status):
    booking_id = reserve()
    old_code = engine.get_booking(booking_id).start_code
    store.update(BOOKINGS, booking_id, {"status": status})

    again = reserve(customer_id="cust-2", customer_name="Meera")

    assert again == booking_id
    booking = engine.get_booking(again)
    assert booking.status == "pending"
    assert booking.customer_id == "cust-2"
    assert booking.start_code != old_code
    assert booking.cancelled_at is None


def test_concurrent_reservations_have_exactly_one_winner(engine):
    results = []
    barrier = threading.Barrier(8)

    def attempt(n):
        barrier.wait()
        try:
            results.append(engine.reserve_slot(f"cust-{n}", "prov-1", "2026-03-10", "10:00", 60))
        except SlotTakenError:
            results.append("taken")

    threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("taken") == 7
    assert len([r for r in results if r != "taken"]) == 1


def test_losing_the_create_race_is_slot_taken(store, notifier, clock):
    class RacingStore:
        """Another customer creates the slot between our read and our write."""
        def __getattr__(self, name):
            return getattr(store, name)

        def get(self, collection, doc_id):
            doc = store.get(collection, doc_id)
            if doc is None:
                store.set(collection, doc_id, {"status": "pending", "customerId": "other"},
                          precondition=Precondition.absent())
            return None

    engine = BookingEngine(RacingStore(), notifier=notifier, clock=clock)
    with pytest.raises(SlotTakenError):
        engine.reserve_slot("cust-1", "prov-1", "2026-03-10", "10:00", 60)


@pytest.mark.parametrize("overrides, field", [
    ({"customer_id": ""}, "customer_id"),
    ({"provider_id": None}, "provider_id"),
    ({"provider_id": "a/b"}, "provider_id"),
    ({"date": "10/03/2026"}, "date"),
    ({"start_time": "25:00"}, "start_time"),
    ({"start_time": "9am"}, "start_time"),
    ({"duration_minutes": 0}, "duration_minutes"),
    ({"duration_minutes": "60"}, "duration_minutes"),
    ({"start_time": "23:30", "duration_minutes": 60}, "end_time"),
    ({"price": -1}, "price"),
])
def test_reserve_validates_input(reserve, overrides, field):
    with pytest.raises(ValidationError) as exc:
        reserve(**overrides)
    assert exc.value.field == field


def test_reserve_uses_given_price_and_end_time(engine, reserve):
    booking = engine.get_booking(reserve(price=250, end_time="12:30", notes="  gate code 44 "))
    assert booking.total_price == 250
    assert booking.end_time == "12:30"
    assert booking.notes == "gate code 44"


def test_reserve_notifies_provider(store, reserve):
    reserve()
    assert _titles(store, "prov-1") == ["New Booking Request"]


def test_list_booked_slots_only_counts_active_bookings(engine, reserve, store):
    reserve(start_time="14:00")
    reserve(start_time="09:00", customer_id="cust-2")
    cancelled = reserve(start_time="11:00", customer_id="cust-3")
    store.update(BOOKINGS, cancelled, {"status": "cancelled"})
    reserve(date="2026-03-11", start_time="08:00")
    reserve(provider_id="prov-2", start_time="12:00")

    assert engine.list_booked_slots("prov-1", "2026-03-10") == ["09:00", "14:00"]


# ---------- reads ----------
def test_get_booking_not_found(engine):
    with pytest.raises(BookingNotFoundError):
        engine.get_booking("bk_missing")


def test_list_customer_and_provider_bookings_newest_first(engine, reserve):
    reserve(date="2026-03-10")
    reserve(date="2026-03-12")
    reserve(date="2026-03-11", provider_id="prov-2")

    customer = engine.list_customer_bookings("cust-1")
    assert [b.date.day for b in customer] == [12, 11, 10]
    provider = engine.list_provider_bookings("prov-1")
    assert [b.date.day for b in provider] == [12, 10]


def test_list_bookings_in_range(engine, reserve):
    reserve(date="2026-03-09")
    reserve(date="2026-03-10", start_time="15:00")
    reserve(date="2026-03-10", start_time="08:00")
    reserve(date="2026-03-12")
    reserve(date="2026-03-13")

    rows = engine.list_bookings_in_range("prov-1", "2026-03-10", "2026-03-12")
    assert [(b.date.day, b.start_time) for b in rows] == [(10, "08:00"), (10, "15:00"), (12, "10:00")]

    with pytest.raises(ValidationError):
        engine.list_bookings_in_range("prov-1", "2026-03-12", "2026-03-10")


# ---------- transitions ----------
def test_accept_confirms_and_notifies_customer(engine, reserve, store):
    booking_id = reserve()
    engine.accept_booking(booking_id)

    assert engine.get_booking(booking_id).status == "confirmed"
    assert "Booking Confirmed" in _titles(store, "cust-1")


def test_decline_cancels_pending_booking(engine, reserve, store):
    booking_id = reserve()
    engine.decline_booking(booking_id, reason="Fully booked")

    booking = engine.get_booking(booking_id)
    assert booking.status == "cancelled"
    assert booking.cancelled_by == "provider"
    assert booking.cancel_reason == "Fully booked"
    assert booking.cancelled_at is not None
    assert "Booking Cancelled" in _titles(store, "cust-1")


def test_decline_only_applies_to_pending(engine, reserve):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    with pytest.raises(InvalidTransitionError) as exc:
        engine.decline_booking(booking_id)
    assert exc.value.current_status == "confirmed"


def test_cancel_confirmed_booking(engine, reserve, store):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    engine.cancel_booking(booking_id, reason="Travelling", cancelled_by="customer")

    booking = engine.get_booking(booking_id)
    assert booking.status == "cancelled"
    assert booking.cancelled_by == "customer"
    assert "Booking Cancelled" in _titles(store, "prov-1")


def test_cancel_rejects_unknown_party(engine, reserve):
    with pytest.raises(ValidationError):
        engine.cancel_booking(reserve(), cancelled_by="admin")


def test_cannot_cancel_in_progress_job(engine, reserve):
    booking_id = reserve()
    _start(engine, booking_id)
    with pytest.raises(InvalidTransitionError):
        engine.cancel_booking(booking_id)


@pytest.mark.parametrize("action", [
    lambda e, b: e.accept_booking(b),
    lambda e, b: e.decline_booking(b),
    lambda e, b: e.cancel_booking(b),
    lambda e, b: e.start_job(b, "123456"),
])
def test_terminal_statuses_never_move(engine, reserve, action):
    booking_id = reserve()
    engine.cancel_booking(booking_id)
    with pytest.raises(InvalidTransitionError) as exc:
        action(engine, booking_id)
    assert exc.value.current_status == "cancelled"
    assert engine.get_booking(booking_id).status == "cancelled"


def test_completed_booking_is_final(engine, reserve):
    booking_id = reserve()
    code = _start(engine, booking_id)
    engine.complete_job(booking_id, code, 500, "Fixed the sink")

    for action in (engine.accept_booking, engine.cancel_booking, engine.regenerate_completion_code):
        with pytest.raises(InvalidTransitionError):
            action(booking_id)
    assert engine.get_booking(booking_id).status == "completed"


def test_stale_write_is_rejected(engine, reserve, store):
    booking_id = reserve()
    stale = engine._load(booking_id)
    engine.cancel_booking(booking_id)

    with pytest.raises(InvalidTransitionError) as exc:
        engine._write(stale, {"status": "confirmed"}, "accept")
    assert exc.value.current_status == "cancelled"
    assert engine.get_booking(booking_id).status == "cancelled"


# ---------- start code ----------
def test_start_job_with_valid_code(engine, reserve, store, clock):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    start_code = engine.get_booking(booking_id).start_code

    completion_code = engine.start_job(booking_id, f"  {start_code} ")

    booking = engine.get_booking(booking_id)
    assert booking.status == "in_progress"
    assert booking.completion_code == completion_code
    assert len(completion_code) == 6
    assert booking.code_attempts == 0
    assert booking.code_expires_at == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)
    assert booking.job_started_at == clock.now
    assert "Job Started" in _titles(store, "cust-1")


def test_start_job_rejects_wrong_code(engine, reserve):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    start_code = engine.get_booking(booking_id).start_code

    with pytest.raises(InvalidCodeError) as exc:
        engine.start_job(booking_id, _wrong(start_code))
    assert exc.value.code_type == "start"
    assert engine.get_booking(booking_id).status == "confirmed"


def test_start_job_requires_confirmation(engine, reserve):
    booking_id = reserve()
    start_code = engine.get_booking(booking_id).start_code
    with pytest.raises(InvalidTransitionError):
        engine.start_job(booking_id, start_code)


def test_legacy_booking_without_start_code(engine, reserve, store, notifier, clock):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    store.update(BOOKINGS, booking_id, {"startCode": None})

    strict = BookingEngine(store, notifier=notifier, clock=clock, require_start_code=True)
    with pytest.raises(InvalidCodeError):
        strict.start_job(booking_id, "")

    assert engine.start_job(booking_id, "")
    assert engine.get_booking(booking_id).status == "in_progress"


# ---------- completion code ----------
def test_complete_job_records_bill_in_one_write(engine, reserve, store, clock):
    booking_id = reserve()
    code = _start(engine, booking_id)
    clock.advance(hours=2)
    version = store.get(BOOKINGS, booking_id).version

    engine.complete_job(booking_id, code, 750.5, "  Replaced washer  ")

    doc = store.get(BOOKINGS, booking_id)
    assert doc.version == version + 1
    booking = engine.get_booking(booking_id)
    assert booking.status == "completed"
    assert booking.final_bill_amount == 750.5
    assert booking.bill_details == "Replaced washer"
    assert booking.final_payment_status == "pending"
    assert booking.job_completed_at == clock.now
    assert booking.bill_submitted_at == clock.now
    assert "Job Completed" in _titles(store, "cust-1")


@pytest.mark.parametrize("amount, details", [
    (0, "work"),
    (-5, "work"),
    (float("nan"), "work"),
    (True, "work"),
    ("100", "work"),
    (100, ""),
    (100, "   "),
    (100, None),
])
def test_complete_job_rejects_bad_bill(engine, reserve, amount, details):
    booking_id = reserve()
    code = _start(engine, booking_id)

    with pytest.raises(ValidationError):
        engine.complete_job(booking_id, code, amount, details)

    booking = engine.get_booking(booking_id)
    assert booking.status == "in_progress"
    assert booking.final_bill_amount is None


def test_wrong_completion_code_counts_attempts(engine, reserve):
    booking_id = reserve()
    code = _start(engine, booking_id)

    with pytest.raises(InvalidCodeError) as exc:
        engine.complete_job(booking_id, _wrong(code), 100, "work")
    assert not isinstance(exc.value, CodeLockedError)
    assert exc.value.attempts_remaining == 2
    assert engine.get_booking(booking_id).code_attempts == 1


def test_three_wrong_codes_lock_completion(engine, reserve):
    booking_id = reserve()
    code = _start(engine, booking_id)

    for _ in range(2):
        with pytest.raises(InvalidCodeError):
            engine.complete_job(booking_id, _wrong(code), 100, "work")
    with pytest.raises(CodeLockedError):
        engine.complete_job(booking_id, _wrong(code), 100, "work")

    # locked even for the right code, and the counter stays put
    with pytest.raises(CodeLockedError):
        engine.complete_job(booking_id, code, 100, "work")
    booking = engine.get_booking(booking_id)
    assert booking.code_attempts == 3
    assert booking.status == "in_progress"


def test_regenerate_unlocks_and_invalidates_old_code(engine, reserve):
    booking_id = reserve()
    old = _start(engine, booking_id)
    for _ in range(3):
        with pytest.raises(InvalidCodeError):
            engine.complete_job(booking_id, _wrong(old), 100, "work")

    new = engine.regenerate_completion_code(booking_id)

    assert new != old
    assert engine.get_booking(booking_id).code_attempts == 0
    with pytest.raises(InvalidCodeError):
        engine.complete_job(booking_id, old, 100, "work")
    engine.complete_job(booking_id, new, 100, "work")
    assert engine.get_booking(booking_id).status == "completed"


def test_regenerate_requires_in_progress(engine, reserve):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    with pytest.raises(InvalidTransitionError):
        engine.regenerate_completion_code(booking_id)


def test_expired_completion_code(engine, reserve, clock):
    booking_id = reserve()
    code = _start(engine, booking_id)
    clock.advance(hours=24, seconds=1)

    with pytest.raises(CodeExpiredError):
        engine.complete_job(booking_id, code, 100, "work")
    assert engine.get_booking(booking_id).code_attempts == 0

    fresh = engine.regenerate_completion_code(booking_id)
    engine.complete_job(booking_id, fresh, 100, "work")


def test_code_valid_up_to_expiry_instant(engine, reserve, clock):
    booking_id = reserve()
    code = _start(engine, booking_id)
    clock.advance(hours=24)
    engine.complete_job(booking_id, code, 100, "work")


def test_complete_requires_started_job(engine, reserve):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    with pytest.raises(InvalidTransitionError):
        engine.complete_job(booking_id, "123456", 100, "work")


# ---------- payments ----------
def _completed(engine, reserve):
    booking_id = reserve()
    code = _start(engine, booking_id)
    engine.complete_job(booking_id, code, 400, "Deep clean")
    return booking_id


def test_record_cash_payment(engine, reserve, clock):
    booking_id = _completed(engine, reserve)
    engine.record_cash_payment(booking_id)

    booking = engine.get_booking(booking_id)
    assert booking.final_payment_status == "completed"
    assert booking.payment_method == "cash"
    assert booking.paid_at == clock.now


def test_payments_require_completed_booking(engine, reserve):
    booking_id = reserve()
    with pytest.raises(InvalidTransitionError):
        engine.record_cash_payment(booking_id)
    with pytest.raises(InvalidTransitionError):
        engine.record_gateway_payment(booking_id, "pi_1", "completed")


def test_gateway_failure_then_success(engine, reserve, store):
    booking_id = _completed(engine, reserve)

    engine.record_gateway_payment(booking_id, "pi_fail", "failed")
    booking = engine.get_booking(booking_id)
    assert booking.final_payment_status == "failed"
    assert booking.paid_at is None

    engine.record_gateway_payment(booking_id, "pi_ok", "completed")
    booking = engine.get_booking(booking_id)
    assert booking.final_payment_status == "completed"
    assert booking.final_payment_id == "pi_ok"
    assert booking.payment_method == "online"
    assert booking.paid_at is not None
    assert "Payment Received" in _titles(store, "prov-1")


def test_paid_bill_is_not_overwritten(engine, reserve):
    booking_id = _completed(engine, reserve)
    engine.record_cash_payment(booking_id)

    engine.record_gateway_payment(booking_id, "pi_late", "failed")
    engine.record_cash_payment(booking_id)

    booking = engine.get_booking(booking_id)
    assert booking.final_payment_status == "completed"
    assert booking.payment_method == "cash"
    assert booking.final_payment_id is None


def test_gateway_payment_validates_input(engine, reserve):
    booking_id = _completed(engine, reserve)
    with pytest.raises(ValidationError):
        engine.record_gateway_payment(booking_id, "pi_1", "pending")
    with pytest.raises(ValidationError):
        engine.record_gateway_payment(booking_id, " ", "completed")


def test_paid_up_front_confirms_pending_booking(engine, reserve):
    booking_id = reserve()
    engine.update_payment_status(booking_id, "paid", payment_intent_id="pi_up")

    booking = engine.get_booking(booking_id)
    assert booking.status == "confirmed"
    assert booking.payment_status == "paid"
    assert booking.payment_intent_id == "pi_up"


def test_refund_keeps_status(engine, reserve):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    engine.update_payment_status(booking_id, "refunded")

    booking = engine.get_booking(booking_id)
    assert booking.status == "confirmed"
    assert booking.payment_status == "refunded"

    with pytest.raises(ValidationError):
        engine.update_payment_status(booking_id, "settled")


# ---------- end to end ----------
def test_full_lifecycle(engine, reserve, store):
    booking_id = reserve()
    engine.accept_booking(booking_id)
    start_code = engine.get_booking(booking_id).start_code
    completion_code = engine.start_job(booking_id, start_code)
    engine.complete_job(booking_id, completion_code, 1200, "Installed fan")
    engine.record_gateway_payment(booking_id, "pi_123", "completed")

    booking = engine.get_booking(booking_id)
    assert booking.status == "completed"
    assert booking.final_payment_status == "completed"
    assert _titles(store, "cust-1").count("Job Completed") == 1


def test_notification_failure_does_not_undo_booking(engine, reserve, store, monkeypatch):
    real_add = store.add

    def broken_add(collection, fields):
        if collection.startswith("users/"):
            raise RuntimeError("push backend down")
        return real_add(collection, fields)

    monkeypatch.setattr(store, "add", broken_add)
    booking_id = reserve()
    engine.accept_booking(booking_id)
    assert engine.get_booking(booking_id).status == "confirmed"


def test_server_timestamp_sentinel_is_resolved(engine, reserve, clock):
    booking = engine.get_booking(reserve())
    assert booking.created_at == clock.now
    assert booking.updated_at is not SERVER_TIMESTAMP
