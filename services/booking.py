"""Booking document shape and the status state machine."""
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Optional

from services.errors import InvalidTransitionError

BOOKINGS = "bookings"

PENDING = "pending"
CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
# legacy value, never written; treated like cancelled
REJECTED = "rejected"

ACTIVE_STATUSES = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED)
FREE_STATUSES = frozenset({CANCELLED, REJECTED})

TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {COMPLETED},
    COMPLETED: set(),
    CANCELLED: set(),
    REJECTED: set(),
}

# paymentStatus (up-front) and finalPaymentStatus (bill) values
PAYMENT_STATUSES = ("unpaid", "paid", "refunded")
FINAL_PAYMENT_PENDING = "pending"
FINAL_PAYMENT_COMPLETED = "completed"
FINAL_PAYMENT_FAILED = "failed"
GATEWAY_OUTCOMES = (FINAL_PAYMENT_COMPLETED, FINAL_PAYMENT_FAILED)


def assert_transition(booking_id: str, current: str, target: str, action: str) -> None:
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(booking_id, current, action, target_status=target)


def booking_id_for(provider_id: str, date_seconds: int, start_time: str) -> str:
    """Deterministic key: one document per (provider, day, start time)."""
    return f"bk_{provider_id}_{date_seconds}_{start_time}"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class Booking:
    id: str
    customer_id: str
    provider_id: str
    date: Optional[datetime] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_minutes: Optional[int] = None
    status: str = PENDING
    payment_status: str = "unpaid"
    payment_intent_id: Optional[str] = None
    total_price: Any = None
    notes: Optional[str] = None
    customer_name: Optional[str] = None
    provider_name: Optional[str] = None
    address: Optional[str] = None

    start_code: Optional[str] = None
    completion_code: Optional[str] = None
    code_expires_at: Optional[datetime] = None
    code_attempts: int = 0
    job_started_at: Optional[datetime] = None
    job_completed_at: Optional[datetime] = None

    final_bill_amount: Any = None
    bill_details: Optional[str] = None
    bill_submitted_at: Optional[datetime] = None
    final_payment_status: Optional[str] = None
    final_payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None

    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # store version the booking was read at; not a document field
    version: Any = None

    @classmethod
    def from_document(cls, doc) -> "Booking":
        data = doc.data
        kwargs = {}
        for f in fields(cls):
            if f.name in ("id", "version"):
                continue
            key = _camel(f.name)
            if key in data:
                kwargs[f.name] = data[key]
        kwargs.setdefault("customer_id", None)
        kwargs.setdefault("provider_id", None)
        if kwargs.get("code_attempts") is None:
            kwargs["code_attempts"] = 0
        return cls(id=doc.id, version=doc.version, **kwargs)

    def to_dict(self, include_codes: bool = False) -> dict:
        out = {}
        for f in fields(self):
            if f.name == "version":
                continue
            if not include_codes and f.name in ("start_code", "completion_code"):
                continue
            value = getattr(self, f.name)
            out[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return out
