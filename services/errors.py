"""
Errors raised by the booking engine.

Each carries an HTTP status and enough detail (attempts remaining, current
status, attempted action) for a client to show an actionable message.
"""


class BookingError(Exception):
    status_code = 400
    code = "booking_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"error": self.message, "code": self.code}
        out.update({k: v for k, v in self.details.items() if v is not None})
        return out


class ValidationError(BookingError):
    code = "validation_error"

    def __init__(self, message: str, field: str = None):
        super().__init__(message, field=field)
        self.field = field


class BookingNotFoundError(BookingError):
    status_code = 404
    code = "booking_not_found"

    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found", booking_id=booking_id)
        self.booking_id = booking_id


class SlotTakenError(BookingError):
    status_code = 409
    code = "slot_taken"

    def __init__(self, booking_id: str, provider_id: str = None, start_time: str = None):
        super().__init__(
            "This time slot is already booked. Please select another time.",
            booking_id=booking_id,
            provider_id=provider_id,
            start_time=start_time,
        )
        self.booking_id = booking_id


class InvalidTransitionError(BookingError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, booking_id: str, current_status: str, action: str,
                 target_status: str = None, message: str = None):
        if message is None:
            message = f"Cannot {action} booking {booking_id}: it is {current_status}"
        super().__init__(
            message,
            booking_id=booking_id,
            current_status=current_status,
            attempted=action,
            target_status=target_status,
        )
        self.current_status = current_status
        self.action = action
        self.target_status = target_status


class InvalidCodeError(BookingError):
    status_code = 422
    code = "invalid_code"

    def __init__(self, code_type: str, attempts_remaining: int = None, message: str = None):
        if message is None:
            if code_type == "start":
                message = "Invalid start code. Please ask the customer for the correct code."
            else:
                message = f"Invalid completion code. {attempts_remaining} attempts remaining."
        super().__init__(message, code_type=code_type, attempts_remaining=attempts_remaining)
        self.code_type = code_type
        self.attempts_remaining = attempts_remaining


class CodeLockedError(InvalidCodeError):
    status_code = 423
    code = "code_locked"

    def __init__(self, attempts: int):
        super().__init__(
            "completion",
            attempts_remaining=0,
            message="Too many failed attempts. Please ask the customer to regenerate the code.",
        )
        self.details["attempts"] = attempts
        self.attempts = attempts


class CodeExpiredError(BookingError):
    status_code = 410
    code = "code_expired"

    def __init__(self, expired_at=None):
        super().__init__(
            "Completion code expired. Please ask the customer to regenerate the code.",
            expired_at=expired_at.isoformat() if expired_at else None,
        )
        self.expired_at = expired_at
