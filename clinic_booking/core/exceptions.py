"""Business errors raised by the scheduling core.

Every error carries an HTTP status, a stable machine code and a context dict
so the API layer can render a specific message without string parsing.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    status_code = 400
    code = "BOOKING_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "context": self.context}


class NotFoundError(BookingError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(f"{resource} not found", {"resource": resource, "id": identifier})
        self.resource = resource
        self.identifier = identifier


class InvalidInputError(BookingError):
    code = "INVALID_INPUT"


class InvalidTransitionError(BookingError):
    code = "INVALID_STATE"

    def __init__(self, current, target):
        super().__init__(
            f"Invalid status transition from {current.value} to {target.value}",
            {"from": current.value, "to": target.value},
        )
        self.current = current
        self.target = target


class NotQueuedError(BookingError):
    code = "NOT_QUEUED"

    def __init__(self, booking_id: int, status):
        super().__init__(
            "Booking is not in queue",
            {"booking_id": booking_id, "status": status.value},
        )
        self.booking_id = booking_id
        self.status = status


class SlotFullError(BookingError):
    status_code = 409
    code = "SLOT_FULL"


class ScheduleConflictError(BookingError):
    code = "SCHEDULE_CONFLICT"

    def __init__(self, message: str, window_start: Optional[str] = None, window_end: Optional[str] = None, **context):
        if window_start is not None:
            context["window_start"] = window_start
        if window_end is not None:
            context["window_end"] = window_end
        super().__init__(message, context)


class DuplicateBookingError(BookingError):
    status_code = 409
    code = "DUPLICATE_BOOKING"


class TransientStoreConflictError(BookingError):
    """The store rejected a transaction because of concurrent slot contention.

    This is the only error worth retrying: it means another request won the
    race for the same slot, not that the request itself was wrong.
    """

    status_code = 503
    code = "TRANSIENT_CONFLICT"
