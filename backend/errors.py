from enum import Enum


class TicketingError(Exception):
    """Base class for every error raised by the ticketing core."""


class TransientError(TicketingError):
    """The backing store timed out or was unavailable. Safe to retry."""

    retryable = True


class InvalidScanPayload(TicketingError, ValueError):
    pass


class InvalidDiscountCode(TicketingError, ValueError):
    pass


class DiscountNotFound(TicketingError):
    def __init__(self, code: str):
        super().__init__(f"Discount code {code!r} not found")
        self.code = code


class IneligibleReason(str, Enum):
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    MINIMUM_NOT_MET = "minimum_not_met"
    WRONG_EVENT = "wrong_event"
    DISCOUNT_BUDGET_EXCEEDED = "discount_budget_exceeded"
    NEEDS_VERIFICATION = "needs_verification"
    VERIFICATION_REJECTED = "verification_rejected"


class DiscountIneligible(TicketingError):
    def __init__(self, code: str, reason: IneligibleReason, detail: str = ""):
        super().__init__(detail or f"Discount code {code!r} is not eligible: {reason.value}")
        self.code = code
        self.reason = reason


class DuplicateDiscountClass(TicketingError, ValueError):
    """Two discounts of the same class were supplied for one order."""


class PassUnavailable(TicketingError):
    pass


class BookingNotFound(TicketingError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id!r} not found")
        self.booking_id = booking_id


class BookingStateError(TicketingError):
    pass


class AttendanceConflict(TicketingError):
    """The attendance insert failed for a reason other than an earlier admission."""
