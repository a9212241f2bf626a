

class ReservationEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the reservation engine.

    Every subclass is an expected, typed outcome that the API layer
    turns into a response with ``status_code`` and ``code``.
    """

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", details: dict | None = None):
        self.message = message or self.__class__.__doc__.strip().splitlines()[0]
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ReservationEngineError):
    """Malformed or missing input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class UnauthorizedError(ReservationEngineError):
    """Unauthorized."""

    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(ReservationEngineError):
    """Forbidden."""

    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ReservationEngineError):
    """Not found."""

    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ReservationEngineError):
    """Conflict."""

    status_code = 409
    code = "CONFLICT"


class OutOfCapacityError(ConflictError):
    """Not enough spots available."""

    code = "OUT_OF_CAPACITY"


class UnitNotBookableError(ConflictError):
    """Inventory unit is not open for booking."""

    code = "UNIT_NOT_BOOKABLE"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal booking or payment state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message, {"from": from_state, "to": to_state})


class PaymentFailedError(ReservationEngineError):
    """Payment failed."""

    status_code = 402
    code = "PAYMENT_FAILED"

    def __init__(
        self,
        message: str = "Payment failed",
        provider_ref: str | None = None,
        diagnostic: str | None = None,
        retryable: bool = False,
    ):
        self.provider_ref = provider_ref
        self.diagnostic = diagnostic
        self.retryable = retryable
        super().__init__(
            message,
            {
                "provider_ref": provider_ref,
                "diagnostic": diagnostic,
                "retryable": retryable,
            },
        )


class RefundNotAllowedError(ReservationEngineError):
    """Refund not allowed."""

    status_code = 400
    code = "REFUND_NOT_ALLOWED"


class CaptureInconsistencyError(ReservationEngineError):
    """
    Provider confirmed a charge but the local commit failed.
    Needs reconciliation; never shown to the caller in detail.
    """

    status_code = 500
    code = "INTERNAL_ERROR"
