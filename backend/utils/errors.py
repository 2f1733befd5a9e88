from fastapi import HTTPException

# ==============================
# Settlement error taxonomy
# ==============================
# Every error is an HTTPException so FastAPI renders it directly.
# detail = {"kind", "code", "message", **details}


def format_amount(amount) -> str:
    return f"₹{float(amount):,.2f}"


class SettlementError(HTTPException):
    kind = "InternalError"
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, *, code: str | None = None, **details):
        self.message = message
        self.details = details
        if code:
            self.code = code
        super().__init__(
            status_code=self.http_status,
            detail={
                "kind": self.kind,
                "code": self.code,
                "message": message,
                **details,
            },
        )

    def __str__(self):
        return self.message


class ValidationError(SettlementError):
    kind = "ValidationError"
    code = "INVALID_INPUT"
    http_status = 400


class NotFoundError(SettlementError):
    kind = "NotFoundError"
    code = "NOT_FOUND"
    http_status = 404


class NonServiceableError(SettlementError):
    kind = "NonServiceableError"
    code = "NON_SERVICEABLE"
    http_status = 422

    def __init__(self, pincode: str, products: list[dict]):
        self.products = products
        super().__init__(
            f"Delivery not available to pincode {pincode} for {len(products)} product(s)",
            pincode=pincode,
            products=products,
        )


class StateConflictError(SettlementError):
    kind = "StateConflictError"
    code = "STATE_CONFLICT"
    http_status = 409


class AlreadyAssignedError(StateConflictError):
    code = "ALREADY_ASSIGNED"


class AlreadyPaidError(StateConflictError):
    code = "ALREADY_PAID"


class InvalidTransitionError(StateConflictError):
    code = "INVALID_TRANSITION"


class NoPendingFundsError(StateConflictError):
    code = "NO_PENDING_FUNDS"


class DuplicateSettlementError(StateConflictError):
    code = "DUPLICATE_SETTLEMENT"


class InsufficientFundsError(SettlementError):
    kind = "InsufficientFundsError"
    code = "INSUFFICIENT_FUNDS"
    http_status = 400


class PermissionDeniedError(SettlementError):
    kind = "PermissionDeniedError"
    code = "PERMISSION_DENIED"
    http_status = 403


class InternalError(SettlementError):
    pass


class AmountMismatchError(ValidationError):
    code = "AMOUNT_MISMATCH"

    def __init__(self, expected, received):
        super().__init__(
            f"Collected amount mismatch: expected {format_amount(expected)}, "
            f"received {format_amount(received)}",
            expected=expected,
            received=received,
            difference=expected - received,
        )
