# orderflow/errors.py
from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base for every failure a handler turns into a structured response.

    `extra` is merged into the JSON body next to `success` and `error`.
    """
    status_code = 500
    kind = "error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_body(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, **self.extra}


class AuthenticationError(CheckoutError):
    status_code = 401
    kind = "unauthenticated"


class ValidationError(CheckoutError):
    status_code = 400
    kind = "validation"


class NotFoundError(CheckoutError):
    status_code = 404
    kind = "not_found"


class StateConflictError(CheckoutError):
    status_code = 400
    kind = "state_conflict"


class CouponUnavailableError(StateConflictError):
    kind = "coupon_unavailable"


class ItemInvalidError(StateConflictError):
    kind = "item_invalid"


class AmountMismatchError(CheckoutError):
    status_code = 400
    kind = "amount_mismatch"


class GatewayError(CheckoutError):
    """Business rejections from the gateway are 400; transport faults are 502."""
    status_code = 400
    kind = "gateway"


class GatewayAuthError(GatewayError):
    status_code = 502
    kind = "gateway_auth"


class GatewayLookupError(GatewayError):
    kind = "gateway_lookup"


class GatewayTransportError(GatewayError):
    status_code = 502
    kind = "gateway_transport"


class PaymentNotCompletedError(GatewayError):
    kind = "payment_not_completed"


class RefundDeniedError(GatewayError):
    kind = "refund_denied"


class PersistenceError(CheckoutError):
    status_code = 500
    kind = "persistence"


class LedgerRejection(Exception):
    """A ledger operation refused to apply for a defined business reason.

    Nothing was written when this is raised.
    """
    ITEM_INVALID = "item_invalid"
    COUPON_UNAVAILABLE = "coupon_unavailable"
    DUPLICATE_ORDER = "duplicate_order"
    NOT_FOUND = "not_found"
    WRONG_OWNER = "wrong_owner"
    WRONG_STATE = "wrong_state"
    STATE_CONFLICT = "state_conflict"

    def __init__(self, reason: str, current_status: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.current_status = current_status
