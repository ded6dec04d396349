# orderflow/state_machine.py
"""
Order lifecycle decisions.

Nothing in here performs I/O. Callers load an `OrderSnapshot` (and, for
creation, a `CouponSnapshot`) from the ledger, ask for a decision, and hand the
resulting `Transition` back to the ledger to commit.

    pending ──► completed ──► refunded
       │
       └──────► failed

`failed` and `refunded` are terminal.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Union
from uuid import UUID

from orderflow.errors import NotFoundError, StateConflictError, ValidationError
from orderflow.models import OrderStatus

PAID = "paid"

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


@dataclass(frozen=True)
class OrderSnapshot:
    id: UUID
    buyer_id: str
    item_id: str
    merchant_ref: str
    expected_amount: int
    status: OrderStatus
    coupon_ref: Optional[str] = None
    discount_applied: int = 0
    tx_id: Optional[str] = None
    pay_method: Optional[str] = None
    provider: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    webhook_verified_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


@dataclass(frozen=True)
class CouponSnapshot:
    id: str
    owner_id: str
    discount_amount: int
    consumed_by_order_id: Optional[UUID] = None


@dataclass(frozen=True)
class Transition:
    to: OrderStatus
    tx_id: Optional[str] = None
    pay_method: Optional[str] = None
    provider: Optional[str] = None
    amount: Optional[int] = None
    release_coupon: bool = False
    tamper_alert: bool = False


@dataclass(frozen=True)
class NoOp:
    reason: str


@dataclass(frozen=True)
class Reject:
    reason: str


@dataclass(frozen=True)
class Creation:
    buyer_id: str
    item_id: str
    amount: int
    merchant_ref: str
    tx_id: str
    pay_method: str
    provider: str
    coupon_ref: Optional[str] = None


Decision = Union[Transition, NoOp, Reject]


def check_transition(current: OrderStatus, target: OrderStatus, order_id: Optional[UUID] = None) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        extra = {"order_id": str(order_id)} if order_id is not None else {}
        raise StateConflictError(
            f"Order is {current.value}; cannot move to {target.value}",
            status=current.value,
            **extra,
        )


def decide_confirmation(
    order: OrderSnapshot,
    reported_amount: int,
    reported_status: str,
    tx_id: Optional[str] = None,
    pay_method: Optional[str] = None,
    provider: Optional[str] = None,
) -> Decision:
    """Decide what a gateway confirmation means for `order`.

    The amount comparison runs before the status check: a mismatch is a tamper
    signal and fails the order whatever status the gateway reports.
    """
    if order.status == OrderStatus.COMPLETED:
        return NoOp("already processed")

    check_transition(order.status, OrderStatus.COMPLETED, order.id)

    if reported_amount != order.expected_amount:
        return Transition(
            to=OrderStatus.FAILED,
            release_coupon=order.coupon_ref is not None,
            tamper_alert=True,
        )

    if reported_status != PAID:
        return Reject("payment not completed upstream")

    return Transition(
        to=OrderStatus.COMPLETED,
        tx_id=tx_id,
        pay_method=pay_method,
        provider=provider,
    )


def decide_refund(order: OrderSnapshot, requested_amount: int) -> Union[Transition, NoOp]:
    if order.status == OrderStatus.REFUNDED:
        return NoOp("already refunded")

    check_transition(order.status, OrderStatus.REFUNDED, order.id)

    if isinstance(requested_amount, bool) or not isinstance(requested_amount, int) or requested_amount <= 0:
        raise ValidationError("refund_amount must be a positive integer")
    if requested_amount > order.expected_amount:
        raise ValidationError("refund_amount exceeds the amount paid for this order")

    return Transition(
        to=OrderStatus.REFUNDED,
        amount=requested_amount,
        release_coupon=order.coupon_ref is not None,
    )


def decide_creation(
    buyer_id: str,
    item_id: str,
    amount: int,
    coupon_ref: Optional[str],
    *,
    coupon: Optional[CouponSnapshot] = None,
    merchant_ref: str,
    tx_id: str,
    pay_method: str,
    provider: str = "unknown",
) -> Creation:
    # Availability is the ledger's call: it claims the hold in the same transaction
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")

    if coupon_ref is not None:
        if coupon is None or coupon.id != coupon_ref or coupon.owner_id != buyer_id:
            raise NotFoundError("Coupon not found")

    return Creation(
        buyer_id=buyer_id,
        item_id=item_id,
        amount=amount,
        merchant_ref=merchant_ref,
        tx_id=tx_id,
        pay_method=pay_method,
        provider=provider or "unknown",
        coupon_ref=coupon_ref,
    )
