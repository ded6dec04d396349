# orderflow/services/orders.py
from time import perf_counter
from typing import Dict, Tuple

from orderflow.errors import (
    CheckoutError, CouponUnavailableError, ItemInvalidError, LedgerRejection, StateConflictError
)
from orderflow.log import get_logger
from orderflow.metrics import create_errors, create_latency, orders_created_total
from orderflow.schemas import OrderCreate
from orderflow.services.ledger import LedgerGateway
from orderflow.state_machine import decide_creation

logger = get_logger("orders")


def create_order(ledger: LedgerGateway, buyer_id: str, payload: OrderCreate) -> Tuple[int, Dict]:
    """
    Record a pending order for an authenticated buyer:
      - the state machine validates the amount and that the buyer owns the coupon
      - the ledger inserts the order and claims the coupon hold in one transaction;
        a coupon already held by another live order is a 400 conflict
    Returns: (status_code, response_json)
    """
    start = perf_counter()
    coupon_ref = payload.coupon_ref or None
    try:
        coupon = ledger.get_coupon(coupon_ref) if coupon_ref else None
        creation = decide_creation(
            buyer_id,
            payload.item_id,
            payload.amount,
            coupon_ref,
            coupon=coupon,
            merchant_ref=payload.merchant_ref,
            tx_id=payload.tx_id,
            pay_method=payload.pay_method,
            provider=payload.provider or "unknown",
        )

        try:
            created = ledger.create_order_atomic(creation)
        except LedgerRejection as e:
            if e.reason == LedgerRejection.COUPON_UNAVAILABLE:
                raise CouponUnavailableError("Coupon is already in use", coupon_ref=coupon_ref) from e
            if e.reason == LedgerRejection.ITEM_INVALID:
                raise ItemInvalidError("Item is not available for purchase", item_id=payload.item_id) from e
            raise StateConflictError(
                "An order already exists for this merchant reference", merchant_ref=payload.merchant_ref
            ) from e

        orders_created_total.inc()
        logger.info(
            "order_created",
            order_id=str(created.order_id),
            buyer_id=buyer_id,
            item_id=payload.item_id,
            amount=payload.amount,
            coupon_ref=coupon_ref,
        )
        return (200, {
            "success": True,
            "order_id": str(created.order_id),
            "discount_applied": created.discount_applied,
        })

    except CheckoutError as e:
        create_errors.labels(e.kind).inc()
        raise
    finally:
        create_latency.observe(perf_counter() - start)
