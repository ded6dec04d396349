# orderflow/services/refunds.py
from time import perf_counter
from typing import Dict, Tuple

from orderflow.errors import (
    CheckoutError, LedgerRejection, NotFoundError, PersistenceError,
    RefundDeniedError, StateConflictError
)
from orderflow.gateway import GatewayClient
from orderflow.log import get_logger
from orderflow.metrics import (
    idempotent_noops, manual_reconciliations, refund_errors, refund_latency,
    refunds_total, state_conflicts
)
from orderflow.schemas import RefundRequest
from orderflow.services.ledger import LedgerGateway
from orderflow.state_machine import NoOp, decide_refund

logger = get_logger("refunds")


def refund_payment(
    ledger: LedgerGateway, gateway: GatewayClient, buyer_id: str, payload: RefundRequest
) -> Tuple[int, Dict]:
    """
    Refund flow:
      - order must exist and belong to the buyer (404 otherwise)
      - already refunded -> 200 no-op, the gateway is not called again
      - not completed -> 400
      - gateway cancel refused -> 400, order stays completed
      - gateway cancel accepted -> ledger marks refunded, restores the coupon and
        reverses the journal in one transaction; if that write fails the
        response carries manual_reconciliation because the money already moved
    Returns: (status_code, response_json)
    """
    start = perf_counter()
    try:
        order = ledger.get_order_for_buyer(payload.order_id, buyer_id)
        if order is None:
            raise NotFoundError("Order not found")

        try:
            decision = decide_refund(order, payload.refund_amount)
        except StateConflictError:
            state_conflicts.labels("refund").inc()
            raise

        if isinstance(decision, NoOp):
            idempotent_noops.labels("refund").inc()
            logger.info("refund_noop", order_id=str(order.id))
            return (200, {
                "success": True,
                "message": "already refunded",
                "order_id": str(order.id),
                "refund_amount": order.refund_amount,
                "coupon_restored": False,
            })

        token = gateway.authenticate()
        result = gateway.cancel_payment(order.tx_id, decision.amount, payload.refund_reason, token)
        if not result.success:
            logger.warning("refund_denied", order_id=str(order.id), gateway_message=result.message)
            raise RefundDeniedError(f"Refund denied: {result.message}", order_id=str(order.id))

        try:
            refunded = ledger.refund_order_atomic(
                order.id, buyer_id, decision.amount, payload.refund_reason, release_coupon=decision.release_coupon
            )
        except LedgerRejection as e:
            manual_reconciliations.labels("refund").inc()
            logger.error(
                "ledger_write_failed_after_gateway",
                endpoint="refund",
                order_id=str(order.id),
                reason=e.reason,
                status=e.current_status,
            )
            raise StateConflictError(
                "Gateway refunded the payment but the order changed state",
                order_id=str(order.id),
                status=e.current_status,
                gateway_refunded=True,
                manual_reconciliation=True,
            ) from e
        except PersistenceError as e:
            manual_reconciliations.labels("refund").inc()
            logger.error("ledger_write_failed_after_gateway", endpoint="refund", order_id=str(order.id))
            raise PersistenceError(
                "Gateway refunded the payment but the order could not be updated",
                order_id=str(order.id),
                gateway_refunded=True,
                manual_reconciliation=True,
            ) from e

        refunds_total.inc()
        logger.info(
            "refund_completed",
            order_id=str(refunded.order_id),
            refund_amount=refunded.refund_amount,
            coupon_restored=refunded.coupon_restored,
        )
        return (200, {
            "success": True,
            "order_id": str(refunded.order_id),
            "refund_amount": refunded.refund_amount,
            "coupon_restored": refunded.coupon_restored,
        })

    except CheckoutError as e:
        refund_errors.labels(e.kind).inc()
        raise
    finally:
        refund_latency.observe(perf_counter() - start)
