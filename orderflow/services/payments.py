# orderflow/services/payments.py
from time import perf_counter
from typing import Dict, Tuple

from orderflow.errors import (
    AmountMismatchError, CheckoutError, LedgerRejection, NotFoundError,
    PaymentNotCompletedError, PersistenceError, StateConflictError
)
from orderflow.gateway import GatewayClient
from orderflow.log import get_logger
from orderflow.metrics import (
    amount_mismatches, confirm_errors, confirm_latency, idempotent_noops,
    manual_reconciliations, payments_total, state_conflicts
)
from orderflow.models import OrderStatus
from orderflow.schemas import PaymentWebhook
from orderflow.services.ledger import LedgerGateway
from orderflow.state_machine import NoOp, Reject, decide_confirmation

logger = get_logger("payments")

ALREADY_PROCESSED = "already processed"


def confirm_payment(ledger: LedgerGateway, gateway: GatewayClient, payload: PaymentWebhook) -> Tuple[int, Dict]:
    """
    Webhook confirmation flow (safe under at-least-once delivery):
      - the caller is not trusted: the transaction is fetched from the gateway
        and only the gateway's record (amount, status, merchant ref) is used
      - the order is found by the gateway-reported merchant reference
      - already completed -> 200 no-op; failed/refunded -> state conflict
      - amount differs from the order's expected amount -> order failed, coupon
        released, 400
      - gateway status not paid -> 400, order stays pending
      - else pending -> completed with journal entries, in one ledger transaction
    Returns: (status_code, response_json)
    """
    start = perf_counter()
    try:
        token = gateway.authenticate()
        payment = gateway.fetch_payment(payload.tx_id, token)

        if payload.merchant_ref and payload.merchant_ref != payment.merchant_ref:
            logger.warning(
                "webhook_merchant_ref_differs",
                tx_id=payload.tx_id,
                webhook_merchant_ref=payload.merchant_ref,
                gateway_merchant_ref=payment.merchant_ref,
            )

        order = ledger.find_order_by_merchant_ref(payment.merchant_ref)
        if order is None:
            raise NotFoundError("Order not found")

        try:
            decision = decide_confirmation(
                order,
                payment.amount,
                payment.status,
                tx_id=payment.tx_id,
                pay_method=payment.pay_method,
                provider=payment.provider,
            )
        except StateConflictError:
            state_conflicts.labels("confirm").inc()
            raise

        if isinstance(decision, NoOp):
            idempotent_noops.labels("confirm").inc()
            logger.info("confirm_noop", order_id=str(order.id), tx_id=payment.tx_id)
            return (200, {"success": True, "message": ALREADY_PROCESSED, "order_id": str(order.id)})

        if isinstance(decision, Reject):
            logger.info("confirm_not_paid", order_id=str(order.id), gateway_status=payment.status)
            raise PaymentNotCompletedError(
                f"Payment not completed: {payment.status}", order_id=str(order.id)
            )

        if decision.tamper_alert:
            amount_mismatches.inc()
            logger.critical(
                "amount_mismatch",
                order_id=str(order.id),
                tx_id=payment.tx_id,
                expected=order.expected_amount,
                reported=payment.amount,
                gateway_status=payment.status,
            )
            try:
                ledger.fail_order_atomic(order.id, "amount mismatch", release_coupon=decision.release_coupon)
            except LedgerRejection as e:
                state_conflicts.labels("confirm").inc()
                raise StateConflictError(
                    "Order changed state while being failed", order_id=str(order.id), status=e.current_status
                ) from e
            raise AmountMismatchError("Payment amount does not match the order", order_id=str(order.id))

        try:
            ledger.complete_order_atomic(
                order.id, order.buyer_id, decision.tx_id, decision.pay_method, decision.provider
            )
        except LedgerRejection as e:
            if e.current_status == OrderStatus.COMPLETED.value:
                # A concurrent delivery of the same webhook won the race
                idempotent_noops.labels("confirm").inc()
                return (200, {"success": True, "message": ALREADY_PROCESSED, "order_id": str(order.id)})
            if e.reason == LedgerRejection.NOT_FOUND:
                raise NotFoundError("Order not found") from e
            state_conflicts.labels("confirm").inc()
            raise StateConflictError(
                "Order is no longer pending", order_id=str(order.id), status=e.current_status
            ) from e
        except PersistenceError as e:
            manual_reconciliations.labels("confirm").inc()
            logger.error(
                "ledger_write_failed_after_gateway",
                endpoint="confirm",
                order_id=str(order.id),
                tx_id=payment.tx_id,
            )
            raise PersistenceError(
                "Payment verified but the order could not be updated",
                order_id=str(order.id),
                manual_reconciliation=True,
            ) from e

        payments_total.inc()
        logger.info(
            "payment_confirmed",
            order_id=str(order.id),
            tx_id=payment.tx_id,
            amount=payment.amount,
            provider=payment.provider,
        )
        return (200, {"success": True, "message": "payment verified", "order_id": str(order.id)})

    except CheckoutError as e:
        confirm_errors.labels(e.kind).inc()
        raise
    finally:
        confirm_latency.observe(perf_counter() - start)
