# orderflow/services/ledger.py
"""
Ledger gateway: the only code that writes orders, coupon holds and journal rows.

Each public ``*_atomic`` method is one transaction. It either applies every row
change it is responsible for (order status, coupon hold, journal entries) or
none of them. Transitions are written with conditional updates
(``WHERE status = <expected>``, ``WHERE consumed_by_order_id IS NULL``), so two
requests racing on the same order or coupon cannot both win, whatever they read
beforehand.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orderflow.errors import LedgerRejection, PersistenceError
from orderflow.log import get_logger
from orderflow.models import CouponHold, Item, LedgerEntry, Order, OrderStatus, now_utc
from orderflow.schemas import LedgerEntryOut, LedgerSummaryOut, OrderDetail
from orderflow.state_machine import CouponSnapshot, Creation, OrderSnapshot

logger = get_logger("ledger")


@dataclass(frozen=True)
class CreatedOrder:
    order_id: UUID
    discount_applied: int


@dataclass(frozen=True)
class CompletedOrder:
    order_id: UUID


@dataclass(frozen=True)
class RefundedOrder:
    order_id: UUID
    refund_amount: int
    coupon_restored: bool


@dataclass(frozen=True)
class FailedOrder:
    order_id: UUID
    coupon_restored: bool


def _snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        id=order.id,
        buyer_id=order.buyer_id,
        item_id=order.item_id,
        merchant_ref=order.merchant_ref,
        expected_amount=order.expected_amount,
        status=order.status,
        coupon_ref=order.coupon_ref,
        discount_applied=order.discount_applied or 0,
        tx_id=order.tx_id,
        pay_method=order.pay_method,
        provider=order.provider,
        refund_amount=order.refund_amount,
        refund_reason=order.refund_reason,
        created_at=order.created_at,
        updated_at=order.updated_at,
        webhook_verified_at=order.webhook_verified_at,
        refunded_at=order.refunded_at,
    )


class LedgerGateway:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ----- atomic operations -------------------------------------------------

    def create_order_atomic(self, creation: Creation) -> CreatedOrder:
        """Insert a pending order and, if a coupon is given, claim its hold."""
        order_id = uuid4()
        try:
            with self._session_factory() as db, db.begin():
                item = db.get(Item, creation.item_id)
                if item is None or not item.is_active:
                    raise LedgerRejection(LedgerRejection.ITEM_INVALID)

                taken = db.scalar(select(Order.id).where(Order.merchant_ref == creation.merchant_ref))
                if taken is not None:
                    raise LedgerRejection(LedgerRejection.DUPLICATE_ORDER)

                order = Order(
                    id=order_id,
                    merchant_ref=creation.merchant_ref,
                    buyer_id=creation.buyer_id,
                    item_id=creation.item_id,
                    expected_amount=creation.amount,
                    coupon_ref=creation.coupon_ref,
                    discount_applied=0,
                    status=OrderStatus.PENDING,
                    tx_id=creation.tx_id,
                    pay_method=creation.pay_method,
                    provider=creation.provider,
                )
                db.add(order)
                db.flush()

                discount = 0
                if creation.coupon_ref is not None:
                    claimed = db.execute(
                        update(CouponHold)
                        .where(
                            CouponHold.id == creation.coupon_ref,
                            CouponHold.owner_id == creation.buyer_id,
                            CouponHold.consumed_by_order_id.is_(None),
                        )
                        .values(consumed_by_order_id=order_id, consumed_at=now_utc())
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        raise LedgerRejection(LedgerRejection.COUPON_UNAVAILABLE)
                    discount = db.scalar(
                        select(CouponHold.discount_amount).where(CouponHold.id == creation.coupon_ref)
                    ) or 0
                    order.discount_applied = discount
        except IntegrityError as e:
            # Lost a race on the unique merchant_ref
            raise LedgerRejection(LedgerRejection.DUPLICATE_ORDER) from e
        except SQLAlchemyError as e:
            logger.error("ledger_create_failed", merchant_ref=creation.merchant_ref, error=str(e))
            raise PersistenceError("Failed to record the order") from e

        return CreatedOrder(order_id=order_id, discount_applied=discount)

    def complete_order_atomic(
        self,
        order_id: UUID,
        buyer_id: str,
        tx_id: Optional[str],
        pay_method: Optional[str],
        provider: Optional[str],
    ) -> CompletedOrder:
        """pending -> completed, plus DR CASH / CR REVENUE for the expected amount."""
        try:
            with self._session_factory() as db, db.begin():
                order = self._lock_order(db, order_id)
                if order is None:
                    raise LedgerRejection(LedgerRejection.NOT_FOUND)
                if order.buyer_id != buyer_id:
                    raise LedgerRejection(LedgerRejection.WRONG_OWNER)

                now = now_utc()
                changes = {"status": OrderStatus.COMPLETED, "webhook_verified_at": now, "updated_at": now}
                if tx_id:
                    changes["tx_id"] = tx_id
                if pay_method:
                    changes["pay_method"] = pay_method
                if provider:
                    changes["provider"] = provider

                moved = db.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                    .values(**changes)
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    raise LedgerRejection(
                        LedgerRejection.STATE_CONFLICT, current_status=self._current_status(db, order_id)
                    )

                # Double-entry: DR CASH, CR REVENUE
                db.add(LedgerEntry(
                    order_id=order_id, account="CASH",
                    debit_cents=order.expected_amount, credit_cents=0
                ))
                db.add(LedgerEntry(
                    order_id=order_id, account="REVENUE",
                    debit_cents=0, credit_cents=order.expected_amount
                ))
        except SQLAlchemyError as e:
            logger.error("ledger_complete_failed", order_id=str(order_id), error=str(e))
            raise PersistenceError("Failed to update the order status") from e

        return CompletedOrder(order_id=order_id)

    def refund_order_atomic(
        self, order_id: UUID, buyer_id: str, amount: int, reason: str, release_coupon: bool = True
    ) -> RefundedOrder:
        """completed -> refunded, release the coupon if asked, and reverse the journal for `amount`."""
        try:
            with self._session_factory() as db, db.begin():
                order = self._lock_order(db, order_id)
                if order is None or order.buyer_id != buyer_id:
                    raise LedgerRejection(LedgerRejection.NOT_FOUND)

                now = now_utc()
                moved = db.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == OrderStatus.COMPLETED)
                    .values(
                        status=OrderStatus.REFUNDED,
                        refund_amount=amount,
                        refund_reason=reason,
                        refunded_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    raise LedgerRejection(
                        LedgerRejection.WRONG_STATE, current_status=self._current_status(db, order_id)
                    )

                coupon_restored = release_coupon and self._release_coupon(db, order_id)

                # Reverse: DR REVENUE, CR CASH
                db.add(LedgerEntry(
                    order_id=order_id, account="REVENUE",
                    debit_cents=amount, credit_cents=0
                ))
                db.add(LedgerEntry(
                    order_id=order_id, account="CASH",
                    debit_cents=0, credit_cents=amount
                ))
        except SQLAlchemyError as e:
            logger.error("ledger_refund_failed", order_id=str(order_id), error=str(e))
            raise PersistenceError("Failed to record the refund") from e

        return RefundedOrder(order_id=order_id, refund_amount=amount, coupon_restored=coupon_restored)

    def fail_order_atomic(self, order_id: UUID, reason: str, release_coupon: bool = True) -> FailedOrder:
        """pending -> failed and release the coupon if asked. No journal rows: no money moved."""
        try:
            with self._session_factory() as db, db.begin():
                order = self._lock_order(db, order_id)
                if order is None:
                    raise LedgerRejection(LedgerRejection.NOT_FOUND)

                moved = db.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                    .values(status=OrderStatus.FAILED, failure_reason=reason, updated_at=now_utc())
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    raise LedgerRejection(
                        LedgerRejection.STATE_CONFLICT, current_status=self._current_status(db, order_id)
                    )

                coupon_restored = release_coupon and self._release_coupon(db, order_id)
        except SQLAlchemyError as e:
            logger.error("ledger_fail_failed", order_id=str(order_id), error=str(e))
            raise PersistenceError("Failed to mark the order failed") from e

        return FailedOrder(order_id=order_id, coupon_restored=coupon_restored)

    # ----- reads -------------------------------------------------------------

    def get_order(self, order_id: UUID) -> Optional[OrderSnapshot]:
        return self._read_order(select(Order).where(Order.id == order_id))

    def get_order_for_buyer(self, order_id: UUID, buyer_id: str) -> Optional[OrderSnapshot]:
        return self._read_order(select(Order).where(Order.id == order_id, Order.buyer_id == buyer_id))

    def find_order_by_merchant_ref(self, merchant_ref: str) -> Optional[OrderSnapshot]:
        return self._read_order(select(Order).where(Order.merchant_ref == merchant_ref))

    def get_coupon(self, coupon_ref: str) -> Optional[CouponSnapshot]:
        try:
            with self._session_factory() as db:
                coupon = db.get(CouponHold, coupon_ref)
                if coupon is None:
                    return None
                return CouponSnapshot(
                    id=coupon.id,
                    owner_id=coupon.owner_id,
                    discount_amount=coupon.discount_amount,
                    consumed_by_order_id=coupon.consumed_by_order_id,
                )
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read coupon") from e

    def order_detail(self, order_id: UUID, buyer_id: str) -> Optional[OrderDetail]:
        try:
            with self._session_factory() as db:
                order = db.execute(
                    select(Order).where(Order.id == order_id, Order.buyer_id == buyer_id)
                ).scalar_one_or_none()
                return OrderDetail.model_validate(order) if order else None
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read order") from e

    def journal(self, order_id: UUID) -> List[LedgerEntryOut]:
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    select(LedgerEntry)
                    .where(LedgerEntry.order_id == order_id)
                    .order_by(LedgerEntry.created_at)
                ).scalars().all()
                return [LedgerEntryOut.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read journal") from e

    def journal_summary(self, order_id: UUID) -> LedgerSummaryOut:
        try:
            with self._session_factory() as db:
                totals = db.execute(
                    select(
                        func.coalesce(func.sum(LedgerEntry.debit_cents), 0).label("debits"),
                        func.coalesce(func.sum(LedgerEntry.credit_cents), 0).label("credits"),
                    ).where(LedgerEntry.order_id == order_id)
                ).one()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read journal") from e

        return LedgerSummaryOut(
            order_id=order_id,
            total_debits=int(totals.debits or 0),
            total_credits=int(totals.credits or 0),
        )

    # ----- helpers -----------------------------------------------------------

    def _read_order(self, stmt) -> Optional[OrderSnapshot]:
        try:
            with self._session_factory() as db:
                order = db.execute(stmt).scalar_one_or_none()
                return _snapshot(order) if order else None
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read order") from e

    @staticmethod
    def _lock_order(db: Session, order_id: UUID) -> Optional[Order]:
        return db.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()

    @staticmethod
    def _current_status(db: Session, order_id: UUID) -> Optional[str]:
        status = db.scalar(select(Order.status).where(Order.id == order_id))
        return status.value if status is not None else None

    @staticmethod
    def _release_coupon(db: Session, order_id: UUID) -> bool:
        released = db.execute(
            update(CouponHold)
            .where(CouponHold.consumed_by_order_id == order_id)
            .values(consumed_by_order_id=None, consumed_at=None)
            .execution_options(synchronize_session=False)
        )
        return released.rowcount > 0
