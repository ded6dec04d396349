# orderflow/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer,
    String, Uuid, func
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

def now_utc():
    return datetime.now(timezone.utc)

class Item(Base):
    __tablename__ = "items"

    id = Column(String(64), primary_key=True)
    title = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    merchant_ref = Column(String(128), nullable=False, unique=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    item_id = Column(String(64), ForeignKey("items.id"), nullable=False)
    # Fixed at creation; the only basis for comparing against the gateway's amount
    expected_amount = Column(Integer, nullable=False)
    coupon_ref = Column(String(64), nullable=True)
    discount_applied = Column(Integer, nullable=False, default=0)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    tx_id = Column(String(128), nullable=True)
    pay_method = Column(String(32), nullable=True)
    provider = Column(String(32), nullable=True)
    refund_amount = Column(Integer, nullable=True)
    refund_reason = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    webhook_verified_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("expected_amount > 0", name="orders_amount_positive"),
        CheckConstraint("discount_applied >= 0", name="orders_discount_nonneg"),
    )

    ledger_entries = relationship("LedgerEntry", back_populates="order")

class CouponHold(Base):
    """A buyer's coupon. The hold is the consumed_by_order_id column: set while an
    order in pending/completed owns it, cleared when that order fails or is refunded."""
    __tablename__ = "user_coupons"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    consumed_by_order_id = Column(Uuid(as_uuid=True), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("discount_amount >= 0", name="coupon_discount_nonneg"),
    )

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    account = Column(String, nullable=False)  # 'CASH' or 'REVENUE'
    debit_cents = Column(Integer, nullable=False, default=0)
    credit_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    order = relationship("Order", back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint("debit_cents >= 0 AND credit_cents >= 0", name="ledger_nonneg"),
        CheckConstraint("(debit_cents = 0) <> (credit_cents = 0)", name="ledger_exactly_one_side"),
        CheckConstraint("account IN ('CASH','REVENUE')", name="ledger_account_valid"),
    )

class BuyerSession(Base):
    __tablename__ = "buyer_sessions"

    token = Column(String(128), primary_key=True)
    buyer_id = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
