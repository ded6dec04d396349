# tests/test_ledger.py
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from orderflow.db import SessionLocal
from orderflow.errors import LedgerRejection
from orderflow.models import CouponHold, LedgerEntry, Order, OrderStatus
from orderflow.state_machine import Creation


def creation(merchant_ref="mr-1", coupon_ref=None, buyer_id="alice", item_id="item-1", amount=9000):
    return Creation(
        buyer_id=buyer_id,
        item_id=item_id,
        amount=amount,
        merchant_ref=merchant_ref,
        tx_id=f"tx-{merchant_ref}",
        pay_method="card",
        provider="html5_inicis",
        coupon_ref=coupon_ref,
    )


def coupon_holder(coupon_id):
    with SessionLocal() as db:
        return db.get(CouponHold, coupon_id).consumed_by_order_id


def journal_rows(order_id):
    with SessionLocal() as db:
        return db.execute(select(LedgerEntry).where(LedgerEntry.order_id == order_id)).scalars().all()


def test_create_claims_coupon_and_reports_discount(ledger, seeded):
    created = ledger.create_order_atomic(creation(coupon_ref="C1"))
    assert created.discount_applied == 1000
    assert coupon_holder("C1") == created.order_id

    order = ledger.get_order(created.order_id)
    assert order.status == OrderStatus.PENDING
    assert order.expected_amount == 9000
    assert order.discount_applied == 1000


def test_create_with_held_coupon_writes_nothing(ledger, seeded):
    first = ledger.create_order_atomic(creation("mr-1", coupon_ref="C1"))

    with pytest.raises(LedgerRejection) as exc:
        ledger.create_order_atomic(creation("mr-2", coupon_ref="C1"))
    assert exc.value.reason == LedgerRejection.COUPON_UNAVAILABLE

    # the losing order row was rolled back together with the failed claim
    assert ledger.find_order_by_merchant_ref("mr-2") is None
    assert coupon_holder("C1") == first.order_id


def test_create_rejects_someone_elses_coupon(ledger, seeded):
    with pytest.raises(LedgerRejection) as exc:
        ledger.create_order_atomic(creation(coupon_ref="C2"))
    assert exc.value.reason == LedgerRejection.COUPON_UNAVAILABLE
    assert coupon_holder("C2") is None


@pytest.mark.parametrize("item_id", ["item-retired", "no-such-item"])
def test_create_rejects_invalid_item(ledger, seeded, item_id):
    with pytest.raises(LedgerRejection) as exc:
        ledger.create_order_atomic(creation(item_id=item_id))
    assert exc.value.reason == LedgerRejection.ITEM_INVALID


def test_create_rejects_reused_merchant_ref(ledger, seeded):
    ledger.create_order_atomic(creation("mr-1"))
    with pytest.raises(LedgerRejection) as exc:
        ledger.create_order_atomic(creation("mr-1"))
    assert exc.value.reason == LedgerRejection.DUPLICATE_ORDER


def test_concurrent_creations_race_for_one_coupon(ledger, seeded):
    racers = 8
    barrier = threading.Barrier(racers)
    outcomes = []
    lock = threading.Lock()

    def attempt(i):
        barrier.wait()
        try:
            ledger.create_order_atomic(creation(f"race-{i}", coupon_ref="C1"))
            result = "ok"
        except LedgerRejection as e:
            result = e.reason
        with lock:
            outcomes.append(result)

    with ThreadPoolExecutor(max_workers=racers) as pool:
        list(pool.map(attempt, range(racers)))

    assert outcomes.count("ok") == 1
    assert outcomes.count(LedgerRejection.COUPON_UNAVAILABLE) == racers - 1
    with SessionLocal() as db:
        assert len(db.execute(select(Order)).scalars().all()) == 1


def test_complete_then_complete_again_is_a_conflict(ledger, seeded):
    created = ledger.create_order_atomic(creation())
    ledger.complete_order_atomic(created.order_id, "alice", "imp_verified", "card", "kcp")

    order = ledger.get_order(created.order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.tx_id == "imp_verified"
    assert order.provider == "kcp"
    assert order.webhook_verified_at is not None

    with pytest.raises(LedgerRejection) as exc:
        ledger.complete_order_atomic(created.order_id, "alice", "imp_verified", "card", "kcp")
    assert exc.value.reason == LedgerRejection.STATE_CONFLICT
    assert exc.value.current_status == "completed"

    # DR CASH / CR REVENUE written exactly once
    rows = journal_rows(created.order_id)
    assert len(rows) == 2
    assert sum(r.debit_cents for r in rows) == sum(r.credit_cents for r in rows) == 9000


def test_complete_checks_owner(ledger, seeded):
    created = ledger.create_order_atomic(creation())
    with pytest.raises(LedgerRejection) as exc:
        ledger.complete_order_atomic(created.order_id, "bob", "imp", "card", "kcp")
    assert exc.value.reason == LedgerRejection.WRONG_OWNER
    assert ledger.get_order(created.order_id).status == OrderStatus.PENDING


def test_refund_restores_coupon_and_reverses_journal(ledger, seeded):
    created = ledger.create_order_atomic(creation(coupon_ref="C1"))
    ledger.complete_order_atomic(created.order_id, "alice", "imp", "card", "kcp")

    refunded = ledger.refund_order_atomic(created.order_id, "alice", 9000, "changed mind")
    assert refunded.coupon_restored is True
    assert coupon_holder("C1") is None

    order = ledger.get_order(created.order_id)
    assert order.status == OrderStatus.REFUNDED
    assert order.refund_amount == 9000
    assert order.expected_amount == 9000

    rows = journal_rows(created.order_id)
    assert len(rows) == 4
    assert ledger.journal_summary(created.order_id).total_debits == 18000


def test_refund_requires_completed_and_owner(ledger, seeded):
    created = ledger.create_order_atomic(creation(coupon_ref="C1"))

    with pytest.raises(LedgerRejection) as exc:
        ledger.refund_order_atomic(created.order_id, "alice", 9000, "too early")
    assert exc.value.reason == LedgerRejection.WRONG_STATE
    assert exc.value.current_status == "pending"
    assert coupon_holder("C1") == created.order_id

    with pytest.raises(LedgerRejection) as exc:
        ledger.refund_order_atomic(created.order_id, "bob", 9000, "not mine")
    assert exc.value.reason == LedgerRejection.NOT_FOUND


def test_fail_releases_coupon_without_journal(ledger, seeded):
    created = ledger.create_order_atomic(creation(coupon_ref="C1"))
    failed = ledger.fail_order_atomic(created.order_id, "amount mismatch")

    assert failed.coupon_restored is True
    assert coupon_holder("C1") is None
    assert ledger.get_order(created.order_id).status == OrderStatus.FAILED
    assert journal_rows(created.order_id) == []

    # terminal: cannot complete or fail again
    with pytest.raises(LedgerRejection):
        ledger.complete_order_atomic(created.order_id, "alice", "imp", "card", "kcp")
    with pytest.raises(LedgerRejection) as exc:
        ledger.fail_order_atomic(created.order_id, "again")
    assert exc.value.current_status == "failed"


def test_fail_can_keep_the_coupon_held(ledger, seeded):
    created = ledger.create_order_atomic(creation(coupon_ref="C1"))
    failed = ledger.fail_order_atomic(created.order_id, "amount mismatch", release_coupon=False)

    assert failed.coupon_restored is False
    assert coupon_holder("C1") == created.order_id
    assert ledger.get_order(created.order_id).status == OrderStatus.FAILED


def test_released_coupon_can_be_used_again(ledger, seeded):
    first = ledger.create_order_atomic(creation("mr-1", coupon_ref="C1"))
    ledger.fail_order_atomic(first.order_id, "amount mismatch")

    second = ledger.create_order_atomic(creation("mr-2", coupon_ref="C1"))
    assert coupon_holder("C1") == second.order_id
