# tests/test_ledger.py
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from cafepay.errors import DuplicateOrder, OrderNotFound, ReconciliationFailure, SettlementError
from cafepay.models import OrderStatus, now_utc
from cafepay.services.ledger import DEGRADED_NOTE, OrderLedger
from conftest import FakeSettlement, paid


def test_register_and_get(ledger, factory, merchant):
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)
    assert ledger.get(order.id) is order
    assert len(ledger) == 1


def test_register_duplicate_id_raises(ledger, factory, merchant):
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)
    with pytest.raises(DuplicateOrder):
        ledger.register(order)


def test_unknown_order_raises_not_found(ledger):
    with pytest.raises(OrderNotFound):
        ledger.get_status("CAFE-20250101000000-000")


def test_degraded_mode_returns_pending_with_note(ledger, factory, merchant):
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)
    result = ledger.get_status(order.id)
    assert result.status == OrderStatus.PENDING
    assert result.note == DEGRADED_NOTE
    assert result.amount == Decimal("5") and result.currency == "USD"


def test_no_settlement_yet_stays_pending(factory, merchant):
    fake = FakeSettlement(record=None)
    ledger = OrderLedger(settlement=fake)
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)

    first = ledger.get_status(order.id)
    second = ledger.get_status(order.id)
    assert first.status == second.status == OrderStatus.PENDING
    assert first.note is None
    assert fake.calls == [order.fingerprint, order.fingerprint]


def test_amount_within_tolerance_marks_paid(factory, merchant):
    ledger = OrderLedger(settlement=FakeSettlement(record=paid("5.0001")))
    order = factory.create_order("5.00", "USD", merchant).order
    ledger.register(order)

    assert ledger.get_status(order.id).status == OrderStatus.PAID
    assert order.paid_at is not None


def test_float_amount_from_transport_is_compared_exactly(factory, merchant):
    ledger = OrderLedger(settlement=FakeSettlement(record=paid(5.0001)))
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)
    assert ledger.get_status(order.id).status == OrderStatus.PAID


def test_amount_outside_tolerance_stays_pending(factory, merchant):
    ledger = OrderLedger(settlement=FakeSettlement(record=paid("5.01")))
    order = factory.create_order("5.00", "USD", merchant).order
    ledger.register(order)

    assert ledger.get_status(order.id).status == OrderStatus.PENDING
    assert order.paid_at is None


def test_currency_mismatch_stays_pending(factory, merchant):
    ledger = OrderLedger(settlement=FakeSettlement(record=paid("5.00", currency="KHR")))
    order = factory.create_order("5.00", "USD", merchant).order
    ledger.register(order)
    assert ledger.get_status(order.id).status == OrderStatus.PENDING


def test_currency_comparison_normalizes_case(factory, merchant):
    ledger = OrderLedger(settlement=FakeSettlement(record=paid("5.00", currency=" usd ")))
    order = factory.create_order("5.00", "USD", merchant).order
    ledger.register(order)
    assert ledger.get_status(order.id).status == OrderStatus.PAID


def test_paid_order_is_not_rechecked(factory, merchant):
    fake = FakeSettlement(record=paid("5.00"))
    ledger = OrderLedger(settlement=fake)
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)

    assert ledger.get_status(order.id).status == OrderStatus.PAID
    fake.record = None  # would revert to PENDING if consulted again
    assert ledger.get_status(order.id).status == OrderStatus.PAID
    assert ledger.get_status(order.id).status == OrderStatus.PAID
    assert len(fake.calls) == 1


def test_settlement_failure_becomes_reconciliation_failure(factory, merchant):
    upstream = SettlementError("settlement API returned HTTP 401", status_code=401, body='{"secret": 1}')
    ledger = OrderLedger(settlement=FakeSettlement(error=upstream))
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)

    with pytest.raises(ReconciliationFailure) as e:
        ledger.get_status(order.id)
    assert e.value.__cause__ is upstream
    assert "secret" not in str(e.value.to_body())
    assert order.status == OrderStatus.PENDING


def test_concurrent_checks_transition_once(factory, merchant):
    barrier = threading.Barrier(2, timeout=5)

    class SlowSettlement(FakeSettlement):
        def check_transaction_by_md5(self, md5):
            # both callers observe PENDING and a match before either flips
            barrier.wait()
            return super().check_transaction_by_md5(md5)

    paid_events = []
    ledger = OrderLedger(settlement=SlowSettlement(record=paid("5.00")), on_paid=paid_events.append)
    order = factory.create_order(5, "USD", merchant).order
    ledger.register(order)

    results = []
    threads = [threading.Thread(target=lambda: results.append(ledger.get_status(order.id))) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [r.status for r in results] == [OrderStatus.PAID, OrderStatus.PAID]
    assert paid_events == [order]


def test_register_evicts_orders_past_retention(factory, merchant):
    ledger = OrderLedger(retention_secs=60)
    stale = factory.create_order(1, "USD", merchant).order
    stale.id = "CAFE-20250101000000-000"
    stale.expires_at = now_utc() - timedelta(seconds=61)
    ledger.register(stale)

    fresh = factory.create_order(2, "USD", merchant).order
    ledger.register(fresh)

    assert stale.id not in ledger
    assert fresh.id in ledger


def test_retention_disabled_keeps_everything(factory, merchant):
    ledger = OrderLedger(retention_secs=0)
    old = factory.create_order(1, "USD", merchant).order
    old.expires_at = now_utc() - timedelta(days=30)
    ledger.register(old)
    assert ledger.purge_expired() == 0
    assert old.id in ledger
