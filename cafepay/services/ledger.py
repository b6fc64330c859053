# cafepay/services/ledger.py
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from cafepay.errors import DuplicateOrder, OrderNotFound, ReconciliationFailure, SettlementError
from cafepay.metrics import payments_confirmed, status_checks
from cafepay.models import Order, OrderStatus, SettlementRecord, StatusResult, now_utc
from cafepay.services.settlement import SettlementPort

logger = logging.getLogger("cafepay.ledger")

AMOUNT_TOLERANCE = Decimal("0.0001")
DEGRADED_NOTE = "BAKONG_TOKEN not set; live payment check disabled"


def settlement_matches(order: Order, record: SettlementRecord) -> bool:
    """Currency must be equal; amount within ``AMOUNT_TOLERANCE``."""
    if record.currency.strip().upper() != order.currency:
        return False
    return abs(Decimal(str(record.amount)) - order.amount) <= AMOUNT_TOLERANCE


class OrderLedger:
    """In-memory order store and PENDING -> PAID reconciliation.

    One instance per process. The map is guarded by a lock; settlement
    lookups run outside it, and the status flip is a check-then-set under
    the lock so concurrent checks that both see a match transition the
    order once. ``on_paid`` fires only for the caller that won.

    Retention: with ``retention_secs > 0``, ``register`` evicts orders
    whose QR expired more than ``retention_secs`` ago. Nothing runs in the
    background.
    """

    def __init__(
        self,
        settlement: Optional[SettlementPort] = None,
        retention_secs: int = 0,
        clock: Callable[[], datetime] = now_utc,
        on_paid: Optional[Callable[[Order], None]] = None,
    ):
        self.settlement = settlement
        self.retention_secs = retention_secs
        self.clock = clock
        self.on_paid = on_paid
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)

    def __contains__(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._orders

    def register(self, order: Order) -> None:
        with self._lock:
            self._purge_locked(self.clock())
            if order.id in self._orders:
                raise DuplicateOrder()
            self._orders[order.id] = order

    def get(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound()
        return order

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        with self._lock:
            return self._purge_locked(now or self.clock())

    def _purge_locked(self, now: datetime) -> int:
        if self.retention_secs <= 0:
            return 0
        cutoff = now - timedelta(seconds=self.retention_secs)
        stale = [oid for oid, o in self._orders.items() if o.expires_at < cutoff]
        for oid in stale:
            del self._orders[oid]
        if stale:
            logger.info("evicted expired orders", extra={"count": len(stale)})
        return len(stale)

    def _mark_paid(self, order_id: str) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status == OrderStatus.PAID:
                return False
            order.status = OrderStatus.PAID
            order.paid_at = self.clock()
            return True

    def get_status(self, order_id: str) -> StatusResult:
        """Return the order's status, reconciling with the settlement API if needed.

        Raises:
            OrderNotFound: unknown order id.
            ReconciliationFailure: the settlement API could not be consulted.
        """
        order = self.get(order_id)

        if order.status == OrderStatus.PAID:
            status_checks.labels("paid_cached").inc()
            return StatusResult(OrderStatus.PAID, order.amount, order.currency)

        if self.settlement is None:
            status_checks.labels("degraded").inc()
            return StatusResult(OrderStatus.PENDING, order.amount, order.currency, note=DEGRADED_NOTE)

        try:
            record = self.settlement.check_transaction_by_md5(order.fingerprint)
        except SettlementError as e:
            status_checks.labels("error").inc()
            logger.error(
                "settlement check failed",
                extra={"order_id": order.id, "md5": order.fingerprint, "error": str(e),
                       "upstream_status": e.status_code, "upstream_body": e.body},
            )
            raise ReconciliationFailure() from e

        if record is None:
            status_checks.labels("pending").inc()
        elif not settlement_matches(order, record):
            status_checks.labels("mismatch").inc()
            logger.warning(
                "settlement does not match order",
                extra={"order_id": order.id, "expected_amount": str(order.amount),
                       "expected_currency": order.currency, "paid_amount": str(record.amount),
                       "paid_currency": record.currency, "hash": record.hash},
            )
        elif self._mark_paid(order.id):
            status_checks.labels("paid").inc()
            payments_confirmed.labels(order.currency).inc()
            logger.info(
                "order paid",
                extra={"order_id": order.id, "amount": str(order.amount),
                       "currency": order.currency, "hash": record.hash},
            )
            if self.on_paid is not None:
                self.on_paid(order)
        else:
            status_checks.labels("paid_cached").inc()

        return StatusResult(order.status, order.amount, order.currency)
