from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool

from .engine import OrderSyncEngine
from .models import Canteen, Order
from .record_store import RecordStore
from .statuses import PaymentStatus

logger = logging.getLogger(__name__)

FRESHNESS_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_pending_payment(body: dict) -> bool:
    if body.get("dummy") or not body.get("paymentReference"):
        return False
    try:
        return PaymentStatus.coerce(body.get("paymentStatus")) is PaymentStatus.PENDING
    except ValueError:
        return False


class ReconciliationSweep:
    """Periodically reconciles fresh orders whose payment is still pending.

    The pending set is fed by record-store subscriptions on the canteen
    collections. The background task ends by itself once no fresh pending
    order is left; ``ensure_running`` starts it again.
    """

    def __init__(
        self,
        engine: OrderSyncEngine,
        store: RecordStore,
        *,
        interval: float = 30.0,
        freshness: timedelta = FRESHNESS_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._engine = engine
        self._store = store
        self._interval = interval
        self._freshness = freshness
        self._clock = clock
        self._pending: Dict[Canteen, List[Order]] = {}
        self._lock = threading.Lock()
        self._unsubscribers: List[Callable[[], None]] = []
        self._task: Optional[asyncio.Task] = None

    def attach(self) -> None:
        if self._unsubscribers:
            return
        for canteen in Canteen:
            self._unsubscribers.append(
                self._store.subscribe(
                    canteen.collection_name,
                    _is_pending_payment,
                    lambda documents, canteen=canteen: self._on_change(canteen, documents),
                )
            )

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        with self._lock:
            self._pending.clear()

    def _on_change(self, canteen: Canteen, documents: list) -> None:
        orders = []
        for store_id, body in documents:
            try:
                orders.append(Order.from_document(store_id, body))
            except ValueError as exc:
                logger.warning("Skipping unreadable order %s in %s: %s", store_id, canteen.collection_name, exc)
        with self._lock:
            self._pending[canteen] = orders

    def pending_orders(self) -> List[Order]:
        cutoff = self._clock() - self._freshness
        with self._lock:
            orders = [order for batch in self._pending.values() for order in batch]
        return [order for order in orders if _created_after(order, cutoff)]

    def run_cycle(self) -> int:
        """Reconcile every fresh pending order once; return how many remain pending."""
        for order in self.pending_orders():
            try:
                self._engine.reconcile(order.payment_reference, explicit=False)
            except Exception:
                logger.exception("Sweep could not reconcile %s", order.payment_reference)
        return len(self.pending_orders())

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribers)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_running(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def stop(self) -> None:
        # A reconciliation already handed to the threadpool still finishes its writes.
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        logger.info("Reconciliation sweep started")
        while True:
            remaining = await run_in_threadpool(self.run_cycle)
            if remaining == 0:
                logger.info("Reconciliation sweep stopped, no pending payments left")
                return
            logger.debug("Reconciliation sweep: %d payments still pending", remaining)
            await asyncio.sleep(self._interval)


def _created_after(order: Order, cutoff: datetime) -> bool:
    if not order.created_at:
        return False
    try:
        created = datetime.fromisoformat(order.created_at)
    except ValueError:
        return False
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created >= cutoff
