from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .dual_write import DualWriter, SecondaryWriteFailure
from .gateway_client import (
    GatewayQueryError,
    PayerInfo,
    PaymentGateway,
    PaymentInitiationError,
    TransactionStatus,
)
from .models import (
    GLOBAL_ORDERS_COLLECTION,
    MAX_NOTES_LENGTH,
    Canteen,
    LineItem,
    Order,
    OrderValidationError,
    Requester,
    parse_quantity,
)
from .record_store import (
    BatchDeleteError,
    CollectionUnavailableError,
    RecordStore,
)
from .repository import OrderCopies, OrderRepository, is_order_document
from .statuses import (
    OrderStatus,
    PaymentSource,
    PaymentStatus,
    RawTransactionStatus,
    can_transition,
    normalize_payment_status,
    parse_raw_status,
)

logger = logging.getLogger(__name__)

ALL_CANTEENS = "all"
DEFAULT_BACKOFF: Tuple[float, ...] = (1.0, 2.0, 3.0)

Scope = Union[Canteen, str]


class InvalidTransitionError(Exception):
    """Raised when an admin requests an order status change that is not allowed."""


class BulkDeleteFailure(Exception):
    """Raised when a bulk deletion removed nothing."""


class ReconciliationInconclusive(Exception):
    """Raised when no usable gateway status was obtained within the retry schedule."""

    def __init__(self, payment_reference: str, attempts: int):
        super().__init__(f"Kein verwertbarer Zahlungsstatus für {payment_reference} nach {attempts} Versuchen.")
        self.payment_reference = payment_reference
        self.attempts = attempts


@dataclass(frozen=True)
class SubmissionResult:
    order: Order
    checkout_url: str
    payment_reference: str
    secondary_failure: Optional[SecondaryWriteFailure] = None


@dataclass(frozen=True)
class ReconciliationOutcome:
    payment_reference: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    attempts: int
    raw_status: Optional[str] = None
    inconclusive: bool = False
    manual_override_available: bool = False
    secondary_failure: Optional[SecondaryWriteFailure] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_reference(canteen: Canteen) -> str:
    return f"kantin-{canteen.value.lower()}-{uuid.uuid4()}"


class OrderSyncEngine:
    """Keeps orders, their canteen and global copies, and gateway payments in step.

    Writes go to the canteen collection first (required) and then to the
    global collection (best effort). Gateway status queries are the only
    operation that is retried.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        *,
        repository: OrderRepository | None = None,
        writer: DualWriter | None = None,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        reference_factory: Callable[[Canteen], str] = _default_reference,
    ):
        self._store = store
        self._gateway = gateway
        self._repo = repository or OrderRepository(store)
        self._writer = writer or DualWriter()
        self._backoff = tuple(backoff)
        self._sleep = sleep
        self._clock = clock
        self._reference_factory = reference_factory

    @property
    def repository(self) -> OrderRepository:
        return self._repo

    def submit_order(
        self,
        requester: Requester,
        item: dict,
        quantity: object,
        notes: str | None = None,
    ) -> SubmissionResult:
        canteen = Canteen.parse(item.get("canteen") or item.get("kantin"))
        qty = parse_quantity(quantity)
        notes = (notes or "").strip()
        if len(notes) > MAX_NOTES_LENGTH:
            raise OrderValidationError(f"Notiz darf höchstens {MAX_NOTES_LENGTH} Zeichen lang sein.")
        price = item.get("price")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
            raise OrderValidationError("Preis des Menüeintrags ist ungültig.")

        line = LineItem(id=str(item.get("id", "")), name=item.get("name", ""), price=price, quantity=qty)
        total = line.line_total
        reference = self._reference_factory(canteen)

        logger.info(
            "Submitting order reference=%s canteen=%s item=%s qty=%d total=%s",
            reference,
            canteen.value,
            line.id,
            qty,
            total,
        )
        try:
            session = self._gateway.initiate(
                reference,
                total,
                [line.to_document(canteen)],
                PayerInfo(name=requester.name, email=requester.email),
            )
        except PaymentInitiationError:
            logger.warning("Payment initiation failed for reference=%s", reference)
            raise

        order = Order(
            canteen=canteen,
            user_id=requester.id,
            user_name=requester.name,
            user_email=requester.email,
            items=[line],
            total_amount=total,
            payment_reference=reference,
            notes=notes,
            payment_token=session.token,
            checkout_url=session.checkout_url,
        )
        try:
            store_id = self._repo.create_canteen_copy(order)
        except CollectionUnavailableError as exc:
            # No compensation: the gateway transaction stays open until it expires.
            logger.error(
                "Required write to %s failed, payment reference=%s left orphaned",
                exc.collection,
                reference,
            )
            raise

        failure = self._writer.best_effort(
            lambda: self._repo.create_global_copy(order, store_id),
            description=f"submission {reference}",
        )
        logger.info("Order stored id=%s reference=%s", store_id, reference)
        return SubmissionResult(
            order=Order.from_document(store_id, order.to_document()),
            checkout_url=session.checkout_url,
            payment_reference=reference,
            secondary_failure=failure,
        )

    def reconcile(self, payment_reference: str, *, explicit: bool = True) -> ReconciliationOutcome:
        """Query the gateway and converge both stored copies to its answer.

        ``explicit`` marks a caller-initiated check; an inconclusive result then
        offers the manual override instead of raising.
        """
        copies = self._repo.find_copies(payment_reference)
        current = copies.primary

        try:
            raw, status, attempts = self._query_gateway(payment_reference)
        except ReconciliationInconclusive as exc:
            log = logger.warning if explicit else logger.info
            log("Reconciliation inconclusive for %s after %d attempts", payment_reference, exc.attempts)
            return ReconciliationOutcome(
                payment_reference=payment_reference,
                payment_status=current.payment_status,
                order_status=current.status,
                attempts=exc.attempts,
                inconclusive=True,
                manual_override_available=explicit,
            )

        normalized = normalize_payment_status(raw)
        if current.payment_status is PaymentStatus.PAID and normalized is not PaymentStatus.PAID:
            logger.warning(
                "Gateway reports %s for already paid order %s; keeping paid",
                raw.value,
                payment_reference,
            )
            return ReconciliationOutcome(
                payment_reference=payment_reference,
                payment_status=current.payment_status,
                order_status=current.status,
                attempts=attempts,
                raw_status=raw.value,
            )

        changes = {
            "paymentStatus": normalized.value,
            "paymentSource": PaymentSource.AUTO.value,
            "reconciledAt": self._clock().isoformat(),
        }
        if status.payment_method:
            changes["paymentMethod"] = status.payment_method
        if status.settled_at:
            changes["settledAt"] = status.settled_at
        order_status = current.status
        if normalized is PaymentStatus.PAID and current.status is OrderStatus.PENDING:
            order_status = OrderStatus.PROCESSING
            changes["status"] = order_status.value

        failure = self._write_both(copies, changes, f"reconciliation {payment_reference}")
        logger.info(
            "Reconciled %s raw=%s payment=%s order=%s",
            payment_reference,
            raw.value,
            normalized.value,
            order_status.value,
        )
        return ReconciliationOutcome(
            payment_reference=payment_reference,
            payment_status=normalized,
            order_status=order_status,
            attempts=attempts,
            raw_status=raw.value,
            secondary_failure=failure,
        )

    def _query_gateway(self, payment_reference: str) -> Tuple[RawTransactionStatus, TransactionStatus, int]:
        attempts = 0
        for delay in self._backoff:
            self._sleep(delay)
            attempts += 1
            try:
                status = self._gateway.query_status(payment_reference)
            except GatewayQueryError as exc:
                logger.warning(
                    "Gateway query %d for %s failed: %s", attempts, payment_reference, exc
                )
                continue
            raw = parse_raw_status(status.raw_status)
            if raw is not None:
                return raw, status, attempts
            logger.debug("Gateway query %d for %s returned no usable status", attempts, payment_reference)
        raise ReconciliationInconclusive(payment_reference, attempts)

    def check_raw_status(self, payment_reference: str) -> TransactionStatus:
        """Single gateway status lookup without touching stored orders."""
        return self._gateway.query_status(payment_reference)

    def override_payment_status(
        self, payment_reference: str, status: object, operator: str | None = None
    ) -> Order:
        if status is None or status == "":
            raise OrderValidationError("Zahlungsstatus fehlt.")
        try:
            target = PaymentStatus.coerce(status)
        except ValueError:
            raise OrderValidationError(f"Unbekannter Zahlungsstatus: {status!r}") from None

        copies = self._repo.find_copies(payment_reference)
        current = copies.primary
        changes = {
            "paymentStatus": target.value,
            "paymentSource": PaymentSource.MANUAL.value,
            "reconciledAt": self._clock().isoformat(),
        }
        if operator:
            changes["overriddenBy"] = operator
        self._write_both(copies, changes, f"override {payment_reference}")
        logger.warning(
            "Manual payment override %s: %s -> %s by %s",
            payment_reference,
            current.payment_status.value,
            target.value,
            operator or "unknown",
        )
        return _merged(current, changes)

    def update_order_status(self, payment_reference: str, target: object) -> Order:
        try:
            new_status = OrderStatus(target)
        except ValueError:
            raise OrderValidationError(f"Unbekannter Bestellstatus: {target!r}") from None

        copies = self._repo.find_copies(payment_reference)
        current = copies.primary
        if not can_transition(current.status, new_status):
            raise InvalidTransitionError(
                f"Statuswechsel {current.status.value} -> {new_status.value} ist nicht erlaubt."
            )
        if new_status is OrderStatus.PROCESSING and current.payment_status is not PaymentStatus.PAID:
            raise InvalidTransitionError("Bestellung ist noch nicht bezahlt.")

        changes = {"status": new_status.value}
        self._write_both(copies, changes, f"status {payment_reference}")
        logger.info("Order %s moved %s -> %s", payment_reference, current.status.value, new_status.value)
        return _merged(current, changes)

    def _write_both(
        self, copies: OrderCopies, changes: dict, description: str
    ) -> Optional[SecondaryWriteFailure]:
        canteen_copy, global_copy = copies.canteen_copy, copies.global_copy
        required = None
        if canteen_copy is not None:
            required = partial(
                self._repo.update_canteen_copy, canteen_copy.canteen, canteen_copy.store_id, changes
            )
        else:
            logger.warning("Canteen copy of %s missing; updating global copy only", copies.payment_reference)

        secondary = None
        if global_copy is not None:
            secondary = partial(self._repo.update_global_copy, global_copy.store_id, changes)
        else:
            logger.warning("Global copy of %s missing; updating canteen copy only", copies.payment_reference)

        _, failure = self._writer.write(required, secondary, description=description)
        return failure

    def bulk_delete(self, scope: Scope) -> int:
        """Delete every order of one canteen or of all canteens in one atomic batch."""
        canteens = _resolve_scope(scope)
        refs: List[Tuple[str, str]] = []
        resolved: List[Canteen] = []
        for canteen in canteens:
            try:
                documents = self._store.query(canteen.collection_name, is_order_document)
            except CollectionUnavailableError as exc:
                if len(canteens) == 1:
                    raise BulkDeleteFailure(f"{canteen.display_name} konnte nicht gelesen werden: {exc}") from exc
                logger.warning("Skipping %s during bulk delete: %s", canteen.collection_name, exc)
                continue
            resolved.append(canteen)
            refs.extend((canteen.collection_name, store_id) for store_id, _ in documents)

        wanted = {canteen.value for canteen in resolved}
        try:
            global_documents = self._store.query(
                GLOBAL_ORDERS_COLLECTION,
                lambda body: is_order_document(body) and body.get("kantin") in wanted,
            )
        except CollectionUnavailableError as exc:
            raise BulkDeleteFailure(f"Globale Bestellungen konnten nicht gelesen werden: {exc}") from exc
        refs.extend((GLOBAL_ORDERS_COLLECTION, store_id) for store_id, _ in global_documents)

        if not refs:
            return 0
        try:
            self._store.batch_delete(refs)
        except (BatchDeleteError, CollectionUnavailableError) as exc:
            logger.error("Bulk delete of %d documents failed, nothing removed", len(refs))
            raise BulkDeleteFailure(f"Löschen fehlgeschlagen, keine Bestellung entfernt: {exc}") from exc
        logger.info("Bulk delete scope=%s removed %d documents", _scope_label(scope), len(refs))
        return len(refs)


def _resolve_scope(scope: Scope) -> List[Canteen]:
    if isinstance(scope, str) and scope.lower() == ALL_CANTEENS:
        return list(Canteen)
    return [Canteen.parse(scope.upper() if isinstance(scope, str) else scope)]


def _scope_label(scope: Scope) -> str:
    return scope.value if isinstance(scope, Canteen) else str(scope)


def _merged(order: Order, changes: dict) -> Order:
    document = order.to_document()
    document.update(changes)
    document["createdAt"] = order.created_at
    return Order.from_document(order.store_id, document)

