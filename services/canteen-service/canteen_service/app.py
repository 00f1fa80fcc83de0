from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from . import schemas
from .database import init_db
from .engine import ALL_CANTEENS, BulkDeleteFailure, InvalidTransitionError, OrderSyncEngine
from .gateway_client import (
    GatewayQueryError,
    MidtransGatewayClient,
    MockGatewayClient,
    PaymentGateway,
    PaymentInitiationError,
)
from .menu import MenuItemNotFoundError, MenuItemValidationError, MenuRepository
from .models import Canteen, OrderValidationError, Requester
from .record_store import (
    CollectionUnavailableError,
    DocumentNotFoundError,
    RecordStore,
    SQLRecordStore,
)
from .repository import OrderNotFoundError
from .statuses import OrderStatus
from .sweep import ReconciliationSweep


def build_store() -> RecordStore:
    init_db()
    return SQLRecordStore()


def build_gateway() -> PaymentGateway:
    mode = os.environ.get("PAYMENT_MODE", "mock").lower()
    if mode == "midtrans":
        server_key = os.environ.get("MIDTRANS_SERVER_KEY")
        if not server_key:
            raise RuntimeError("MIDTRANS_SERVER_KEY muss gesetzt sein, wenn PAYMENT_MODE=midtrans")
        production = os.environ.get("MIDTRANS_PRODUCTION", "false").lower() in {"1", "true", "yes"}
        return MidtransGatewayClient(server_key, production=production)
    return MockGatewayClient()


def create_app(
    store: RecordStore | None = None,
    gateway: PaymentGateway | None = None,
    engine: OrderSyncEngine | None = None,
) -> FastAPI:
    store = store or build_store()
    gateway = gateway or build_gateway()
    engine = engine or OrderSyncEngine(store, gateway)
    menu = MenuRepository(store)
    sweep = ReconciliationSweep(
        engine,
        store,
        interval=float(os.environ.get("SWEEP_INTERVAL_SECONDS", "30")),
    )

    app = FastAPI(
        title="Canteen Order Service",
        version="0.1.0",
        description="Bestellungen und Zahlungsabgleich für die Kantinen A-D.",
    )
    app.state.engine = engine
    app.state.sweep = sweep

    allowed_origins = [
        origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def start_sweep() -> None:
        sweep.attach()
        sweep.ensure_running()

    @app.on_event("shutdown")
    async def stop_sweep() -> None:
        await sweep.stop()
        sweep.detach()

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    @app.get("/menu", response_model=List[schemas.MenuItem], tags=["menu"])
    async def list_menu(canteen: Optional[Canteen] = None) -> List[schemas.MenuItem]:
        return [schemas.MenuItem(**item.__dict__) for item in menu.list_items(canteen)]

    @app.post(
        "/menu",
        response_model=schemas.MenuItem,
        status_code=status.HTTP_201_CREATED,
        tags=["menu"],
    )
    async def add_menu_item(payload: schemas.CreateMenuItemRequest) -> schemas.MenuItem:
        try:
            item = menu.add_item(
                payload.name,
                payload.price,
                payload.canteen,
                description=payload.description,
                available=payload.available,
            )
        except MenuItemValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return schemas.MenuItem(**item.__dict__)

    @app.put("/menu/{item_id}", response_model=schemas.MenuItem, tags=["menu"])
    async def update_menu_item(
        item_id: str, payload: schemas.UpdateMenuItemRequest
    ) -> schemas.MenuItem:
        try:
            item = menu.update_item(item_id, **payload.model_dump(exclude_unset=True))
        except MenuItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except MenuItemValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return schemas.MenuItem(**item.__dict__)

    @app.delete("/menu/{item_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["menu"])
    async def delete_menu_item(item_id: str) -> Response:
        try:
            menu.delete_item(item_id)
        except MenuItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/orders",
        response_model=schemas.SubmissionResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["orders"],
    )
    async def submit_order(payload: schemas.CreateOrderRequest) -> schemas.SubmissionResponse:
        try:
            item = menu.get_item(payload.food_id)
        except MenuItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        if not item.available:
            raise HTTPException(status_code=400, detail=f"{item.name} ist derzeit nicht verfügbar.")

        try:
            result = await run_in_threadpool(
                engine.submit_order,
                Requester(id=payload.user.id, name=payload.user.name, email=payload.user.email),
                item.as_order_item(),
                payload.quantity,
                payload.notes,
            )
        except OrderValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except PaymentInitiationError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))

        if sweep.attached:
            sweep.ensure_running()
        return schemas.SubmissionResponse(
            order=schemas.OrderSummary.from_order(result.order),
            payment_reference=result.payment_reference,
            checkout_url=result.checkout_url,
        )

    @app.get("/orders", response_model=List[schemas.OrderSummary], tags=["admin"])
    async def list_orders(canteen: Optional[Canteen] = None) -> List[schemas.OrderSummary]:
        try:
            if canteen is None:
                orders = engine.repository.list_global_orders()
            else:
                orders = engine.repository.list_canteen_orders(canteen)
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return [schemas.OrderSummary.from_order(order) for order in orders]

    @app.get("/orders/stats", response_model=schemas.OrderStats, tags=["admin"])
    async def order_stats() -> schemas.OrderStats:
        try:
            orders = engine.repository.list_global_orders()
            menu_count = len(menu.list_items())
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        today = datetime.now(timezone.utc).date().isoformat()
        return schemas.OrderStats(
            menu_count=menu_count,
            today_orders=sum(1 for order in orders if (order.created_at or "").startswith(today)),
            total_orders=len(orders),
            pending_orders=sum(1 for order in orders if order.status is OrderStatus.PENDING),
            completed_orders=sum(1 for order in orders if order.status is OrderStatus.COMPLETED),
        )

    @app.get("/orders/{payment_reference}", response_model=schemas.OrderSummary, tags=["orders"])
    async def get_order(payment_reference: str) -> schemas.OrderSummary:
        try:
            order = engine.repository.find_copies(payment_reference).primary
        except OrderNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return schemas.OrderSummary.from_order(order)

    @app.post(
        "/orders/{payment_reference}/status",
        response_model=schemas.OrderSummary,
        tags=["admin"],
    )
    async def update_order_status(
        payment_reference: str, payload: schemas.OrderStatusRequest
    ) -> schemas.OrderSummary:
        try:
            order = await run_in_threadpool(
                engine.update_order_status, payment_reference, payload.status
            )
        except (OrderNotFoundError, DocumentNotFoundError) as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return schemas.OrderSummary.from_order(order)

    @app.delete("/orders", response_model=schemas.BulkDeleteResponse, tags=["admin"])
    async def bulk_delete(scope: str) -> schemas.BulkDeleteResponse:
        try:
            deleted = await run_in_threadpool(engine.bulk_delete, scope)
        except OrderValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except BulkDeleteFailure as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        label = ALL_CANTEENS if scope.lower() == ALL_CANTEENS else scope
        return schemas.BulkDeleteResponse(scope=label, deleted=deleted)

    @app.get("/users/{user_id}/orders", response_model=List[schemas.OrderSummary], tags=["orders"])
    async def user_orders(user_id: str) -> List[schemas.OrderSummary]:
        try:
            orders = engine.repository.list_user_orders(user_id)
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return [schemas.OrderSummary.from_order(order) for order in orders]

    @app.post(
        "/payments/{payment_reference}/check",
        response_model=schemas.ReconciliationResponse,
        tags=["payments"],
    )
    async def check_payment(payment_reference: str) -> schemas.ReconciliationResponse:
        try:
            outcome = await run_in_threadpool(engine.reconcile, payment_reference)
        except (OrderNotFoundError, DocumentNotFoundError) as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return schemas.ReconciliationResponse(
            payment_reference=outcome.payment_reference,
            payment_status=outcome.payment_status,
            order_status=outcome.order_status,
            attempts=outcome.attempts,
            raw_status=outcome.raw_status,
            inconclusive=outcome.inconclusive,
            manual_override_available=outcome.manual_override_available,
        )

    @app.get(
        "/payments/{payment_reference}/status",
        response_model=schemas.GatewayStatusResponse,
        tags=["payments"],
    )
    async def gateway_status(payment_reference: str) -> schemas.GatewayStatusResponse:
        try:
            result = await run_in_threadpool(engine.check_raw_status, payment_reference)
        except GatewayQueryError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        return schemas.GatewayStatusResponse(
            payment_reference=payment_reference,
            raw_status=result.raw_status,
            payment_method=result.payment_method,
            settled_at=result.settled_at,
        )

    @app.post(
        "/payments/{payment_reference}/override",
        response_model=schemas.OrderSummary,
        tags=["payments"],
    )
    async def override_payment(
        payment_reference: str, payload: schemas.PaymentOverrideRequest
    ) -> schemas.OrderSummary:
        try:
            order = await run_in_threadpool(
                engine.override_payment_status,
                payment_reference,
                payload.status,
                payload.operator,
            )
        except (OrderNotFoundError, DocumentNotFoundError) as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except CollectionUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return schemas.OrderSummary.from_order(order)

    return app
