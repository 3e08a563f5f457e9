"""
Order Service — FastAPI entry point

Commands (POST /commands/...) go through the workflow engine, queries
(GET /queries/...) read the order tables directly, /events/{order_id}
returns an order's history.

┌──────────┐  bearer   ┌──────────────┐  verify   ┌──────────────┐
│  client  │ ────────▶ │ Order Service│ ────────▶ │ User Service │
└──────────┘           └──────┬───────┘           └──────────────┘
                              │ commit                ▲ product names
                     ┌────────▼────────┐   ┌──────────┴─────┐
                     │  Order store    │   │ Product Service│
                     └────────┬────────┘   └────────────────┘
                              │ after commit
                     ┌────────▼────────┐
                     │ Redis Pub/Sub   │  order_events
                     └─────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from . import queries
from .auth import get_principal, require_admin
from .catalog import CatalogClient
from .commands import WorkflowEngine, utcnow
from .config import Settings
from .decisions import DecisionHandler
from .errors import WorkflowError
from .identity import IdentityClient, Principal
from .notifications import EventPublisher
from .request_queue import RequestQueue
from .scheduler import check_cron_expression, run_expiry_sweeper, sweep_expired_orders
from .schemas import (
    CreateOrderRequest,
    DecisionBody,
    RefundCompletionRequest,
    RestorationRequestBody,
    SubmitRequestBody,
    TransitionRequest,
)
from .store import OrderStore

logger = logging.getLogger(__name__)


def _order_ref(order) -> dict:
    return {"order_id": order.id, "status": order.status, "version": order.version}


# ── Command Endpoints (write side) ───────────────

router = APIRouter()


@router.post("/commands/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest, request: Request, principal: Principal = Depends(get_principal)
):
    order = await request.app.state.engine.create_order(
        principal,
        [item.model_dump() for item in req.items],
        req.payment_method,
        req.shipping_address.model_dump(exclude_none=True) if req.shipping_address else None,
    )
    return {**_order_ref(order), "total_amount": float(order.total_amount)}


@router.post("/commands/orders/{order_id}/transition")
async def cmd_transition(
    order_id: int,
    req: TransitionRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
):
    """Admin status update along the forward or refund path."""
    order = await request.app.state.engine.request_transition(
        order_id,
        principal,
        req.status,
        tracking_number=req.tracking_number,
        courier_name=req.courier_name,
        estimated_delivery=req.estimated_delivery,
    )
    return _order_ref(order)


@router.post("/commands/orders/{order_id}/refund")
async def cmd_complete_refund(
    order_id: int,
    req: RefundCompletionRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
):
    """Payment confirmation: refund_processing → refunded."""
    order = await request.app.state.engine.complete_refund(
        order_id, principal, req.transaction_id, req.amount
    )
    return {
        **_order_ref(order),
        "refund_amount": float(order["refund_amount"]),
        "refund_transaction_id": order["refund_transaction_id"],
    }


@router.post("/commands/orders/{order_id}/requests", status_code=201)
async def cmd_submit_request(
    order_id: int,
    req: SubmitRequestBody,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    """Cancel, return, replace, detail_access or restoration request."""
    return await request.app.state.requests.submit(
        order_id,
        principal,
        req.kind,
        req.reason,
        sub_reason=req.sub_reason,
        description=req.description,
        images=req.images,
    )


@router.post("/commands/requests/{request_id}/decision")
async def cmd_decide_request(
    request_id: int,
    req: DecisionBody,
    request: Request,
    principal: Principal = Depends(require_admin),
):
    return await request.app.state.decisions.decide(request_id, principal, req.decision, req.note)


@router.post("/commands/orders/{order_id}/soft-delete")
async def cmd_soft_delete(
    order_id: int, request: Request, principal: Principal = Depends(get_principal)
):
    order = await request.app.state.engine.soft_delete(order_id, principal)
    return {
        **_order_ref(order),
        "deleted_at": order["deleted_at"].isoformat(),
        "deletion_expires_at": order["deletion_expires_at"].isoformat(),
    }


@router.post("/commands/orders/{order_id}/restoration", status_code=201)
async def cmd_request_restoration(
    order_id: int,
    req: RestorationRequestBody,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    return await request.app.state.requests.submit_restoration(order_id, principal, req.reason)


@router.post("/commands/orders/{order_id}/restoration/decision")
async def cmd_decide_restoration(
    order_id: int,
    req: DecisionBody,
    request: Request,
    principal: Principal = Depends(require_admin),
):
    return await request.app.state.decisions.decide_restoration(
        order_id, principal, req.decision, req.note
    )


@router.post("/commands/maintenance/purge-expired")
async def cmd_purge_expired(request: Request, principal: Principal = Depends(require_admin)):
    """Run the expiry sweep now instead of waiting for the nightly run."""
    logger.info("Manual expiry sweep triggered by admin %s", principal.user_id)
    return await sweep_expired_orders(request.app.state.engine)


# ── Query Endpoints (read side) ──────────────────


@router.get("/queries/orders")
async def query_list_orders(
    request: Request,
    status: str | None = None,
    user_id: int | None = None,
    page: int = 1,
    limit: int = queries.DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(get_principal),
):
    engine = request.app.state.engine
    async with engine.store.session() as session:
        return await queries.list_orders(
            session, principal, engine.now(), status=status, user_id=user_id, page=page, limit=limit
        )


# declared before /queries/orders/{order_id} so "deleted" is not parsed as an id
@router.get("/queries/orders/deleted")
async def query_deleted_orders(request: Request, principal: Principal = Depends(get_principal)):
    engine = request.app.state.engine
    async with engine.store.session() as session:
        return await queries.list_deleted_orders(session, principal, engine.now())


@router.get("/queries/orders/{order_id}")
async def query_get_order(
    order_id: int, request: Request, principal: Principal = Depends(get_principal)
):
    engine = request.app.state.engine
    async with engine.store.session() as session:
        return await queries.get_order(session, order_id, principal, engine.now())


@router.get("/queries/orders/{order_id}/tracking")
async def query_tracking(
    order_id: int, request: Request, principal: Principal = Depends(get_principal)
):
    async with request.app.state.engine.store.session() as session:
        return await queries.get_tracking(session, order_id, principal)


@router.get("/queries/orders/{order_id}/requests/latest")
async def query_latest_request(
    order_id: int, kind: str, request: Request, principal: Principal = Depends(get_principal)
):
    async with request.app.state.engine.store.session() as session:
        latest = await queries.get_latest_request(session, order_id, principal, kind)
    return {"request": latest}


@router.get("/queries/requests")
async def query_list_requests(
    request: Request,
    kind: str | None = None,
    status: str | None = "pending",
    page: int = 1,
    limit: int = queries.DEFAULT_PAGE_SIZE,
    principal: Principal = Depends(require_admin),
):
    async with request.app.state.engine.store.session() as session:
        return await queries.list_requests(
            session, principal, kind=kind, status=status, page=page, limit=limit
        )


# ── Event Store ──────────────────────────────────


@router.get("/events/{order_id}")
async def get_order_events(
    order_id: int, request: Request, principal: Principal = Depends(get_principal)
):
    async with request.app.state.engine.store.session() as session:
        return await queries.get_history(session, order_id, principal)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


# ── Application ──────────────────────────────────


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    settings: Settings | None = None,
    *,
    store: OrderStore | None = None,
    identity=None,
    redis: aioredis.Redis | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Wire the service. Collaborators can be passed in; the rest is built from settings."""
    settings = settings or Settings.from_env()
    if settings.sweep_enabled:
        check_cron_expression(settings.sweep_cron)
    store = store or OrderStore(settings.database_url, echo=settings.sql_echo)
    if redis is None:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = EventPublisher(
        redis, channel=settings.order_events_channel, timeout=settings.notify_timeout_seconds
    )
    engine = WorkflowEngine(
        store,
        publisher=publisher,
        catalog=CatalogClient(settings.product_service_url),
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
        await store.init(create_schema=settings.create_schema)

        shutdown_event = asyncio.Event()
        sweeper_task = None
        if settings.sweep_enabled:
            sweeper_task = asyncio.create_task(
                run_expiry_sweeper(engine, shutdown_event, settings.sweep_cron)
            )
        yield
        shutdown_event.set()
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        await redis.aclose()
        await store.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.requests = RequestQueue(engine)
    app.state.decisions = DecisionHandler(engine)
    app.state.identity = identity or IdentityClient(settings.user_service_url)
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.include_router(router)
    return app


app = create_app()
