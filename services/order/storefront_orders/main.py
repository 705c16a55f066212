"""
Order Service — FastAPI エントリーポイント

注文の作成 (Saga)、取得・一覧・検索・統計、ステータス変更を HTTP API として公開する。
カートは別サービス (Cart Service) が所有しているので HTTP 経由で読む。

  POST /api/orders                 カートから注文を作成 (Saga)
  GET  /api/orders                 持ち主の注文一覧
  GET  /api/orders/search          注文番号・顧客名・メールで検索
  GET  /api/orders/stats           期間別の統計
  GET  /api/orders/{order_id}      注文詳細
  PUT  /api/orders/{order_id}/status  ステータス変更
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .cart_client import CartClient
from .config import Settings
from .errors import InvalidRequest, OrderServiceError
from .events import EventPublisher
from .logging_config import setup_logging
from .models import (
    Order,
    OrderListFilters,
    OrderSortKey,
    OwnerRef,
    SortDirection,
    TimeRange,
)
from .orchestrator import OrderOrchestrator
from .repository import OrderRepository
from .status import OrderStatus
from .tables import init_schema
from .validation import resolve_owner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    setup_logging(settings)

    engine = create_async_engine(settings.database_url, echo=False)
    await init_schema(engine)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None

    app.state.orchestrator = OrderOrchestrator(
        repository=OrderRepository(async_session),
        cart_client=CartClient(settings.cart_service_url, timeout=settings.cart_timeout_seconds),
        publisher=EventPublisher(redis_pool),
        cart_fetch_attempts=settings.cart_fetch_attempts,
        saga_timeout=settings.saga_timeout_seconds,
        enforce_transitions=settings.enforce_status_transitions,
    )
    logger.info(
        f"Order service started (cart={settings.cart_service_url}, "
        f"enforce_status_transitions={settings.enforce_status_transitions})"
    )
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


def get_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.orchestrator


# ── エラーハンドラ ───────────────────────────────


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=InvalidRequest.http_status,
        content=InvalidRequest("Invalid request", errors=errors).to_dict(),
    )


# ── Request Models ───────────────────────────────


class UpdateStatusRequest(BaseModel):
    status: str


def _order_json(order: Order) -> dict:
    return order.model_dump(mode="json", by_alias=True)


def _owner_from_query(
    user_id: str | None = Query(default=None, alias="userId"),
    session_id: str | None = Query(default=None, alias="sessionId"),
    customer_id: str | None = Query(default=None),
) -> OwnerRef:
    return resolve_owner(user_id, session_id, customer_id)


def _optional_owner_from_query(
    user_id: str | None = Query(default=None, alias="userId"),
    session_id: str | None = Query(default=None, alias="sessionId"),
    customer_id: str | None = Query(default=None),
) -> OwnerRef | None:
    if not any((user_id, session_id, customer_id)):
        return None
    return resolve_owner(user_id, session_id, customer_id)


# ── Command Endpoints ────────────────────────────


@app.post("/api/orders", status_code=201)
async def create_order(
    payload: dict = Body(...),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """カートから注文を作成する (注文作成 Saga)。ボディの検証も Saga の最初のステップで行う。"""
    order = await orchestrator.create_order(payload)
    return {"success": True, "data": _order_json(order), "message": "Order created successfully"}


@app.put("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    owner: OwnerRef | None = Depends(_optional_owner_from_query),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """注文ステータスを変更する。owner を指定すると持ち主の注文に限定される。"""
    order = await orchestrator.update_status(order_id, req.status, owner=owner)
    return {"success": True, "data": _order_json(order), "message": "Order status updated"}


# ── Query Endpoints ──────────────────────────────


@app.get("/api/orders")
async def list_orders(
    owner: OwnerRef = Depends(_owner_from_query),
    status: OrderStatus | None = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    order_by: OrderSortKey = Query(default=OrderSortKey.CREATED_AT, alias="orderBy"),
    order_direction: SortDirection = Query(default=SortDirection.DESC, alias="orderDirection"),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """持ち主の注文一覧"""
    filters = OrderListFilters(
        status=status, limit=limit, offset=offset, order_by=order_by, direction=order_direction
    )
    page = await orchestrator.list_orders(owner, filters)
    return {
        "success": True,
        "data": [_order_json(o) for o in page.orders],
        "pagination": page.pagination(),
    }


@app.get("/api/orders/search")
async def search_orders(
    q: str = Query(...),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    page = await orchestrator.search_orders(q, limit=limit, offset=offset)
    return {
        "success": True,
        "data": [_order_json(o) for o in page.orders],
        "searchTerm": q,
        "pagination": page.pagination(),
    }


@app.get("/api/orders/stats")
async def order_stats(
    owner: OwnerRef | None = Depends(_optional_owner_from_query),
    time_range: TimeRange = Query(default=TimeRange.DAYS_30, alias="timeRange"),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    stats = await orchestrator.get_stats(owner=owner, time_range=time_range)
    return {"success": True, "data": stats.model_dump(mode="json", by_alias=True)}


@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.get_order(order_id)
    return {"success": True, "data": _order_json(order)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
