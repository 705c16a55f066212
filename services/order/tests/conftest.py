"""
Order Service テストの共通フィクスチャ

オーケストレーターのテストはインメモリのリポジトリ・カートを使い、
リポジトリ自体のテストは SQLite (aiosqlite) に対して実行する。
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from storefront_orders.errors import (
    CartUnreachable,
    LineItemPersistenceError,
    OrderNotFound,
)
from storefront_orders.models import (
    CartLine,
    CreateOrderRequest,
    Order,
    OrderListFilters,
    OrderStats,
    OwnerRef,
    SortDirection,
    TimeRange,
)
from storefront_orders.repository import generate_order_number
from storefront_orders.status import OrderStatus
from storefront_orders.tables import init_schema


# ── インメモリ実装 ───────────────────────────────


class FakeCartClient:
    """Cart Service の代わり。失敗回数を指定できる。"""

    def __init__(self, carts: dict[str, list[CartLine]] | None = None):
        self.carts = carts or {}
        self.fetch_failures = 0
        self.clear_fails = False
        self.fetch_calls = 0
        self.cleared: list[str] = []

    async def fetch_cart(self, owner: OwnerRef) -> list[CartLine]:
        self.fetch_calls += 1
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            raise CartUnreachable("Could not reach the cart service")
        return list(self.carts.get(str(owner), []))

    async def clear_cart(self, owner: OwnerRef) -> None:
        if self.clear_fails:
            raise CartUnreachable("Could not clear the cart")
        self.cleared.append(str(owner))
        self.carts.pop(str(owner), None)


class InMemoryOrderRepository:
    """OrderRepositoryProtocol のインメモリ実装"""

    def __init__(self):
        self.headers: dict[str, dict] = {}
        self.items: dict[str, list] = {}
        self.fail_line_items = False
        self.fail_delete = False
        self.deleted: list[str] = []
        self._seq = 0

    async def create_order_header(self, owner, customer, shipping_address, pricing, item_count):
        self._seq += 1
        order_id = f"order-{self._seq}"
        now = datetime.now(timezone.utc)
        self.headers[order_id] = {
            "id": order_id,
            "order_number": generate_order_number(),
            "owner": owner,
            "status": OrderStatus.PENDING,
            "subtotal": pricing.subtotal,
            "tax": pricing.tax,
            "shipping": pricing.shipping,
            "total": pricing.total,
            "item_count": item_count,
            "customer_info": customer,
            "shipping_address": shipping_address,
            "created_at": now,
            "updated_at": now,
        }
        return order_id

    async def insert_line_items(self, order_id, items):
        if self.fail_line_items:
            raise LineItemPersistenceError("Failed to persist the order items")
        self.items[order_id] = list(items)

    async def delete_order(self, order_id):
        if self.fail_delete:
            raise RuntimeError("database is gone")
        self.deleted.append(order_id)
        self.headers.pop(order_id, None)
        self.items.pop(order_id, None)

    async def get_order(self, order_id, owner=None):
        header = self.headers.get(order_id)
        if header is None or (owner is not None and header["owner"] != owner):
            raise OrderNotFound(order_id)
        return Order(**header, items=self.items.get(order_id, []))

    async def list_orders_for_owner(self, owner, filters=None):
        filters = filters or OrderListFilters()
        found = [
            await self.get_order(order_id)
            for order_id, header in self.headers.items()
            if header["owner"] == owner
            and (filters.status is None or header["status"] == filters.status)
        ]
        found.sort(
            key=lambda o: getattr(o, filters.order_by.value),
            reverse=filters.direction == SortDirection.DESC,
        )
        return found[filters.offset : filters.offset + filters.limit]

    async def update_status(self, order_id, new_status, owner=None, expected_status=None):
        header = self.headers.get(order_id)
        if (
            header is None
            or (owner is not None and header["owner"] != owner)
            or (expected_status is not None and header["status"] != expected_status)
        ):
            raise OrderNotFound(order_id)
        header["status"] = new_status
        header["updated_at"] = datetime.now(timezone.utc)
        return await self.get_order(order_id)

    async def search_orders(self, term, limit=10, offset=0):
        term = term.lower()
        found = [
            await self.get_order(order_id)
            for order_id, h in self.headers.items()
            if term in h["order_number"].lower()
            or term in h["customer_info"].name.lower()
            or term in h["customer_info"].email.lower()
        ]
        return found[offset : offset + limit]

    async def get_stats(self, owner=None, time_range=TimeRange.DAYS_30, now=None):
        now = now or datetime.now(timezone.utc)
        return OrderStats(
            total_orders=len(self.headers),
            total_revenue=sum((h["total"] for h in self.headers.values()), Decimal("0")),
            average_order_value=Decimal("0"),
            status_breakdown={s.value: 0 for s in OrderStatus},
            revenue_by_status={s.value: Decimal("0") for s in OrderStatus},
            time_range=time_range,
            start=now,
            end=now,
        )


class RecordingPublisher:
    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []

    async def publish(self, channel, event_type, data):
        self.events.append((channel, event_type, data))

    def types(self, channel: str | None = None) -> list[str]:
        return [t for c, t, _ in self.events if channel is None or c == channel]


# ── フィクスチャ ─────────────────────────────────


@pytest.fixture
def owner() -> OwnerRef:
    return OwnerRef(kind="customer", value="cust-42")


@pytest.fixture
def scenario_a_lines() -> list[CartLine]:
    return [
        CartLine(product_id="1", product_name="Backpack", product_image="/img/1.png",
                 quantity=2, unit_price=Decimal("29.99")),
        CartLine(product_id="2", product_name="T-Shirt", product_image="/img/2.png",
                 quantity=1, unit_price=Decimal("15.50")),
    ]


@pytest.fixture
def order_payload() -> dict:
    return {
        "customer_id": "cust-42",
        "customerInfo": {"name": "Ana Lopez", "email": "ana@example.com", "phone": "5045551234"},
        "paymentMethod": {"type": "credit_card", "provider": "visa", "last4": "4242"},
        "shippingAddress": {
            "street": "Avenida Siempre Viva 742",
            "city": "Tegucigalpa",
            "state": "Francisco Morazan",
            "zipCode": "11101",
            "country": "Honduras",
        },
    }


@pytest.fixture
def order_request(order_payload) -> CreateOrderRequest:
    return CreateOrderRequest.model_validate(order_payload)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def memory_repo() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_schema(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
