"""注文リポジトリのテスト (SQLite / aiosqlite)"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from storefront_orders.errors import LineItemPersistenceError, OrderNotFound
from storefront_orders.models import (
    CartLine,
    CustomerSnapshot,
    OrderListFilters,
    OrderSortKey,
    OwnerRef,
    PaymentMethod,
    ShippingAddress,
    SortDirection,
    TimeRange,
)
from storefront_orders.orchestrator import snapshot_items
from storefront_orders.pricing import price_cart
from storefront_orders.repository import OrderRepository
from storefront_orders.status import OrderStatus
from storefront_orders.tables import orders


@pytest.fixture
def repo(session_factory) -> OrderRepository:
    return OrderRepository(session_factory)


def customer(name="Ana Lopez", email="ana@example.com") -> CustomerSnapshot:
    return CustomerSnapshot(
        name=name, email=email, phone=None, payment_method=PaymentMethod(type="paypal")
    )


ADDRESS = ShippingAddress(
    street="Avenida Siempre Viva 742", city="Tegucigalpa", state="FM",
    zip_code="11101", country="Honduras",
)


async def create(repo, owner, lines, name="Ana Lopez", email="ana@example.com") -> str:
    order_id = await repo.create_order_header(
        owner, customer(name, email), ADDRESS, price_cart(lines), len(lines)
    )
    await repo.insert_line_items(order_id, snapshot_items(order_id, lines))
    return order_id


async def test_create_and_get_order(repo, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)

    order = await repo.get_order(order_id)

    assert order.status == OrderStatus.PENDING
    assert order.owner == owner
    assert order.order_number.startswith("ORD-")
    assert order.total == Decimal("86.80")
    assert order.subtotal == Decimal("75.48")
    assert order.item_count == len(order.items) == 2
    assert [i.product_id for i in order.items] == ["1", "2"]
    assert order.items[0].line_total == Decimal("59.98")
    assert order.customer_info.payment_method.type == "paypal"
    assert order.shipping_address.zip_code == "11101"
    assert order.created_at.tzinfo is not None


async def test_get_order_is_stable(repo, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)

    first = await repo.get_order(order_id)
    second = await repo.get_order(order_id)

    assert first.model_dump_json() == second.model_dump_json()


async def test_get_missing_order(repo):
    with pytest.raises(OrderNotFound):
        await repo.get_order("no-such-order")


async def test_delete_order_is_idempotent(repo, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)

    await repo.delete_order(order_id)
    await repo.delete_order(order_id)
    await repo.delete_order("never-existed")

    with pytest.raises(OrderNotFound):
        await repo.get_order(order_id)


async def test_duplicate_line_item_ids_raise(repo, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)
    existing = (await repo.get_order(order_id)).items

    with pytest.raises(LineItemPersistenceError):
        await repo.insert_line_items(order_id, existing)


async def test_update_status_scoped_to_owner(repo, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)
    stranger = OwnerRef(kind="customer", value="someone-else")

    with pytest.raises(OrderNotFound):
        await repo.update_status(order_id, OrderStatus.CANCELLED, owner=stranger)

    updated = await repo.update_status(order_id, OrderStatus.CONFIRMED, owner=owner)
    assert updated.status == OrderStatus.CONFIRMED
    # 金額・明細は変わらない
    assert updated.total == Decimal("86.80")
    assert len(updated.items) == 2


async def test_update_status_with_stale_expectation(repo, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)
    await repo.update_status(order_id, OrderStatus.CONFIRMED)

    with pytest.raises(OrderNotFound):
        await repo.update_status(
            order_id, OrderStatus.CANCELLED, expected_status=OrderStatus.PENDING
        )


async def test_list_orders_for_owner(repo, owner, scenario_a_lines, cheap_lines):
    expensive = await create(repo, owner, scenario_a_lines)
    cheap = await create(repo, owner, cheap_lines)
    await create(repo, OwnerRef(kind="session", value="s-1"), cheap_lines)
    await repo.update_status(cheap, OrderStatus.CANCELLED)

    all_orders = await repo.list_orders_for_owner(owner)
    assert {o.id for o in all_orders} == {expensive, cheap}

    by_total = await repo.list_orders_for_owner(
        owner, OrderListFilters(order_by=OrderSortKey.TOTAL, direction=SortDirection.ASC)
    )
    assert [o.id for o in by_total] == [cheap, expensive]

    cancelled = await repo.list_orders_for_owner(owner, OrderListFilters(status=OrderStatus.CANCELLED))
    assert [o.id for o in cancelled] == [cheap]

    page = await repo.list_orders_for_owner(
        owner, OrderListFilters(limit=1, offset=1, order_by=OrderSortKey.TOTAL)
    )
    assert [o.id for o in page] == [cheap]


async def test_search_orders(repo, owner, scenario_a_lines, cheap_lines):
    ana = await create(repo, owner, scenario_a_lines)
    bob = await create(repo, owner, cheap_lines, name="Bob Smith", email="bob@shop.hn")
    bob_number = (await repo.get_order(bob)).order_number

    assert [o.id for o in await repo.search_orders("ana lo")] == [ana]
    assert [o.id for o in await repo.search_orders("SHOP.HN")] == [bob]
    assert [o.id for o in await repo.search_orders(bob_number)] == [bob]
    assert await repo.search_orders("100%") == []


async def test_stats_by_window(repo, session_factory, owner, scenario_a_lines, cheap_lines):
    recent = await create(repo, owner, scenario_a_lines)
    old = await create(repo, owner, cheap_lines)
    await repo.update_status(recent, OrderStatus.CONFIRMED)
    async with session_factory() as session:
        await session.execute(
            update(orders)
            .where(orders.c.id == old)
            .values(created_at=datetime.now(timezone.utc) - timedelta(days=60))
        )
        await session.commit()

    stats = await repo.get_stats(owner, TimeRange.DAYS_30)
    assert stats.total_orders == 1
    assert stats.total_revenue == Decimal("86.80")
    assert stats.average_order_value == Decimal("86.80")
    assert stats.status_breakdown["confirmed"] == 1
    assert stats.status_breakdown["pending"] == 0
    assert set(stats.status_breakdown) == {s.value for s in OrderStatus}

    wide = await repo.get_stats(None, TimeRange.DAYS_90)
    assert wide.total_orders == 2
    assert wide.total_revenue == Decimal("86.80") + Decimal("17.49")
    assert wide.revenue_by_status["pending"] == Decimal("17.49")


async def test_order_rows_hold_snapshot_prices(repo, session_factory, owner, scenario_a_lines):
    order_id = await create(repo, owner, scenario_a_lines)
    async with session_factory() as session:
        total = (await session.execute(select(orders.c.total).where(orders.c.id == order_id))).scalar_one()
    assert Decimal(total) == Decimal("86.80")


@pytest.fixture
def cheap_lines():
    return [CartLine(product_id="3", product_name="Sticker", quantity=1, unit_price=Decimal("10.00"))]
