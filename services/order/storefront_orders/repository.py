"""
Order Service — 注文リポジトリ

orders / order_items テーブルへの読み書きを担当する。

ヘッダ作成 (create_order_header) と明細作成 (insert_line_items) は
それぞれ独立したトランザクションでコミットする。
両者をまたぐロールバックは行わない。明細の保存に失敗した場合の
補償 (delete_order) は呼び出し側のオーケストレーターが行う。
"""

import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import LineItemPersistenceError, OrderNotFound, OrderPersistenceError
from .models import (
    CustomerSnapshot,
    Order,
    OrderItem,
    OrderListFilters,
    OrderStats,
    OwnerKind,
    OwnerRef,
    ShippingAddress,
    SortDirection,
    TimeRange,
)
from .pricing import PricingResult, round2
from .status import OrderStatus
from .tables import order_items, orders

logger = logging.getLogger(__name__)

TIME_RANGES = {
    TimeRange.DAYS_7: timedelta(days=7),
    TimeRange.DAYS_30: timedelta(days=30),
    TimeRange.DAYS_90: timedelta(days=90),
    TimeRange.YEAR: timedelta(days=365),
}

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """ORD-<エポックミリ秒の下6桁>-<英数字5文字>"""
    millis = str(int(time.time() * 1000))[-6:]
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(5))
    return f"ORD-{millis}-{suffix}"


def _utc(value: datetime) -> datetime:
    # SQLite はタイムゾーンを保存しないので UTC とみなす
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _owner_clause(owner: OwnerRef):
    return and_(orders.c.owner_kind == owner.kind.value, orders.c.owner_id == owner.value)


class OrderRepository:
    """注文ヘッダと明細の永続化"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    # ── 書き込み (Saga から呼ばれる) ─────────────

    async def create_order_header(
        self,
        owner: OwnerRef,
        customer: CustomerSnapshot,
        shipping_address: ShippingAddress,
        pricing: PricingResult,
        item_count: int,
    ) -> str:
        """注文ヘッダを status=pending で作成し、注文 ID を返す。"""
        order_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        try:
            async with self._sessions() as session:
                await session.execute(
                    orders.insert().values(
                        id=order_id,
                        order_number=generate_order_number(),
                        owner_kind=owner.kind.value,
                        owner_id=owner.value,
                        status=OrderStatus.PENDING.value,
                        subtotal=pricing.subtotal,
                        tax=pricing.tax,
                        shipping=pricing.shipping,
                        total=pricing.total,
                        item_count=item_count,
                        customer_name=customer.name,
                        customer_email=customer.email,
                        customer_info=customer.model_dump(mode="json"),
                        shipping_address=shipping_address.model_dump(mode="json"),
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to create order header for {owner}: {e}")
            raise OrderPersistenceError("Failed to persist the order") from e
        return order_id

    async def insert_line_items(self, order_id: str, items: list[OrderItem]) -> None:
        """明細をまとめて INSERT する (1 トランザクション)。"""
        rows = [
            {
                "id": item.id,
                "order_id": order_id,
                "position": position,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_image": item.product_image,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "line_total": item.line_total,
            }
            for position, item in enumerate(items)
        ]
        try:
            async with self._sessions() as session:
                await session.execute(order_items.insert(), rows)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert line items for order {order_id}: {e}")
            raise LineItemPersistenceError("Failed to persist the order items") from e

    async def delete_order(self, order_id: str) -> None:
        """
        注文を明細ごと削除する (補償トランザクション)。

        存在しない注文の削除はエラーにしない (冪等)。
        """
        try:
            async with self._sessions() as session:
                await session.execute(
                    delete(order_items).where(order_items.c.order_id == order_id)
                )
                await session.execute(delete(orders).where(orders.c.id == order_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise OrderPersistenceError(f"Failed to delete order {order_id}") from e

    async def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        owner: OwnerRef | None = None,
        expected_status: OrderStatus | None = None,
    ) -> Order:
        """
        ステータスだけを更新する。金額・明細には触れない。

        owner を渡すとその持ち主の注文だけが対象になる。
        expected_status を渡すと、その状態のときだけ更新する (同時更新の検出)。
        対象が無ければ OrderNotFound。
        """
        conditions = [orders.c.id == order_id]
        if owner is not None:
            conditions.append(_owner_clause(owner))
        if expected_status is not None:
            conditions.append(orders.c.status == expected_status.value)

        try:
            async with self._sessions() as session:
                result = await session.execute(
                    update(orders)
                    .where(*conditions)
                    .values(status=new_status.value, updated_at=datetime.now(timezone.utc))
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise OrderPersistenceError(f"Failed to update order {order_id}") from e

        if result.rowcount == 0:
            raise OrderNotFound(order_id)
        return await self.get_order(order_id)

    # ── 読み取り ─────────────────────────────────

    async def get_order(self, order_id: str, owner: OwnerRef | None = None) -> Order:
        """注文を明細付きで取得する。見つからなければ OrderNotFound。"""
        query = select(orders).where(orders.c.id == order_id)
        if owner is not None:
            query = query.where(_owner_clause(owner))
        try:
            async with self._sessions() as session:
                header = (await session.execute(query)).mappings().first()
                if header is None:
                    raise OrderNotFound(order_id)
                items = await self._load_items(session, [order_id])
        except SQLAlchemyError as e:
            raise OrderPersistenceError(f"Failed to read order {order_id}") from e
        return _row_to_order(header, items.get(order_id, []))

    async def list_orders_for_owner(
        self,
        owner: OwnerRef,
        filters: OrderListFilters | None = None,
    ) -> list[Order]:
        filters = filters or OrderListFilters()
        sort_column = orders.c[filters.order_by.value]
        if filters.direction == SortDirection.ASC:
            ordering = (sort_column.asc(), orders.c.id.asc())
        else:
            ordering = (sort_column.desc(), orders.c.id.desc())

        query = select(orders).where(_owner_clause(owner))
        if filters.status is not None:
            query = query.where(orders.c.status == filters.status.value)
        query = query.order_by(*ordering).limit(filters.limit).offset(filters.offset)
        return await self._fetch_orders(query)

    async def search_orders(self, term: str, limit: int = 10, offset: int = 0) -> list[Order]:
        """注文番号・顧客名・メールアドレスの部分一致 (大文字小文字を区別しない)。"""
        query = (
            select(orders)
            .where(
                orders.c.order_number.icontains(term, autoescape=True)
                | orders.c.customer_name.icontains(term, autoescape=True)
                | orders.c.customer_email.icontains(term, autoescape=True)
            )
            .order_by(orders.c.created_at.desc(), orders.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._fetch_orders(query)

    async def get_stats(
        self,
        owner: OwnerRef | None = None,
        time_range: TimeRange = TimeRange.DAYS_30,
        now: datetime | None = None,
    ) -> OrderStats:
        """期間内の注文数・売上をステータス別に集計する。"""
        end = now or datetime.now(timezone.utc)
        start = end - TIME_RANGES[time_range]

        query = select(orders.c.status, orders.c.total).where(
            orders.c.created_at >= start, orders.c.created_at <= end
        )
        if owner is not None:
            query = query.where(_owner_clause(owner))
        try:
            async with self._sessions() as session:
                rows = (await session.execute(query)).all()
        except SQLAlchemyError as e:
            raise OrderPersistenceError("Failed to compute order statistics") from e

        breakdown = {s.value: 0 for s in OrderStatus}
        revenue = {s.value: Decimal("0.00") for s in OrderStatus}
        for status, total in rows:
            breakdown[status] = breakdown.get(status, 0) + 1
            revenue[status] = revenue.get(status, Decimal("0.00")) + Decimal(total)

        total_orders = len(rows)
        total_revenue = round2(sum(revenue.values(), Decimal("0")))
        average = round2(total_revenue / total_orders) if total_orders else Decimal("0.00")
        return OrderStats(
            total_orders=total_orders,
            total_revenue=total_revenue,
            average_order_value=average,
            status_breakdown=breakdown,
            revenue_by_status={k: round2(v) for k, v in revenue.items()},
            time_range=time_range,
            start=start,
            end=end,
        )

    # ── 内部ヘルパー ─────────────────────────────

    async def _fetch_orders(self, query) -> list[Order]:
        try:
            async with self._sessions() as session:
                headers = (await session.execute(query)).mappings().all()
                items = await self._load_items(session, [h["id"] for h in headers])
        except SQLAlchemyError as e:
            raise OrderPersistenceError("Failed to read orders") from e
        return [_row_to_order(h, items.get(h["id"], [])) for h in headers]

    @staticmethod
    async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[OrderItem]]:
        if not order_ids:
            return {}
        result = await session.execute(
            select(order_items)
            .where(order_items.c.order_id.in_(order_ids))
            .order_by(order_items.c.order_id, order_items.c.position)
        )
        grouped: dict[str, list[OrderItem]] = {}
        for row in result.mappings():
            grouped.setdefault(row["order_id"], []).append(
                OrderItem(
                    id=row["id"],
                    order_id=row["order_id"],
                    product_id=row["product_id"],
                    product_name=row["product_name"],
                    product_image=row["product_image"],
                    quantity=row["quantity"],
                    unit_price=round2(Decimal(row["unit_price"])),
                    line_total=round2(Decimal(row["line_total"])),
                )
            )
        return grouped


def _row_to_order(row, items: list[OrderItem]) -> Order:
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        owner=OwnerRef(kind=OwnerKind(row["owner_kind"]), value=row["owner_id"]),
        status=OrderStatus(row["status"]),
        subtotal=round2(Decimal(row["subtotal"])),
        tax=round2(Decimal(row["tax"])),
        shipping=round2(Decimal(row["shipping"])),
        total=round2(Decimal(row["total"])),
        item_count=row["item_count"],
        customer_info=CustomerSnapshot.model_validate(row["customer_info"]),
        shipping_address=ShippingAddress.model_validate(row["shipping_address"]),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
        items=items,
    )
