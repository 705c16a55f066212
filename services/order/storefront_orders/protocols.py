"""
Order Service — 依存先のインターフェース

オーケストレーターはこれらの Protocol にだけ依存する。
テストではインメモリの実装を差し込む。
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from .models import (
    CartLine,
    CustomerSnapshot,
    Order,
    OrderItem,
    OrderListFilters,
    OrderStats,
    OwnerRef,
    ShippingAddress,
    TimeRange,
)
from .pricing import PricingResult
from .status import OrderStatus


@runtime_checkable
class CartClientProtocol(Protocol):
    async def fetch_cart(self, owner: OwnerRef) -> list[CartLine]:
        ...

    async def clear_cart(self, owner: OwnerRef) -> None:
        ...


@runtime_checkable
class OrderRepositoryProtocol(Protocol):
    async def create_order_header(
        self,
        owner: OwnerRef,
        customer: CustomerSnapshot,
        shipping_address: ShippingAddress,
        pricing: PricingResult,
        item_count: int,
    ) -> str:
        ...

    async def insert_line_items(self, order_id: str, items: list[OrderItem]) -> None:
        ...

    async def delete_order(self, order_id: str) -> None:
        ...

    async def get_order(self, order_id: str, owner: OwnerRef | None = None) -> Order:
        ...

    async def list_orders_for_owner(
        self, owner: OwnerRef, filters: OrderListFilters | None = None
    ) -> list[Order]:
        ...

    async def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        owner: OwnerRef | None = None,
        expected_status: OrderStatus | None = None,
    ) -> Order:
        ...

    async def search_orders(self, term: str, limit: int = 10, offset: int = 0) -> list[Order]:
        ...

    async def get_stats(
        self,
        owner: OwnerRef | None = None,
        time_range: TimeRange = TimeRange.DAYS_30,
        now: datetime | None = None,
    ) -> OrderStats:
        ...


@runtime_checkable
class EventPublisherProtocol(Protocol):
    async def publish(self, channel: str, event_type: str, data: dict) -> None:
        ...
