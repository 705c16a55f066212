"""
Order Service — 注文ステータスの状態遷移

状態遷移:
    pending    → confirmed | cancelled
    confirmed  → processing | cancelled
    processing → shipped | cancelled
    shipped    → delivered
    delivered / cancelled は終端状態

注文作成 Saga が生成するのは常に pending のみ。
それ以外の遷移は運用側のコマンド (PUT /api/orders/{id}/status) が起こす。
"""

from enum import Enum

from .errors import InvalidRequest, InvalidStatusTransition


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def parse_status(value: "str | OrderStatus") -> OrderStatus:
    """文字列を OrderStatus に変換する。未知の値は InvalidRequest。"""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in OrderStatus)
        raise InvalidRequest(
            f"Invalid status '{value}'. Valid statuses: {valid}",
            errors=[f"status must be one of: {valid}"],
        ) from None


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[status]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    """遷移グラフに無い遷移なら InvalidStatusTransition を送出する。"""
    if not can_transition(current, target):
        raise InvalidStatusTransition(current.value, target.value)
