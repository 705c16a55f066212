"""
Order Service — ドメインモデル

注文 (Order) と明細 (OrderItem)、カート明細のスナップショット (CartLine)、
注文作成リクエストを定義する。

API の JSON はフロントエンドに合わせて camelCase
(orderNumber, itemCount, createdAt ...) で返す。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from .pricing import round2
from .status import OrderStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 所有者 (Owner reference) ─────────────────────


class OwnerKind(str, Enum):
    USER = "user"
    SESSION = "session"
    CUSTOMER = "customer"


# Cart Service のクエリパラメータ名
OWNER_QUERY_PARAMS = {
    OwnerKind.USER: "userId",
    OwnerKind.SESSION: "sessionId",
    OwnerKind.CUSTOMER: "customer_id",
}


class OwnerRef(BaseModel):
    """カート・注文の持ち主。1 注文につき必ず 1 つだけ解決される。"""

    model_config = ConfigDict(frozen=True)

    kind: OwnerKind
    value: str

    @property
    def query_param(self) -> str:
        return OWNER_QUERY_PARAMS[self.kind]

    def as_query(self) -> dict[str, str]:
        return {self.query_param: self.value}

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


# ── カート明細 (Cart Service 所有、スナップショット) ──


class CartLine(BaseModel):
    product_id: str
    product_name: str = ""
    product_image: str | None = None
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)

    @field_validator("unit_price")
    @classmethod
    def round_unit_price(cls, value: Decimal) -> Decimal:
        # 価格計算と明細のスナップショットが同じ単価を使うよう、受け取った時点で丸める
        return round2(value)


# ── 顧客情報・配送先のスナップショット ────────────

PaymentType = Literal["credit_card", "debit_card", "paypal", "cash_on_delivery", "bank_transfer"]

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RequestModel(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        # 任意項目の空文字は未指定として扱う
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PaymentMethod(RequestModel):
    """支払い方法 (メタデータとして保存するだけで決済はしない)"""

    type: PaymentType
    provider: str | None = Field(default=None, min_length=1, max_length=50)
    last4: str | None = Field(default=None, pattern=r"^\d{4}$")


class CustomerInfo(RequestModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    phone: str | None = Field(default=None, min_length=10, max_length=20)


class ShippingAddress(RequestModel):
    street: str = Field(min_length=5, max_length=200)
    city: str = Field(min_length=2, max_length=100)
    state: str = Field(min_length=2, max_length=100)
    zip_code: str = Field(min_length=3, max_length=20)
    country: str = Field(default="Honduras", min_length=2, max_length=100)


class CustomerSnapshot(CamelModel):
    """注文ヘッダに埋め込む顧客連絡先 + 支払い方法"""

    name: str
    email: str
    phone: str | None = None
    payment_method: PaymentMethod


# ── 注文作成リクエスト ───────────────────────────


def owner_candidates(user_id, session_id, customer_id) -> list[OwnerRef]:
    """空でない userId / sessionId / customer_id を OwnerRef にする。"""
    candidates = []
    for kind, value in (
        (OwnerKind.USER, user_id),
        (OwnerKind.SESSION, session_id),
        (OwnerKind.CUSTOMER, customer_id),
    ):
        if value is not None and str(value).strip():
            candidates.append(OwnerRef(kind=kind, value=str(value).strip()))
    return candidates


def owner_errors(user_id, session_id, customer_id) -> list[str]:
    count = len(owner_candidates(user_id, session_id, customer_id))
    if count == 0:
        return ["exactly one of userId, sessionId or customer_id is required"]
    if count > 1:
        return ["only one of userId, sessionId or customer_id may be given"]
    return []


class CreateOrderRequest(BaseModel):
    """
    POST /api/orders のボディ。

    userId / sessionId / customer_id のうち、ちょうど 1 つが必須。
    違反はすべてまとめて ValidationError として報告される。
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | int | None = Field(default=None, alias="userId")
    session_id: str | None = Field(default=None, alias="sessionId")
    customer_id: str | None = None
    customer_info: CustomerInfo = Field(alias="customerInfo")
    payment_method: PaymentMethod = Field(alias="paymentMethod")
    shipping_address: ShippingAddress = Field(alias="shippingAddress")

    @model_validator(mode="after")
    def exactly_one_owner(self) -> "CreateOrderRequest":
        errors = owner_errors(self.user_id, self.session_id, self.customer_id)
        if errors:
            raise PydanticCustomError("owner", errors[0])
        return self

    @property
    def owner(self) -> OwnerRef:
        return owner_candidates(self.user_id, self.session_id, self.customer_id)[0]

    def customer_snapshot(self) -> CustomerSnapshot:
        return CustomerSnapshot(
            name=self.customer_info.name,
            email=self.customer_info.email,
            phone=self.customer_info.phone,
            payment_method=self.payment_method,
        )


# ── 注文 (Order / OrderItem) ─────────────────────


class OrderItem(CamelModel):
    id: str
    order_id: str
    product_id: str
    product_name: str
    product_image: str | None = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @field_serializer("unit_price", "line_total")
    def serialize_money(self, value: Decimal) -> float:
        return float(value)


class Order(CamelModel):
    id: str
    order_number: str
    owner: OwnerRef
    status: OrderStatus
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    item_count: int
    customer_info: CustomerSnapshot
    shipping_address: ShippingAddress
    created_at: datetime
    updated_at: datetime
    items: list[OrderItem] = []

    @field_serializer("subtotal", "tax", "shipping", "total")
    def serialize_money(self, value: Decimal) -> float:
        return float(value)

    @field_serializer("owner")
    def serialize_owner(self, owner: OwnerRef) -> dict:
        return {"kind": owner.kind.value, "id": owner.value}


# ── 一覧・統計 ───────────────────────────────────


class OrderSortKey(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    TOTAL = "total"
    ORDER_NUMBER = "order_number"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class OrderListFilters(BaseModel):
    status: OrderStatus | None = None
    limit: int = Field(default=10, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    order_by: OrderSortKey = OrderSortKey.CREATED_AT
    direction: SortDirection = SortDirection.DESC


class OrderPage(BaseModel):
    """一覧・検索の 1 ページ分"""

    orders: list[Order]
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def from_rows(cls, rows: list[Order], limit: int, offset: int) -> "OrderPage":
        return cls(orders=rows[:limit], limit=limit, offset=offset, has_more=len(rows) > limit)

    def pagination(self) -> dict:
        return {"limit": self.limit, "offset": self.offset, "hasMore": self.has_more}


class TimeRange(str, Enum):
    DAYS_7 = "7d"
    DAYS_30 = "30d"
    DAYS_90 = "90d"
    YEAR = "1y"


class OrderStats(CamelModel):
    total_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    status_breakdown: dict[str, int]
    revenue_by_status: dict[str, Decimal]
    time_range: TimeRange
    start: datetime
    end: datetime

    @field_serializer("total_revenue", "average_order_value")
    def serialize_money(self, value: Decimal) -> float:
        return float(value)

    @field_serializer("revenue_by_status")
    def serialize_money_map(self, value: dict[str, Decimal]) -> dict[str, float]:
        return {k: float(v) for k, v in value.items()}
