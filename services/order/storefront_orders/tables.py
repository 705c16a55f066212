"""
Order Service — テーブル定義

  orders       注文ヘッダ (金額・顧客情報・配送先のスナップショット)
  order_items  注文明細 (1:N、orders.id への外部キー)

どちらもこのサービスだけが所有する。
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

MONEY = Numeric(10, 2, asdecimal=True)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("owner_kind", String(16), nullable=False),
    Column("owner_id", String(128), nullable=False, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("subtotal", MONEY, nullable=False),
    Column("tax", MONEY, nullable=False),
    Column("shipping", MONEY, nullable=False),
    Column("total", MONEY, nullable=False),
    Column("item_count", Integer, nullable=False),
    # 検索用に顧客名・メールだけ列として持つ
    Column("customer_name", String(100), nullable=False),
    Column("customer_email", String(255), nullable=False),
    Column("customer_info", JSON, nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("product_image", Text),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", MONEY, nullable=False),
    Column("line_total", MONEY, nullable=False),
)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
