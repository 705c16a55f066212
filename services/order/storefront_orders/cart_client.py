"""
Order Service — Cart Service クライアント

カートは別サービス (Cart Service) が所有しており、HTTP 経由でしか読めない。

  GET    /api/cart?{ownerParam}   → {"data": {"items": [CartLine, ...]}}
  DELETE /api/cart?{ownerParam}   → カートを空にする

ownerParam は userId / sessionId / customer_id のどれか 1 つ。
空のカートはエラーではない (判断はオーケストレーターが行う)。
"""

import logging
from decimal import Decimal, InvalidOperation

import httpx
from pydantic import ValidationError

from .errors import CartUnreachable
from .models import CartLine, OwnerRef

logger = logging.getLogger(__name__)


class CartClient:
    """Cart Service への HTTP クライアント"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        # テストでは httpx.MockTransport を差し込む
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Content-Type": "application/json"},
        )

    async def fetch_cart(self, owner: OwnerRef) -> list[CartLine]:
        """カートの中身を取得する。通信失敗・タイムアウトは CartUnreachable。"""
        async with self._client() as client:
            try:
                resp = await client.get("/api/cart", params=owner.as_query())
                resp.raise_for_status()
                body = resp.json()
            except httpx.HTTPError as e:
                logger.warning(f"Cart fetch failed for {owner}: {e!r}")
                raise CartUnreachable("Could not reach the cart service") from e
            except ValueError as e:
                raise CartUnreachable("Cart service returned a malformed body") from e

        try:
            items = (body.get("data") or {}).get("items") or []
            return [_to_cart_line(item) for item in items]
        except (AttributeError, TypeError, KeyError, InvalidOperation, ValidationError) as e:
            raise CartUnreachable("Cart service returned a malformed body") from e

    async def clear_cart(self, owner: OwnerRef) -> None:
        """注文作成後にカートを空にする。失敗時は CartUnreachable。"""
        async with self._client() as client:
            try:
                resp = await client.delete("/api/cart", params=owner.as_query())
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise CartUnreachable("Could not clear the cart") from e


def _pick(item: dict, *keys: str, default=None):
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return default


def _to_cart_line(item: dict) -> CartLine:
    """Cart Service のレスポンス 1 行を CartLine に変換する。"""
    product_id = _pick(item, "product_id", "productId")
    price = _pick(item, "unit_price", "unitPrice", "price")
    if product_id is None or price is None:
        raise KeyError("product_id / unit_price")
    return CartLine(
        product_id=str(product_id),
        product_name=_pick(item, "product_name", "productName", "title", default=""),
        product_image=_pick(item, "product_image", "productImage", "image"),
        quantity=item["quantity"],
        unit_price=Decimal(str(price)),
    )
