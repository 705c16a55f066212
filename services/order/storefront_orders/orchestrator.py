"""
Order Service — 注文作成 Saga オーケストレーター

カート (Cart Service 所有) と注文 (このサービス所有) は別々に失敗しうるため、
1 つのトランザクションにはできない。明示的なステップと補償トランザクション
(Compensating Transaction) で整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. リクエストを検証 (違反はすべて返す)                        │
  │  2. Cart Service からカートを取得  ← 書き込み前なのでリトライ可 │
  │  3. 空のカートなら EmptyCart (何も書き込まない)                │
  │  4. 価格計算 (I/O なし)                                        │
  │  5. 注文ヘッダを保存                                           │
  │  6. 明細を保存                                                 │
  │     └─ 失敗 → 注文ヘッダを削除 (補償トランザクション)          │
  │  7. 注文を読み直して返す                                       │
  │  8. カートを空にする (ベストエフォート、失敗してもログのみ)    │
  └──────────────────────────────────────────────────────────────┘

ステップ 5〜8 (とイベント発行) は呼び出し側のキャンセルから保護される。
ヘッダだけがあって明細が無い注文は決して外から見えてはならない。
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from .errors import (
    CartUnreachable,
    EmptyCart,
    InvalidRequest,
    InvalidStatusTransition,
    LineItemPersistenceError,
    OrderNotFound,
    OrderPersistenceError,
    OrderServiceError,
)
from .events import (
    ORDER_EVENTS_CHANNEL,
    SAGA_EVENTS_CHANNEL,
    EventPublisher,
    OrderCreated,
    OrderStatusChanged,
)
from .models import (
    CartLine,
    CreateOrderRequest,
    CustomerSnapshot,
    Order,
    OrderItem,
    OrderListFilters,
    OrderPage,
    OrderStats,
    OwnerRef,
    ShippingAddress,
    TimeRange,
)
from .pricing import PricingResult, price_cart
from .protocols import CartClientProtocol, EventPublisherProtocol, OrderRepositoryProtocol
from .status import ensure_transition, parse_status
from .validation import validate_create_request

logger = logging.getLogger(__name__)

# 同時更新で読み直す回数の上限
STATUS_UPDATE_ATTEMPTS = 3


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_detached_result(task: "asyncio.Future[Order]") -> None:
    # 呼び出し側がキャンセル済みなので、結果はログにだけ残す
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Order creation failed after the caller went away: {error!r}")
    else:
        logger.info(f"Order {task.result().order_number} completed after the caller went away")


def snapshot_items(order_id: str, lines: list[CartLine]) -> list[OrderItem]:
    """カート明細をそのまま注文明細にコピーする (カタログへの参照ではない)。"""
    return [
        OrderItem(
            id=str(uuid.uuid4()),
            order_id=order_id,
            product_id=line.product_id,
            product_name=line.product_name,
            product_image=line.product_image,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.unit_price * line.quantity,
        )
        for line in lines
    ]


class OrderOrchestrator:
    """注文作成 Saga と、注文ステータス変更の唯一の窓口"""

    def __init__(
        self,
        repository: OrderRepositoryProtocol,
        cart_client: CartClientProtocol,
        publisher: EventPublisherProtocol | None = None,
        cart_fetch_attempts: int = 2,
        saga_timeout: float = 15.0,
        retry_backoff: float = 0.2,
        enforce_transitions: bool = True,
    ):
        self.repository = repository
        self.cart = cart_client
        self.publisher = publisher or EventPublisher(None)
        self.cart_fetch_attempts = max(1, cart_fetch_attempts)
        self.saga_timeout = saga_timeout
        self.retry_backoff = retry_backoff
        self.enforce_transitions = enforce_transitions

    # ── 注文作成 Saga ─────────────────────────────

    async def create_order(self, request: "CreateOrderRequest | dict") -> Order:
        """
        Saga を実行し、保存済みの注文 (明細付き) を返す。

        各ステップの結果を saga_log に記録し、最後に saga_events へ発行する。
        """
        # ── Step 1: リクエストを検証 ─────────────
        owner, customer, shipping_address = validate_create_request(request)

        saga_log: list[dict] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.saga_timeout

        # ── Step 2: カートを取得 ──────────────────
        self._begin(saga_log, 2, "FetchCart")
        try:
            lines = await self._fetch_cart(owner, deadline)
        except CartUnreachable as e:
            self._fail(saga_log, e)
            await self._publish_saga_event("SagaFailed", None, owner, saga_log)
            raise
        self._complete(saga_log)

        # ── Step 3: 空のカートは拒否 ──────────────
        if not lines:
            self._begin(saga_log, 3, "CheckCartNotEmpty")
            error = EmptyCart()
            self._fail(saga_log, error)
            logger.info(f"Rejected order for {owner}: cart is empty")
            await self._publish_saga_event("SagaFailed", None, owner, saga_log)
            raise error

        # ── Step 4: 価格計算 ──────────────────────
        pricing = price_cart(lines)
        saga_log.append(
            {
                "step": 4,
                "action": "PriceCart",
                "status": "COMPLETED",
                "timestamp": _now(),
                "total": str(pricing.total),
            }
        )

        # ── Step 5〜8: キャンセル不可の区間 ───────
        # 呼び出し側がキャンセルされても、注文の保存・カートのクリア・イベント発行は最後まで行う
        task = asyncio.ensure_future(
            self._persist_and_finish(owner, customer, shipping_address, lines, pricing, saga_log)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_detached_result)
            raise

    async def _persist_and_finish(
        self,
        owner: OwnerRef,
        customer: CustomerSnapshot,
        shipping_address: ShippingAddress,
        lines: list[CartLine],
        pricing: PricingResult,
        saga_log: list[dict],
    ) -> Order:
        order = await self._persist_order(owner, customer, shipping_address, lines, pricing, saga_log)

        # ── Step 8: カートを空にする (ベストエフォート) ──
        await self._clear_cart(owner, saga_log)

        logger.info(
            f"Order {order.order_number} created for {owner}: "
            f"{order.item_count} items, total {order.total}"
        )
        await self.publisher.publish(
            ORDER_EVENTS_CHANNEL,
            "OrderCreated",
            OrderCreated(
                order_id=order.id,
                order_number=order.order_number,
                owner=str(owner),
                total=order.total,
                item_count=order.item_count,
                timestamp=order.created_at,
            ).model_dump(mode="json"),
        )
        await self._publish_saga_event("SagaCompleted", order.id, owner, saga_log)
        return order

    async def _fetch_cart(self, owner: OwnerRef, deadline: float) -> list[CartLine]:
        """
        カートを取得する。書き込み前のステップなのでリトライしてよい。

        リトライは Saga 全体の期限 (deadline) 内に収める。
        """
        loop = asyncio.get_running_loop()
        last_error: CartUnreachable | None = None

        for attempt in range(1, self.cart_fetch_attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                return await asyncio.wait_for(self.cart.fetch_cart(owner), timeout=remaining)
            except asyncio.TimeoutError:
                last_error = CartUnreachable("Cart fetch exceeded the order deadline")
            except CartUnreachable as e:
                last_error = e

            logger.warning(
                f"Cart fetch attempt {attempt}/{self.cart_fetch_attempts} for {owner} failed: "
                f"{last_error.message}"
            )
            if attempt < self.cart_fetch_attempts:
                pause = min(self.retry_backoff * attempt, max(0.0, deadline - loop.time()))
                await asyncio.sleep(pause)

        raise last_error or CartUnreachable("Cart fetch exceeded the order deadline")

    async def _persist_order(
        self,
        owner: OwnerRef,
        customer: CustomerSnapshot,
        shipping_address: ShippingAddress,
        lines: list[CartLine],
        pricing: PricingResult,
        saga_log: list[dict],
    ) -> Order:
        # ── Step 5: 注文ヘッダを保存 ──────────────
        # 失敗しても何も作られていないので補償は不要
        self._begin(saga_log, 5, "CreateOrderHeader")
        try:
            order_id = await self.repository.create_order_header(
                owner, customer, shipping_address, pricing, len(lines)
            )
        except Exception as e:
            self._fail(saga_log, e)
            await self._publish_saga_event("SagaFailed", None, owner, saga_log)
            if isinstance(e, OrderServiceError):
                raise
            raise OrderPersistenceError("Failed to persist the order") from e
        self._complete(saga_log)
        saga_log[-1]["order_id"] = order_id

        # ── Step 6: 明細を保存 ────────────────────
        self._begin(saga_log, 6, "InsertLineItems")
        try:
            await self.repository.insert_line_items(order_id, snapshot_items(order_id, lines))
        except Exception as e:
            self._fail(saga_log, e)
            await self._compensate(order_id, saga_log)
            await self._publish_saga_event("SagaCompensated", order_id, owner, saga_log)
            if isinstance(e, LineItemPersistenceError):
                raise
            raise LineItemPersistenceError("Failed to persist the order items") from e
        self._complete(saga_log)

        # ── Step 7: 正規化された注文を読み直す ────
        # 注文は明細まで保存済みなので補償はしない
        self._begin(saga_log, 7, "ReadOrder")
        try:
            order = await self.repository.get_order(order_id)
        except Exception as e:
            self._fail(saga_log, e)
            await self._publish_saga_event("SagaFailed", order_id, owner, saga_log)
            if isinstance(e, OrderServiceError):
                raise
            raise OrderPersistenceError(f"Failed to read order {order_id}") from e
        self._complete(saga_log)
        return order

    async def _compensate(self, order_id: str, saga_log: list[dict]) -> None:
        """補償トランザクション: 作成済みの注文ヘッダを削除する。"""
        self._begin(saga_log, 6, "DeleteOrder (COMPENSATING)")
        try:
            await self.repository.delete_order(order_id)
        except Exception as e:
            # 元のエラーを優先して返す。孤立したヘッダは運用で削除する必要がある
            self._fail(saga_log, e)
            logger.error(f"Compensation failed, order header {order_id} left behind: {e}", exc_info=True)
            return
        self._complete(saga_log)
        logger.warning(f"Compensated order {order_id}: header deleted after line item failure")

    async def _clear_cart(self, owner: OwnerRef, saga_log: list[dict]) -> None:
        """
        カートを空にする。

        注文はすでに保存済みなので、ここでの失敗は警告ログだけにして
        呼び出し側には成功を返す。
        """
        self._begin(saga_log, 8, "ClearCart")
        try:
            await self.cart.clear_cart(owner)
        except Exception as e:
            self._fail(saga_log, e)
            logger.warning(f"Could not clear cart for {owner}: {e}")
            return
        self._complete(saga_log)

    # ── ステータス変更 ───────────────────────────

    async def update_status(
        self,
        order_id: str,
        status: str,
        owner: OwnerRef | None = None,
    ) -> Order:
        """
        注文ステータスを変更する (作成後に許される唯一の更新)。

        owner を渡した場合、他人の注文は OrderNotFound になる。
        読み取りから更新までの間に別のリクエストがステータスを変えた場合は、
        新しいステータスから遷移を検証し直して再試行する。
        """
        target = parse_status(status)
        current = await self.repository.get_order(order_id, owner=owner)

        for _ in range(STATUS_UPDATE_ATTEMPTS):
            if self.enforce_transitions:
                ensure_transition(current.status, target)
                expected = current.status
            else:
                expected = None

            try:
                updated = await self.repository.update_status(
                    order_id, target, owner=owner, expected_status=expected
                )
                break
            except OrderNotFound:
                if expected is None:
                    raise
            # 注文が消えていれば OrderNotFound がそのまま伝わる
            current = await self.repository.get_order(order_id, owner=owner)
            logger.info(
                f"Order {order_id} changed to {current.status.value} concurrently, "
                f"re-checking transition to {target.value}"
            )
        else:
            raise InvalidStatusTransition(current.status.value, target.value)

        logger.info(f"Order {order_id} status {current.status.value} -> {target.value}")
        await self.publisher.publish(
            ORDER_EVENTS_CHANNEL,
            "OrderStatusChanged",
            OrderStatusChanged(
                order_id=order_id,
                previous_status=current.status.value,
                status=target.value,
                timestamp=updated.updated_at,
            ).model_dump(mode="json"),
        )
        return updated

    # ── 読み取り ─────────────────────────────────
    # 一覧・検索は limit + 1 件を読み、次のページがあるかを判定する

    async def get_order(self, order_id: str, owner: OwnerRef | None = None) -> Order:
        return await self.repository.get_order(order_id, owner=owner)

    async def list_orders(
        self, owner: OwnerRef, filters: OrderListFilters | None = None
    ) -> OrderPage:
        filters = filters or OrderListFilters()
        found = await self.repository.list_orders_for_owner(
            owner, filters.model_copy(update={"limit": filters.limit + 1})
        )
        return OrderPage.from_rows(found, filters.limit, filters.offset)

    async def search_orders(self, term: str, limit: int = 10, offset: int = 0) -> OrderPage:
        term = (term or "").strip()
        if not 2 <= len(term) <= 100:
            raise InvalidRequest(
                "Invalid search term", errors=["q must be between 2 and 100 characters"]
            )
        found = await self.repository.search_orders(term, limit=limit + 1, offset=offset)
        return OrderPage.from_rows(found, limit, offset)

    async def get_stats(
        self,
        owner: OwnerRef | None = None,
        time_range: TimeRange = TimeRange.DAYS_30,
    ) -> OrderStats:
        return await self.repository.get_stats(owner=owner, time_range=time_range)

    # ── Saga ログ ────────────────────────────────

    @staticmethod
    def _begin(saga_log: list[dict], step: int, action: str) -> None:
        saga_log.append(
            {"step": step, "action": action, "status": "EXECUTING", "timestamp": _now()}
        )

    @staticmethod
    def _complete(saga_log: list[dict]) -> None:
        saga_log[-1]["status"] = "COMPLETED"

    @staticmethod
    def _fail(saga_log: list[dict], error: Exception) -> None:
        saga_log[-1]["status"] = "FAILED"
        saga_log[-1]["error"] = getattr(error, "code", type(error).__name__)

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str | None,
        owner: OwnerRef,
        saga_log: list[dict],
    ) -> None:
        logger.info(f"{event_type} for {owner}: {[(s['action'], s['status']) for s in saga_log]}")
        await self.publisher.publish(
            SAGA_EVENTS_CHANNEL,
            event_type,
            {"order_id": order_id, "owner": str(owner), "saga_log": saga_log},
        )
