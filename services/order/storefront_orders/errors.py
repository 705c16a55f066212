"""
Order Service — エラー分類

API の利用者が文字列マッチングせずに分岐できるよう、
すべてのエラーは安定したエラーコードと HTTP ステータスを持つ。

  クライアントエラー (自動リトライしない):
    INVALID_REQUEST / EMPTY_CART / ORDER_NOT_FOUND / INVALID_STATUS_TRANSITION
  上流サービスのエラー (書き込み前なので Saga 全体をリトライ可能):
    CART_UNREACHABLE
  ストレージのエラー:
    ORDER_PERSISTENCE_ERROR / LINE_ITEM_PERSISTENCE_ERROR
"""


class OrderServiceError(Exception):
    """Order Service の基底例外"""

    code = "INTERNAL_SERVER_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


class InvalidRequest(OrderServiceError):
    code = "INVALID_REQUEST"
    http_status = 400


class EmptyCart(OrderServiceError):
    code = "EMPTY_CART"
    http_status = 400

    def __init__(self, message: str = "Cannot create an order from an empty cart"):
        super().__init__(message)


class OrderNotFound(OrderServiceError):
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class InvalidStatusTransition(OrderServiceError):
    code = "INVALID_STATUS_TRANSITION"
    http_status = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot change order status from '{current}' to '{target}'")
        self.current = current
        self.target = target


class CartUnreachable(OrderServiceError):
    """Cart Service と通信できない (ネットワーク・タイムアウト・異常応答)"""

    code = "CART_UNREACHABLE"
    http_status = 503
    retryable = True


class OrderPersistenceError(OrderServiceError):
    code = "ORDER_PERSISTENCE_ERROR"
    http_status = 500


class LineItemPersistenceError(OrderServiceError):
    """明細の保存に失敗した (注文ヘッダは補償トランザクションで削除済み)"""

    code = "LINE_ITEM_PERSISTENCE_ERROR"
    http_status = 500
