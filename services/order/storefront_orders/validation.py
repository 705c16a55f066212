"""
Order Service — リクエスト検証

フィールドの制約は models.py の pydantic モデルに宣言してある。
ここでは ValidationError を InvalidRequest に変換し、違反をすべて
InvalidRequest.errors として返す。
"""

from pydantic import ValidationError

from .errors import InvalidRequest
from .models import (
    CreateOrderRequest,
    CustomerSnapshot,
    OwnerRef,
    ShippingAddress,
    owner_candidates,
    owner_errors,
)


def resolve_owner(
    user_id: "str | int | None" = None,
    session_id: str | None = None,
    customer_id: str | None = None,
) -> OwnerRef:
    """userId / sessionId / customer_id のうち、ちょうど 1 つから OwnerRef を作る。"""
    errors = owner_errors(user_id, session_id, customer_id)
    if errors:
        raise InvalidRequest("Invalid owner reference", errors=errors)
    return owner_candidates(user_id, session_id, customer_id)[0]


def _describe(error: dict) -> str:
    loc = ".".join(str(part) for part in error["loc"])
    return f"{loc}: {error['msg']}" if loc else error["msg"]


def validate_create_request(
    payload: "CreateOrderRequest | dict",
) -> tuple[OwnerRef, CustomerSnapshot, ShippingAddress]:
    """注文作成リクエストを検証し、所有者・顧客スナップショット・配送先を返す。"""
    if isinstance(payload, CreateOrderRequest):
        request = payload
    else:
        if not isinstance(payload, dict):
            raise InvalidRequest("Invalid order request", errors=["body must be a JSON object"])
        try:
            request = CreateOrderRequest.model_validate(payload)
        except ValidationError as e:
            errors = [_describe(err) for err in e.errors()]
            # フィールドの違反があるとモデル全体の検証 (所有者) は実行されない
            for message in owner_errors(
                payload.get("userId", payload.get("user_id")),
                payload.get("sessionId", payload.get("session_id")),
                payload.get("customer_id"),
            ):
                if message not in errors:
                    errors.append(message)
            raise InvalidRequest("Invalid order request", errors=errors) from None

    return request.owner, request.customer_snapshot(), request.shipping_address
