"""
Order Service — 価格計算

I/O を持たない純粋関数。カート明細から小計・税・送料・合計を計算する。

  subtotal = Σ(quantity × unit_price)    ← 集計後に一度だけ丸める
  tax      = subtotal × 15%
  shipping = subtotal > 50.00 なら 0、それ以外は 5.99
  total    = subtotal + tax + shipping

丸めはすべて小数第2位で ROUND_HALF_UP。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import CartLine

CENT = Decimal("0.01")
TAX_RATE = Decimal("0.15")
FREE_SHIPPING_THRESHOLD = Decimal("50.00")
FLAT_SHIPPING = Decimal("5.99")


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingResult:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


def price_cart(lines: "Iterable[CartLine]") -> PricingResult:
    raw_subtotal = sum(
        (Decimal(line.quantity) * line.unit_price for line in lines),
        Decimal("0"),
    )
    subtotal = round2(raw_subtotal)
    tax = round2(subtotal * TAX_RATE)
    shipping = Decimal("0.00") if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    total = round2(subtotal + tax + shipping)
    return PricingResult(subtotal=subtotal, tax=tax, shipping=shipping, total=total)
