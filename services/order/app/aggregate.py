"""
Order Service — 注文集約 (Order Aggregate) と状態遷移

状態遷移:
    PENDING → PAID → SHIPPED → DELIVERED
    PENDING | PAID → CANCELLED
    PAID → REFUNDED
    PENDING → SHIPPED  (代金引換のみ。支払いは配達時)

CANCELLED / REFUNDED / DELIVERED は終端状態。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from services.common.errors import BadRequestError, ConflictError

CENT = Decimal("0.01")
SHIPPING_COST = Decimal("5.99")
TAX_RATE = Decimal("0.08")


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentType(str, Enum):
    PAY_NOW = "PAY_NOW"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PAID: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def ensure_transition(
    current: OrderStatus,
    target: OrderStatus,
    payment_type: PaymentType | None = None,
) -> None:
    """不正な遷移なら ConflictError。状態は変更しない。"""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ConflictError(f"Cannot move order from {current.value} to {target.value}")
    if (
        current is OrderStatus.PENDING
        and target is OrderStatus.SHIPPED
        and payment_type is not PaymentType.CASH_ON_DELIVERY
    ):
        raise ConflictError("Only cash-on-delivery orders can ship before payment")


@dataclass(frozen=True)
class CancellationPlan:
    target: OrderStatus
    requires_refund: bool
    reason: str


def plan_cancellation(
    current: OrderStatus,
    payment_transaction_id: str | None,
    reason: str | None = None,
) -> CancellationPlan:
    """
    キャンセル要求の行き先を決める。

    - SHIPPED / DELIVERED / CANCELLED / REFUNDED は拒否
    - 支払い済み (PAID + 決済参照あり) → REFUNDED + 返金要求
    - それ以外 → CANCELLED (返金なし)
    """
    if current in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        raise ConflictError("Cannot cancel order that has been shipped or delivered")
    if current in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        raise ConflictError(f"Order is already {current.value.lower()}")

    if current is OrderStatus.PAID and payment_transaction_id:
        plan = CancellationPlan(
            OrderStatus.REFUNDED, True, "Order cancelled - refund processed"
        )
    else:
        plan = CancellationPlan(
            OrderStatus.CANCELLED, False, reason or "Cancelled by user"
        )
    ensure_transition(current, plan.target)
    return plan


def to_money(value: Decimal | float | int | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def calculate_totals(lines: list[tuple[Decimal, int]]) -> OrderTotals:
    """lines = [(単価, 数量), ...]。すべて Decimal で計算し、セント単位で丸める。"""
    if not lines:
        raise BadRequestError("Cannot check out an empty cart")
    for price, quantity in lines:
        if quantity <= 0:
            raise BadRequestError("Item quantity must be positive")
        if price < 0:
            raise BadRequestError("Item price must not be negative")

    subtotal = to_money(sum((price * qty for price, qty in lines), Decimal("0")))
    tax_amount = to_money(subtotal * TAX_RATE)
    total_amount = to_money(subtotal + SHIPPING_COST + tax_amount)
    return OrderTotals(subtotal, SHIPPING_COST, tax_amount, total_amount)
