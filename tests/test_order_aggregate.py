from decimal import Decimal

import pytest

from services.common.errors import BadRequestError, ConflictError
from services.order.app.aggregate import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    OrderStatus,
    PaymentType,
    calculate_totals,
    ensure_transition,
    plan_cancellation,
)

S = OrderStatus

LEGAL_EDGES = {
    (S.PENDING, S.PAID),
    (S.PAID, S.SHIPPED),
    (S.SHIPPED, S.DELIVERED),
    (S.PENDING, S.CANCELLED),
    (S.PAID, S.CANCELLED),
    (S.PAID, S.REFUNDED),
}


@pytest.mark.parametrize("current", list(S))
@pytest.mark.parametrize("target", list(S))
def test_only_documented_edges_are_allowed(current, target):
    if (current, target) in LEGAL_EDGES:
        ensure_transition(current, target)
    elif (current, target) == (S.PENDING, S.SHIPPED):
        with pytest.raises(ConflictError):
            ensure_transition(current, target, PaymentType.PAY_NOW)
        ensure_transition(current, target, PaymentType.CASH_ON_DELIVERY)
    else:
        with pytest.raises(ConflictError):
            ensure_transition(current, target)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {S.DELIVERED, S.CANCELLED, S.REFUNDED}
    assert all(not ALLOWED_TRANSITIONS[s] for s in TERMINAL_STATUSES)


def test_cancel_pending_order_without_payment():
    plan = plan_cancellation(S.PENDING, None, "changed my mind")

    assert plan.target is S.CANCELLED
    assert plan.requires_refund is False
    assert plan.reason == "changed my mind"


def test_cancel_paid_order_with_payment_reference_refunds():
    plan = plan_cancellation(S.PAID, "txn-1")

    assert plan.target is S.REFUNDED
    assert plan.requires_refund is True


def test_cancel_paid_order_without_payment_reference_just_cancels():
    plan = plan_cancellation(S.PAID, None)

    assert plan.target is S.CANCELLED
    assert plan.requires_refund is False
    assert plan.reason == "Cancelled by user"


@pytest.mark.parametrize("status", [S.SHIPPED, S.DELIVERED, S.CANCELLED, S.REFUNDED])
def test_cancel_rejected_after_fulfilment_or_termination(status):
    with pytest.raises(ConflictError):
        plan_cancellation(status, "txn-1")


def test_totals_for_two_line_cart():
    totals = calculate_totals([(Decimal("10.00"), 2), (Decimal("15.00"), 1)])

    assert totals.subtotal == Decimal("35.00")
    assert totals.shipping_cost == Decimal("5.99")
    assert totals.tax_amount == Decimal("2.80")
    assert totals.total_amount == Decimal("43.79")


def test_subtotal_rounds_half_up_to_cents():
    totals = calculate_totals([(Decimal("0.3125"), 2)])

    assert totals.subtotal == Decimal("0.63")
    assert totals.tax_amount == Decimal("0.05")
    assert totals.total_amount == Decimal("6.67")


@pytest.mark.parametrize(
    "lines",
    [[], [(Decimal("1.00"), 0)], [(Decimal("-1.00"), 1)]],
)
def test_totals_reject_invalid_carts(lines):
    with pytest.raises(BadRequestError):
        calculate_totals(lines)
