"""
Order Service — コマンドハンドラ (書き込み側)

すべての状態遷移は1つのローカルトランザクション内で
  1. orders.current_status を更新
  2. order_status_history に1行追記
を行う。ステータス列と監査ログは決してずれない。

イベントはコミット後に発行する(fire-and-forget)。
2xx レスポンスが保証するのはローカルコミットだけで、
他サービスが反応したことまでは保証しない。
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import BadRequestError, ConflictError, NotFoundError
from services.common.events import (
    EventType,
    OrderCancelled,
    OrderCompleted,
    OrderDelivered,
    OrderItemSnapshot,
    OrderPaid,
    OrderPlaced,
    OrderRefundRequested,
    OrderShipped,
    PaymentProcessed,
)
from services.common.publisher import EventPublisher

from .aggregate import (
    OrderStatus,
    PaymentType,
    calculate_totals,
    ensure_transition,
    plan_cancellation,
)
from .schema import order_items, order_status_history, orders

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── 共通ヘルパー ─────────────────────────────────


async def _load_order(
    session: AsyncSession, order_id: str, user_id: str | None = None
) -> Row | None:
    stmt = select(orders).where(orders.c.id == order_id).with_for_update()
    if user_id is not None:
        stmt = stmt.where(orders.c.user_id == user_id)
    return (await session.execute(stmt)).first()


async def _load_items(session: AsyncSession, order_id: str) -> list[OrderItemSnapshot]:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.id)
    )
    return [
        OrderItemSnapshot(
            product_id=row.product_id,
            product_name=row.product_name,
            product_sku=row.product_sku,
            quantity=row.quantity,
            unit_price=row.unit_price_at_purchase,
        )
        for row in result.fetchall()
    ]


async def _append_history(
    session: AsyncSession,
    order_id: str,
    status: OrderStatus,
    reason: str,
    now: datetime,
) -> None:
    await session.execute(
        insert(order_status_history).values(
            order_id=order_id, status=status.value, reason=reason, timestamp=now
        )
    )


async def _apply_transition(
    session: AsyncSession,
    order: Row,
    target: OrderStatus,
    reason: str,
    **changes: Any,
) -> None:
    """
    条件付き UPDATE で遷移させ、同じトランザクションで履歴を追記する。
    読み取り後に他のリクエストが割り込んで状態を変えていたら ConflictError。
    """
    now = _now()
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order.id,
            orders.c.current_status == order.current_status,
        )
        .values(current_status=target.value, updated_at=now, **changes)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Order {order.id} was modified concurrently")
    await _append_history(session, order.id, target, reason, now)


# ── チェックアウト ───────────────────────────────


async def place_order(
    session: AsyncSession,
    publisher: EventPublisher,
    user_id: str,
    email: str,
    payment_type: PaymentType,
    shipping_address: dict[str, Any],
    items: list[OrderItemSnapshot],
) -> dict:
    """
    注文作成コマンド

    1. 金額を計算 (Decimal)
    2. 注文・明細スナップショット・履歴(PENDING)を1トランザクションで保存
    3. ORDER_PLACED を発行 (在庫・カート・決済・配送サービスが反応する)

    代金引換は作成時点で awaiting_delivery = True。
    即時決済は PAYMENT_PROCESSED を受けてから True になる。
    """
    totals = calculate_totals([(item.unit_price, item.quantity) for item in items])
    order_id = str(uuid4())
    now = _now()
    status = OrderStatus.PENDING

    async with session.begin():
        await session.execute(
            insert(orders).values(
                id=order_id,
                user_id=user_id,
                subtotal=totals.subtotal,
                shipping_cost=totals.shipping_cost,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
                current_status=status.value,
                payment_type=payment_type.value,
                awaiting_delivery=payment_type is PaymentType.CASH_ON_DELIVERY,
                payment_transaction_id=None,
                shipping_address=shipping_address,
                email=email,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order_id,
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "product_sku": item.product_sku,
                    "quantity": item.quantity,
                    "unit_price_at_purchase": item.unit_price,
                }
                for item in items
            ],
        )
        await _append_history(
            session, order_id, status, f"Order created ({payment_type.value})", now
        )

    await publisher.publish(
        EventType.ORDER_PLACED,
        OrderPlaced(
            order_id=order_id,
            status=status.value,
            user_id=user_id,
            payment_type=payment_type.value,
            items=items,
            subtotal=totals.subtotal,
            shipping_cost=totals.shipping_cost,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            shipping_address=shipping_address,
            email=email,
        ),
    )

    return {
        "order_id": order_id,
        "status": status.value,
        "payment_type": payment_type.value,
        "awaiting_delivery": payment_type is PaymentType.CASH_ON_DELIVERY,
        "order_summary": {
            "items": len(items),
            "subtotal": str(totals.subtotal),
            "shipping": str(totals.shipping_cost),
            "tax": str(totals.tax_amount),
            "total": str(totals.total_amount),
        },
    }


# ── キャンセル ───────────────────────────────────


async def cancel_order(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: str,
    user_id: str,
    reason: str | None = None,
) -> dict:
    """
    注文キャンセルコマンド

    PENDING            → CANCELLED (返金なし)
    PAID + 決済参照あり → REFUNDED  (ORDER_REFUND_REQUESTED も発行)
    それ以外            → ConflictError、状態は変わらない
    """
    async with session.begin():
        order = await _load_order(session, order_id, user_id)
        if order is None:
            raise NotFoundError("Order not found")

        previous = OrderStatus(order.current_status)
        plan = plan_cancellation(previous, order.payment_transaction_id, reason)
        items = await _load_items(session, order_id)
        await _apply_transition(
            session, order, plan.target, plan.reason, awaiting_delivery=False
        )

    if plan.requires_refund:
        await publisher.publish(
            EventType.ORDER_REFUND_REQUESTED,
            OrderRefundRequested(
                order_id=order_id,
                payment_transaction_id=order.payment_transaction_id,
                amount=order.total_amount,
                email=order.email,
            ),
        )

    await publisher.publish(
        EventType.ORDER_CANCELLED,
        OrderCancelled(
            order_id=order_id,
            status=plan.target.value,
            requires_refund=plan.requires_refund,
            previous_status=previous.value,
            items=items,
            user_id=user_id,
            reason=reason,
            email=order.email,
        ),
    )

    return {
        "order_id": order_id,
        "cancellation_type": plan.target.value,
        "refund_initiated": plan.requires_refund,
    }


# ── 他サービスからのイベントによる遷移 ────────────
#
# イベントの内容は検証のために呼び返さず、そのまま信頼する。
# 同じイベントが2回届いても結果が変わらないよう、適用済みなら何もしない。


async def record_payment(
    session: AsyncSession, publisher: EventPublisher, data: PaymentProcessed
) -> bool:
    """PAYMENT_PROCESSED: PENDING → PAID。適用したら True。"""
    refund_needed = False
    async with session.begin():
        order = await _load_order(session, data.order_id, data.user_id)
        if order is None:
            raise NotFoundError(f"Order with ID {data.order_id} not found")

        current = OrderStatus(order.current_status)
        if order.payment_transaction_id == data.payment_transaction_id:
            logger.info("Payment %s already recorded for order %s",
                        data.payment_transaction_id, data.order_id)
            return False

        if current is OrderStatus.CANCELLED:
            # 支払いより先にキャンセルが確定していた: 状態は変えず返金だけ要求する
            logger.warning("Payment %s arrived for cancelled order %s; requesting refund",
                           data.payment_transaction_id, data.order_id)
            refund_needed = True
        else:
            ensure_transition(current, OrderStatus.PAID)
            await _apply_transition(
                session,
                order,
                OrderStatus.PAID,
                f"Payment confirmed ({data.payment_transaction_id})",
                payment_transaction_id=data.payment_transaction_id,
                awaiting_delivery=True,
            )

    if refund_needed:
        await publisher.publish(
            EventType.ORDER_REFUND_REQUESTED,
            OrderRefundRequested(
                order_id=order.id,
                payment_transaction_id=data.payment_transaction_id,
                amount=order.total_amount,
                reason="Payment received after cancellation",
                email=order.email,
            ),
        )
        return False

    await publisher.publish(
        EventType.ORDER_PAID,
        OrderPaid(
            order_id=order.id,
            user_id=order.user_id,
            payment_transaction_id=data.payment_transaction_id,
            shipping_address=order.shipping_address or {},
            email=order.email,
        ),
    )
    return True


async def record_shipment(session: AsyncSession, data: OrderShipped) -> bool:
    """ORDER_SHIPPED: PAID → SHIPPED (代金引換は PENDING → SHIPPED)。"""
    async with session.begin():
        order = await _load_order(session, data.order_id, data.user_id)
        if order is None:
            raise NotFoundError(f"Order with ID {data.order_id} not found")

        current = OrderStatus(order.current_status)
        if current in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            logger.info("Order %s already shipped", data.order_id)
            return False

        ensure_transition(current, OrderStatus.SHIPPED, PaymentType(order.payment_type))
        await _apply_transition(
            session,
            order,
            OrderStatus.SHIPPED,
            f"Shipped with tracking number {data.tracking_number}",
            tracking_number=data.tracking_number,
        )
    return True


async def record_delivery(
    session: AsyncSession, publisher: EventPublisher, data: OrderDelivered
) -> bool:
    """ORDER_DELIVERED: SHIPPED → DELIVERED。完了後に ORDER_COMPLETED を発行する。"""
    async with session.begin():
        order = await _load_order(session, data.order_id, data.user_id)
        if order is None:
            raise NotFoundError(f"Order with ID {data.order_id} not found")

        current = OrderStatus(order.current_status)
        if current is OrderStatus.DELIVERED:
            logger.info("Order %s already delivered", data.order_id)
            return False

        ensure_transition(current, OrderStatus.DELIVERED)
        await _apply_transition(
            session,
            order,
            OrderStatus.DELIVERED,
            f"Delivered ({data.tracking_number})",
            awaiting_delivery=False,
        )

    await publisher.publish(
        EventType.ORDER_COMPLETED,
        OrderCompleted(order_id=order.id, user_id=order.user_id),
    )
    return True


async def change_status(
    session: AsyncSession, order_id: str, status: OrderStatus, reason: str | None = None
) -> dict:
    """
    内部用のステータス更新。許可された遷移のみ受け付ける。
    キャンセル系は返金判定が必要なので cancel_order を使う。
    """
    if status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        raise BadRequestError("Use the cancel endpoint to cancel an order")
    async with session.begin():
        order = await _load_order(session, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        current = OrderStatus(order.current_status)
        ensure_transition(current, status, PaymentType(order.payment_type))
        await _apply_transition(
            session, order, status, reason or "Status updated via webhook"
        )
    return {"order_id": order_id, "previous_status": current.value, "new_status": status.value}
