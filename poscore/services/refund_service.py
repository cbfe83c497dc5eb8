import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from tortoise.transactions import in_transaction

from poscore.core.config import MONEY_TOLERANCE
from poscore.core.context import (
    CallerContext, POS_ROLES, ensure_same_restaurant, require_active_subscription, require_role,
)
from poscore.core.errors import BusinessRuleError, NotFoundError, ServerError, ValidationFailed
from poscore.models.order import Order, OrderStatus, REFUNDABLE_STATUSES, Refund, RefundType
from poscore.services.audit import record_audit
from poscore.services.deduction_service import restore_for_refund
from poscore.services.money import round_jod, sum_money

log = logging.getLogger(__name__)


async def create_refund(
    caller: CallerContext,
    order_id: UUID,
    amount,
    refund_type: str,
    reason: str,
    branch_id: Optional[UUID] = None,
) -> Dict[str, Any]:
    """
    Records a refund against a paid order. The running refunded total never
    exceeds the order total (within MONEY_TOLERANCE); the order row is locked
    while the bound is checked so concurrent refunds see each other.

    A full refund, or one that brings the total up to the order total, also
    restores the ingredients deducted for the sale. Restoration is best-effort
    and never fails the refund.
    """
    require_role(caller, POS_ROLES)
    if not order_id or amount is None or not refund_type or not (reason or "").strip():
        raise ValidationFailed("missing_fields")
    if isinstance(amount, bool) or round_jod(amount) <= 0:
        raise ValidationFailed("invalid_amount")
    try:
        refund_type = RefundType(refund_type)
    except ValueError:
        log.error(f"Invalid refund type: {refund_type}")
        raise ValidationFailed("invalid_refund_type")

    order = await Order.get_or_none(id=order_id)
    if not order:
        raise NotFoundError("order_not_found")
    if order.status not in REFUNDABLE_STATUSES:
        log.error(f"Order {order_id} not refundable: {order.status}")
        raise BusinessRuleError(
            "order_not_refundable",
            message=f"Cannot refund order with status '{order.status.value}'. Only paid orders can be refunded.",
        )
    ensure_same_restaurant(caller, order.restaurant_id)
    await require_active_subscription(order.restaurant_id)

    refund_amount = round_jod(amount)
    async with in_transaction() as conn:
        order = await Order.filter(id=order_id).using_db(conn).select_for_update().first()
        previous = await Refund.filter(order_id=order_id).using_db(conn).values_list("amount", flat=True)
        order_total = round_jod(order.total)
        total_refunded = sum_money(previous)
        max_refundable = round_jod(order_total - total_refunded)
        log.info(f"Refund on order {order_id}: total {order_total}, refunded {total_refunded}, "
                 f"requested {refund_amount}")

        if refund_amount > max_refundable + MONEY_TOLERANCE:
            log.error(f"Refund {refund_amount} exceeds refundable {max_refundable} for order {order_id}")
            raise BusinessRuleError(
                "refund_exceeds_available",
                message=f"Cannot refund {refund_amount}. Maximum refundable: {max_refundable}. "
                        f"Already refunded: {total_refunded}",
                details={"max_refundable": max_refundable, "total_refunded": total_refunded},
            )

        try:
            refund = await Refund.create(
                order_id=order.id,
                restaurant_id=order.restaurant_id,
                branch_id=branch_id or order.branch_id,
                amount=refund_amount,
                refund_type=refund_type,
                reason=reason.strip(),
                created_by=caller.user_id,
                using_db=conn,
            )
        except Exception:
            log.exception(f"Failed to insert refund for order {order_id}")
            raise ServerError("refund_failed")

        new_total_refunded = round_jod(total_refunded + refund_amount)
        fully_refunded = new_total_refunded >= order_total - MONEY_TOLERANCE
        if fully_refunded and order.status != OrderStatus.REFUNDED:
            await Order.filter(id=order.id).using_db(conn).update(status=OrderStatus.REFUNDED)
            order.status = OrderStatus.REFUNDED
            log.info(f"Order {order_id} fully refunded")

    restored = 0
    if refund_type == RefundType.FULL or fully_refunded:
        try:
            restored = await restore_for_refund(order.id, refund.id, caller.user_id)
        except Exception:
            log.exception(f"Inventory restoration failed for refund {refund.id} on order {order_id}")

    await record_audit(
        caller.user_id, order.restaurant_id, "refund", refund.id, "REFUND_CREATED",
        {
            "order_id": order.id,
            "amount": refund_amount,
            "refund_type": refund_type.value,
            "reason": refund.reason,
            "fully_refunded": fully_refunded,
        },
    )

    return {
        "refund": refund,
        "total_refunded": new_total_refunded,
        "remaining_refundable": max(round_jod(order_total - new_total_refunded), Decimal("0.000")),
        "is_fully_refunded": fully_refunded,
        "restored_items": restored,
    }
