"""
Payment Settlement Engine.

The order status change is a conditional update ("set status where status in
the payable set") and acts as the lock: exactly one concurrent request sees an
affected row. Payment rows are inserted only after it succeeds; if the insert
fails the status is put back to what it was before (compensating rollback).
Inventory deduction runs once the payment is committed and never fails it.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple
from uuid import UUID

from fastapi import status

from poscore.core.config import ALLOWED_PAYMENT_METHODS, CASH_METHOD, MONEY_TOLERANCE
from poscore.core.context import (
    CallerContext, POS_ROLES, ensure_same_restaurant, require_active_subscription, require_role,
)
from poscore.core.errors import (
    BusinessRuleError, ConflictError, NotFoundError, ServerError, ValidationFailed,
)
from poscore.models.order import Order, OrderStatus, PAYABLE_STATUSES, Payment, PaymentMethod
from poscore.services.deduction_service import deduct_for_order
from poscore.services.money import round_display, round_jod, sum_money, to_decimal

log = logging.getLogger(__name__)

Tender = Tuple[str, Decimal]  # (method, amount)


def parse_tenders(payments: Sequence[Dict[str, Any]]) -> List[Tender]:
    """Checks every tendered instrument before anything is written."""
    if not payments:
        raise ValidationFailed("missing_fields")
    tenders = []
    for p in payments:
        method = p.get("method")
        if method not in ALLOWED_PAYMENT_METHODS:
            log.error(f"Invalid payment method: {method}")
            raise ValidationFailed("invalid_payment_method", details={"method": method})
        amount = p.get("amount")
        if amount is None or isinstance(amount, bool):
            raise ValidationFailed("invalid_amount")
        # positivity is checked on the stored 3 dp amount
        amount = round_jod(amount)
        if amount <= 0:
            log.error(f"Invalid payment amount: {p.get('amount')}")
            raise ValidationFailed("invalid_amount")
        tenders.append((method, amount))
    return tenders


def check_tender_covers(tenders: List[Tender], total: Decimal) -> Dict[str, Any]:
    """
    Only all-cash payments may exceed the total; the excess is change.
    Returns the paid total, the change and the 1 dp customer-facing total.
    """
    paid_total = sum_money(amount for _, amount in tenders)
    all_cash = all(method == CASH_METHOD for method, _ in tenders)

    if not all_cash and paid_total > total + MONEY_TOLERANCE:
        log.error(f"Card overpayment not allowed: paid {paid_total}, total {total}")
        raise BusinessRuleError("card_overpayment", details={"paid_total": paid_total, "total": total})
    if paid_total < total - MONEY_TOLERANCE:
        log.error(f"Underpayment: paid {paid_total}, total {total}")
        raise BusinessRuleError("underpayment", details={"paid_total": paid_total, "total": total})

    change = round_jod(paid_total - total) if all_cash and paid_total > total else Decimal("0.000")
    return {
        "paid_total": paid_total,
        "change": change,
        "display_total": round_display(total),
    }


def allocate_payments(order_totals: Sequence[Decimal], tenders: List[Tender]) -> List[List[Tender]]:
    """
    Splits every tendered instrument across the orders in proportion to each
    order's share of the combined total. Shares are taken from the amount
    originally tendered, and the last order takes whatever is left of each
    instrument, so per-instrument allocations always sum to the tendered
    amount exactly.
    """
    combined = sum_money(order_totals)
    tendered = [round_jod(amount) for _, amount in tenders]
    remaining = list(tendered)
    allocations: List[List[Tender]] = []

    for index, order_total in enumerate(order_totals):
        order_total = round_jod(order_total)
        shares: List[Tender] = []
        if index == len(order_totals) - 1:
            shares = [(method, remaining[i]) for i, (method, _) in enumerate(tenders) if remaining[i] > 0]
        elif combined > 0:
            proportion = order_total / combined
            for i, (method, _) in enumerate(tenders):
                share = min(round_jod(tendered[i] * proportion), remaining[i])
                if share > 0:
                    shares.append((method, share))
                    remaining[i] = round_jod(remaining[i] - share)
        allocations.append(shares)
    return allocations


async def _run_deduction(order_id: UUID, user_id: str) -> None:
    try:
        await deduct_for_order(order_id, user_id)
    except Exception:
        log.exception(f"Inventory deduction failed for paid order {order_id}")


async def complete_payment(caller: CallerContext, order_id: UUID,
                           payments: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    require_role(caller, POS_ROLES)
    if not order_id:
        raise ValidationFailed("missing_fields")
    tenders = parse_tenders(payments)

    order = await Order.get_or_none(id=order_id)
    if not order:
        raise NotFoundError("order_not_found")
    log.info(f"Paying order {order_id}: status {order.status}, total {order.total}")

    # Dine-in orders are already in the kitchen (new); takeaway must still be open
    if order.is_dine_in:
        payable = PAYABLE_STATUSES
        new_status = OrderStatus.PAID
    else:
        payable = (OrderStatus.OPEN,)
        new_status = OrderStatus.NEW
    if order.status not in payable:
        log.error(f"Order {order_id} not open for payment: {order.status}")
        raise BusinessRuleError("order_not_open", status_code=status.HTTP_409_CONFLICT)

    ensure_same_restaurant(caller, order.restaurant_id)
    await require_active_subscription(order.restaurant_id)

    total = round_jod(order.total)
    summary = check_tender_covers(tenders, total)
    previous_status = order.status

    updated = await Order.filter(id=order_id, status__in=list(payable)).update(status=new_status)
    if updated == 0:
        log.error(f"Order {order_id} changed concurrently, payment rejected")
        raise ConflictError("race_condition")

    rows = [
        Payment(
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            branch_id=order.branch_id,
            method=PaymentMethod(method),
            amount=amount,
            created_by=caller.user_id,
        )
        for method, amount in tenders
    ]
    try:
        await Payment.bulk_create(rows)
    except Exception:
        log.exception(f"Failed to insert payments for order {order_id}, reverting to {previous_status}")
        await Order.filter(id=order_id).update(status=previous_status)
        raise ServerError("payment_failed")

    log.info(f"Order {order_id} moved to {new_status.value} with {len(rows)} payment(s)")
    await _run_deduction(order.id, caller.user_id)

    order.status = new_status
    return {
        "order": order,
        "payments": rows,
        "total": total,
        **summary,
    }


async def complete_table_payment(caller: CallerContext, order_ids: Sequence[UUID],
                                 payments: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Settles several orders with one set of tendered instruments. Orders are
    processed by ascending order number; a failed conditional update reverts
    every order already moved in this call before the conflict is returned.
    """
    require_role(caller, POS_ROLES)
    if not order_ids:
        raise ValidationFailed("missing_fields")
    order_ids = list(dict.fromkeys(str(o) for o in order_ids))
    tenders = parse_tenders(payments)

    orders = await Order.filter(id__in=order_ids)
    if len(orders) != len(order_ids):
        log.error(f"Table payment: requested {len(order_ids)} orders, found {len(orders)}")
        raise NotFoundError("orders_not_found")

    not_payable = [o for o in orders if o.status not in PAYABLE_STATUSES]
    if not_payable:
        raise BusinessRuleError(
            "order_not_open",
            status_code=status.HTTP_409_CONFLICT,
            details=[{"order_number": o.order_number, "status": o.status} for o in not_payable],
        )

    restaurant_ids = {str(o.restaurant_id) for o in orders}
    if len(restaurant_ids) != 1:
        raise ValidationFailed("mixed_restaurants")
    restaurant_id = orders[0].restaurant_id
    ensure_same_restaurant(caller, restaurant_id)
    await require_active_subscription(restaurant_id)

    combined_total = sum_money(o.total for o in orders)
    summary = check_tender_covers(tenders, combined_total)

    ordered = sorted(orders, key=lambda o: o.order_number)
    allocations = allocate_payments([to_decimal(o.total) for o in ordered], tenders)
    original_status = {str(o.id): o.status for o in ordered}

    moved: List[Order] = []
    rows: List[Payment] = []
    for order, shares in zip(ordered, allocations):
        updated = await Order.filter(id=order.id, status__in=list(PAYABLE_STATUSES)).update(status=OrderStatus.PAID)
        if updated == 0:
            log.error(f"Order #{order.order_number} no longer open, aborting table checkout")
            await _revert(moved, original_status)
            raise ConflictError(
                "race_condition",
                message=f"Order #{order.order_number} is no longer open for payment. Table checkout aborted.",
                details={"order_number": order.order_number},
            )
        moved.append(order)
        rows.extend(
            Payment(
                order_id=order.id,
                restaurant_id=restaurant_id,
                branch_id=order.branch_id,
                method=PaymentMethod(method),
                amount=amount,
                created_by=caller.user_id,
            )
            for method, amount in shares
        )

    if rows:
        try:
            await Payment.bulk_create(rows)
        except Exception:
            log.exception(f"Failed to insert table payments, reverting {len(moved)} order(s)")
            await _revert(moved, original_status)
            raise ServerError("payment_failed")

    log.info(f"Table payment: {len(moved)} order(s), {len(rows)} payment row(s), combined {combined_total}")
    for order in moved:
        await _run_deduction(order.id, caller.user_id)
        order.status = OrderStatus.PAID

    return {
        "orders": moved,
        "payments": rows,
        "combined_total": combined_total,
        **summary,
    }


async def _revert(orders: List[Order], original_status: Dict[str, OrderStatus]) -> None:
    for order in orders:
        await Order.filter(id=order.id).update(status=original_status.get(str(order.id), OrderStatus.OPEN))
