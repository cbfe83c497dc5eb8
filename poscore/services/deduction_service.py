"""
Recipe-Driven Deduction Engine.

Runs after a payment has committed. Ordered menu quantities are expanded through
the active recipes into base-unit ingredient requirements, deducted from the
order's branch as SALE_DEDUCTION entries, and costed back onto the order lines.
Going below zero never blocks a sale; it is reported as a warning.

A full refund runs the same thing in reverse (REFUND_RESTORATION). Both effects
are guarded by a ProcessedEvent marker written in their own transaction, so a
repeat call for the same order is a no-op.
"""
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from tortoise.transactions import in_transaction

from poscore.core.config import AUDIT_WARNINGS_LIMIT
from poscore.core.context import CallerContext, POS_ROLES, ensure_same_restaurant, require_role
from poscore.core.errors import NotFoundError
from poscore.models.inventory import InventoryItem, Recipe, ReferenceType, StockLedgerEntry, TxnType
from poscore.models.order import Order, OrderItem, Payment
from poscore.models.processed_event import ProcessedEvent
from poscore.models.restaurant import Restaurant
from poscore.services.audit import record_audit
from poscore.services.ledger import Movement, get_on_hand_map, post_movements
from poscore.services.money import round_jod, round_qty, to_decimal

log = logging.getLogger(__name__)


def sale_deduction_key(order_id) -> str:
    return f"sale-deduction:{order_id}"


def refund_restoration_key(order_id) -> str:
    return f"refund-restoration:{order_id}"


def _empty_result(skipped: Optional[str] = None) -> Dict[str, Any]:
    return {"deducted_count": 0, "warnings": [], "skipped": skipped}


async def deduct_for_order(order_id: UUID, user_id: Optional[str] = None) -> Dict[str, Any]:
    order = await Order.get_or_none(id=order_id)
    if not order:
        raise NotFoundError("order_not_found")

    restaurant = await Restaurant.get(id=order.restaurant_id)
    if not restaurant.inventory_enabled:
        log.info(f"Inventory disabled for restaurant {order.restaurant_id}, skipping deduction")
        return _empty_result("inventory_disabled")
    if not order.branch_id:
        log.info(f"Order {order_id} has no branch, skipping deduction")
        return _empty_result("no_branch")
    if not await Payment.filter(order_id=order_id).exists():
        log.info(f"Order {order_id} has no payments, skipping deduction")
        return _empty_result("not_paid")
    if await ProcessedEvent.filter(event_id=sale_deduction_key(order_id)).exists():
        log.info(f"Order {order_id} already deducted")
        return _empty_result("already_processed")

    # 1. ordered quantity per menu item
    order_items = await OrderItem.filter(order_id=order_id, voided=False, menu_item_id__isnull=False)
    ordered: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    for line in order_items:
        ordered[str(line.menu_item_id)] += to_decimal(line.quantity)
    if not ordered:
        return _empty_result("no_items")

    # 2. expand through active recipes
    recipes = await Recipe.filter(
        restaurant_id=order.restaurant_id, menu_item_id__in=list(ordered), is_active=True
    ).prefetch_related("lines")
    required: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    for recipe in recipes:
        for line in recipe.lines:
            required[str(line.inventory_item_id)] += to_decimal(line.qty_in_base) * ordered[str(recipe.menu_item_id)]
    if not required:
        log.info(f"No active recipes for order {order_id}")
        return _empty_result("no_recipes")

    items = await InventoryItem.filter(id__in=list(required))
    item_map = {str(i.id): i for i in items}

    warnings: List[Dict[str, Any]] = []
    async with in_transaction() as conn:
        if await ProcessedEvent.filter(event_id=sale_deduction_key(order_id)).using_db(conn).exists():
            return _empty_result("already_processed")
        await ProcessedEvent.create(event_id=sale_deduction_key(order_id), using_db=conn)

        # 3. current stock and non-blocking warnings
        stock = await get_on_hand_map(order.branch_id, required.keys(), conn, for_update=True)
        movements = []
        for item_id, needed in required.items():
            needed = round_qty(needed)
            current = stock.get(item_id, Decimal("0"))
            new_on_hand = current - needed
            item = item_map.get(item_id)
            if new_on_hand < 0:
                warnings.append({
                    "inventory_item_id": item_id,
                    "name": item.name if item else "Unknown",
                    "current_on_hand": current,
                    "required": needed,
                    "new_on_hand": new_on_hand,
                })
            # 4. one negative entry per ingredient
            movements.append(Movement(
                restaurant_id=order.restaurant_id,
                branch_id=order.branch_id,
                item_id=item_id,
                txn_type=TxnType.SALE_DEDUCTION,
                qty=-needed,
                unit_id=item.base_unit_id if item else None,
                qty_in_base=-needed,
                reference_type=ReferenceType.ORDER,
                reference_id=order.id,
                notes="Auto deduction on payment",
                created_by=user_id,
            ))
        await post_movements(movements, conn)

    if warnings:
        log.warning(f"Order {order_id} drove {len(warnings)} item(s) below zero")

    # 5. COGS write-back happens after commit and never fails the deduction
    try:
        await write_cogs(order_items, recipes, item_map)
    except Exception:
        log.exception(f"COGS write-back failed for order {order_id}")

    # 6. audit
    await record_audit(
        user_id, order.restaurant_id, "order", order.id, "INVENTORY_SALE_DEDUCTION_DONE",
        {"order_id": order.id, "items_deducted": len(movements), "total_ingredients": len(required)},
    )
    if warnings:
        await record_audit(
            user_id, order.restaurant_id, "order", order.id, "INVENTORY_NEGATIVE_AFTER_SALE",
            {"order_id": order.id, "warnings": warnings[:AUDIT_WARNINGS_LIMIT]},
        )

    log.info(f"Deducted {len(movements)} ingredient(s) for order {order_id}")
    return {"deducted_count": len(movements), "warnings": warnings, "skipped": None}


async def write_cogs(order_items: List[OrderItem], recipes: List[Recipe],
                     item_map: Dict[str, InventoryItem]) -> None:
    """Sets cogs and profit on every order line whose menu item has an active recipe."""
    cogs_per_unit: Dict[str, Decimal] = {}
    for recipe in recipes:
        total = Decimal("0")
        for line in recipe.lines:
            item = item_map.get(str(line.inventory_item_id))
            if item:
                total += to_decimal(line.qty_in_base) * to_decimal(item.avg_cost)
        cogs_per_unit[str(recipe.menu_item_id)] = total

    for line in order_items:
        per_unit = cogs_per_unit.get(str(line.menu_item_id))
        if per_unit is None:
            continue
        line.cogs = round_jod(per_unit * to_decimal(line.quantity))
        line.profit = round_jod(to_decimal(line.line_total) - line.cogs)
        await line.save(update_fields=['cogs', 'profit'])


async def restore_for_refund(order_id: UUID, refund_id: UUID, user_id: Optional[str] = None) -> int:
    """
    Mirrors every SALE_DEDUCTION of the order with a REFUND_RESTORATION of the
    same absolute quantity, referencing the refund. Returns the entries written.
    """
    order = await Order.get_or_none(id=order_id)
    if not order:
        raise NotFoundError("order_not_found")
    restaurant = await Restaurant.get(id=order.restaurant_id)
    if not restaurant.inventory_enabled:
        return 0

    async with in_transaction() as conn:
        if await ProcessedEvent.filter(event_id=refund_restoration_key(order_id)).using_db(conn).exists():
            log.info(f"Inventory for order {order_id} already restored")
            return 0
        deductions = await StockLedgerEntry.filter(
            reference_type=ReferenceType.ORDER,
            reference_id=order_id,
            txn_type=TxnType.SALE_DEDUCTION,
        ).using_db(conn)
        if not deductions:
            return 0
        await ProcessedEvent.create(event_id=refund_restoration_key(order_id), using_db=conn)

        await post_movements([
            Movement(
                restaurant_id=entry.restaurant_id,
                branch_id=entry.branch_id,
                item_id=entry.item_id,
                txn_type=TxnType.REFUND_RESTORATION,
                qty=abs(to_decimal(entry.qty)),
                unit_id=entry.unit_id,
                qty_in_base=abs(to_decimal(entry.qty_in_base)),
                reference_type=ReferenceType.REFUND,
                reference_id=refund_id,
                notes="Inventory restored on refund",
                created_by=user_id,
            )
            for entry in deductions
        ], conn)

    await record_audit(
        user_id, order.restaurant_id, "refund", refund_id, "INVENTORY_REFUND_RESTORATION",
        {"order_id": order_id, "items_restored": len(deductions)},
    )
    log.info(f"Restored {len(deductions)} ingredient(s) for refund {refund_id}")
    return len(deductions)


async def deduct_order_inventory(caller: CallerContext, order_id: UUID) -> Dict[str, Any]:
    """Standalone trigger for orders settled outside the payment endpoints."""
    require_role(caller, POS_ROLES)
    order = await Order.get_or_none(id=order_id)
    if not order:
        raise NotFoundError("order_not_found")
    ensure_same_restaurant(caller, order.restaurant_id)
    return await deduct_for_order(order_id, caller.user_id)
