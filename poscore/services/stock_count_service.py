import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from tortoise import timezone
from tortoise.transactions import in_transaction

from poscore.core.context import (
    CallerContext, OWNER_ONLY, POS_ROLES, ensure_same_restaurant, require_inventory_enabled, require_role,
)
from poscore.core.errors import BusinessRuleError, NotFoundError, ValidationFailed
from poscore.models.inventory import (
    InventoryItem, ReferenceType, StockCount, StockCountLine, StockCountStatus, TxnType,
)
from poscore.services.audit import record_audit
from poscore.services.inventory_service import get_branch
from poscore.services.ledger import Movement, get_on_hand_map, post_movements
from poscore.services.money import round_qty, to_decimal
from poscore.services.units import load_conversions

log = logging.getLogger(__name__)


async def create_stock_count(
    caller: CallerContext,
    branch_id: UUID,
    lines: List[Dict[str, Any]],
    notes: Optional[str] = None,
) -> StockCount:
    """
    Records counted quantities for a branch. Expected quantities are snapshotted
    from the stock cache at creation time; nothing touches the ledger until the
    count is approved.
    """
    require_role(caller, POS_ROLES)
    await require_inventory_enabled(caller.restaurant_id)

    if not branch_id or not lines:
        raise ValidationFailed("missing_fields")
    for line in lines:
        if not line.get("item_id") or not line.get("unit_id") or line.get("actual_qty") is None:
            raise ValidationFailed("missing_fields")
        if to_decimal(line["actual_qty"]) < 0:
            raise ValidationFailed("invalid_quantity")

    await get_branch(caller.restaurant_id, branch_id)
    item_ids = {str(line["item_id"]) for line in lines}
    items = await InventoryItem.filter(id__in=list(item_ids), branch_id=branch_id, restaurant_id=caller.restaurant_id)
    if len(items) != len(item_ids):
        raise ValidationFailed("invalid_item")
    item_map = {str(i.id): i for i in items}

    async with in_transaction() as conn:
        conversions = await load_conversions(caller.restaurant_id, conn)
        expected = await get_on_hand_map(branch_id, item_ids, conn)
        count = await StockCount.create(
            restaurant_id=caller.restaurant_id,
            branch_id=branch_id,
            notes=notes,
            created_by=caller.user_id,
            using_db=conn,
        )
        count_lines = []
        for line in lines:
            item = item_map[str(line["item_id"])]
            actual = conversions.item_to_base(item, line["actual_qty"], line["unit_id"])
            expected_base = round_qty(expected.get(str(item.id), Decimal("0")))
            count_lines.append(StockCountLine(
                stock_count_id=count.id,
                item_id=item.id,
                expected_base=expected_base,
                actual_base=actual,
                variance_base=round_qty(actual - expected_base),
            ))
        await StockCountLine.bulk_create(count_lines, using_db=conn)

    log.info(f"Stock count {count.id} created for branch {branch_id} with {len(count_lines)} line(s)")
    return count


async def get_stock_count(caller: CallerContext, count_id: UUID) -> StockCount:
    require_role(caller, POS_ROLES)
    count = await StockCount.get_or_none(id=count_id).prefetch_related("lines")
    if not count:
        raise NotFoundError("count_not_found")
    ensure_same_restaurant(caller, count.restaurant_id)
    return count


async def cancel_stock_count(caller: CallerContext, count_id: UUID) -> StockCount:
    require_role(caller, POS_ROLES)
    count = await StockCount.get_or_none(id=count_id)
    if not count:
        raise NotFoundError("count_not_found")
    ensure_same_restaurant(caller, count.restaurant_id)

    updated = await StockCount.filter(id=count_id, status=StockCountStatus.NEW).update(
        status=StockCountStatus.CANCELLED
    )
    if updated == 0:
        log.warning(f"Stock count {count_id} is {count.status}, cannot cancel")
        raise BusinessRuleError("count_immutable")

    await record_audit(caller.user_id, caller.restaurant_id, "stock_count", count_id, "STOCK_COUNT_CANCELLED")
    count.status = StockCountStatus.CANCELLED
    return count


async def approve_stock_count(caller: CallerContext, count_id: UUID) -> Dict[str, Any]:
    """
    Approves a NEW count: one STOCK_COUNT_ADJUSTMENT per line with non-zero
    variance, the cache updates, and the NEW -> APPROVED transition commit
    together. The conditional status update keeps a second approval from
    writing anything.
    """
    require_role(caller, OWNER_ONLY)
    await require_inventory_enabled(caller.restaurant_id)

    count = await StockCount.get_or_none(id=count_id)
    if not count:
        raise NotFoundError("count_not_found")
    ensure_same_restaurant(caller, count.restaurant_id)
    if count.status != StockCountStatus.NEW:
        raise BusinessRuleError("count_immutable")

    lines = await StockCountLine.filter(stock_count_id=count_id).prefetch_related("item")
    if not lines:
        raise ValidationFailed("no_count_lines")

    positive = Decimal("0")
    negative = Decimal("0")
    movements = []
    for line in lines:
        variance = to_decimal(line.variance_base)
        if variance == 0:
            continue
        if variance > 0:
            positive += variance
        else:
            negative += variance
        movements.append(Movement(
            restaurant_id=count.restaurant_id,
            branch_id=count.branch_id,
            item_id=line.item_id,
            txn_type=TxnType.STOCK_COUNT_ADJUSTMENT,
            qty=variance,
            unit_id=line.item.base_unit_id,
            qty_in_base=variance,
            reference_type=ReferenceType.STOCK_COUNT,
            reference_id=count.id,
            notes=f"Stock count variance: {variance}",
            created_by=caller.user_id,
        ))

    async with in_transaction() as conn:
        approved_at = timezone.now()
        updated = await StockCount.filter(id=count_id, status=StockCountStatus.NEW).using_db(conn).update(
            status=StockCountStatus.APPROVED,
            approved_by=caller.user_id,
            approved_at=approved_at,
        )
        if updated == 0:
            log.error(f"Stock count {count_id} changed status during approval")
            raise BusinessRuleError("count_immutable")
        await post_movements(movements, conn)

    summary = {
        "count_id": count.id,
        "adjustments": len(movements),
        "total_positive_variance": round_qty(positive),
        "total_negative_variance": round_qty(abs(negative)),
    }
    await record_audit(caller.user_id, caller.restaurant_id, "stock_count", count.id, "STOCK_COUNT_APPROVED", summary)
    log.info(f"Stock count {count_id} approved with {len(movements)} adjustment(s)")
    return summary
