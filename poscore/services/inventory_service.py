"""
Inventory Mutation Engine: single-item adjustments, purchase receipts and
branch-to-branch transfers, plus the read endpoints over the ledger and cache.
Stock counts and CSV import live in their own modules.
"""
import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from tortoise import timezone
from tortoise.transactions import in_transaction

from poscore.core.context import (
    CallerContext, OWNER_ONLY, POS_ROLES, require_inventory_enabled, require_role,
)
from poscore.core.errors import BusinessRuleError, NotFoundError, ValidationFailed
from poscore.models.inventory import (
    InventoryItem, OUTBOUND_TYPES, PurchaseReceipt, PurchaseReceiptLine, ReferenceType,
    StockLedgerEntry, StockLevel, StockTransfer, Supplier, TxnType,
)
from poscore.models.restaurant import Branch
from poscore.services.audit import record_audit
from poscore.services.ledger import (
    Movement, append_entries, apply_to_cache, get_on_hand, get_on_hand_map, reconcile_stock_levels,
)
from poscore.services.money import round_jod, round_qty, to_decimal
from poscore.services.units import load_conversions, to_base

log = logging.getLogger(__name__)

ADJUSTMENT_TYPES = (TxnType.ADJUSTMENT_IN, TxnType.ADJUSTMENT_OUT, TxnType.WASTE, TxnType.INITIAL_STOCK)


async def get_branch(restaurant_id: UUID, branch_id: UUID) -> Branch:
    branch = await Branch.get_or_none(id=branch_id, restaurant_id=restaurant_id)
    if not branch:
        raise ValidationFailed("invalid_branch")
    return branch


def signed(txn_type: TxnType, qty: Decimal) -> Decimal:
    return -qty if txn_type in OUTBOUND_TYPES else qty


def moving_average_cost(old_qty: Decimal, old_avg: Decimal, received_qty: Decimal, unit_cost: Decimal) -> Decimal:
    """Weighted average per base unit. No stock on hand means the new cost stands alone."""
    if old_qty <= 0:
        return unit_cost
    return (old_qty * old_avg + received_qty * unit_cost) / (old_qty + received_qty)


async def adjust_stock(
    caller: CallerContext,
    item_id: UUID,
    branch_id: UUID,
    txn_type: str,
    qty,
    unit_id: UUID,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """ADJUSTMENT_IN / ADJUSTMENT_OUT / WASTE / INITIAL_STOCK for one item."""
    require_role(caller, POS_ROLES)
    await require_inventory_enabled(caller.restaurant_id)

    if not item_id or not branch_id or not txn_type or qty is None or not unit_id:
        raise ValidationFailed("missing_fields")
    try:
        txn_type = TxnType(txn_type)
    except ValueError:
        raise ValidationFailed("invalid_txn_type")
    if txn_type not in ADJUSTMENT_TYPES:
        raise ValidationFailed("invalid_txn_type")
    qty = to_decimal(qty)
    if qty <= 0:
        raise ValidationFailed("invalid_quantity")

    await get_branch(caller.restaurant_id, branch_id)
    item = await InventoryItem.get_or_none(id=item_id, branch_id=branch_id, restaurant_id=caller.restaurant_id)
    if not item:
        raise ValidationFailed("invalid_item")

    async with in_transaction() as conn:
        qty_in_base = await to_base(item, qty, unit_id, conn)
        signed_qty = signed(txn_type, qty)
        signed_base = signed(txn_type, qty_in_base)

        current = await get_on_hand(branch_id, item_id, conn, for_update=True)
        if signed_base < 0 and current + signed_base < 0:
            log.warning(f"Insufficient stock for item {item_id}: current {current}, requested {qty_in_base}")
            raise BusinessRuleError(
                "insufficient_stock",
                message=f"Insufficient stock. Current: {current}, Requested: {qty_in_base}",
                details={"current": current, "requested": qty_in_base},
            )

        [entry] = await append_entries([Movement(
            restaurant_id=caller.restaurant_id,
            branch_id=branch_id,
            item_id=item_id,
            txn_type=txn_type,
            qty=signed_qty,
            unit_id=unit_id,
            qty_in_base=signed_base,
            notes=notes,
            created_by=caller.user_id,
        )], conn)
        new_on_hand = await apply_to_cache(caller.restaurant_id, branch_id, item_id, signed_base, conn)

    await record_audit(
        caller.user_id, caller.restaurant_id, "inventory_transaction", entry.id, f"INVENTORY_{txn_type.value}",
        {
            "item_id": item_id,
            "item_name": item.name,
            "branch_id": branch_id,
            "qty": signed_qty,
            "qty_in_base": signed_base,
            "new_on_hand": new_on_hand,
            "notes": notes,
        },
    )
    log.info(f"{txn_type.value} for item {item_id}, qty_in_base {signed_base}, on hand {new_on_hand}")
    return {"transaction": entry, "new_on_hand": new_on_hand}


async def post_purchase_receipt(
    caller: CallerContext,
    branch_id: UUID,
    receipt_no: str,
    lines: List[Dict[str, Any]],
    supplier_id: Optional[UUID] = None,
    received_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Posts a purchase receipt. Header, lines, ledger rows, cache rows and the
    moving-average cost of every received item commit in one transaction.
    """
    require_role(caller, POS_ROLES)
    await require_inventory_enabled(caller.restaurant_id)

    if not branch_id or not receipt_no or not lines:
        raise ValidationFailed("missing_fields")
    for line in lines:
        if not line.get("item_id") or not line.get("unit_id") or line.get("qty") is None:
            raise ValidationFailed("missing_fields")
        if to_decimal(line["qty"]) <= 0:
            raise ValidationFailed("invalid_quantity")
        if line.get("unit_cost") is not None and to_decimal(line["unit_cost"]) < 0:
            raise ValidationFailed("invalid_amount")

    await get_branch(caller.restaurant_id, branch_id)
    if supplier_id and not await Supplier.filter(id=supplier_id, restaurant_id=caller.restaurant_id).exists():
        raise ValidationFailed("invalid_supplier")

    item_ids = {str(line["item_id"]) for line in lines}
    items = await InventoryItem.filter(id__in=list(item_ids), branch_id=branch_id, restaurant_id=caller.restaurant_id)
    if len(items) != len(item_ids):
        raise ValidationFailed("invalid_item")
    item_map = {str(i.id): i for i in items}

    async with in_transaction() as conn:
        conversions = await load_conversions(caller.restaurant_id, conn)
        receipt = await PurchaseReceipt.create(
            restaurant_id=caller.restaurant_id,
            branch_id=branch_id,
            supplier_id=supplier_id,
            receipt_no=receipt_no,
            received_at=received_at or timezone.now(),
            notes=notes,
            created_by=caller.user_id,
            using_db=conn,
        )

        receipt_total = Decimal("0")
        posted = []
        for line in lines:
            item = item_map[str(line["item_id"])]
            qty = to_decimal(line["qty"])
            qty_in_base = conversions.item_to_base(item, qty, line["unit_id"])
            unit_cost = to_decimal(line["unit_cost"]) if line.get("unit_cost") is not None else None
            line_total = round_jod(qty_in_base * unit_cost) if unit_cost is not None else Decimal("0")
            receipt_total += line_total

            await PurchaseReceiptLine.create(
                receipt=receipt,
                item_id=item.id,
                qty=round_qty(qty),
                unit_id=line["unit_id"],
                qty_in_base=qty_in_base,
                unit_cost=unit_cost,
                total_cost=line_total,
                using_db=conn,
            )

            old_qty = await get_on_hand(branch_id, item.id, conn, for_update=True)
            await append_entries([Movement(
                restaurant_id=caller.restaurant_id,
                branch_id=branch_id,
                item_id=item.id,
                txn_type=TxnType.PURCHASE_RECEIPT,
                qty=qty,
                unit_id=line["unit_id"],
                qty_in_base=qty_in_base,
                reference_type=ReferenceType.PURCHASE_RECEIPT,
                reference_id=receipt.id,
                notes=f"Receipt #{receipt_no}",
                created_by=caller.user_id,
            )], conn)
            new_on_hand = await apply_to_cache(caller.restaurant_id, branch_id, item.id, qty_in_base, conn)

            if unit_cost is not None:
                item.avg_cost = round_qty(moving_average_cost(
                    old_qty, to_decimal(item.avg_cost), qty_in_base, unit_cost
                ))
                await item.save(update_fields=['avg_cost'], using_db=conn)

            posted.append({
                "item_id": item.id,
                "qty_in_base": qty_in_base,
                "total_cost": line_total,
                "new_on_hand": new_on_hand,
                "avg_cost": to_decimal(item.avg_cost),
            })

        receipt.total_cost = round_jod(receipt_total)
        await receipt.save(update_fields=['total_cost'], using_db=conn)

    await record_audit(
        caller.user_id, caller.restaurant_id, "purchase_receipt", receipt.id, "PURCHASE_RECEIPT_POSTED",
        {"receipt_no": receipt_no, "branch_id": branch_id, "lines_count": len(posted), "total_cost": receipt.total_cost},
    )
    log.info(f"Purchase receipt {receipt_no} posted with {len(posted)} line(s), total {receipt.total_cost}")
    return {"receipt_id": receipt.id, "total_cost": receipt.total_cost, "lines": posted}


async def transfer_stock(
    caller: CallerContext,
    from_branch_id: UUID,
    to_branch_id: UUID,
    lines: List[Dict[str, Any]],
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Moves stock between two branches of the same restaurant. Every line is
    checked against source stock before anything is written; the mirrored
    TRANSFER_OUT / TRANSFER_IN pairs then commit together.
    """
    require_role(caller, OWNER_ONLY)
    await require_inventory_enabled(caller.restaurant_id)

    if not from_branch_id or not to_branch_id or not lines:
        raise ValidationFailed("missing_fields")
    if str(from_branch_id) == str(to_branch_id):
        raise ValidationFailed("same_branch")
    for line in lines:
        if not line.get("item_id") or not line.get("unit_id") or line.get("qty") is None:
            raise ValidationFailed("missing_fields")
        if to_decimal(line["qty"]) <= 0:
            raise ValidationFailed("invalid_quantity")

    branches = await Branch.filter(id__in=[from_branch_id, to_branch_id], restaurant_id=caller.restaurant_id)
    if len(branches) != 2:
        raise ValidationFailed("invalid_branch")
    branch_names = {str(b.id): b.name for b in branches}

    item_ids = {str(line["item_id"]) for line in lines}
    source_items = await InventoryItem.filter(
        id__in=list(item_ids), branch_id=from_branch_id, restaurant_id=caller.restaurant_id
    )
    if len(source_items) != len(item_ids):
        raise ValidationFailed("invalid_item")
    source_map = {str(i.id): i for i in source_items}

    async with in_transaction() as conn:
        conversions = await load_conversions(caller.restaurant_id, conn)
        planned = []
        required: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for line in lines:
            item = source_map[str(line["item_id"])]
            qty = to_decimal(line["qty"])
            qty_in_base = conversions.item_to_base(item, qty, line["unit_id"])
            planned.append((item, qty, line["unit_id"], qty_in_base))
            required[str(item.id)] += qty_in_base

        stock = await get_on_hand_map(from_branch_id, required.keys(), conn, for_update=True)
        for item_id, needed in required.items():
            current = stock.get(item_id, Decimal("0"))
            if current < needed:
                log.warning(f"Transfer rejected: item {item_id} has {current}, needs {needed}")
                raise BusinessRuleError(
                    "insufficient_stock",
                    message=f"Insufficient stock for {source_map[item_id].name}",
                    details={"item_id": item_id, "current": current, "requested": needed},
                )

        transfer = await StockTransfer.create(
            restaurant_id=caller.restaurant_id,
            from_branch_id=from_branch_id,
            to_branch_id=to_branch_id,
            notes=notes,
            created_by=caller.user_id,
            using_db=conn,
        )

        dest_items = await InventoryItem.filter(
            branch_id=to_branch_id, restaurant_id=caller.restaurant_id
        ).using_db(conn)
        dest_by_name = {i.name: i for i in dest_items}
        created_dest = []

        for item, qty, unit_id, qty_in_base in planned:
            dest = dest_by_name.get(item.name)
            if not dest:
                dest = await InventoryItem.create(
                    restaurant_id=caller.restaurant_id,
                    branch_id=to_branch_id,
                    name=item.name,
                    category=item.category,
                    base_unit_id=item.base_unit_id,
                    avg_cost=item.avg_cost,
                    using_db=conn,
                )
                dest_by_name[item.name] = dest
                created_dest.append(dest.id)

            out_move = Movement(
                restaurant_id=caller.restaurant_id,
                branch_id=from_branch_id,
                item_id=item.id,
                txn_type=TxnType.TRANSFER_OUT,
                qty=-qty,
                unit_id=unit_id,
                qty_in_base=-qty_in_base,
                reference_type=ReferenceType.TRANSFER,
                reference_id=transfer.id,
                notes=notes or f"Transfer to {branch_names[str(to_branch_id)]}",
                created_by=caller.user_id,
            )
            in_move = Movement(
                restaurant_id=caller.restaurant_id,
                branch_id=to_branch_id,
                item_id=dest.id,
                txn_type=TxnType.TRANSFER_IN,
                qty=qty,
                unit_id=unit_id,
                qty_in_base=qty_in_base,
                reference_type=ReferenceType.TRANSFER,
                reference_id=transfer.id,
                notes=notes or f"Transfer from {branch_names[str(from_branch_id)]}",
                created_by=caller.user_id,
            )
            await append_entries([out_move, in_move], conn)
            await apply_to_cache(caller.restaurant_id, from_branch_id, item.id, -qty_in_base, conn)
            await apply_to_cache(caller.restaurant_id, to_branch_id, dest.id, qty_in_base, conn)

    await record_audit(
        caller.user_id, caller.restaurant_id, "inventory_transfer", transfer.id, "INVENTORY_TRANSFER",
        {
            "from_branch_id": from_branch_id,
            "from_branch_name": branch_names[str(from_branch_id)],
            "to_branch_id": to_branch_id,
            "to_branch_name": branch_names[str(to_branch_id)],
            "item_count": len(planned),
            "created_dest_items": len(created_dest),
            "notes": notes,
        },
    )
    log.info(f"Transfer {transfer.id}: {len(planned)} line(s) from {from_branch_id} to {to_branch_id}")
    return {
        "transfer_id": transfer.id,
        "transferred_items": len(planned),
        "created_destination_items": len(created_dest),
    }


async def list_item_transactions(caller: CallerContext, item_id: UUID, limit: int = 100) -> List[StockLedgerEntry]:
    require_role(caller, POS_ROLES)
    if not await InventoryItem.filter(id=item_id, restaurant_id=caller.restaurant_id).exists():
        raise NotFoundError("invalid_item")
    return await StockLedgerEntry.filter(item_id=item_id).order_by("-created_at").limit(limit)


async def list_stock_levels(caller: CallerContext, branch_id: UUID) -> List[StockLevel]:
    require_role(caller, POS_ROLES)
    await get_branch(caller.restaurant_id, branch_id)
    return await StockLevel.filter(branch_id=branch_id).prefetch_related("item")


async def reconcile(caller: CallerContext, branch_id: Optional[UUID] = None, apply: bool = True) -> List[Dict[str, Any]]:
    """Owner-triggered cache rebuild from the ledger."""
    require_role(caller, OWNER_ONLY)
    if branch_id is not None:
        await get_branch(caller.restaurant_id, branch_id)
    drift = await reconcile_stock_levels(caller.restaurant_id, branch_id, apply=apply)
    await record_audit(
        caller.user_id, caller.restaurant_id, "inventory_stock_levels", branch_id, "INVENTORY_RECONCILED",
        {"branch_id": branch_id, "drifted_keys": len(drift), "applied": apply},
    )
    return drift
