"""
Bulk import of inventory items with opening stock.

Each row runs in its own transaction and fails on its own: a bad row is
reported in ``errors`` and the import carries on. Opening stock is only posted
for items with no ledger history, so re-importing the same file never counts
stock twice.
"""
import csv
import io
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from tortoise.transactions import in_transaction

from poscore.core.context import CallerContext, OWNER_ONLY, require_inventory_enabled, require_role
from poscore.models.inventory import InventoryItem, InventoryUnit, ReferenceType, TxnType
from poscore.models.restaurant import Branch
from poscore.services.audit import record_audit
from poscore.services.inventory_service import get_branch
from poscore.services.ledger import Movement, items_with_history, post_movements
from poscore.services.money import to_decimal

log = logging.getLogger(__name__)

# unit name -> symbol for units created on the fly
DEFAULT_UNITS = {
    "pcs": "pcs",
    "kg": "kg",
    "g": "g",
    "liter": "L",
    "ml": "ml",
    "bottle": "btl",
    "can": "can",
    "cup": "cup",
    "pack": "pk",
    "box": "box",
}

CSV_COLUMNS = ("name", "category", "base_unit", "branch_name", "quantity", "min_level", "reorder_point")


class RowRejected(Exception):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


def parse_csv(text: str, columns=CSV_COLUMNS) -> List[Dict[str, Any]]:
    """Reads CSV text with a header row into import rows; unknown columns are ignored."""
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    rows = []
    for raw in reader:
        row = {key.strip().lower(): (value or "").strip() for key, value in raw.items() if key}
        rows.append({col: row.get(col) or None for col in columns})
    return rows


def _optional_decimal(value, field: str) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return to_decimal(value)
    except InvalidOperation:
        raise RowRejected("invalid_quantity", f"{field} is not a number: {value!r}")


async def import_inventory_rows(caller: CallerContext, branch_id: UUID,
                                rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    require_role(caller, OWNER_ONLY)
    await require_inventory_enabled(caller.restaurant_id)

    await get_branch(caller.restaurant_id, branch_id)

    result = {
        "success": True,
        "items_created": 0,
        "units_created": 0,
        "stock_entries_created": 0,
        "stock_entries_skipped": 0,
        "errors": [],
    }
    if not rows:
        return result

    branches = await Branch.filter(restaurant_id=caller.restaurant_id)
    branch_map = {b.name.strip().lower(): b.id for b in branches}

    units = await InventoryUnit.filter(restaurant_id=caller.restaurant_id)
    unit_map = {u.name.lower(): u.id for u in units}

    items = await InventoryItem.filter(restaurant_id=caller.restaurant_id)
    item_map = {(i.name.lower(), str(i.branch_id)): i for i in items}
    stocked = await items_with_history([i.id for i in items])

    for index, row in enumerate(rows, start=1):
        name = (row.get("name") or "").strip()
        try:
            if not name:
                raise RowRejected("missing_fields", "Item name is empty")
            unit_name = (row.get("base_unit") or "").strip().lower()
            if not unit_name:
                raise RowRejected("missing_fields", "Base unit is empty")

            branch_name = (row.get("branch_name") or "").strip().lower()
            row_branch_id = branch_map.get(branch_name) if branch_name else branch_id
            if not row_branch_id:
                raise RowRejected("invalid_branch", f"Branch not found: {row.get('branch_name')!r}")

            quantity = _optional_decimal(row.get("quantity"), "quantity")
            if quantity < 0:
                raise RowRejected("invalid_quantity", "Quantity cannot be negative")
            min_level = _optional_decimal(row.get("min_level"), "min_level")
            reorder_point = _optional_decimal(row.get("reorder_point"), "reorder_point")

            outcome = await _import_row(
                caller, row_branch_id, name, row.get("category"), unit_name,
                quantity, min_level, reorder_point, unit_map, item_map, stocked,
            )
        except RowRejected as exc:
            log.warning(f"Import row {index} ({name or '-'}) rejected: {exc.message}")
            result["errors"].append({"row": index, "name": name, "code": exc.code, "message": exc.message})
            continue
        except Exception:
            log.exception(f"Import row {index} ({name or '-'}) failed")
            result["errors"].append({"row": index, "name": name, "code": "server_error",
                                     "message": "Unexpected error"})
            continue

        for key in ("units_created", "items_created", "stock_entries_created", "stock_entries_skipped"):
            result[key] += outcome[key]

    await record_audit(
        caller.user_id, caller.restaurant_id, "inventory_csv_import", None, "INVENTORY_CSV_IMPORT",
        {
            "rows_processed": len(rows),
            "items_created": result["items_created"],
            "units_created": result["units_created"],
            "stock_entries_created": result["stock_entries_created"],
            "stock_entries_skipped": result["stock_entries_skipped"],
            "errors_count": len(result["errors"]),
        },
    )
    log.info(f"CSV import complete: {result['items_created']} items, "
             f"{result['stock_entries_created']} stock entries, {len(result['errors'])} errors")
    return result


async def _import_row(caller, branch_id, name, category, unit_name, quantity, min_level, reorder_point,
                      unit_map, item_map, stocked) -> Dict[str, int]:
    """
    Writes one row. The lookup maps are only updated once the row's
    transaction commits so a rolled-back row leaves no stale ids behind.
    """
    outcome = {"units_created": 0, "items_created": 0, "stock_entries_created": 0, "stock_entries_skipped": 0}
    new_unit: Optional[InventoryUnit] = None
    new_item: Optional[InventoryItem] = None
    item_key = (name.lower(), str(branch_id))

    async with in_transaction() as conn:
        unit_id = unit_map.get(unit_name)
        if not unit_id:
            new_unit = await InventoryUnit.create(
                restaurant_id=caller.restaurant_id,
                name=unit_name,
                symbol=DEFAULT_UNITS.get(unit_name, unit_name),
                using_db=conn,
            )
            unit_id = new_unit.id
            outcome["units_created"] = 1

        item = item_map.get(item_key)
        if item:
            if str(item.base_unit_id) != str(unit_id):
                raise RowRejected("unit_mismatch", f"{name}: base unit differs from the existing item")
        else:
            item = new_item = await InventoryItem.create(
                restaurant_id=caller.restaurant_id,
                branch_id=branch_id,
                name=name,
                category=category or None,
                base_unit_id=unit_id,
                min_level=min_level,
                reorder_point=reorder_point,
                using_db=conn,
            )
            outcome["items_created"] = 1

        if quantity > 0:
            if str(item.id) in stocked:
                outcome["stock_entries_skipped"] = 1
            else:
                await post_movements([Movement(
                    restaurant_id=caller.restaurant_id,
                    branch_id=branch_id,
                    item_id=item.id,
                    txn_type=TxnType.INITIAL_STOCK_IMPORT,
                    qty=quantity,
                    unit_id=unit_id,
                    qty_in_base=quantity,
                    reference_type=ReferenceType.CSV_IMPORT,
                    notes="CSV import opening balance",
                    created_by=caller.user_id,
                )], conn)
                outcome["stock_entries_created"] = 1

    if new_unit:
        unit_map[unit_name] = new_unit.id
    if new_item:
        item_map[item_key] = new_item
    if outcome["stock_entries_created"]:
        stocked.add(str(item.id))
    return outcome
