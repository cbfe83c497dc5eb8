import logging
from collections import OrderedDict
from decimal import InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from tortoise.transactions import in_transaction

from poscore.core.context import (
    CallerContext, OWNER_ONLY, POS_ROLES, require_active_subscription, require_role,
)
from poscore.core.errors import NotFoundError, ValidationFailed
from poscore.models.inventory import InventoryItem, InventoryUnit, Recipe, RecipeLine
from poscore.models.restaurant import MenuItem
from poscore.services.audit import record_audit
from poscore.services.csv_import_service import RowRejected
from poscore.services.money import round_qty, to_decimal
from poscore.services.units import ConversionTable, load_conversions

log = logging.getLogger(__name__)

RECIPE_CSV_COLUMNS = ("menu_item_name", "inventory_item_name", "quantity", "unit")


async def _replace_recipe(restaurant_id: UUID, menu_item_id: UUID, lines: List[Dict[str, Any]],
                          item_map: Dict[str, InventoryItem], conversions: ConversionTable,
                          notes: Optional[str], is_active: bool, conn) -> Tuple[Recipe, bool]:
    """Creates the recipe row if needed and swaps its whole line set, inside `conn`."""
    recipe = await Recipe.filter(
        restaurant_id=restaurant_id, menu_item_id=menu_item_id
    ).using_db(conn).select_for_update().first()
    is_new = recipe is None

    if is_new:
        recipe = await Recipe.create(
            restaurant_id=restaurant_id,
            menu_item_id=menu_item_id,
            is_active=is_active,
            notes=notes,
            using_db=conn,
        )
    else:
        recipe.is_active = is_active
        recipe.notes = notes
        await recipe.save(update_fields=['is_active', 'notes', 'updated_at'], using_db=conn)
        await RecipeLine.filter(recipe_id=recipe.id).using_db(conn).delete()

    new_lines = [
        RecipeLine(
            restaurant_id=restaurant_id,
            recipe_id=recipe.id,
            inventory_item_id=line["inventory_item_id"],
            qty=round_qty(line["qty"]),
            unit_id=line["unit_id"],
            qty_in_base=conversions.item_to_base(item_map[str(line["inventory_item_id"])], line["qty"], line["unit_id"]),
        )
        for line in lines
    ]
    if new_lines:
        await RecipeLine.bulk_create(new_lines, using_db=conn)
    return recipe, is_new


async def upsert_recipe(
    caller: CallerContext,
    menu_item_id: UUID,
    lines: List[Dict[str, Any]],
    notes: Optional[str] = None,
    is_active: bool = True,
) -> Recipe:
    """
    Creates or replaces the recipe of a menu item. Existing lines are deleted
    and the new set inserted in the same transaction; every line's base
    quantity goes through the unit resolver, even when the units match.
    """
    require_role(caller, POS_ROLES)
    await require_active_subscription(caller.restaurant_id)

    if not menu_item_id or lines is None:
        raise ValidationFailed("missing_fields")
    for line in lines:
        if not line.get("inventory_item_id") or not line.get("unit_id") or line.get("qty") is None:
            raise ValidationFailed("missing_fields")
        if to_decimal(line["qty"]) <= 0:
            raise ValidationFailed("invalid_quantity")

    if not await MenuItem.filter(id=menu_item_id, restaurant_id=caller.restaurant_id).exists():
        raise NotFoundError("invalid_item", message="Menu item not found")

    item_ids = {str(line["inventory_item_id"]) for line in lines}
    items = await InventoryItem.filter(id__in=list(item_ids), restaurant_id=caller.restaurant_id)
    if len(items) != len(item_ids):
        raise ValidationFailed("invalid_item")
    item_map = {str(i.id): i for i in items}

    unit_ids = {str(line["unit_id"]) for line in lines}
    if unit_ids and await InventoryUnit.filter(id__in=list(unit_ids), restaurant_id=caller.restaurant_id).count() != len(unit_ids):
        raise ValidationFailed("invalid_unit")

    async with in_transaction() as conn:
        conversions = await load_conversions(caller.restaurant_id, conn)
        recipe, is_new = await _replace_recipe(
            caller.restaurant_id, menu_item_id, lines, item_map, conversions, notes, is_active, conn
        )

    await record_audit(
        caller.user_id, caller.restaurant_id, "recipe", recipe.id,
        "RECIPE_CREATED" if is_new else "RECIPE_UPDATED",
        {"menu_item_id": menu_item_id, "lines_count": len(lines), "is_active": is_active},
    )
    log.info(f"Recipe {'created' if is_new else 'updated'} for menu item {menu_item_id} with {len(lines)} line(s)")
    return await Recipe.get(id=recipe.id).prefetch_related("lines")


async def get_recipe(caller: CallerContext, menu_item_id: UUID) -> Recipe:
    require_role(caller, POS_ROLES)
    recipe = await Recipe.get_or_none(
        restaurant_id=caller.restaurant_id, menu_item_id=menu_item_id
    ).prefetch_related("lines")
    if not recipe:
        raise NotFoundError("invalid_item", message="Recipe not found")
    return recipe


def _row_error(index: int, row: Dict[str, Any], code: str, message: str) -> Dict[str, Any]:
    return {"row": index, "menu_item_name": (row.get("menu_item_name") or "").strip(),
            "code": code, "message": message}


def _recipe_line(row: Dict[str, Any], item_by_name: Dict[str, InventoryItem],
                 unit_map: Dict[str, UUID]) -> Dict[str, Any]:
    if not row.get("inventory_item_name") or not row.get("unit") or not row.get("quantity"):
        raise RowRejected("missing_fields", "Ingredient, quantity and unit are required")
    item = item_by_name.get(row["inventory_item_name"].strip().lower())
    if not item:
        raise RowRejected("invalid_item", f"Inventory item not found: {row['inventory_item_name']!r}")
    unit_id = unit_map.get(row["unit"].strip().lower())
    if not unit_id:
        raise RowRejected("invalid_unit", f"Unit not found: {row['unit']!r}")
    try:
        qty = to_decimal(row["quantity"])
    except InvalidOperation:
        qty = None
    if qty is None or not qty.is_finite() or qty <= 0:
        raise RowRejected("invalid_quantity", f"Quantity must be a positive number: {row['quantity']!r}")
    return {"inventory_item_id": item.id, "qty": qty, "unit_id": unit_id}


async def import_recipe_rows(caller: CallerContext, rows: List[Dict[str, Any]],
                             branch_id: Optional[UUID] = None) -> Dict[str, Any]:
    """
    Bulk recipe import, one row per ingredient line. Rows are grouped by menu
    item and each group replaces that item's recipe in its own transaction.
    A group with any bad row is reported and left untouched, so a recipe is
    never saved with missing ingredients.

    Inventory items are matched by name; with `branch_id` only that branch's
    items are considered.
    """
    require_role(caller, OWNER_ONLY)
    await require_active_subscription(caller.restaurant_id)
    if not rows:
        raise ValidationFailed("missing_fields")

    menu_items = await MenuItem.filter(restaurant_id=caller.restaurant_id)
    menu_map = {m.name.strip().lower(): m.id for m in menu_items}

    item_filters: Dict[str, Any] = {"restaurant_id": caller.restaurant_id}
    if branch_id is not None:
        item_filters["branch_id"] = branch_id
    items = await InventoryItem.filter(**item_filters)
    item_by_name = {i.name.strip().lower(): i for i in items}
    item_map = {str(i.id): i for i in items}

    units = await InventoryUnit.filter(restaurant_id=caller.restaurant_id)
    unit_map = {}
    for unit in units:
        unit_map[unit.name.strip().lower()] = unit.id
        if unit.symbol:
            unit_map.setdefault(unit.symbol.strip().lower(), unit.id)

    result = {"success": True, "menu_items_updated": 0, "recipe_lines_inserted": 0, "errors": []}

    # menu item name -> [(row number, row)]
    groups: "OrderedDict[str, List[Tuple[int, Dict[str, Any]]]]" = OrderedDict()
    for index, row in enumerate(rows, start=1):
        key = (row.get("menu_item_name") or "").strip().lower()
        if not key:
            result["errors"].append(_row_error(index, row, "missing_fields", "Menu item name is empty"))
            continue
        groups.setdefault(key, []).append((index, row))

    conversions = await load_conversions(caller.restaurant_id)
    for key, group in groups.items():
        menu_item_id = menu_map.get(key)
        if not menu_item_id:
            index, row = group[0]
            result["errors"].append(_row_error(index, row, "invalid_item",
                                               f"Menu item not found: {row.get('menu_item_name')!r}"))
            continue

        lines, group_errors = [], []
        for index, row in group:
            try:
                lines.append(_recipe_line(row, item_by_name, unit_map))
            except RowRejected as exc:
                group_errors.append(_row_error(index, row, exc.code, exc.message))

        if group_errors:
            log.warning(f"Recipe import for {key!r} skipped: {len(group_errors)} bad row(s)")
            result["errors"].extend(group_errors)
            continue

        try:
            async with in_transaction() as conn:
                await _replace_recipe(caller.restaurant_id, menu_item_id, lines, item_map,
                                      conversions, None, True, conn)
        except Exception:
            log.exception(f"Recipe import for {key!r} failed")
            index, row = group[0]
            result["errors"].append(_row_error(index, row, "server_error", "Unexpected error"))
            continue

        result["menu_items_updated"] += 1
        result["recipe_lines_inserted"] += len(lines)

    result["success"] = not result["errors"]
    await record_audit(
        caller.user_id, caller.restaurant_id, "menu_item_recipe", None, "RECIPES_CSV_IMPORTED",
        {
            "total_rows": len(rows),
            "menu_items_updated": result["menu_items_updated"],
            "recipe_lines_inserted": result["recipe_lines_inserted"],
            "errors_count": len(result["errors"]),
        },
    )
    log.info(f"Recipe import complete: {result['menu_items_updated']} recipes, "
             f"{result['recipe_lines_inserted']} lines, {len(result['errors'])} errors")
    return result
