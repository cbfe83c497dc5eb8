"""
Unit Conversion Resolver.

Conversions are registered per restaurant as directional (from -> to, multiplier)
rows. A forward entry multiplies; when only the reverse entry exists its
multiplier divides. When neither exists the quantity passes through unchanged:
that fallback is silent, so callers that depend on conversion must register
the pair.
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple
from uuid import UUID

from poscore.models.inventory import InventoryItem, UnitConversion
from poscore.services.money import round_qty, to_decimal

Key = Tuple[str, str]


class ConversionTable:
    """In-memory view of one restaurant's conversion rows for batch operations."""

    def __init__(self, rows: Iterable[Any] = ()):
        self._map: Dict[Key, Decimal] = {}
        for row in rows:
            self.add(row.from_unit_id, row.to_unit_id, row.multiplier)

    def add(self, from_unit_id, to_unit_id, multiplier) -> None:
        self._map[(str(from_unit_id), str(to_unit_id))] = to_decimal(multiplier)

    def factor(self, unit_id, base_unit_id) -> Optional[Decimal]:
        """Multiplier taking one `unit_id` to `base_unit_id`, or None if unknown."""
        unit, base = str(unit_id), str(base_unit_id)
        if unit == base:
            return Decimal("1")
        forward = self._map.get((unit, base))
        if forward is not None:
            return forward
        reverse = self._map.get((base, unit))
        if reverse is not None and reverse != 0:
            return Decimal("1") / reverse
        return None

    def to_base(self, qty, unit_id, base_unit_id) -> Decimal:
        qty = to_decimal(qty)
        unit, base = str(unit_id), str(base_unit_id)
        if unit == base:
            return round_qty(qty)
        forward = self._map.get((unit, base))
        if forward is not None:
            return round_qty(qty * forward)
        reverse = self._map.get((base, unit))
        if reverse is not None and reverse != 0:
            return round_qty(qty / reverse)
        return round_qty(qty)

    def from_base(self, qty_in_base, unit_id, base_unit_id) -> Decimal:
        """Inverse of to_base, used to express base quantities in a display unit."""
        qty_in_base = to_decimal(qty_in_base)
        factor = self.factor(unit_id, base_unit_id)
        if factor is None or factor == 0:
            return round_qty(qty_in_base)
        return round_qty(qty_in_base / factor)

    def item_to_base(self, item: InventoryItem, qty, unit_id) -> Decimal:
        return self.to_base(qty, unit_id, item.base_unit_id)


async def load_conversions(restaurant_id: UUID, conn: Any = None) -> ConversionTable:
    rows = await UnitConversion.filter(restaurant_id=restaurant_id).using_db(conn)
    return ConversionTable(rows)


async def to_base(item: InventoryItem, qty, unit_id, conn: Any = None) -> Decimal:
    """Single-item form: only the (at most two) relevant rows are read."""
    if str(unit_id) == str(item.base_unit_id):
        return round_qty(to_decimal(qty))
    rows = await UnitConversion.filter(
        restaurant_id=item.restaurant_id,
        from_unit_id__in=[unit_id, item.base_unit_id],
        to_unit_id__in=[unit_id, item.base_unit_id],
    ).using_db(conn)
    return ConversionTable(rows).to_base(qty, unit_id, item.base_unit_id)
