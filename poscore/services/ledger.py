"""
Stock Ledger & Stock Level Cache.

The ledger (StockLedgerEntry) is append-only and authoritative. The cache
(StockLevel) holds the running sum per (restaurant, branch, item) and is
upserted once for every ledger row appended for its key. Callers run
`post_movements` inside their own `in_transaction()` block so the ledger append
and the cache upsert commit together.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from tortoise.transactions import in_transaction

from poscore.models.inventory import ReferenceType, StockLedgerEntry, StockLevel, TxnType
from poscore.services.money import round_qty, to_decimal

log = logging.getLogger(__name__)

StockKey = Tuple[str, str]  # (branch_id, item_id)


@dataclass
class Movement:
    """One signed quantity movement, not yet written."""
    restaurant_id: UUID
    branch_id: UUID
    item_id: UUID
    txn_type: TxnType
    qty: Decimal
    qty_in_base: Decimal
    unit_id: Optional[UUID] = None
    reference_type: Optional[ReferenceType] = None
    reference_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    def to_entry(self) -> StockLedgerEntry:
        return StockLedgerEntry(
            restaurant_id=self.restaurant_id,
            branch_id=self.branch_id,
            item_id=self.item_id,
            txn_type=self.txn_type,
            qty=round_qty(self.qty),
            unit_id=self.unit_id,
            qty_in_base=round_qty(self.qty_in_base),
            reference_type=self.reference_type,
            reference_id=self.reference_id,
            notes=self.notes,
            created_by=self.created_by,
        )


async def append_entries(movements: Iterable[Movement], conn: Any = None) -> List[StockLedgerEntry]:
    """Inserts the movements as immutable ledger rows in one batch."""
    entries = [m.to_entry() for m in movements]
    if not entries:
        return []
    await StockLedgerEntry.bulk_create(entries, using_db=conn)
    return entries


async def apply_to_cache(restaurant_id: UUID, branch_id: UUID, item_id: UUID,
                         delta_base, conn: Any = None) -> Decimal:
    """Adds a signed base-unit delta to the cached on-hand (0 when absent)."""
    delta_base = to_decimal(delta_base)
    level = await StockLevel.filter(
        restaurant_id=restaurant_id, branch_id=branch_id, item_id=item_id
    ).using_db(conn).select_for_update().first()

    if level:
        level.on_hand_base = round_qty(to_decimal(level.on_hand_base) + delta_base)
        await level.save(update_fields=['on_hand_base', 'updated_at'], using_db=conn)
        return level.on_hand_base

    level = await StockLevel.create(
        restaurant_id=restaurant_id,
        branch_id=branch_id,
        item_id=item_id,
        on_hand_base=round_qty(delta_base),
        using_db=conn,
    )
    return level.on_hand_base


async def post_movements(movements: List[Movement], conn: Any = None) -> Dict[StockKey, Decimal]:
    """
    Appends the movements and applies each one to its cache row.
    Returns the resulting on-hand per (branch_id, item_id).
    """
    await append_entries(movements, conn)
    new_levels: Dict[StockKey, Decimal] = {}
    for m in movements:
        new_levels[(str(m.branch_id), str(m.item_id))] = await apply_to_cache(
            m.restaurant_id, m.branch_id, m.item_id, m.qty_in_base, conn
        )
    return new_levels


async def get_on_hand(branch_id: UUID, item_id: UUID, conn: Any = None,
                      for_update: bool = False) -> Decimal:
    """Cached on-hand used for sufficiency checks."""
    query = StockLevel.filter(branch_id=branch_id, item_id=item_id).using_db(conn)
    if for_update:
        query = query.select_for_update()
    level = await query.first()
    return to_decimal(level.on_hand_base) if level else Decimal("0")


async def get_on_hand_map(branch_id: UUID, item_ids: Iterable[UUID], conn: Any = None,
                          for_update: bool = False) -> Dict[str, Decimal]:
    item_ids = list(item_ids)
    if not item_ids:
        return {}
    query = StockLevel.filter(branch_id=branch_id, item_id__in=item_ids).using_db(conn)
    if for_update:
        query = query.select_for_update()
    levels = await query
    return {str(level.item_id): to_decimal(level.on_hand_base) for level in levels}


async def ledger_balance(branch_id: UUID, item_id: UUID, conn: Any = None) -> Decimal:
    """On-hand recomputed by replaying the ledger for one key."""
    quantities = await StockLedgerEntry.filter(
        branch_id=branch_id, item_id=item_id
    ).using_db(conn).values_list("qty_in_base", flat=True)
    return round_qty(sum((to_decimal(q) for q in quantities), Decimal("0")))


async def items_with_history(item_ids: Iterable[UUID], conn: Any = None) -> Set[str]:
    item_ids = list(item_ids)
    if not item_ids:
        return set()
    rows = await StockLedgerEntry.filter(item_id__in=item_ids).using_db(conn).distinct().values_list("item_id", flat=True)
    return {str(r) for r in rows}


async def reconcile_stock_levels(restaurant_id: UUID, branch_id: Optional[UUID] = None,
                                 apply: bool = True) -> List[Dict[str, Any]]:
    """
    Replays the ledger for every (branch, item) of the restaurant and rewrites
    cache rows that drifted from it. Returns one report row per drifted key.
    """
    filters: Dict[str, Any] = {"restaurant_id": restaurant_id}
    if branch_id is not None:
        filters["branch_id"] = branch_id

    async with in_transaction() as conn:
        ledger_rows = await StockLedgerEntry.filter(**filters).using_db(conn).values_list(
            "branch_id", "item_id", "qty_in_base"
        )
        ledger_sum: Dict[StockKey, Decimal] = defaultdict(lambda: Decimal("0"))
        for b_id, i_id, qty in ledger_rows:
            ledger_sum[(str(b_id), str(i_id))] += to_decimal(qty)

        levels = await StockLevel.filter(**filters).using_db(conn).select_for_update()
        level_map = {(str(level.branch_id), str(level.item_id)): level for level in levels}

        drift = []
        for key in set(ledger_sum) | set(level_map):
            expected = round_qty(ledger_sum.get(key, Decimal("0")))
            level = level_map.get(key)
            cached = round_qty(level.on_hand_base) if level else Decimal("0")
            if expected == cached:
                continue
            drift.append({
                "branch_id": key[0],
                "item_id": key[1],
                "cached_on_hand": cached,
                "ledger_on_hand": expected,
                "difference": expected - cached,
            })
            if not apply:
                continue
            if level:
                level.on_hand_base = expected
                await level.save(update_fields=['on_hand_base', 'updated_at'], using_db=conn)
            else:
                await StockLevel.create(
                    restaurant_id=restaurant_id,
                    branch_id=key[0],
                    item_id=key[1],
                    on_hand_base=expected,
                    using_db=conn,
                )

    if drift:
        log.warning(f"Stock cache drift for restaurant {restaurant_id}: {len(drift)} key(s) "
                    f"{'corrected' if apply else 'found'}")
    return drift
