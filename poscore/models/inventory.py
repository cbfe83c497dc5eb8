from enum import Enum
from tortoise import fields, models
from tortoise.exceptions import IntegrityError
import uuid


class TxnType(str, Enum):
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    ADJUSTMENT_IN = "ADJUSTMENT_IN"
    ADJUSTMENT_OUT = "ADJUSTMENT_OUT"
    WASTE = "WASTE"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    STOCK_COUNT_ADJUSTMENT = "STOCK_COUNT_ADJUSTMENT"
    INITIAL_STOCK = "INITIAL_STOCK"
    INITIAL_STOCK_IMPORT = "INITIAL_STOCK_IMPORT"
    SALE_DEDUCTION = "SALE_DEDUCTION"
    REFUND_RESTORATION = "REFUND_RESTORATION"


# Movements that take stock out of a branch
OUTBOUND_TYPES = (TxnType.ADJUSTMENT_OUT, TxnType.WASTE, TxnType.TRANSFER_OUT)


class ReferenceType(str, Enum):
    ORDER = "order"
    PURCHASE_RECEIPT = "purchase_receipt"
    TRANSFER = "transfer"
    STOCK_COUNT = "stock_count"
    REFUND = "refund"
    CSV_IMPORT = "csv_import"


class StockCountStatus(str, Enum):
    NEW = "NEW"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


class InventoryUnit(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="inventory_units")
    name = fields.CharField(max_length=64)
    symbol = fields.CharField(max_length=16)

    class Meta:
        table = "inventory_units"
        unique_together = (("restaurant", "name"),)


class UnitConversion(models.Model):
    """Directional: qty_in_to_unit = qty_in_from_unit * multiplier."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="unit_conversions")
    from_unit = fields.ForeignKeyField("models.InventoryUnit", related_name="conversions_from")
    to_unit = fields.ForeignKeyField("models.InventoryUnit", related_name="conversions_to")
    multiplier = fields.DecimalField(max_digits=18, decimal_places=6)

    class Meta:
        table = "inventory_unit_conversions"
        unique_together = (("restaurant", "from_unit", "to_unit"),)


class Supplier(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="suppliers")
    name = fields.CharField(max_length=255)

    class Meta:
        table = "suppliers"


class InventoryItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="inventory_items")
    branch = fields.ForeignKeyField("models.Branch", related_name="inventory_items")
    name = fields.CharField(max_length=255)
    category = fields.CharField(max_length=128, null=True)
    base_unit = fields.ForeignKeyField("models.InventoryUnit", related_name="items")
    # Weighted average cost per base unit, moved only by purchase receipts
    avg_cost = fields.DecimalField(max_digits=14, decimal_places=6, default=0)
    min_level = fields.DecimalField(max_digits=18, decimal_places=6, default=0)
    reorder_point = fields.DecimalField(max_digits=18, decimal_places=6, default=0)
    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "inventory_items"
        indexes = [
            ("restaurant_id", "branch_id"),
            ("branch_id", "name"),
        ]


class StockLedgerEntry(models.Model):
    """
    Append-only movement log. The sum of qty_in_base per (branch, item) is the
    authoritative on-hand quantity; StockLevel is only a cached view of it.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="inventory_transactions")
    branch = fields.ForeignKeyField("models.Branch", related_name="inventory_transactions")
    item = fields.ForeignKeyField("models.InventoryItem", related_name="transactions")
    txn_type = fields.CharEnumField(TxnType, max_length=32)
    qty = fields.DecimalField(max_digits=18, decimal_places=6)   # signed, in unit
    unit = fields.ForeignKeyField("models.InventoryUnit", related_name="transactions", null=True)
    qty_in_base = fields.DecimalField(max_digits=18, decimal_places=6)  # signed
    reference_type = fields.CharEnumField(ReferenceType, max_length=32, null=True)
    reference_id = fields.UUIDField(null=True)
    notes = fields.TextField(null=True)
    created_by = fields.CharField(max_length=64, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "inventory_transactions"
        indexes = [
            ("branch_id", "item_id"),
            ("reference_type", "reference_id"),
            ("txn_type",),
        ]

    async def save(self, *args, **kwargs):
        if self._saved_in_db:
            raise IntegrityError("Ledger entries are append-only")
        await super().save(*args, **kwargs)

    async def delete(self, *args, **kwargs):
        raise IntegrityError("Ledger entries are append-only")


class StockLevel(models.Model):
    """Derived on-hand cache, upserted after every ledger write for its key."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="stock_levels")
    branch = fields.ForeignKeyField("models.Branch", related_name="stock_levels")
    item = fields.ForeignKeyField("models.InventoryItem", related_name="stock_levels")
    on_hand_base = fields.DecimalField(max_digits=18, decimal_places=6, default=0)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "inventory_stock_levels"
        unique_together = (("restaurant", "branch", "item"),)


class Recipe(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="recipes")
    menu_item = fields.ForeignKeyField("models.MenuItem", related_name="recipes")
    is_active = fields.BooleanField(default=True)
    notes = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "menu_item_recipes"
        unique_together = (("restaurant", "menu_item"),)


class RecipeLine(models.Model):
    """Consumption of one inventory item per single unit of the menu item."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="recipe_lines")
    recipe = fields.ForeignKeyField("models.Recipe", related_name="lines")
    inventory_item = fields.ForeignKeyField("models.InventoryItem", related_name="recipe_lines")
    qty = fields.DecimalField(max_digits=18, decimal_places=6)
    unit = fields.ForeignKeyField("models.InventoryUnit", related_name="recipe_lines")
    qty_in_base = fields.DecimalField(max_digits=18, decimal_places=6)

    class Meta:
        table = "menu_item_recipe_lines"
        indexes = [
            ("recipe_id",),
        ]


class PurchaseReceipt(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="purchase_receipts")
    branch = fields.ForeignKeyField("models.Branch", related_name="purchase_receipts")
    supplier = fields.ForeignKeyField("models.Supplier", related_name="purchase_receipts", null=True)
    receipt_no = fields.CharField(max_length=64)
    received_at = fields.DatetimeField()
    notes = fields.TextField(null=True)
    total_cost = fields.DecimalField(max_digits=14, decimal_places=3, default=0)
    created_by = fields.CharField(max_length=64, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "purchase_receipts"


class PurchaseReceiptLine(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    receipt = fields.ForeignKeyField("models.PurchaseReceipt", related_name="lines")
    item = fields.ForeignKeyField("models.InventoryItem", related_name="receipt_lines")
    qty = fields.DecimalField(max_digits=18, decimal_places=6)
    unit = fields.ForeignKeyField("models.InventoryUnit", related_name="receipt_lines")
    qty_in_base = fields.DecimalField(max_digits=18, decimal_places=6)
    unit_cost = fields.DecimalField(max_digits=14, decimal_places=6, null=True)
    total_cost = fields.DecimalField(max_digits=14, decimal_places=3, default=0)

    class Meta:
        table = "purchase_receipt_lines"


class StockTransfer(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="stock_transfers")
    from_branch = fields.ForeignKeyField("models.Branch", related_name="transfers_out")
    to_branch = fields.ForeignKeyField("models.Branch", related_name="transfers_in")
    notes = fields.TextField(null=True)
    created_by = fields.CharField(max_length=64, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "stock_transfers"


class StockCount(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="stock_counts")
    branch = fields.ForeignKeyField("models.Branch", related_name="stock_counts")
    status = fields.CharEnumField(StockCountStatus, default=StockCountStatus.NEW)
    notes = fields.TextField(null=True)
    created_by = fields.CharField(max_length=64, null=True)
    approved_by = fields.CharField(max_length=64, null=True)
    approved_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "stock_counts"


class StockCountLine(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    stock_count = fields.ForeignKeyField("models.StockCount", related_name="lines")
    item = fields.ForeignKeyField("models.InventoryItem", related_name="count_lines")
    expected_base = fields.DecimalField(max_digits=18, decimal_places=6)
    actual_base = fields.DecimalField(max_digits=18, decimal_places=6)
    variance_base = fields.DecimalField(max_digits=18, decimal_places=6)

    class Meta:
        table = "stock_count_lines"
