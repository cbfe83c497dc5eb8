from enum import Enum
from tortoise import fields, models
import uuid


class OrderStatus(str, Enum):
    PENDING = "pending"      # Created (e.g. QR order) but not yet accepted
    OPEN = "open"            # Being built at the POS, not yet in the kitchen
    HELD = "held"            # Parked by the cashier, returns to OPEN
    CONFIRMED = "confirmed"  # Accepted QR order, returns to OPEN
    NEW = "new"              # Visible on the kitchen display
    PAID = "paid"
    REFUNDED = "refunded"


# Statuses from which an order may be settled
PAYABLE_STATUSES = (OrderStatus.OPEN, OrderStatus.NEW)
REFUNDABLE_STATUSES = (OrderStatus.PAID, OrderStatus.REFUNDED)


class PaymentMethod(str, Enum):
    CASH = "cash"
    VISA = "visa"
    CLIQ = "cliq"
    ZAIN_CASH = "zain_cash"
    ORANGE_MONEY = "orange_money"
    UMNIAH_WALLET = "umniah_wallet"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class Order(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order_number = fields.IntField()
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="orders")
    branch = fields.ForeignKeyField("models.Branch", related_name="orders", null=True)
    # Dine-in orders carry a table reference; takeaway orders do not
    table_id = fields.UUIDField(null=True)
    status = fields.CharEnumField(OrderStatus, default=OrderStatus.OPEN)
    subtotal = fields.DecimalField(max_digits=14, decimal_places=3, default=0)
    total = fields.DecimalField(max_digits=14, decimal_places=3, default=0)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"
        indexes = [
            ("restaurant_id",),          # Restaurant order queries
            ("status",),                 # Status-based filtering
            ("table_id", "status"),      # Open orders on a table
            ("created_at",),             # Time-based queries
        ]

    @property
    def is_dine_in(self) -> bool:
        return self.table_id is not None


class OrderItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="items")
    menu_item = fields.ForeignKeyField("models.MenuItem", related_name="order_items", null=True)
    quantity = fields.DecimalField(max_digits=12, decimal_places=3)
    unit_price = fields.DecimalField(max_digits=12, decimal_places=3)
    line_total = fields.DecimalField(max_digits=14, decimal_places=3)
    voided = fields.BooleanField(default=False)
    # Snapshot of ingredient cost at payment time
    cogs = fields.DecimalField(max_digits=14, decimal_places=3, default=0)
    profit = fields.DecimalField(max_digits=14, decimal_places=3, default=0)

    class Meta:
        table = "order_items"
        indexes = [
            ("order_id",),              # Order line items
            ("menu_item_id",),          # Menu item popularity
        ]


class Payment(models.Model):
    """One row per tendered instrument per order. Append-only."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="payments")
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="payments")
    branch = fields.ForeignKeyField("models.Branch", related_name="payments", null=True)
    method = fields.CharEnumField(PaymentMethod)
    amount = fields.DecimalField(max_digits=14, decimal_places=3)
    created_by = fields.CharField(max_length=64, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "payments"
        indexes = [
            ("order_id",),
            ("restaurant_id", "created_at"),
        ]


class Refund(models.Model):
    """Append-only. Sum of amounts per order never exceeds the order total."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="refunds")
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="refunds")
    branch = fields.ForeignKeyField("models.Branch", related_name="refunds", null=True)
    amount = fields.DecimalField(max_digits=14, decimal_places=3)
    refund_type = fields.CharEnumField(RefundType)
    reason = fields.TextField()
    created_by = fields.CharField(max_length=64, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "refunds"
        indexes = [
            ("order_id",),
        ]
