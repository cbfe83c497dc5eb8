from enum import Enum
from tortoise import fields, models
import uuid


class StaffRole(str, Enum):
    OWNER = "owner"
    CASHIER = "cashier"
    KITCHEN = "kitchen"
    SYSTEM_ADMIN = "system_admin"


class Restaurant(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    name = fields.CharField(max_length=255)
    is_active = fields.BooleanField(default=True)
    # Null means an open-ended subscription
    subscription_ends_at = fields.DatetimeField(null=True)
    inventory_enabled = fields.BooleanField(default=False)
    currency = fields.CharField(max_length=3, default="JOD")
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "restaurants"
        indexes = [
            ("is_active",),  # For filtering active restaurants
        ]


class Branch(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="branches")
    name = fields.CharField(max_length=255)
    is_active = fields.BooleanField(default=True)

    class Meta:
        table = "restaurant_branches"
        indexes = [
            ("restaurant_id",),
        ]


class UserRole(models.Model):
    """Resolved tenant scope of an authenticated caller (one row per user)."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = fields.CharField(max_length=64, unique=True)
    role = fields.CharEnumField(StaffRole)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="staff")
    branch = fields.ForeignKeyField("models.Branch", related_name="staff", null=True)

    class Meta:
        table = "user_roles"
        indexes = [
            ("restaurant_id", "role"),
        ]


class MenuItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="menu_items")
    name = fields.CharField(max_length=255)
    price = fields.DecimalField(max_digits=12, decimal_places=3)
    is_active = fields.BooleanField(default=True)

    class Meta:
        table = "menu_items"
        indexes = [
            ("restaurant_id",),  # Fast restaurant menu queries
            ("restaurant_id", "is_active"),  # Composite: restaurant's active items
        ]
