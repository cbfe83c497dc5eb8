# poscore/models/__init__.py
from .restaurant import Restaurant, Branch, UserRole, StaffRole, MenuItem
from .order import (
    Order, OrderItem, OrderStatus, Payment, PaymentMethod, Refund, RefundType,
    PAYABLE_STATUSES, REFUNDABLE_STATUSES,
)
from .inventory import (
    InventoryUnit, UnitConversion, Supplier, InventoryItem, StockLedgerEntry,
    StockLevel, Recipe, RecipeLine, PurchaseReceipt, PurchaseReceiptLine,
    StockTransfer, StockCount, StockCountLine, TxnType, ReferenceType,
    StockCountStatus, OUTBOUND_TYPES,
)
from .audit import AuditLog
from .processed_event import ProcessedEvent

# Export all models
__all__ = [
    "Restaurant",
    "Branch",
    "UserRole",
    "StaffRole",
    "MenuItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "Refund",
    "RefundType",
    "PAYABLE_STATUSES",
    "REFUNDABLE_STATUSES",
    "InventoryUnit",
    "UnitConversion",
    "Supplier",
    "InventoryItem",
    "StockLedgerEntry",
    "StockLevel",
    "Recipe",
    "RecipeLine",
    "PurchaseReceipt",
    "PurchaseReceiptLine",
    "StockTransfer",
    "StockCount",
    "StockCountLine",
    "TxnType",
    "ReferenceType",
    "StockCountStatus",
    "OUTBOUND_TYPES",
    "AuditLog",
    "ProcessedEvent",
]
