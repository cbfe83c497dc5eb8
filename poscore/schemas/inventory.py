import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AdjustmentRequest(BaseModel):
    """Single-item stock movement."""
    item_id: uuid.UUID
    branch_id: uuid.UUID
    txn_type: str = Field(..., description="ADJUSTMENT_IN, ADJUSTMENT_OUT, WASTE or INITIAL_STOCK.")
    qty: Decimal = Field(..., description="Positive quantity in `unit_id`; the sign follows txn_type.")
    unit_id: uuid.UUID
    notes: Optional[str] = None


class LedgerEntryResponse(BaseModel):
    id: uuid.UUID
    branch_id: uuid.UUID
    item_id: uuid.UUID
    txn_type: str
    qty: Decimal
    unit_id: Optional[uuid.UUID] = None
    qty_in_base: Decimal
    reference_type: Optional[str] = None
    reference_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


class AdjustmentResult(BaseModel):
    transaction: LedgerEntryResponse
    new_on_hand: Decimal


class ReceiptLineRequest(BaseModel):
    item_id: uuid.UUID
    qty: Decimal
    unit_id: uuid.UUID
    unit_cost: Optional[Decimal] = Field(None, description="Cost per base unit. Leaves avg_cost untouched when omitted.")


class PurchaseReceiptRequest(BaseModel):
    branch_id: uuid.UUID
    receipt_no: str
    supplier_id: Optional[uuid.UUID] = None
    received_at: Optional[datetime] = None
    notes: Optional[str] = None
    lines: List[ReceiptLineRequest]


class TransferLineRequest(BaseModel):
    item_id: uuid.UUID
    qty: Decimal
    unit_id: uuid.UUID


class TransferRequest(BaseModel):
    from_branch_id: uuid.UUID
    to_branch_id: uuid.UUID
    lines: List[TransferLineRequest]
    notes: Optional[str] = None


class CSVImportRow(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    base_unit: Optional[str] = None
    branch_name: Optional[str] = Field(None, description="Defaults to the request branch when empty.")
    quantity: Optional[str] = None
    min_level: Optional[str] = None
    reorder_point: Optional[str] = None


class CSVImportRequest(BaseModel):
    """Either pre-parsed rows or the raw CSV text with a header row."""
    branch_id: uuid.UUID
    rows: Optional[List[CSVImportRow]] = None
    csv_text: Optional[str] = None


class CSVImportResult(BaseModel):
    success: bool
    items_created: int
    units_created: int
    stock_entries_created: int
    stock_entries_skipped: int
    errors: List[Dict[str, Any]]


class StockLevelResponse(BaseModel):
    item_id: uuid.UUID
    item_name: str
    branch_id: uuid.UUID
    on_hand_base: Decimal
    reorder_point: Decimal
    updated_at: Optional[datetime] = None


class ReconcileRequest(BaseModel):
    branch_id: Optional[uuid.UUID] = None
    dry_run: bool = Field(False, description="Report drift without rewriting the cache.")


class DeductionWarning(BaseModel):
    inventory_item_id: str
    name: str
    current_on_hand: Decimal
    required: Decimal
    new_on_hand: Decimal


class DeductionResult(BaseModel):
    deducted_count: int
    warnings: List[DeductionWarning]
    skipped: Optional[str] = None
