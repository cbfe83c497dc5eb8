import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from poscore.models.inventory import StockCountStatus


class StockCountLineRequest(BaseModel):
    item_id: uuid.UUID
    unit_id: uuid.UUID
    actual_qty: Decimal = Field(..., description="Counted quantity in unit_id.")


class StockCountCreateRequest(BaseModel):
    branch_id: uuid.UUID
    lines: List[StockCountLineRequest]
    notes: Optional[str] = None


class StockCountLineResponse(BaseModel):
    item_id: uuid.UUID
    expected_base: Decimal
    actual_base: Decimal
    variance_base: Decimal


class StockCountResponse(BaseModel):
    id: uuid.UUID
    branch_id: uuid.UUID
    status: StockCountStatus
    notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    lines: List[StockCountLineResponse] = []


class StockCountApprovalResult(BaseModel):
    count_id: uuid.UUID
    adjustments: int
    total_positive_variance: Decimal
    total_negative_variance: Decimal = Field(..., description="Magnitude of the shortfall, in base units (never negative).")
