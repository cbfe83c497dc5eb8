import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class RefundRequest(BaseModel):
    order_id: uuid.UUID
    amount: Decimal = Field(..., description="Refund amount in JOD, at most the remaining refundable amount.")
    refund_type: str = Field(..., description="'full' or 'partial'.")
    reason: str
    branch_id: Optional[uuid.UUID] = None


class RefundResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    amount: Decimal
    refund_type: str
    reason: str
    created_at: datetime


class RefundResult(BaseModel):
    refund: RefundResponse
    total_refunded: Decimal
    remaining_refundable: Decimal
    is_fully_refunded: bool
    restored_items: int
