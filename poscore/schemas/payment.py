import uuid
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from poscore.models.order import OrderStatus


class PaymentInstrument(BaseModel):
    """One tendered instrument. Method and amount are checked by the engine so
    rejections carry the closed error codes."""
    method: str = Field(..., description="cash, visa, cliq, zain_cash, orange_money or umniah_wallet.")
    amount: Decimal = Field(..., description="Tendered amount in JOD.")


class CompletePaymentRequest(BaseModel):
    order_id: uuid.UUID
    payments: List[PaymentInstrument]


class TablePaymentRequest(BaseModel):
    order_ids: List[uuid.UUID] = Field(..., description="Orders settled together, e.g. every open order on a table.")
    payments: List[PaymentInstrument]


class PaymentResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    method: str
    amount: Decimal


class PaymentResult(BaseModel):
    order_id: uuid.UUID
    order_number: int
    status: OrderStatus
    total: Decimal
    paid_total: Decimal
    change: Decimal
    display_total: Decimal = Field(..., description="Total rounded to 1 dp for the customer.")
    payments: List[PaymentResponse]


class SettledOrder(BaseModel):
    id: uuid.UUID
    order_number: int
    status: OrderStatus


class TablePaymentResult(BaseModel):
    orders: List[SettledOrder]
    combined_total: Decimal
    paid_total: Decimal
    change: Decimal
    display_total: Decimal
    payments: List[PaymentResponse]
    message: Optional[str] = None
