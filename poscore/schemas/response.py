from pydantic import BaseModel, Field
from typing import Any, Optional
import uuid


def _rid():
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Simple success response wrapper with just data, success, and request_id"""
    success: Optional[bool] = Field(default=True)
    request_id: str = Field(default_factory=_rid)
    data: Optional[Any] = None


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable machine-readable rejection code, e.g. insufficient_stock.")
    message: str
    message_en: Optional[str] = None
    message_ar: Optional[str] = None
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Shape of every rejected request; rendered by the exception handlers."""
    success: bool = False
    request_id: str = Field(default_factory=_rid)
    error: ErrorBody


# Shared OpenAPI entry for routes that can reject with a business error
ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}
