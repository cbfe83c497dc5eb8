import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RecipeLineRequest(BaseModel):
    inventory_item_id: uuid.UUID
    qty: Decimal = Field(..., description="Quantity consumed per single menu item, in unit_id.")
    unit_id: uuid.UUID


class RecipeUpsertRequest(BaseModel):
    """Replaces the full line set of the recipe."""
    lines: List[RecipeLineRequest]
    notes: Optional[str] = None
    is_active: bool = True


class RecipeLineResponse(BaseModel):
    id: uuid.UUID
    inventory_item_id: uuid.UUID
    qty: Decimal
    unit_id: uuid.UUID
    qty_in_base: Decimal


class RecipeResponse(BaseModel):
    id: uuid.UUID
    menu_item_id: uuid.UUID
    is_active: bool
    notes: Optional[str] = None
    lines: List[RecipeLineResponse]


class RecipeCSVImportRow(BaseModel):
    menu_item_name: Optional[str] = None
    inventory_item_name: Optional[str] = None
    quantity: Optional[str] = None
    unit: Optional[str] = Field(None, description="Unit name or symbol.")


class RecipeCSVImportRequest(BaseModel):
    """Either pre-parsed rows or the raw CSV text with a header row."""
    rows: Optional[List[RecipeCSVImportRow]] = None
    csv_text: Optional[str] = None
    branch_id: Optional[uuid.UUID] = Field(None, description="Match ingredients only among this branch's items.")


class RecipeCSVImportResult(BaseModel):
    success: bool
    menu_items_updated: int
    recipe_lines_inserted: int
    errors: List[Dict[str, Any]]
