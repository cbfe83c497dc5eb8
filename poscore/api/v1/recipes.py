import logging
from fastapi import APIRouter, Depends, HTTPException, status
from poscore.core.context import CallerContext, get_caller
from poscore.core.errors import PosError, ValidationFailed
from poscore.schemas.response import SuccessResponse, ERROR_RESPONSES
from poscore.schemas.recipe import (
    RecipeCSVImportRequest, RecipeCSVImportResult, RecipeLineResponse, RecipeResponse, RecipeUpsertRequest,
)
from poscore.services.csv_import_service import parse_csv
from poscore.services.recipe_service import RECIPE_CSV_COLUMNS, get_recipe, import_recipe_rows, upsert_recipe
from uuid import UUID

router = APIRouter()
log = logging.getLogger("uvicorn")


def _recipe(recipe) -> dict:
    return RecipeResponse(
        id=recipe.id,
        menu_item_id=recipe.menu_item_id,
        is_active=recipe.is_active,
        notes=recipe.notes,
        lines=[
            RecipeLineResponse(
                id=line.id,
                inventory_item_id=line.inventory_item_id,
                qty=line.qty,
                unit_id=line.unit_id,
                qty_in_base=line.qty_in_base,
            )
            for line in recipe.lines
        ],
    ).model_dump()


@router.put("/{menu_item_id}", status_code=status.HTTP_200_OK, response_model=SuccessResponse,
            responses=ERROR_RESPONSES)
async def upsert_recipe_endpoint(menu_item_id: UUID, request_data: RecipeUpsertRequest,
                                 caller: CallerContext = Depends(get_caller)):
    """Creates the recipe of a menu item or replaces all of its lines."""
    try:
        recipe = await upsert_recipe(
            caller,
            menu_item_id,
            [line.model_dump() for line in request_data.lines],
            notes=request_data.notes,
            is_active=request_data.is_active,
        )
        return SuccessResponse(data=_recipe(recipe))
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error saving recipe for menu item {menu_item_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to save recipe.")


@router.get("/{menu_item_id}", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def get_recipe_endpoint(menu_item_id: UUID, caller: CallerContext = Depends(get_caller)):
    try:
        recipe = await get_recipe(caller, menu_item_id)
        return SuccessResponse(data=_recipe(recipe))
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error fetching recipe for menu item {menu_item_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch recipe.")


@router.post("/import", status_code=status.HTTP_200_OK, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def import_recipes_endpoint(request_data: RecipeCSVImportRequest, caller: CallerContext = Depends(get_caller)):
    """
    Owner only. Replaces the recipes of every menu item named in the rows.
    A menu item with any bad row keeps its current recipe; failed rows are
    listed in `errors`.
    """
    try:
        if request_data.rows is not None:
            rows = [row.model_dump() for row in request_data.rows]
        elif request_data.csv_text:
            rows = parse_csv(request_data.csv_text, RECIPE_CSV_COLUMNS)
        else:
            raise ValidationFailed("missing_fields")
        result = await import_recipe_rows(caller, rows, branch_id=request_data.branch_id)
        return SuccessResponse(data=RecipeCSVImportResult(**result).model_dump())
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error importing recipes: {e}")
        raise HTTPException(status_code=500, detail="Server failed to import recipes.")
