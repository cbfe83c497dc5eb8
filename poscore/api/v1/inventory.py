import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from poscore.core.context import CallerContext, get_caller
from poscore.core.errors import PosError, ValidationFailed
from poscore.schemas.response import SuccessResponse, ERROR_RESPONSES
from poscore.schemas.inventory import (
    AdjustmentRequest, AdjustmentResult, CSVImportRequest, CSVImportResult, DeductionResult, LedgerEntryResponse,
    PurchaseReceiptRequest, ReconcileRequest, StockLevelResponse, TransferRequest,
)
from poscore.services import csv_import_service, inventory_service
from poscore.services.deduction_service import deduct_order_inventory
from uuid import UUID

log = logging.getLogger("uvicorn")

router = APIRouter()


def _entry(entry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        branch_id=entry.branch_id,
        item_id=entry.item_id,
        txn_type=entry.txn_type.value,
        qty=entry.qty,
        unit_id=entry.unit_id,
        qty_in_base=entry.qty_in_base,
        reference_type=entry.reference_type.value if entry.reference_type else None,
        reference_id=entry.reference_id,
        notes=entry.notes,
        created_by=entry.created_by,
        created_at=entry.created_at,
    )


@router.post("/transactions", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse,
             responses=ERROR_RESPONSES)
async def create_transaction_endpoint(request_data: AdjustmentRequest, caller: CallerContext = Depends(get_caller)):
    """Adjustment in/out, waste or initial stock for one item. Never drives stock below zero."""
    try:
        result = await inventory_service.adjust_stock(
            caller,
            item_id=request_data.item_id,
            branch_id=request_data.branch_id,
            txn_type=request_data.txn_type,
            qty=request_data.qty,
            unit_id=request_data.unit_id,
            notes=request_data.notes,
        )
        data = AdjustmentResult(
            transaction=_entry(result["transaction"]),
            new_on_hand=result["new_on_hand"],
        ).model_dump()
        return SuccessResponse(data=data)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error creating inventory transaction: {e}")
        raise HTTPException(status_code=500, detail="Server failed to record inventory transaction.")


@router.post("/receipts", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse,
             responses=ERROR_RESPONSES)
async def post_receipt_endpoint(request_data: PurchaseReceiptRequest, caller: CallerContext = Depends(get_caller)):
    """Posts a purchase receipt and moves the average cost of every received item."""
    try:
        result = await inventory_service.post_purchase_receipt(
            caller,
            branch_id=request_data.branch_id,
            receipt_no=request_data.receipt_no,
            lines=[line.model_dump() for line in request_data.lines],
            supplier_id=request_data.supplier_id,
            received_at=request_data.received_at,
            notes=request_data.notes,
        )
        return SuccessResponse(data=result)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error posting purchase receipt {request_data.receipt_no}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to post purchase receipt.")


@router.post("/transfers", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse,
             responses=ERROR_RESPONSES)
async def transfer_endpoint(request_data: TransferRequest, caller: CallerContext = Depends(get_caller)):
    """Owner only. Moves stock between two branches of the restaurant."""
    try:
        result = await inventory_service.transfer_stock(
            caller,
            from_branch_id=request_data.from_branch_id,
            to_branch_id=request_data.to_branch_id,
            lines=[line.model_dump() for line in request_data.lines],
            notes=request_data.notes,
        )
        return SuccessResponse(data=result)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error transferring stock: {e}")
        raise HTTPException(status_code=500, detail="Server failed to transfer stock.")


@router.post("/import", status_code=status.HTTP_200_OK, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def import_endpoint(request_data: CSVImportRequest, caller: CallerContext = Depends(get_caller)):
    """
    Owner only. Bulk item import with opening stock. The batch succeeds even
    when rows fail; failed rows are listed in `errors`.
    """
    try:
        if request_data.rows is not None:
            rows = [row.model_dump() for row in request_data.rows]
        elif request_data.csv_text:
            rows = csv_import_service.parse_csv(request_data.csv_text)
        else:
            raise ValidationFailed("missing_fields")
        result = await csv_import_service.import_inventory_rows(caller, request_data.branch_id, rows)
        return SuccessResponse(data=CSVImportResult(**result).model_dump())
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error importing inventory: {e}")
        raise HTTPException(status_code=500, detail="Server failed to import inventory.")


@router.post("/reconcile", status_code=status.HTTP_200_OK, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def reconcile_endpoint(request_data: ReconcileRequest, caller: CallerContext = Depends(get_caller)):
    """Owner only. Rebuilds cached stock levels from the ledger and reports the drift found."""
    try:
        drift = await inventory_service.reconcile(caller, request_data.branch_id, apply=not request_data.dry_run)
        return SuccessResponse(data={"drift": drift, "applied": not request_data.dry_run})
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error reconciling stock levels: {e}")
        raise HTTPException(status_code=500, detail="Server failed to reconcile stock levels.")


@router.get("/items/{item_id}/transactions", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def item_transactions_endpoint(item_id: UUID, limit: int = Query(100, ge=1, le=1000),
                                     caller: CallerContext = Depends(get_caller)):
    """Ledger history of one item, newest first."""
    try:
        entries = await inventory_service.list_item_transactions(caller, item_id, limit=limit)
        return SuccessResponse(data=[_entry(e).model_dump() for e in entries])
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error fetching transactions for item {item_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch item transactions.")


@router.get("/stock/{branch_id}", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def branch_stock_endpoint(branch_id: UUID, caller: CallerContext = Depends(get_caller)):
    """Cached on-hand quantities for every stocked item of a branch."""
    try:
        levels = await inventory_service.list_stock_levels(caller, branch_id)
        data = [
            StockLevelResponse(
                item_id=level.item_id,
                item_name=level.item.name,
                branch_id=level.branch_id,
                on_hand_base=level.on_hand_base,
                reorder_point=level.item.reorder_point,
                updated_at=level.updated_at,
            ).model_dump()
            for level in levels
        ]
        return SuccessResponse(data=data)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error fetching stock for branch {branch_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch stock levels.")


@router.post("/deduct/{order_id}", status_code=status.HTTP_200_OK, response_model=SuccessResponse,
             responses=ERROR_RESPONSES)
async def deduct_endpoint(order_id: UUID, caller: CallerContext = Depends(get_caller)):
    """
    Runs the recipe deduction for a paid order. Safe to repeat: an order
    already deducted is skipped.
    """
    try:
        result = await deduct_order_inventory(caller, order_id)
        return SuccessResponse(data=DeductionResult(**result).model_dump())
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error deducting inventory for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to deduct inventory.")
