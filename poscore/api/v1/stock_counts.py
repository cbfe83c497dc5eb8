import logging
from fastapi import APIRouter, Depends, HTTPException, status
from poscore.core.context import CallerContext, get_caller
from poscore.core.errors import PosError
from poscore.schemas.response import SuccessResponse, ERROR_RESPONSES
from poscore.schemas.stock_count import (
    StockCountApprovalResult, StockCountCreateRequest, StockCountLineResponse, StockCountResponse,
)
from poscore.services import stock_count_service
from uuid import UUID

router = APIRouter()
log = logging.getLogger("uvicorn")


def _count(count, lines=None) -> dict:
    return StockCountResponse(
        id=count.id,
        branch_id=count.branch_id,
        status=count.status,
        notes=count.notes,
        approved_by=count.approved_by,
        approved_at=count.approved_at,
        lines=[
            StockCountLineResponse(
                item_id=line.item_id,
                expected_base=line.expected_base,
                actual_base=line.actual_base,
                variance_base=line.variance_base,
            )
            for line in (lines or [])
        ],
    ).model_dump()


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def create_count_endpoint(request_data: StockCountCreateRequest, caller: CallerContext = Depends(get_caller)):
    """Records counted quantities against a snapshot of the cached on-hand."""
    try:
        count = await stock_count_service.create_stock_count(
            caller,
            request_data.branch_id,
            [line.model_dump() for line in request_data.lines],
            notes=request_data.notes,
        )
        count = await stock_count_service.get_stock_count(caller, count.id)
        return SuccessResponse(data=_count(count, count.lines))
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error creating stock count: {e}")
        raise HTTPException(status_code=500, detail="Server failed to create stock count.")


@router.get("/{count_id}", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def get_count_endpoint(count_id: UUID, caller: CallerContext = Depends(get_caller)):
    try:
        count = await stock_count_service.get_stock_count(caller, count_id)
        return SuccessResponse(data=_count(count, count.lines))
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error fetching stock count {count_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch stock count.")


@router.post("/{count_id}/approve", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def approve_count_endpoint(count_id: UUID, caller: CallerContext = Depends(get_caller)):
    """Owner only. Posts every non-zero variance to the ledger; terminal for the count."""
    try:
        result = await stock_count_service.approve_stock_count(caller, count_id)
        return SuccessResponse(data=StockCountApprovalResult(**result).model_dump())
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error approving stock count {count_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to approve stock count.")


@router.post("/{count_id}/cancel", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def cancel_count_endpoint(count_id: UUID, caller: CallerContext = Depends(get_caller)):
    try:
        count = await stock_count_service.cancel_stock_count(caller, count_id)
        return SuccessResponse(data=_count(count))
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error cancelling stock count {count_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to cancel stock count.")
