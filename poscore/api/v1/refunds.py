import logging
from fastapi import APIRouter, Depends, HTTPException, status
from poscore.core.context import CallerContext, get_caller
from poscore.core.errors import PosError
from poscore.schemas.response import SuccessResponse, ERROR_RESPONSES
from poscore.schemas.refund import RefundRequest, RefundResponse, RefundResult
from poscore.services.refund_service import create_refund

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def create_refund_endpoint(request_data: RefundRequest, caller: CallerContext = Depends(get_caller)):
    """
    Records a full or partial refund. A refund that covers the order marks it
    'refunded' and restores the ingredients deducted for the sale.
    """
    try:
        result = await create_refund(
            caller,
            order_id=request_data.order_id,
            amount=request_data.amount,
            refund_type=request_data.refund_type,
            reason=request_data.reason,
            branch_id=request_data.branch_id,
        )
        refund = result["refund"]
        data = RefundResult(
            refund=RefundResponse(
                id=refund.id,
                order_id=refund.order_id,
                amount=refund.amount,
                refund_type=refund.refund_type.value,
                reason=refund.reason,
                created_at=refund.created_at,
            ),
            total_refunded=result["total_refunded"],
            remaining_refundable=result["remaining_refundable"],
            is_fully_refunded=result["is_fully_refunded"],
            restored_items=result["restored_items"],
        ).model_dump()
        return SuccessResponse(data=data)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error creating refund for order {request_data.order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to create refund.")
