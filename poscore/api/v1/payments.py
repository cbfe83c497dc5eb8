import logging
from fastapi import APIRouter, Depends, HTTPException, status
from poscore.core.context import CallerContext, get_caller
from poscore.core.errors import PosError
from poscore.schemas.response import SuccessResponse, ERROR_RESPONSES
from poscore.schemas.payment import (
    CompletePaymentRequest, PaymentResponse, PaymentResult, SettledOrder, TablePaymentRequest, TablePaymentResult,
)
from poscore.services.payment_service import complete_payment, complete_table_payment

router = APIRouter()
log = logging.getLogger("uvicorn")


def _payments(rows):
    return [
        PaymentResponse(id=p.id, order_id=p.order_id, method=p.method.value, amount=p.amount)
        for p in rows
    ]


@router.post("/complete", status_code=status.HTTP_200_OK, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def complete_payment_endpoint(request_data: CompletePaymentRequest, caller: CallerContext = Depends(get_caller)):
    """
    Settles one order. Dine-in orders move to 'paid', takeaway orders move to
    'new' so they enter the kitchen queue at the moment of payment.
    """
    try:
        result = await complete_payment(
            caller,
            request_data.order_id,
            [p.model_dump() for p in request_data.payments],
        )
        order = result["order"]
        log.info(f"Order {order.id} settled by {caller.user_id}.")
        data = PaymentResult(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            total=result["total"],
            paid_total=result["paid_total"],
            change=result["change"],
            display_total=result["display_total"],
            payments=_payments(result["payments"]),
        ).model_dump()
        return SuccessResponse(data=data)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error completing payment for order {request_data.order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to complete payment.")


@router.post("/table", status_code=status.HTTP_200_OK, response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def complete_table_payment_endpoint(request_data: TablePaymentRequest, caller: CallerContext = Depends(get_caller)):
    """Settles several orders with one set of tendered instruments, split proportionally."""
    try:
        result = await complete_table_payment(
            caller,
            request_data.order_ids,
            [p.model_dump() for p in request_data.payments],
        )
        data = TablePaymentResult(
            orders=[SettledOrder(id=o.id, order_number=o.order_number, status=o.status) for o in result["orders"]],
            combined_total=result["combined_total"],
            paid_total=result["paid_total"],
            change=result["change"],
            display_total=result["display_total"],
            payments=_payments(result["payments"]),
            message=f"{len(result['orders'])} order(s) settled.",
        ).model_dump()
        return SuccessResponse(data=data)
    except PosError:
        raise
    except Exception as e:
        log.error(f"Error completing table payment: {e}")
        raise HTTPException(status_code=500, detail="Server failed to complete table payment.")
