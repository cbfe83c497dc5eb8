import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from poscore.core.errors import BusinessRuleError, ValidationFailed
from poscore.models.audit import AuditLog
from poscore.models.inventory import StockLedgerEntry, TxnType
from poscore.models.order import Order, OrderStatus, Refund
from poscore.services.inventory_service import adjust_stock
from poscore.services.ledger import get_on_hand
from poscore.services.payment_service import complete_payment
from poscore.services.refund_service import create_refund
from conftest import assert_conserved


@pytest.fixture
def sold(world, make_order):
    """A dine-in order of two shawarmas, paid in full and deducted from stock."""
    async def _sell():
        await adjust_stock(world.owner, world.chicken.id, world.main.id, "ADJUSTMENT_IN", "1000", world.g.id)
        await adjust_stock(world.owner, world.bread.id, world.main.id, "ADJUSTMENT_IN", "10", world.pcs.id)
        order = await make_order(total="5.000", dine_in=True, lines=[(world.shawarma, "2", "5.000")])
        await complete_payment(world.cashier, order.id, [{"method": "cash", "amount": "5"}])
        return order
    return _sell


@pytest.mark.asyncio
async def test_partial_then_remaining_refund(world, sold):
    order = await sold()

    first = await create_refund(world.cashier, order.id, "2.000", "partial", "cold food")
    assert first["total_refunded"] == Decimal("2.000")
    assert first["remaining_refundable"] == Decimal("3.000")
    assert first["is_fully_refunded"] is False
    assert first["restored_items"] == 0
    assert (await Order.get(id=order.id)).status == OrderStatus.PAID
    assert await get_on_hand(world.main.id, world.chicken.id) == Decimal("700")

    second = await create_refund(world.cashier, order.id, "3.000", "partial", "customer left")
    assert second["is_fully_refunded"] is True
    assert second["remaining_refundable"] == Decimal("0.000")
    # covering the order total restores the ingredients even on a partial refund
    assert second["restored_items"] == 2
    assert (await Order.get(id=order.id)).status == OrderStatus.REFUNDED
    assert await get_on_hand(world.main.id, world.chicken.id) == Decimal("1000")
    await assert_conserved(world.main.id, world.chicken.id)


@pytest.mark.asyncio
async def test_full_refund_restores_inventory_once(world, sold):
    order = await sold()

    result = await create_refund(world.owner, order.id, "5", "full", "wrong order")

    assert result["restored_items"] == 2
    assert result["refund"].refund_type.value == "full"
    entries = await StockLedgerEntry.filter(txn_type=TxnType.REFUND_RESTORATION)
    assert all(str(e.reference_id) == str(result["refund"].id) for e in entries)
    assert await AuditLog.filter(action="REFUND_CREATED").count() == 1

    # nothing left to refund
    with pytest.raises(BusinessRuleError) as exc:
        await create_refund(world.owner, order.id, "0.5", "partial", "again")
    assert exc.value.code == "refund_exceeds_available"
    assert await StockLedgerEntry.filter(txn_type=TxnType.REFUND_RESTORATION).count() == 2


@pytest.mark.asyncio
async def test_refund_over_remaining_is_rejected_without_writes(world, sold):
    order = await sold()
    await create_refund(world.cashier, order.id, "4", "partial", "burnt")

    with pytest.raises(BusinessRuleError) as exc:
        await create_refund(world.cashier, order.id, "1.500", "partial", "still burnt")

    assert exc.value.code == "refund_exceeds_available"
    assert exc.value.details["max_refundable"] == Decimal("1.000")
    assert await Refund.filter(order_id=order.id).count() == 1


@pytest.mark.asyncio
async def test_only_paid_orders_are_refundable(world, make_order):
    order = await make_order(total="5.000")

    with pytest.raises(BusinessRuleError) as exc:
        await create_refund(world.cashier, order.id, "1", "partial", "test")

    assert exc.value.code == "order_not_refundable"
    assert "open" in exc.value.message


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, refund_type, reason, code", [
    ("1", "partial", "  ", "missing_fields"),
    ("0", "partial", "x", "invalid_amount"),
    ("-2", "full", "x", "invalid_amount"),
    ("0.0004", "partial", "x", "invalid_amount"),
    ("1", "store_credit", "x", "invalid_refund_type"),
])
async def test_validation(world, make_order, amount, refund_type, reason, code):
    order = await make_order(status=OrderStatus.PAID, dine_in=True)
    with pytest.raises(ValidationFailed) as exc:
        await create_refund(world.cashier, order.id, amount, refund_type, reason)
    assert exc.value.code == code
    assert await Refund.filter(order_id=order.id).count() == 0


@pytest.mark.asyncio
async def test_restoration_failure_keeps_refund(world, sold):
    order = await sold()

    with patch("poscore.services.refund_service.restore_for_refund",
               new=AsyncMock(side_effect=Exception("ledger down"))):
        result = await create_refund(world.cashier, order.id, "5", "full", "complaint")

    assert result["restored_items"] == 0
    assert result["is_fully_refunded"] is True
    assert await Refund.filter(order_id=order.id).count() == 1
