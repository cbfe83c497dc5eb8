import asyncio
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from poscore.core.errors import (
    BusinessRuleError, ConflictError, NotFoundError, PosError, ServerError, ValidationFailed,
)
from poscore.models.inventory import StockLedgerEntry, TxnType
from poscore.models.order import Order, OrderStatus, Payment
from poscore.services.inventory_service import adjust_stock
from poscore.services.ledger import get_on_hand
from poscore.services.payment_service import (
    allocate_payments, check_tender_covers, complete_payment, complete_table_payment, parse_tenders,
)


def cash(amount):
    return {"method": "cash", "amount": amount}


def visa(amount):
    return {"method": "visa", "amount": amount}


class TestTenders:
    def test_rejects_unknown_method(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_tenders([{"method": "bitcoin", "amount": "1"}])
        assert exc.value.code == "invalid_payment_method"

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_tenders([cash("0")])
        assert exc.value.code == "invalid_amount"

    def test_rejects_amount_that_rounds_to_zero(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_tenders([cash("0.0004")])
        assert exc.value.code == "invalid_amount"
        assert parse_tenders([cash("0.0005")]) == [("cash", Decimal("0.001"))]

    def test_rejects_empty(self):
        with pytest.raises(ValidationFailed):
            parse_tenders([])

    def test_cash_overpayment_gives_change(self):
        summary = check_tender_covers(parse_tenders([cash("6")]), Decimal("5.250"))
        assert summary["paid_total"] == Decimal("6.000")
        assert summary["change"] == Decimal("0.750")
        assert summary["display_total"] == Decimal("5.3")

    def test_card_overpayment_rejected(self):
        with pytest.raises(BusinessRuleError) as exc:
            check_tender_covers(parse_tenders([cash("3"), visa("3")]), Decimal("5.000"))
        assert exc.value.code == "card_overpayment"

    def test_underpayment_rejected(self):
        with pytest.raises(BusinessRuleError) as exc:
            check_tender_covers(parse_tenders([cash("4.998")]), Decimal("5.000"))
        assert exc.value.code == "underpayment"

    def test_within_tolerance_is_accepted(self):
        summary = check_tender_covers(parse_tenders([visa("4.999")]), Decimal("5.000"))
        assert summary["change"] == Decimal("0.000")


class TestAllocation:
    def test_proportional_split_with_last_order_taking_remainder(self):
        allocations = allocate_payments(
            [Decimal("4.000"), Decimal("6.000")],
            [("cash", Decimal("7.000")), ("visa", Decimal("3.000"))],
        )
        assert allocations[0] == [("cash", Decimal("2.800")), ("visa", Decimal("1.200"))]
        assert allocations[1] == [("cash", Decimal("4.200")), ("visa", Decimal("1.800"))]

    def test_each_instrument_is_fully_allocated(self):
        tenders = [("cash", Decimal("10.000"))]
        allocations = allocate_payments([Decimal("3.333"), Decimal("3.333"), Decimal("3.334")], tenders)
        assert sum(amount for shares in allocations for _, amount in shares) == Decimal("10.000")

    def test_equal_orders_get_equal_shares(self):
        allocations = allocate_payments([Decimal("10"), Decimal("10"), Decimal("10")], [("cash", Decimal("30"))])
        assert allocations == [[("cash", Decimal("10.000"))]] * 3

    def test_shares_come_from_the_tendered_amount(self):
        allocations = allocate_payments(
            [Decimal("2.000"), Decimal("3.000"), Decimal("5.000")],
            [("cash", Decimal("6.000")), ("visa", Decimal("4.000"))],
        )
        assert allocations == [
            [("cash", Decimal("1.200")), ("visa", Decimal("0.800"))],
            [("cash", Decimal("1.800")), ("visa", Decimal("1.200"))],
            [("cash", Decimal("3.000")), ("visa", Decimal("2.000"))],
        ]


@pytest.mark.asyncio
async def test_takeaway_moves_to_kitchen_and_deducts(world, make_order):
    await adjust_stock(world.owner, world.chicken.id, world.main.id, "ADJUSTMENT_IN", "1000", world.g.id)
    await adjust_stock(world.owner, world.bread.id, world.main.id, "ADJUSTMENT_IN", "10", world.pcs.id)
    order = await make_order(total="2.500", lines=[(world.shawarma, "1", "2.500")])

    result = await complete_payment(world.cashier, order.id, [cash("5")])

    assert result["order"].status == OrderStatus.NEW
    assert result["change"] == Decimal("2.500")
    assert (await Order.get(id=order.id)).status == OrderStatus.NEW
    assert await Payment.filter(order_id=order.id).count() == 1
    assert await get_on_hand(world.main.id, world.chicken.id) == Decimal("850")


@pytest.mark.asyncio
async def test_dine_in_in_kitchen_becomes_paid(world, make_order):
    order = await make_order(total="5.000", status=OrderStatus.NEW, dine_in=True)

    result = await complete_payment(world.cashier, order.id, [cash("2"), visa("3")])

    assert result["order"].status == OrderStatus.PAID
    assert result["paid_total"] == Decimal("5.000")
    payments = await Payment.filter(order_id=order.id)
    assert sorted(p.amount for p in payments) == [Decimal("2.000"), Decimal("3.000")]


@pytest.mark.asyncio
async def test_takeaway_already_in_kitchen_is_not_payable(world, make_order):
    order = await make_order(status=OrderStatus.NEW)

    with pytest.raises(BusinessRuleError) as exc:
        await complete_payment(world.cashier, order.id, [cash("5")])

    assert exc.value.code == "order_not_open"
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_rejected_payment_writes_nothing(world, make_order):
    order = await make_order(total="5.000")

    with pytest.raises(BusinessRuleError):
        await complete_payment(world.cashier, order.id, [visa("6")])

    assert (await Order.get(id=order.id)).status == OrderStatus.OPEN
    assert await Payment.all().count() == 0


@pytest.mark.asyncio
async def test_unknown_order(world):
    from uuid import uuid4
    with pytest.raises(NotFoundError):
        await complete_payment(world.cashier, uuid4(), [cash("1")])


@pytest.mark.asyncio
async def test_concurrent_payments_only_one_wins(world, make_order):
    world.restaurant.inventory_enabled = False
    await world.restaurant.save()
    order = await make_order(total="5.000", dine_in=True)

    results = await asyncio.gather(
        complete_payment(world.cashier, order.id, [cash("5")]),
        complete_payment(world.owner, order.id, [visa("5")]),
        return_exceptions=True,
    )

    wins = [r for r in results if isinstance(r, dict)]
    losses = [r for r in results if isinstance(r, PosError)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert losses[0].code in ("race_condition", "order_not_open")
    payments = await Payment.filter(order_id=order.id)
    assert len(payments) == 1
    assert payments[0].created_by == wins[0]["payments"][0].created_by


@pytest.mark.asyncio
async def test_failed_payment_insert_restores_status(world, make_order):
    order = await make_order(total="5.000", status=OrderStatus.NEW, dine_in=True)

    with patch.object(Payment, "bulk_create", new=AsyncMock(side_effect=Exception("insert failed"))):
        with pytest.raises(ServerError) as exc:
            await complete_payment(world.cashier, order.id, [cash("5")])

    assert exc.value.code == "payment_failed"
    assert (await Order.get(id=order.id)).status == OrderStatus.NEW
    assert await StockLedgerEntry.all().count() == 0


@pytest.mark.asyncio
async def test_status_lost_between_read_and_write(world, make_order):
    """Another terminal settles the order after our read; nothing is written"""
    order = await make_order(total="2.500", lines=[(world.shawarma, "1", "2.500")])
    real_filter = Order.filter

    def racing_filter(*args, **kwargs):
        if "status__in" in kwargs:
            return MagicMock(update=AsyncMock(return_value=0))
        return real_filter(*args, **kwargs)

    with patch.object(Order, "filter", side_effect=racing_filter):
        with pytest.raises(ConflictError) as exc:
            await complete_payment(world.cashier, order.id, [cash("5")])

    assert exc.value.code == "race_condition"
    assert exc.value.status_code == 409
    assert await Payment.all().count() == 0
    assert (await Order.get(id=order.id)).status == OrderStatus.OPEN
    assert await StockLedgerEntry.all().count() == 0


@pytest.mark.asyncio
async def test_deduction_failure_does_not_fail_payment(world, make_order):
    order = await make_order(total="2.500", lines=[(world.shawarma, "1", "2.500")])

    with patch("poscore.services.payment_service.deduct_for_order",
               new=AsyncMock(side_effect=Exception("stock down"))):
        result = await complete_payment(world.cashier, order.id, [cash("2.5")])

    assert result["order"].status == OrderStatus.NEW
    assert await Payment.filter(order_id=order.id).count() == 1


class TestTablePayment:
    @pytest.mark.asyncio
    async def test_settles_all_orders_with_allocated_rows(self, world, make_order):
        first = await make_order(total="4.000", dine_in=True)
        second = await make_order(total="6.000", status=OrderStatus.NEW, dine_in=True)

        result = await complete_table_payment(world.cashier, [second.id, first.id], [cash("7"), visa("3")])

        assert result["combined_total"] == Decimal("10.000")
        assert [o.order_number for o in result["orders"]] == [first.order_number, second.order_number]
        for order in (first, second):
            assert (await Order.get(id=order.id)).status == OrderStatus.PAID
        first_rows = {p.method.value: p.amount for p in await Payment.filter(order_id=first.id)}
        assert first_rows == {"cash": Decimal("2.800"), "visa": Decimal("1.200")}
        second_rows = {p.method.value: p.amount for p in await Payment.filter(order_id=second.id)}
        assert second_rows == {"cash": Decimal("4.200"), "visa": Decimal("1.800")}

    @pytest.mark.asyncio
    async def test_non_open_order_rejects_whole_table(self, world, make_order):
        first = await make_order(total="4.000", dine_in=True)
        paid = await make_order(total="6.000", status=OrderStatus.PAID, dine_in=True)

        with pytest.raises(BusinessRuleError) as exc:
            await complete_table_payment(world.cashier, [first.id, paid.id], [cash("10")])

        assert exc.value.code == "order_not_open"
        assert exc.value.details == [{"order_number": paid.order_number, "status": OrderStatus.PAID}]
        assert (await Order.get(id=first.id)).status == OrderStatus.OPEN

    @pytest.mark.asyncio
    async def test_missing_order(self, world, make_order):
        from uuid import uuid4
        first = await make_order(total="4.000", dine_in=True)
        with pytest.raises(NotFoundError) as exc:
            await complete_table_payment(world.cashier, [first.id, uuid4()], [cash("4")])
        assert exc.value.code == "orders_not_found"

    @pytest.mark.asyncio
    async def test_conflict_mid_loop_reverts_moved_orders(self, world, make_order):
        first = await make_order(total="4.000", dine_in=True)
        second = await make_order(total="6.000", status=OrderStatus.NEW, dine_in=True)
        real_filter = Order.filter

        def racing_filter(*args, **kwargs):
            # another terminal grabs the second order between our reads and writes
            if str(kwargs.get("id")) == str(second.id) and "status__in" in kwargs:
                return MagicMock(update=AsyncMock(return_value=0))
            return real_filter(*args, **kwargs)

        with patch.object(Order, "filter", side_effect=racing_filter):
            with pytest.raises(ConflictError) as exc:
                await complete_table_payment(world.cashier, [first.id, second.id], [cash("10")])

        assert exc.value.code == "race_condition"
        assert exc.value.details == {"order_number": second.order_number}
        assert (await Order.get(id=first.id)).status == OrderStatus.OPEN
        assert await Payment.all().count() == 0

    @pytest.mark.asyncio
    async def test_failed_insert_reverts_every_order(self, world, make_order):
        first = await make_order(total="4.000", dine_in=True)
        second = await make_order(total="6.000", status=OrderStatus.NEW, dine_in=True)

        with patch.object(Payment, "bulk_create", new=AsyncMock(side_effect=Exception("insert failed"))):
            with pytest.raises(ServerError):
                await complete_table_payment(world.cashier, [first.id, second.id], [cash("10")])

        assert (await Order.get(id=first.id)).status == OrderStatus.OPEN
        assert (await Order.get(id=second.id)).status == OrderStatus.NEW
