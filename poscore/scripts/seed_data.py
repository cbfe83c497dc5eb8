# scripts/seed_data.py
import asyncio
from decimal import Decimal
from tortoise import Tortoise
from poscore.core.db import init_db
from poscore.models.restaurant import Restaurant, Branch, UserRole, StaffRole, MenuItem
from poscore.models.order import Order, OrderItem, OrderStatus
from poscore.models.inventory import (
    InventoryUnit, UnitConversion, InventoryItem, Recipe, RecipeLine, StockLedgerEntry, TxnType,
)
from poscore.services.ledger import Movement, post_movements
from tortoise.transactions import in_transaction


async def seed():
    # One restaurant with inventory enabled and two branches
    rest, _ = await Restaurant.get_or_create(name="Demo Restaurant", defaults={"inventory_enabled": True})
    main_branch, _ = await Branch.get_or_create(restaurant=rest, name="Main")
    mall_branch, _ = await Branch.get_or_create(restaurant=rest, name="Mall")
    print("Restaurant:", rest.id)
    print("Branches:", str(main_branch.id), str(mall_branch.id))

    owner, _ = await UserRole.get_or_create(
        user_id="owner-demo", defaults={"role": StaffRole.OWNER, "restaurant": rest}
    )
    cashier, _ = await UserRole.get_or_create(
        user_id="cashier-demo", defaults={"role": StaffRole.CASHIER, "restaurant": rest, "branch": main_branch}
    )
    print("Users (X-User-Id):", owner.user_id, cashier.user_id)

    # Units: grams are the base unit for weighed goods
    kg, _ = await InventoryUnit.get_or_create(restaurant=rest, name="kg", defaults={"symbol": "kg"})
    g, _ = await InventoryUnit.get_or_create(restaurant=rest, name="g", defaults={"symbol": "g"})
    pcs, _ = await InventoryUnit.get_or_create(restaurant=rest, name="pcs", defaults={"symbol": "pcs"})
    await UnitConversion.get_or_create(
        restaurant=rest, from_unit=kg, to_unit=g, defaults={"multiplier": Decimal("1000")}
    )

    chicken, _ = await InventoryItem.get_or_create(
        restaurant=rest, branch=main_branch, name="Chicken breast",
        defaults={"base_unit": g, "category": "Meat", "avg_cost": Decimal("0.006"), "reorder_point": Decimal("2000")},
    )
    bread, _ = await InventoryItem.get_or_create(
        restaurant=rest, branch=main_branch, name="Shrak bread",
        defaults={"base_unit": pcs, "category": "Bakery", "avg_cost": Decimal("0.100"), "reorder_point": Decimal("20")},
    )

    # Opening stock only once; the ledger is the source of truth
    if not await StockLedgerEntry.filter(item_id=chicken.id).exists():
        async with in_transaction() as conn:
            await post_movements([
                Movement(rest.id, main_branch.id, chicken.id, TxnType.INITIAL_STOCK, Decimal("10"), Decimal("10000"),
                         unit_id=kg.id, notes="Seed opening balance", created_by=owner.user_id),
                Movement(rest.id, main_branch.id, bread.id, TxnType.INITIAL_STOCK, Decimal("100"), Decimal("100"),
                         unit_id=pcs.id, notes="Seed opening balance", created_by=owner.user_id),
            ], conn)
    print("Inventory seeded.")

    shawarma, _ = await MenuItem.get_or_create(restaurant=rest, name="Chicken Shawarma", defaults={"price": "2.500"})
    recipe, created = await Recipe.get_or_create(restaurant=rest, menu_item=shawarma)
    if created:
        await RecipeLine.create(restaurant=rest, recipe=recipe, inventory_item=chicken,
                                qty=Decimal("0.150"), unit=kg, qty_in_base=Decimal("150"))
        await RecipeLine.create(restaurant=rest, recipe=recipe, inventory_item=bread,
                                qty=Decimal("1"), unit=pcs, qty_in_base=Decimal("1"))
    print("Menu item:", str(shawarma.id))

    # An open takeaway order ready to be paid
    order = await Order.filter(restaurant=rest, status=OrderStatus.OPEN).first()
    if not order:
        last = await Order.filter(restaurant=rest).order_by("-order_number").first()
        order = await Order.create(
            order_number=(last.order_number + 1) if last else 1,
            restaurant=rest,
            branch=main_branch,
            subtotal=Decimal("5.000"),
            total=Decimal("5.000"),
        )
        await OrderItem.create(order=order, menu_item=shawarma, quantity=Decimal("2"),
                               unit_price=Decimal("2.500"), line_total=Decimal("5.000"))
    print("Open order:", str(order.id), "total", order.total)


async def main():
    await init_db()
    await seed()
    await Tortoise.close_connections()

if __name__ == "__main__":
    asyncio.run(main())
