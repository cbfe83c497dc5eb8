import sys
import os
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
import pytest_asyncio
from tortoise import Tortoise

# Add project root to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from poscore.core.context import CallerContext
from poscore.core.db import MODELS_MODULES
from poscore.models.inventory import InventoryItem, InventoryUnit, Recipe, RecipeLine, UnitConversion
from poscore.models.order import Order, OrderItem, OrderStatus
from poscore.models.restaurant import Branch, MenuItem, Restaurant, StaffRole, UserRole
from poscore.services.ledger import get_on_hand, ledger_balance


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODELS_MODULES})
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()


@pytest_asyncio.fixture
async def world(db):
    """
    One restaurant with inventory enabled, two branches, an owner and a cashier,
    kg/g/pcs units (1 kg = 1000 g) and a shawarma whose recipe uses 150 g of
    chicken and one bread.
    """
    restaurant = await Restaurant.create(name="Test Restaurant", inventory_enabled=True)
    main = await Branch.create(restaurant=restaurant, name="Main")
    mall = await Branch.create(restaurant=restaurant, name="Mall")

    await UserRole.create(user_id="owner-1", role=StaffRole.OWNER, restaurant=restaurant)
    await UserRole.create(user_id="cashier-1", role=StaffRole.CASHIER, restaurant=restaurant, branch=main)
    owner = CallerContext(user_id="owner-1", role=StaffRole.OWNER, restaurant_id=restaurant.id)
    cashier = CallerContext(user_id="cashier-1", role=StaffRole.CASHIER, restaurant_id=restaurant.id,
                            branch_id=main.id)

    kg = await InventoryUnit.create(restaurant=restaurant, name="kg", symbol="kg")
    g = await InventoryUnit.create(restaurant=restaurant, name="g", symbol="g")
    pcs = await InventoryUnit.create(restaurant=restaurant, name="pcs", symbol="pcs")
    await UnitConversion.create(restaurant=restaurant, from_unit=kg, to_unit=g, multiplier=Decimal("1000"))

    chicken = await InventoryItem.create(restaurant=restaurant, branch=main, name="Chicken", category="Meat",
                                         base_unit=g, avg_cost=Decimal("0.006"))
    bread = await InventoryItem.create(restaurant=restaurant, branch=main, name="Bread", category="Bakery",
                                       base_unit=pcs, avg_cost=Decimal("0.100"))

    shawarma = await MenuItem.create(restaurant=restaurant, name="Shawarma", price=Decimal("2.500"))
    recipe = await Recipe.create(restaurant=restaurant, menu_item=shawarma)
    await RecipeLine.create(restaurant=restaurant, recipe=recipe, inventory_item=chicken,
                            qty=Decimal("150"), unit=g, qty_in_base=Decimal("150"))
    await RecipeLine.create(restaurant=restaurant, recipe=recipe, inventory_item=bread,
                            qty=Decimal("1"), unit=pcs, qty_in_base=Decimal("1"))

    return SimpleNamespace(
        restaurant=restaurant, main=main, mall=mall,
        owner=owner, cashier=cashier,
        kg=kg, g=g, pcs=pcs,
        chicken=chicken, bread=bread,
        shawarma=shawarma, recipe=recipe,
    )


@pytest.fixture
def make_order(world):
    """Factory for orders created outside the core (POS order entry)."""
    counter = {"n": 0}

    async def _make(total="5.000", status=OrderStatus.OPEN, dine_in=False, lines=None, branch=None):
        counter["n"] += 1
        order = await Order.create(
            order_number=counter["n"],
            restaurant=world.restaurant,
            branch=branch or world.main,
            table_id=uuid4() if dine_in else None,
            status=status,
            subtotal=Decimal(total),
            total=Decimal(total),
        )
        for menu_item, qty, line_total in (lines or []):
            await OrderItem.create(order=order, menu_item=menu_item, quantity=Decimal(qty),
                                   unit_price=Decimal(line_total) / Decimal(qty), line_total=Decimal(line_total))
        return order

    return _make


async def assert_conserved(branch_id, item_id):
    """Ledger replay and cached on-hand agree for the key."""
    assert await ledger_balance(branch_id, item_id) == await get_on_hand(branch_id, item_id)
