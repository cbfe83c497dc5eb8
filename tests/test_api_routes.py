import pytest
from datetime import datetime
from decimal import Decimal
from fastapi.testclient import TestClient
from types import SimpleNamespace
from unittest.mock import patch
from uuid import uuid4

from poscore.core.context import CallerContext, get_caller
from poscore.core.errors import BusinessRuleError, ConflictError
from poscore.main import app
from poscore.models.inventory import StockCountStatus, TxnType
from poscore.models.order import OrderStatus, PaymentMethod, RefundType
from poscore.models.restaurant import StaffRole

RESTAURANT_ID = uuid4()


@pytest.fixture
def client():
    app.dependency_overrides[get_caller] = lambda: CallerContext(
        user_id="cashier-1", role=StaffRole.CASHIER, restaurant_id=RESTAURANT_ID
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def payment_row(order_id, method, amount):
    return SimpleNamespace(id=uuid4(), order_id=order_id, method=method, amount=Decimal(amount))


class TestPaymentRoutes:
    def test_complete_payment_success(self, client):
        """Settled order comes back with change and the 1 dp total"""
        order_id = uuid4()
        with patch('poscore.api.v1.payments.complete_payment') as mock_complete:
            mock_complete.return_value = {
                "order": SimpleNamespace(id=order_id, order_number=12, status=OrderStatus.NEW),
                "payments": [payment_row(order_id, PaymentMethod.CASH, "10.000")],
                "total": Decimal("7.250"),
                "paid_total": Decimal("10.000"),
                "change": Decimal("2.750"),
                "display_total": Decimal("7.3"),
            }

            response = client.post("/api/v1/payments/complete", json={
                "order_id": str(order_id),
                "payments": [{"method": "cash", "amount": "10"}],
            })

            assert response.status_code == 200
            body = response.json()
            assert body["success"] is True
            assert body["data"]["status"] == "new"
            assert Decimal(str(body["data"]["change"])) == Decimal("2.750")
            assert Decimal(str(body["data"]["display_total"])) == Decimal("7.3")
            assert body["data"]["payments"][0]["method"] == "cash"
            args = mock_complete.call_args.args
            assert str(args[1]) == str(order_id)
            assert args[2] == [{"method": "cash", "amount": Decimal("10")}]

    def test_business_rejection_uses_error_envelope(self, client):
        """Engine rejections render code and bilingual messages"""
        with patch('poscore.api.v1.payments.complete_payment') as mock_complete:
            mock_complete.side_effect = BusinessRuleError("card_overpayment")

            response = client.post("/api/v1/payments/complete", json={
                "order_id": str(uuid4()),
                "payments": [{"method": "visa", "amount": "20"}],
            })

            assert response.status_code == 400
            body = response.json()
            assert body["success"] is False
            assert body["error"]["code"] == "card_overpayment"
            assert body["error"]["message_en"]
            assert body["error"]["message_ar"]
            assert body["request_id"]

    def test_race_condition_is_409(self, client):
        with patch('poscore.api.v1.payments.complete_payment') as mock_complete:
            mock_complete.side_effect = ConflictError("race_condition")

            response = client.post("/api/v1/payments/complete", json={
                "order_id": str(uuid4()),
                "payments": [{"method": "cash", "amount": "5"}],
            })

            assert response.status_code == 409
            assert response.json()["error"]["code"] == "race_condition"

    def test_malformed_body(self, client):
        """Missing payments list fails request validation"""
        response = client.post("/api/v1/payments/complete", json={"order_id": str(uuid4())})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["message_ar"]

    def test_unexpected_error_is_500(self, client):
        with patch('poscore.api.v1.payments.complete_payment') as mock_complete:
            mock_complete.side_effect = RuntimeError("db gone")

            response = client.post("/api/v1/payments/complete", json={
                "order_id": str(uuid4()),
                "payments": [{"method": "cash", "amount": "5"}],
            })

            assert response.status_code == 500
            assert response.json()["success"] is False

    def test_table_payment_success(self, client):
        first, second = uuid4(), uuid4()
        with patch('poscore.api.v1.payments.complete_table_payment') as mock_table:
            mock_table.return_value = {
                "orders": [
                    SimpleNamespace(id=first, order_number=1, status=OrderStatus.PAID),
                    SimpleNamespace(id=second, order_number=2, status=OrderStatus.PAID),
                ],
                "payments": [
                    payment_row(first, PaymentMethod.CASH, "4.000"),
                    payment_row(second, PaymentMethod.CASH, "6.000"),
                ],
                "combined_total": Decimal("10.000"),
                "paid_total": Decimal("10.000"),
                "change": Decimal("0.000"),
                "display_total": Decimal("10.0"),
            }

            response = client.post("/api/v1/payments/table", json={
                "order_ids": [str(first), str(second)],
                "payments": [{"method": "cash", "amount": "10"}],
            })

            assert response.status_code == 200
            data = response.json()["data"]
            assert [o["order_number"] for o in data["orders"]] == [1, 2]
            assert data["message"] == "2 order(s) settled."
            assert len(data["payments"]) == 2


class TestRefundRoutes:
    def test_create_refund_success(self, client):
        order_id = uuid4()
        with patch('poscore.api.v1.refunds.create_refund') as mock_refund:
            mock_refund.return_value = {
                "refund": SimpleNamespace(id=uuid4(), order_id=order_id, amount=Decimal("5.000"),
                                          refund_type=RefundType.FULL, reason="wrong order",
                                          created_at=datetime(2024, 1, 1, 12, 0)),
                "total_refunded": Decimal("5.000"),
                "remaining_refundable": Decimal("0.000"),
                "is_fully_refunded": True,
                "restored_items": 2,
            }

            response = client.post("/api/v1/refunds/", json={
                "order_id": str(order_id),
                "amount": "5",
                "refund_type": "full",
                "reason": "wrong order",
            })

            assert response.status_code == 201
            data = response.json()["data"]
            assert data["is_fully_refunded"] is True
            assert data["restored_items"] == 2
            assert data["refund"]["refund_type"] == "full"

    def test_refund_over_bound(self, client):
        with patch('poscore.api.v1.refunds.create_refund') as mock_refund:
            mock_refund.side_effect = BusinessRuleError(
                "refund_exceeds_available", details={"max_refundable": Decimal("1.000")}
            )

            response = client.post("/api/v1/refunds/", json={
                "order_id": str(uuid4()),
                "amount": "3",
                "refund_type": "partial",
                "reason": "cold",
            })

            assert response.status_code == 400
            error = response.json()["error"]
            assert error["code"] == "refund_exceeds_available"
            assert Decimal(str(error["details"]["max_refundable"])) == Decimal("1.000")


class TestInventoryRoutes:
    def test_adjustment_success(self, client):
        item_id, branch_id = uuid4(), uuid4()
        entry = SimpleNamespace(
            id=uuid4(), branch_id=branch_id, item_id=item_id, txn_type=TxnType.WASTE,
            qty=Decimal("-2"), unit_id=uuid4(), qty_in_base=Decimal("-2"), reference_type=None,
            reference_id=None, notes="dropped", created_by="cashier-1", created_at=None,
        )
        with patch('poscore.api.v1.inventory.inventory_service.adjust_stock') as mock_adjust:
            mock_adjust.return_value = {"transaction": entry, "new_on_hand": Decimal("8")}

            response = client.post("/api/v1/inventory/transactions", json={
                "item_id": str(item_id),
                "branch_id": str(branch_id),
                "txn_type": "WASTE",
                "qty": "2",
                "unit_id": str(uuid4()),
                "notes": "dropped",
            })

            assert response.status_code == 201
            data = response.json()["data"]
            assert data["transaction"]["txn_type"] == "WASTE"
            assert Decimal(str(data["new_on_hand"])) == Decimal("8")

    def test_insufficient_stock(self, client):
        with patch('poscore.api.v1.inventory.inventory_service.adjust_stock') as mock_adjust:
            mock_adjust.side_effect = BusinessRuleError("insufficient_stock", message="Insufficient stock. Current: 1")

            response = client.post("/api/v1/inventory/transactions", json={
                "item_id": str(uuid4()),
                "branch_id": str(uuid4()),
                "txn_type": "ADJUSTMENT_OUT",
                "qty": "5",
                "unit_id": str(uuid4()),
            })

            assert response.status_code == 400
            assert response.json()["error"]["message"] == "Insufficient stock. Current: 1"

    def test_import_from_csv_text(self, client):
        branch_id = uuid4()
        with patch('poscore.api.v1.inventory.csv_import_service.import_inventory_rows') as mock_import:
            mock_import.return_value = {
                "success": True, "items_created": 1, "units_created": 0,
                "stock_entries_created": 1, "stock_entries_skipped": 0, "errors": [],
            }

            response = client.post("/api/v1/inventory/import", json={
                "branch_id": str(branch_id),
                "csv_text": "name,base_unit,quantity\nTomato,kg,3\n",
            })

            assert response.status_code == 200
            rows = mock_import.call_args.args[2]
            assert rows[0]["name"] == "Tomato"
            assert rows[0]["quantity"] == "3"

    def test_import_without_rows(self, client):
        response = client.post("/api/v1/inventory/import", json={"branch_id": str(uuid4())})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "missing_fields"

    def test_deduct_order(self, client):
        with patch('poscore.api.v1.inventory.deduct_order_inventory') as mock_deduct:
            mock_deduct.return_value = {"deducted_count": 0, "warnings": [], "skipped": "already_processed"}

            response = client.post(f"/api/v1/inventory/deduct/{uuid4()}")

            assert response.status_code == 200
            assert response.json()["data"]["skipped"] == "already_processed"


class TestRecipeAndCountRoutes:
    def test_upsert_recipe(self, client):
        menu_item_id = uuid4()
        line = SimpleNamespace(id=uuid4(), inventory_item_id=uuid4(), qty=Decimal("0.15"),
                               unit_id=uuid4(), qty_in_base=Decimal("150"))
        with patch('poscore.api.v1.recipes.upsert_recipe') as mock_upsert:
            mock_upsert.return_value = SimpleNamespace(id=uuid4(), menu_item_id=menu_item_id, is_active=True,
                                                       notes=None, lines=[line])

            response = client.put(f"/api/v1/recipes/{menu_item_id}", json={
                "lines": [{"inventory_item_id": str(line.inventory_item_id), "qty": "0.15",
                           "unit_id": str(line.unit_id)}],
            })

            assert response.status_code == 200
            assert Decimal(str(response.json()["data"]["lines"][0]["qty_in_base"])) == Decimal("150")

    def test_import_recipes_from_csv_text(self, client):
        with patch('poscore.api.v1.recipes.import_recipe_rows') as mock_import:
            mock_import.return_value = {"success": True, "menu_items_updated": 1,
                                        "recipe_lines_inserted": 1, "errors": []}

            response = client.post("/api/v1/recipes/import", json={
                "csv_text": "Menu_Item_Name,Inventory_Item_Name,Quantity,Unit\nShawarma,Chicken,150,g\n",
            })

            assert response.status_code == 200
            assert response.json()["data"]["menu_items_updated"] == 1
            rows = mock_import.call_args.args[1]
            assert rows == [{"menu_item_name": "Shawarma", "inventory_item_name": "Chicken",
                             "quantity": "150", "unit": "g"}]
            assert mock_import.call_args.kwargs["branch_id"] is None

    def test_import_recipes_without_rows(self, client):
        response = client.post("/api/v1/recipes/import", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "missing_fields"

    def test_approve_count(self, client):
        count_id = uuid4()
        with patch('poscore.api.v1.stock_counts.stock_count_service.approve_stock_count') as mock_approve:
            mock_approve.return_value = {
                "count_id": count_id, "adjustments": 1,
                "total_positive_variance": Decimal("0"), "total_negative_variance": Decimal("500"),
            }

            response = client.post(f"/api/v1/stock-counts/{count_id}/approve")

            assert response.status_code == 200
            assert response.json()["data"]["adjustments"] == 1

    def test_cancel_approved_count(self, client):
        with patch('poscore.api.v1.stock_counts.stock_count_service.cancel_stock_count') as mock_cancel:
            mock_cancel.side_effect = BusinessRuleError("count_immutable")

            response = client.post(f"/api/v1/stock-counts/{uuid4()}/cancel")

            assert response.status_code == 400
            assert response.json()["error"]["code"] == "count_immutable"

    def test_get_count(self, client):
        count = SimpleNamespace(id=uuid4(), branch_id=uuid4(), status=StockCountStatus.NEW, notes=None,
                                approved_by=None, approved_at=None, lines=[])
        with patch('poscore.api.v1.stock_counts.stock_count_service.get_stock_count') as mock_get:
            mock_get.return_value = count

            response = client.get(f"/api/v1/stock-counts/{count.id}")

            assert response.status_code == 200
            assert response.json()["data"]["status"] == "NEW"


def test_missing_user_header_is_rejected():
    """Without an override the caller comes from X-User-Id"""
    client = TestClient(app)
    response = client.post("/api/v1/payments/complete", json={
        "order_id": str(uuid4()),
        "payments": [{"method": "cash", "amount": "5"}],
    })
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "not_authorized"
