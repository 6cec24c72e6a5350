"""Order placement, totals, ledger and cancellation."""
from decimal import Decimal

import pytest
from conftest import ADDRESS, NOW

from order_engine import crud, inventory, models
from order_engine.crud import compute_totals
from order_engine.coupons import CouponDecision
from order_engine.errors import InvalidOrderStateError, NotFoundError, ValidationError


def _stock(db, model, row_id):
    db.expire_all()
    return db.get(model, row_id).inventory_quantity


class TestComputeTotals:
    def test_tax_on_discounted_subtotal(self):
        decision = CouponDecision(code="SAVE10", applied=True, discount_amount=Decimal("10.00"))
        totals = compute_totals(Decimal("100.00"), decision)
        assert totals.tax_amount == Decimal("7.20")
        assert totals.shipping_amount == Decimal("10.00")
        assert totals.total_amount == Decimal("107.20")

    def test_free_shipping(self):
        decision = CouponDecision(code="FREESHIP", applied=True, free_shipping=True)
        totals = compute_totals(Decimal("50.00"), decision)
        assert totals.shipping_amount == Decimal("0.00")
        assert totals.total_amount == Decimal("54.00")


class TestPlaceOrder:
    def test_successful_order(self, db, ids, order_request):
        request = order_request(
            ids.user,
            {"product_id": ids.widget, "quantity": 2},
            {"product_id": ids.tshirt, "variant_id": ids.tshirt_red, "quantity": 3},
        )
        result = crud.process_order(db, request, now=NOW)

        assert result.success is True
        assert result.message == "Order processed successfully"
        order = db.get(models.Order, result.order_id)
        assert order.status == "pending"
        assert order.order_number.startswith("ORD-20260615-")
        assert order.subtotal == Decimal("260.00")
        assert order.tax_amount == Decimal("20.80")
        assert order.shipping_amount == Decimal("10.00")
        assert order.total_amount == Decimal("290.80") == result.total_amount

        assert _stock(db, models.Product, ids.widget) == 48
        assert _stock(db, models.ProductVariant, ids.tshirt_red) == 5
        # variant lines never touch product-level stock
        assert _stock(db, models.Product, ids.tshirt) == 0

    def test_totals_invariants(self, db, ids, order_request):
        request = order_request(
            ids.user,
            {"product_id": ids.widget, "quantity": 1},
            {"product_id": ids.gadget, "quantity": 3},
            coupon="SAVE10",
        )
        result = crud.process_order(db, request, now=NOW)
        order = db.get(models.Order, result.order_id)

        assert sum(item.total_price for item in order.items) == order.subtotal
        assert order.total_amount == order.subtotal + order.tax_amount + order.shipping_amount - order.discount_amount
        assert order.discount_amount == Decimal("17.65")

    def test_items_snapshot_catalog(self, db, ids, order_request):
        request = order_request(ids.user, {"product_id": ids.tshirt, "variant_id": ids.tshirt_red, "quantity": 1})
        result = crud.process_order(db, request, now=NOW)

        variant = db.get(models.ProductVariant, ids.tshirt_red)
        variant.price = Decimal("99.00")
        db.get(models.Product, ids.tshirt).name = "Renamed"
        db.commit()

        item = db.get(models.Order, result.order_id).items[0]
        assert item.product_name == "T-Shirt"
        assert item.product_sku == "TEE-1"
        assert item.variant_title == "Red / L"
        assert item.unit_price == Decimal("20.00")

    def test_billing_defaults_to_shipping(self, db, ids, order_request):
        result = crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}), now=NOW)
        order = db.get(models.Order, result.order_id)
        assert order.billing_address == order.shipping_address
        assert order.shipping_address["city"] == ADDRESS["city"]

    def test_cart_is_cleared(self, db, ids, order_request):
        db.add(models.CartItem(user_id=ids.user, product_id=ids.widget, quantity=1))
        db.add(models.CartItem(user_id=ids.other_user, product_id=ids.widget, quantity=1))
        db.commit()

        crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}), now=NOW)

        assert db.query(models.CartItem).filter_by(user_id=ids.user).count() == 0
        assert db.query(models.CartItem).filter_by(user_id=ids.other_user).count() == 1

    def test_outbox_event_written(self, db, ids, order_request):
        result = crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 2}), now=NOW)
        event = db.query(models.EventOutbox).one()
        assert event.event_type == "order.placed"
        assert event.status == "NEW"
        assert event.payload["order_id"] == str(result.order_id)
        assert event.payload["items"][0]["sku"] == "WID-1"


class TestCouponsOnOrders:
    def test_usage_recorded_on_commit(self, db, ids, order_request):
        result = crud.process_order(
            db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}, coupon="ONCE"), now=NOW
        )
        coupon = db.query(models.Coupon).filter_by(code="ONCE").one()
        usage = db.query(models.CouponUsage).one()
        assert coupon.usage_count == 1
        assert usage.order_id == result.order_id
        assert usage.discount_amount == Decimal("5.00")

    def test_rejected_coupon_does_not_fail_order(self, db, ids, order_request):
        result = crud.process_order(
            db, order_request(ids.user, {"product_id": ids.gadget, "quantity": 1}, coupon="SAVE10"), now=NOW
        )
        assert result.success is True
        assert "coupon SAVE10 not applied: minimum spend not met" in result.message
        assert db.query(models.CouponUsage).count() == 0
        assert db.get(models.Order, result.order_id).discount_amount == Decimal("0.00")

    def test_usage_limit_holds_across_orders(self, db, ids, order_request):
        first = crud.process_order(
            db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}, coupon="ONCE"), now=NOW
        )
        second = crud.process_order(
            db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}, coupon="ONCE"), now=NOW
        )
        assert db.get(models.Order, first.order_id).discount_amount == Decimal("5.00")
        assert db.get(models.Order, second.order_id).discount_amount == Decimal("0.00")
        assert "usage limit reached" in second.message

    def test_free_shipping_coupon(self, db, ids, order_request):
        result = crud.process_order(
            db, order_request(ids.user, {"product_id": ids.gadget, "quantity": 1}, coupon="FREESHIP"), now=NOW
        )
        order = db.get(models.Order, result.order_id)
        assert order.shipping_amount == Decimal("0.00")
        assert order.total_amount == Decimal("27.54")


class TestRejectedOrders:
    def test_all_shortfalls_reported_and_nothing_written(self, db, ids, order_request):
        request = order_request(
            ids.user,
            {"product_id": ids.widget, "quantity": 1},
            {"product_id": ids.gadget, "quantity": 7},
            {"product_id": ids.tshirt, "variant_id": ids.tshirt_red, "quantity": 9},
        )
        result = crud.process_order(db, request, now=NOW)

        assert result.success is False
        assert result.error == "insufficient_stock"
        assert "Gadget (requested 7, available 5, short 2)" in result.message
        assert "T-Shirt (Red / L) (requested 9, available 8, short 1)" in result.message
        assert "Widget" not in result.message

        assert db.query(models.Order).count() == 0
        assert _stock(db, models.Product, ids.widget) == 50
        assert _stock(db, models.Product, ids.gadget) == 5
        assert db.query(models.InventoryTransaction).filter_by(type="sale").count() == 0

    def test_duplicate_lines_are_validated_together(self, db, ids, order_request):
        request = order_request(
            ids.user,
            {"product_id": ids.gadget, "quantity": 3},
            {"product_id": ids.gadget, "quantity": 3},
        )
        result = crud.process_order(db, request, now=NOW)
        assert result.success is False
        assert "requested 6, available 5, short 1" in result.message

    def test_coupon_rejection_listed_with_shortfalls(self, db, ids, order_request):
        request = order_request(ids.user, {"product_id": ids.gadget, "quantity": 6}, coupon="EXPIRED")
        result = crud.process_order(db, request, now=NOW)
        assert "short 1" in result.message
        assert "coupon EXPIRED not applied: coupon has expired" in result.message

    def test_reserved_units_are_not_available(self, db, ids, order_request):
        db.get(models.Product, ids.gadget).reserved_quantity = 4
        db.commit()
        result = crud.process_order(db, order_request(ids.user, {"product_id": ids.gadget, "quantity": 2}), now=NOW)
        assert result.success is False
        assert "available 1, short 1" in result.message

    def test_unknown_product(self, db, ids, order_request):
        result = crud.process_order(db, order_request(ids.user, {"product_id": ids.acme, "quantity": 1}), now=NOW)
        assert result.success is False
        assert result.error == "not_found"

    def test_variant_of_another_product(self, db, ids, order_request):
        request = order_request(ids.user, {"product_id": ids.widget, "variant_id": ids.tshirt_red, "quantity": 1})
        result = crud.process_order(db, request, now=NOW)
        assert result.error == "not_found"

    def test_inactive_product(self, db, ids, order_request):
        db.get(models.Product, ids.widget).is_active = False
        db.commit()
        result = crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}), now=NOW)
        assert result.error == "not_found"

    def test_unknown_user(self, db, ids, order_request):
        result = crud.process_order(db, order_request(ids.acme, {"product_id": ids.widget, "quantity": 1}), now=NOW)
        assert result.error == "not_found"


class TestLedger:
    def test_ledger_tracks_every_delta(self, db, ids, order_request):
        crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 4}), now=NOW)
        inventory.restock(db, ids.widget, 10, notes="supplier delivery")
        inventory.adjust_stock(db, ids.widget, -1, notes="damaged in warehouse")
        db.commit()

        history = inventory.ledger_history(db, ids.widget)
        assert [(e.type, e.quantity_change, e.quantity_after) for e in history] == [
            ("restock", 50, 50),
            ("sale", -4, 46),
            ("restock", 10, 56),
            ("adjustment", -1, 55),
        ]
        assert inventory.ledger_balance(db, ids.widget) == 55
        assert inventory.reconcile(db, ids.widget) is True

    def test_two_changes_to_one_row_in_one_transaction(self, db, ids):
        inventory.restock(db, ids.widget, 10)
        inventory.adjust_stock(db, ids.widget, -1)
        db.commit()

        assert db.get(models.Product, ids.widget).inventory_quantity == 59
        assert inventory.ledger_balance(db, ids.widget) == 59
        assert inventory.reconcile(db, ids.widget) is True

    def test_one_sale_row_per_stock_row(self, db, ids, order_request):
        request = order_request(
            ids.user,
            {"product_id": ids.gadget, "quantity": 1},
            {"product_id": ids.gadget, "quantity": 2},
        )
        result = crud.process_order(db, request, now=NOW)
        sales = db.query(models.InventoryTransaction).filter_by(type="sale").all()
        assert len(sales) == 1
        assert sales[0].quantity_change == -3
        assert sales[0].reference_id == result.order_id

    def test_variant_ledger_is_separate(self, db, ids):
        assert inventory.ledger_balance(db, ids.tshirt, ids.tshirt_red) == 8
        assert inventory.ledger_balance(db, ids.tshirt) == 0
        assert inventory.reconcile(db, ids.tshirt, ids.tshirt_red) is True

    def test_adjustment_cannot_eat_reserved_units(self, db, ids):
        db.get(models.Product, ids.gadget).reserved_quantity = 3
        db.commit()
        with pytest.raises(ValidationError):
            inventory.adjust_stock(db, ids.gadget, -3)


class TestCancelOrder:
    def test_cancel_restores_stock_and_coupon(self, db, ids, order_request):
        request = order_request(
            ids.user,
            {"product_id": ids.widget, "quantity": 2},
            {"product_id": ids.tshirt, "variant_id": ids.tshirt_red, "quantity": 3},
            coupon="ONCE",
        )
        placed = crud.process_order(db, request, now=NOW)

        result = crud.cancel_order(db, placed.order_id, reason="changed my mind")
        db.commit()

        assert result["status"] == "cancelled"
        assert result["restored_units"] == 5
        assert _stock(db, models.Product, ids.widget) == 50
        assert _stock(db, models.ProductVariant, ids.tshirt_red) == 8
        assert db.query(models.Coupon).filter_by(code="ONCE").one().usage_count == 0
        assert db.query(models.CouponUsage).count() == 0

        order_entries = (
            db.query(models.InventoryTransaction)
            .filter(models.InventoryTransaction.reference_id == placed.order_id)
            .all()
        )
        assert sum(e.quantity_change for e in order_entries) == 0
        assert {e.type for e in order_entries} == {"sale", "return"}
        assert inventory.reconcile(db, ids.widget) is True
        assert db.query(models.EventOutbox).filter_by(event_type="order.cancelled").count() == 1

    def test_cannot_cancel_twice(self, db, ids, order_request):
        placed = crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}), now=NOW)
        crud.cancel_order(db, placed.order_id)
        db.commit()
        with pytest.raises(InvalidOrderStateError):
            crud.cancel_order(db, placed.order_id)

    def test_cannot_cancel_shipped(self, db, ids, order_request):
        placed = crud.process_order(db, order_request(ids.user, {"product_id": ids.widget, "quantity": 1}), now=NOW)
        db.get(models.Order, placed.order_id).status = "shipped"
        db.commit()
        with pytest.raises(InvalidOrderStateError):
            crud.cancel_order(db, placed.order_id)

    def test_unknown_order(self, db, ids):
        with pytest.raises(NotFoundError):
            crud.cancel_order(db, ids.user)
