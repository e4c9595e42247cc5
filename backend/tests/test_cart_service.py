# Overview: Pytest coverage for the sale cart, discount split and checkout.

import re

import pytest

from stockflow.errors import CheckoutValidationError, InvalidDiscount, NoQuantitySelected, StockError
from stockflow.models import Cart, Movement
from stockflow.models.carts import CART_CHECKED_OUT, CART_OPEN
from stockflow.models.inventory import MOVEMENT_EXIT
from stockflow.services import cart_service
from stockflow.services.cart_service import (
    LINE_COMMITTED,
    LINE_FAILED,
    distribute_discount,
    generate_receipt_number,
)
from stockflow.services.catalog_service import create_product

from conftest import receive, receive_into_new_lot


class TestDistributeDiscount:
    def test_proportional_split(self):
        """Subtotals 80 and 20, discount 10 -> 8 and 2; totals 72 and 18."""
        pricing = distribute_discount([(1, 8000), (1, 2000)], 1000)

        assert pricing.subtotal_cents == 10000
        assert pricing.total_cents == 9000
        assert [l.discount_cents for l in pricing.lines] == [800, 200]
        assert [l.final_total_cents for l in pricing.lines] == [7200, 1800]

    @pytest.mark.parametrize("lines,discount", [
        ([(3, 333), (7, 101), (1, 1)], 250),
        ([(1, 999)], 1),
        ([(2, 500), (2, 500), (2, 500)], 100),
        ([(13, 77), (5, 1234)], 999),
        ([(100, 5)], 250),
    ])
    def test_line_totals_add_up_to_discounted_total(self, lines, discount):
        pricing = distribute_discount(lines, discount)

        assert sum(l.discount_cents for l in pricing.lines) == pricing.discount_cents == discount
        assert sum(l.final_total_cents for l in pricing.lines) == pricing.total_cents
        for line in pricing.lines:
            assert abs(line.final_total_cents - line.quantity * line.final_unit_price_cents) * 2 <= line.quantity

    def test_discount_capped_at_subtotal(self):
        pricing = distribute_discount([(1, 500)], 800)
        assert pricing.discount_cents == 500
        assert pricing.total_cents == 0
        assert pricing.lines[0].final_unit_price_cents == 0

    def test_zero_subtotal_keeps_prices(self):
        pricing = distribute_discount([(2, 0)], 100)
        assert pricing.total_cents == 0
        assert pricing.lines[0].final_unit_price_cents == 0

    def test_negative_discount_rejected(self):
        with pytest.raises(InvalidDiscount):
            distribute_discount([(1, 100)], -1)


def test_receipt_number_format():
    assert re.fullmatch(r"REC-\d{8}-\d{9}-[0-9A-F]{4}", generate_receipt_number())


class TestDraftCart:
    def test_open_cart_is_created_once(self, db_session, operator):
        first = cart_service.get_open_cart(operator_id=operator.id)
        second = cart_service.get_open_cart(operator_id=operator.id)
        assert first.id == second.id
        assert first.status == CART_OPEN

    def test_same_product_and_price_merges(self, db_session, operator, product):
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=2)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=3)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=1, unit_price_cents=900)

        cart = cart_service.get_open_cart(operator_id=operator.id)
        assert [(l.quantity, l.unit_price_cents) for l in cart.lines] == [(5, 1000), (1, 900)]

    def test_same_lots_merge(self, db_session, operator, lot_product):
        a = receive_into_new_lot(operator, lot_product, "A", 5)
        cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 2)])
        line = cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 1)])

        assert line.quantity == 3
        assert [(row.lot_id, row.quantity) for row in line.lots] == [(a.id, 3)]

    def test_lot_product_line_needs_lot_rows(self, db_session, operator, lot_product):
        receive_into_new_lot(operator, lot_product, "A", 5)

        with pytest.raises(NoQuantitySelected):
            cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, quantity=2)

        assert cart_service.get_open_cart(operator_id=operator.id).lines == []

    def test_adding_does_not_touch_stock(self, db_session, operator, product):
        receive(operator, product, 1)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=50)
        assert product.stock == 1

    def test_update_and_remove_lines(self, db_session, operator, product):
        line = cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=2)

        cart_service.update_line_quantity(operator_id=operator.id, line_id=line.id, quantity=4)
        assert line.quantity == 4

        assert cart_service.update_line_quantity(operator_id=operator.id, line_id=line.id, quantity=0) is None
        assert cart_service.get_open_cart(operator_id=operator.id).lines == []

    def test_set_line_lots(self, db_session, operator, lot_product):
        a = receive_into_new_lot(operator, lot_product, "A", 5)
        b = receive_into_new_lot(operator, lot_product, "B", 5)
        line = cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 1)])

        cart_service.set_line_lots(operator_id=operator.id, line_id=line.id, lots=[(a.id, 2), (b.id, 3)])

        assert line.quantity == 5
        assert sorted((row.lot_id, row.quantity) for row in line.lots) == [(a.id, 2), (b.id, 3)]

    def test_summary_with_discount_and_change(self, db_session, operator, product):
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=3)
        cart_service.set_discount(operator_id=operator.id, discount_cents=500)
        cart_service.set_amount_received(operator_id=operator.id, amount_cents=3000)

        summary = cart_service.cart_summary(cart_service.get_open_cart(operator_id=operator.id))

        assert summary["subtotal_cents"] == 3000
        assert summary["total_cents"] == 2500
        assert summary["change_cents"] == 500

    def test_invalid_discount_rejected(self, db_session, operator):
        with pytest.raises(InvalidDiscount):
            cart_service.set_discount(operator_id=operator.id, discount_cents=-5)

    def test_clear_cart(self, db_session, operator, product):
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=1)
        cart_service.set_discount(operator_id=operator.id, discount_cents=100)

        cart = cart_service.clear_cart(operator_id=operator.id)

        assert cart.lines == []
        assert cart.discount_cents == 0
        assert cart.amount_received_cents is None


class TestCheckout:
    def test_lines_share_one_receipt_number(self, db_session, operator, product, lot_product):
        receive(operator, product, 10)
        a = receive_into_new_lot(operator, lot_product, "A", 5)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=2, unit_price_cents=4000)
        cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 1)],
                              unit_price_cents=2000)
        cart_service.set_discount(operator_id=operator.id, discount_cents=1000)
        cart_service.set_amount_received(operator_id=operator.id, amount_cents=10000)

        result = cart_service.checkout(operator_id=operator.id)

        assert not result.needs_review
        assert [l.status for l in result.lines] == [LINE_COMMITTED, LINE_COMMITTED]
        assert [l.final_unit_price_cents for l in result.lines] == [3600, 1800]
        assert result.committed_total_cents == 9000
        assert result.change_cents == 1000

        exits = db_session.query(Movement).filter_by(type=MOVEMENT_EXIT).all()
        assert {m.receipt_number for m in exits} == {result.receipt_number}
        assert all(m.description == f"Sale {result.receipt_number}" for m in exits)
        assert product.stock == 8
        assert a.quantity == 4

        cart = db_session.get(Cart, result.cart_id)
        assert cart.status == CART_CHECKED_OUT
        assert cart.receipt_number == result.receipt_number

    def test_discount_leaving_fractional_cents_is_charged_exactly(self, db_session, operator, product):
        """100 x 0.05 less 2.50: the sale is 2.50, not 100 x 0.03."""
        receive(operator, product, 100)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=100, unit_price_cents=5)
        cart_service.set_discount(operator_id=operator.id, discount_cents=250)
        cart_service.set_amount_received(operator_id=operator.id, amount_cents=250)

        result = cart_service.checkout(operator_id=operator.id)
        receipt = result.to_receipt()

        assert receipt["total_cents"] == 250
        assert receipt["items"][0]["total_cents"] == 250
        assert receipt["change_cents"] == 0
        movement = db_session.get(Movement, result.lines[0].movement_id)
        assert movement.total_cents == 250
        assert movement.unit_price_cents == 3

    def test_receipt_payload(self, db_session, operator, lot_product):
        a = receive_into_new_lot(operator, lot_product, "A", 5)
        cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 2)],
                              unit_price_cents=150)

        receipt = cart_service.checkout(operator_id=operator.id).to_receipt()

        assert receipt["items"] == [{
            "name": "Milk 1L",
            "quantity": 2,
            "unit_price_cents": 150,
            "total_cents": 300,
            "lots": ["A"],
        }]
        assert receipt["total_cents"] == 300

    def test_demand_is_counted_across_lines(self, db_session, operator, product):
        """Two lines of the same product that fit alone but not together: nothing is written."""
        receive(operator, product, 5)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=3)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=3, unit_price_cents=900)

        with pytest.raises(CheckoutValidationError) as exc_info:
            cart_service.checkout(operator_id=operator.id)

        failures = exc_info.value.failures
        assert [f["position"] for f in failures] == [1]
        assert failures[0]["code"] == "INSUFFICIENT_STOCK"
        assert "6 requested" in failures[0]["error"]
        db_session.expire_all()
        assert product.stock == 5
        assert db_session.query(Movement).filter_by(type=MOVEMENT_EXIT).count() == 0
        assert cart_service.get_open_cart(operator_id=operator.id).status == CART_OPEN

    def test_every_failing_line_is_reported(self, db_session, operator, product, lot_product):
        a = receive_into_new_lot(operator, lot_product, "A", 1)
        cart_service.add_line(operator_id=operator.id, product_id=product.id, quantity=1)
        cart_service.add_line(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 2)])

        with pytest.raises(CheckoutValidationError) as exc_info:
            cart_service.checkout(operator_id=operator.id)

        assert [f["code"] for f in exc_info.value.failures] == ["INSUFFICIENT_STOCK", "EXCEEDS_LOT_STOCK"]

    def test_write_failure_after_first_line_is_reported_not_aborted(
        self, db_session, operator, product, monkeypatch
    ):
        second = create_product(operator_id=operator.id, sku="BROOM", name="Broom", sale_price_cents=500)
        third = create_product(operator_id=operator.id, sku="MOP", name="Mop", sale_price_cents=700)
        for p in (product, second, third):
            receive(operator, p, 5)
        for p in (product, second, third):
            cart_service.add_line(operator_id=operator.id, product_id=p.id, quantity=1)

        real_commit_exit = cart_service.commit_exit

        def flaky_commit_exit(**kwargs):
            if kwargs["product_id"] == second.id:
                raise RuntimeError("connection lost")
            return real_commit_exit(**kwargs)

        monkeypatch.setattr(cart_service, "commit_exit", flaky_commit_exit)

        result = cart_service.checkout(operator_id=operator.id)

        assert [l.status for l in result.lines] == [LINE_COMMITTED, LINE_FAILED, LINE_COMMITTED]
        assert result.lines[1].error == "connection lost"
        assert result.needs_review
        assert result.committed_total_cents == 1700
        assert [item["name"] for item in result.to_receipt()["items"]] == ["Soap", "Mop"]
        db_session.expire_all()
        assert (product.stock, second.stock, third.stock) == (4, 5, 4)
        assert db_session.get(Cart, result.cart_id).status == CART_CHECKED_OUT

    def test_empty_cart(self, db_session, operator):
        with pytest.raises(StockError):
            cart_service.checkout(operator_id=operator.id)
