# Overview: Pytest coverage for the lot registry.

from datetime import date

import pytest

from stockflow.errors import DuplicateLot, ExceedsAvailableStock, ExceedsLotStock, StockError
from stockflow.models import Lot, Movement
from stockflow.models.inventory import DIRECTION_OUT, MOVEMENT_ADJUSTMENT
from stockflow.services import lot_service
from stockflow.services.catalog_service import create_product
from stockflow.services.lot_service import (
    LOT_EXPIRED,
    LOT_EXPIRING_SOON,
    LOT_OK,
    LOT_UNMANAGED,
    classify_expiry,
)

from conftest import receive_into_new_lot, stock_before_lot_tracking


class TestClassifyExpiry:
    """Expiry status is derived from days until expiry, never stored."""

    ON = date(2026, 1, 1)

    def test_expired(self):
        status = classify_expiry(date(2025, 12, 31), on=self.ON)
        assert status.state == LOT_EXPIRED
        assert status.days_until_expiry == -1

    def test_expiring_today_and_at_window_edge(self):
        assert classify_expiry(date(2026, 1, 1), on=self.ON).state == LOT_EXPIRING_SOON
        assert classify_expiry(date(2026, 1, 31), on=self.ON).state == LOT_EXPIRING_SOON

    def test_ok_after_window(self):
        status = classify_expiry(date(2026, 2, 1), on=self.ON)
        assert status.state == LOT_OK
        assert status.days_until_expiry == 31

    def test_no_expiry_is_unmanaged(self):
        assert classify_expiry(None, on=self.ON).state == LOT_UNMANAGED

    def test_custom_window(self):
        assert classify_expiry(date(2026, 1, 10), on=self.ON, warning_days=5).state == LOT_OK


class TestCreateLot:
    def test_carves_lot_out_of_unallocated_stock(self, db_session, operator, lot_product):
        stock_before_lot_tracking(operator, lot_product, 10)

        lot = lot_service.create_lot(
            operator_id=operator.id,
            product_id=lot_product.id,
            lot_number=" L-1 ",
            quantity=6,
            expiry_date="2026-06-30",
        )

        assert lot.lot_number == "L-1"
        assert lot.quantity == 6
        assert lot_product.stock == 10
        assert lot_service.unallocated_quantity(lot_product) == 4

    def test_more_than_unallocated_rejected(self, db_session, operator, lot_product):
        stock_before_lot_tracking(operator, lot_product, 3)
        receive_into_new_lot(operator, lot_product, "A", 5)

        with pytest.raises(ExceedsAvailableStock) as exc_info:
            lot_service.create_lot(
                operator_id=operator.id, product_id=lot_product.id, lot_number="B", quantity=4,
            )

        assert "only 3 unallocated units, 4 requested" in str(exc_info.value)
        assert db_session.query(Lot).count() == 1

    def test_duplicate_number_rejected_per_product(self, db_session, operator, lot_product):
        other = create_product(operator_id=operator.id, sku="MILK-2L", name="Milk 2L", managed_by_lots=True)
        lot_service.create_lot(operator_id=operator.id, product_id=lot_product.id, lot_number="L-1", quantity=0)

        with pytest.raises(DuplicateLot):
            lot_service.create_lot(
                operator_id=operator.id, product_id=lot_product.id, lot_number="L-1", quantity=0,
            )

        lot = lot_service.create_lot(operator_id=operator.id, product_id=other.id, lot_number="L-1", quantity=0)
        assert lot.product_id == other.id

    def test_product_without_lots_rejected(self, db_session, operator, product):
        with pytest.raises(StockError):
            lot_service.create_lot(operator_id=operator.id, product_id=product.id, lot_number="X", quantity=0)

    def test_expiry_before_manufacture_rejected(self, db_session, operator, lot_product):
        with pytest.raises(StockError):
            lot_service.create_lot(
                operator_id=operator.id,
                product_id=lot_product.id,
                lot_number="X",
                quantity=0,
                manufacture_date="2026-05-01",
                expiry_date="2026-04-01",
            )


class TestAdjustLotQuantity:
    def test_negative_result_rejected_with_shortfall(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "A", 5)

        with pytest.raises(ExceedsLotStock) as exc_info:
            lot_service.adjust_lot_quantity(lot, -1)

        assert str(exc_info.value) == "lot A has only 5 available, 6 requested"
        assert lot.quantity == 5


class TestListing:
    def test_available_lots_soonest_expiry_first(self, db_session, operator, lot_product):
        receive_into_new_lot(operator, lot_product, "LATE", 1, expiry_date="2026-09-01")
        receive_into_new_lot(operator, lot_product, "UNDATED", 1)
        receive_into_new_lot(operator, lot_product, "SOON", 1, expiry_date="2026-03-01")
        empty = lot_service.create_lot(
            operator_id=operator.id, product_id=lot_product.id, lot_number="EMPTY", quantity=0,
            expiry_date="2026-01-01",
        )

        available = lot_service.list_available(operator_id=operator.id, product_id=lot_product.id)
        all_lots = lot_service.list_lots(operator_id=operator.id, product_id=lot_product.id)

        assert [l.lot_number for l in available] == ["SOON", "LATE", "UNDATED"]
        assert [l.lot_number for l in all_lots] == ["EMPTY", "SOON", "LATE", "UNDATED"]
        assert empty not in available

    def test_expiring_within_days(self, db_session, operator, lot_product):
        receive_into_new_lot(operator, lot_product, "GONE", 1, expiry_date="2026-01-05")
        receive_into_new_lot(operator, lot_product, "SOON", 1, expiry_date="2026-01-15")
        receive_into_new_lot(operator, lot_product, "LATER", 1, expiry_date="2026-03-01")

        lots = lot_service.list_expiring(operator_id=operator.id, days=10, on=date(2026, 1, 10))

        assert [l.lot_number for l in lots] == ["SOON"]

    def test_lot_to_dict_carries_status(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "A", 1, expiry_date="2026-01-05")
        data = lot_service.lot_to_dict(lot, on=date(2026, 1, 1))
        assert data["status"] == {"state": LOT_EXPIRING_SOON, "days_until_expiry": 4}
        assert data["expiry_date"] == "2026-01-05"


class TestUpdateLot:
    def test_rename_and_redate(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "A", 2)

        lot_service.update_lot(operator_id=operator.id, lot_id=lot.id, lot_number="A-2", expiry_date="2027-01-01")

        assert lot.lot_number == "A-2"
        assert lot.expiry_date == date(2027, 1, 1)
        assert lot.quantity == 2

    def test_rename_to_taken_number_rejected(self, db_session, operator, lot_product):
        receive_into_new_lot(operator, lot_product, "A", 1)
        b = receive_into_new_lot(operator, lot_product, "B", 1)

        with pytest.raises(DuplicateLot):
            lot_service.update_lot(operator_id=operator.id, lot_id=b.id, lot_number="A")


class TestDeleteLot:
    def test_non_empty_lot_needs_write_off(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "A", 3)

        with pytest.raises(StockError):
            lot_service.delete_lot(operator_id=operator.id, lot_id=lot.id)
        assert db_session.get(Lot, lot.id) is not None

    def test_write_off_removes_stock_and_keeps_history(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "A", 3)
        receive_into_new_lot(operator, lot_product, "B", 2)

        lot_service.delete_lot(operator_id=operator.id, lot_id=lot.id, write_off=True)

        assert lot_product.stock == 2
        assert db_session.query(Lot).filter_by(lot_number="A").first() is None
        write_off = db_session.query(Movement).filter_by(type=MOVEMENT_ADJUSTMENT).one()
        assert write_off.direction == DIRECTION_OUT
        assert write_off.quantity == 3
        assert [(a.lot_id, a.lot_number) for a in write_off.allocations] == [(None, "A")]
