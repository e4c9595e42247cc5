# Overview: Pytest coverage for exit status transitions and lot restoration.

import pytest

from stockflow.errors import ExceedsLotStock, InvalidStatusTransition, RestorationUnavailable
from stockflow.models import Movement
from stockflow.models.inventory import (
    MOVEMENT_EXIT,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
)
from stockflow.services import ledger_service, lot_service, status_service
from stockflow.services.allocation_service import commit_exit
from stockflow.services.status_service import proportional_shares

from conftest import receive, receive_into_new_lot, stock_before_lot_tracking


def _change(operator, movement, status):
    return status_service.change_exit_status(
        operator_id=operator.id, movement_id=movement.id, new_status=status,
    )


class TestProportionalShares:
    def test_even_split_rounds_up_per_lot(self):
        assert proportional_shares(5, [None, None]) == [3, 2]
        assert proportional_shares(10, [None, None, None]) == [4, 4, 2]

    def test_capped_lots_spill_into_others(self):
        assert proportional_shares(5, [1, 10]) == [1, 4]

    def test_short_capacity(self):
        assert sum(proportional_shares(5, [1, 1])) == 2

    def test_no_lots(self):
        assert proportional_shares(5, []) == []


class TestExactTransitions:
    def test_cancel_and_reconfirm_round_trip(self, db_session, operator, lot_product):
        """Single lot of 10, exit 10: cancel -> 10, confirm -> 0."""
        lot = receive_into_new_lot(operator, lot_product, "L", 10)
        exit_movement = commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(lot.id, 10)])
        assert lot.quantity == 0

        change = _change(operator, exit_movement, STATUS_CANCELLED)
        assert change.exact
        assert change.stock_delta == 10
        assert lot.quantity == 10
        assert lot_product.stock == 10

        _change(operator, exit_movement, STATUS_CONFIRMED)
        assert lot.quantity == 0
        assert lot_product.stock == 0
        assert exit_movement.status == STATUS_CONFIRMED
        assert exit_movement.status_changed_at is not None

    def test_restores_the_lots_actually_used(self, db_session, operator, lot_product):
        a = receive_into_new_lot(operator, lot_product, "A", 5)
        b = receive_into_new_lot(operator, lot_product, "B", 3)
        exit_movement = commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 5), (b.id, 2)])

        change = _change(operator, exit_movement, STATUS_CANCELLED)

        assert (a.quantity, b.quantity) == (5, 3)
        assert sorted((l["lot_number"], l["delta"]) for l in change.lots) == [("A", 5), ("B", 2)]

    def test_pending_and_confirmed_are_labels_only(self, db_session, operator, product):
        receive(operator, product, 10)
        exit_movement = commit_exit(operator_id=operator.id, product_id=product.id, quantity=4)

        change = _change(operator, exit_movement, STATUS_PENDING)
        assert change.stock_delta == 0
        assert product.stock == 6

        _change(operator, exit_movement, STATUS_CONFIRMED)
        assert product.stock == 6

    def test_pending_exit_can_be_cancelled(self, db_session, operator, product):
        receive(operator, product, 10)
        exit_movement = commit_exit(operator_id=operator.id, product_id=product.id, quantity=4)
        _change(operator, exit_movement, STATUS_PENDING)
        assert product.stock == 6

        _change(operator, exit_movement, STATUS_CANCELLED)
        assert product.stock == 10

    def test_reconfirm_needs_the_stock_back(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "L", 4)
        exit_movement = commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(lot.id, 4)])
        _change(operator, exit_movement, STATUS_CANCELLED)
        commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(lot.id, 3)])

        with pytest.raises(ExceedsLotStock):
            _change(operator, exit_movement, STATUS_CONFIRMED)

        db_session.expire_all()
        assert exit_movement.status == STATUS_CANCELLED
        assert lot.quantity == 1

    def test_deleted_lot_fails_loudly(self, db_session, operator, lot_product):
        lot = receive_into_new_lot(operator, lot_product, "L", 2)
        exit_movement = commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(lot.id, 2)])
        lot_service.delete_lot(operator_id=operator.id, lot_id=lot.id)

        with pytest.raises(RestorationUnavailable):
            _change(operator, exit_movement, STATUS_CANCELLED)

        db_session.expire_all()
        assert exit_movement.status == STATUS_CONFIRMED
        assert lot_product.stock == 0


class TestFallbackTransitions:
    """Exits without a stored lot breakdown on a lot-managed product."""

    def _exit_without_lots(self, operator, lot_product, quantity):
        return ledger_service.record_movement(
            operator_id=operator.id,
            product_id=lot_product.id,
            movement_type=MOVEMENT_EXIT,
            quantity=quantity,
            unit_price_cents=100,
        )

    def test_cancel_spreads_over_current_lots_and_is_exact_afterwards(self, db_session, operator, lot_product):
        stock_before_lot_tracking(operator, lot_product, 6)
        exit_movement = self._exit_without_lots(operator, lot_product, 4)
        l1 = lot_service.create_lot(operator_id=operator.id, product_id=lot_product.id, lot_number="L1", quantity=1)
        l2 = lot_service.create_lot(operator_id=operator.id, product_id=lot_product.id, lot_number="L2", quantity=1)

        change = _change(operator, exit_movement, STATUS_CANCELLED)

        assert not change.exact
        assert (l1.quantity, l2.quantity) == (3, 3)
        assert lot_product.stock == 6
        assert len(exit_movement.allocations) == 2

        change = _change(operator, exit_movement, STATUS_CONFIRMED)
        assert change.exact
        assert (l1.quantity, l2.quantity) == (1, 1)
        assert lot_product.stock == 2

    def test_no_lots_to_restore_to(self, db_session, operator, lot_product):
        stock_before_lot_tracking(operator, lot_product, 5)
        exit_movement = self._exit_without_lots(operator, lot_product, 2)

        with pytest.raises(RestorationUnavailable):
            _change(operator, exit_movement, STATUS_CANCELLED)

        db_session.expire_all()
        assert lot_product.stock == 3
        assert exit_movement.status == STATUS_CONFIRMED


class TestInvalidTransitions:
    def test_receipts_have_no_status(self, db_session, operator, product):
        receipt = receive(operator, product, 1)
        with pytest.raises(InvalidStatusTransition):
            _change(operator, receipt, STATUS_CANCELLED)

    def test_unknown_status(self, db_session, operator, product):
        receive(operator, product, 1)
        exit_movement = commit_exit(operator_id=operator.id, product_id=product.id, quantity=1)
        with pytest.raises(InvalidStatusTransition):
            _change(operator, exit_movement, "SHIPPED")

    def test_same_status_is_a_no_op(self, db_session, operator, product):
        receive(operator, product, 1)
        exit_movement = commit_exit(operator_id=operator.id, product_id=product.id, quantity=1)

        change = _change(operator, exit_movement, STATUS_CONFIRMED)

        assert change.stock_delta == 0
        assert db_session.get(Movement, exit_movement.id).status_changed_at is None
