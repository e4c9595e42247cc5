# Overview: Pytest coverage for the allocation engine.

import pytest

from stockflow.errors import ExceedsLotStock, InsufficientStock, NoQuantitySelected, NotFound, StockError
from stockflow.models import Movement
from stockflow.models.inventory import MOVEMENT_EXIT
from stockflow.services.allocation_service import (
    ALLOCATION_COMMITTED,
    ALLOCATION_SELECTING,
    ALLOCATION_UNSELECTED,
    ALLOCATION_VALID,
    AllocationDraft,
    commit_exit,
    merge_rows,
    validate_allocation,
)
from stockflow.services.catalog_service import create_product

from conftest import receive, receive_into_new_lot


@pytest.fixture
def lots_a5_b3(operator, lot_product):
    a = receive_into_new_lot(operator, lot_product, "A", 5, expiry_date="2026-05-01")
    b = receive_into_new_lot(operator, lot_product, "B", 3, expiry_date="2026-06-01")
    return a, b


class TestMergeRows:
    def test_merges_and_drops_zero_rows(self):
        assert merge_rows([(1, 2), {"lot_id": 2, "quantity": 0}, (1, 3)]) == {1: 5}

    def test_negative_rejected(self):
        with pytest.raises(StockError):
            merge_rows([(1, -1)])


class TestValidateAllocation:
    def test_plain_product_checks_stock(self, db_session, operator, product):
        receive(operator, product, 4)
        with pytest.raises(InsufficientStock):
            validate_allocation(product, 5)
        assert validate_allocation(product, 4).quantity == 4

    def test_zero_selected(self, db_session, operator, lot_product, lots_a5_b3):
        with pytest.raises(NoQuantitySelected):
            validate_allocation(lot_product, None, [(lots_a5_b3[0].id, 0)])

    def test_lists_every_over_allocated_lot(self, db_session, operator, lot_product, lots_a5_b3):
        a, b = lots_a5_b3
        with pytest.raises(ExceedsLotStock) as exc_info:
            validate_allocation(lot_product, None, [(a.id, 6), (b.id, 4)])

        details = exc_info.value.details
        assert str(exc_info.value) == "lot A has only 5 available, 6 requested"
        assert [(row["lot_number"], row["available"], row["requested"]) for row in details["lots"]] == [
            ("A", 5, 6),
            ("B", 3, 4),
        ]

    def test_foreign_lot_not_found(self, db_session, operator, lot_product, lots_a5_b3):
        other = create_product(operator_id=operator.id, sku="EGGS", name="Eggs", managed_by_lots=True)
        with pytest.raises(NotFound):
            validate_allocation(other, None, [(lots_a5_b3[0].id, 1)])

    def test_quantity_must_match_rows(self, db_session, operator, lot_product, lots_a5_b3):
        with pytest.raises(StockError):
            validate_allocation(lot_product, 3, [(lots_a5_b3[0].id, 2)])


class TestCommitExit:
    def test_exit_across_two_lots(self, db_session, operator, lot_product, lots_a5_b3):
        """A(5), B(3); take A:5, B:2 -> A 0, B 1, movement of 7."""
        a, b = lots_a5_b3

        movement = commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 5), (b.id, 2)])

        assert movement.type == MOVEMENT_EXIT
        assert movement.quantity == 7
        assert (a.quantity, b.quantity) == (0, 1)
        assert lot_product.stock == 1
        assert sorted((al.lot_number, al.quantity) for al in movement.allocations) == [("A", 5), ("B", 2)]

    def test_over_allocated_lot_left_unchanged(self, db_session, operator, lot_product, lots_a5_b3):
        a, _ = lots_a5_b3

        with pytest.raises(ExceedsLotStock):
            commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 6)])

        db_session.expire_all()
        assert a.quantity == 5
        assert lot_product.stock == 8
        assert db_session.query(Movement).filter_by(type=MOVEMENT_EXIT).count() == 0

    def test_price_defaults_to_effective_sale_price(self, db_session, operator, lot_product, lots_a5_b3):
        a, _ = lots_a5_b3
        movement = commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(a.id, 2)])
        # Both lots were received at the default cost of 100
        assert movement.unit_price_cents == 100
        assert movement.total_cents == 200

    def test_lot_sum_matches_stock_after_exit(self, db_session, operator, lot_product, lots_a5_b3):
        a, b = lots_a5_b3
        commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(b.id, 3)])
        assert a.quantity + b.quantity == lot_product.stock

    def test_taking_a_lot_to_zero_keeps_it(self, db_session, operator, lot_product, lots_a5_b3):
        _, b = lots_a5_b3
        commit_exit(operator_id=operator.id, product_id=lot_product.id, lots=[(b.id, 3)])
        db_session.expire_all()
        assert b.quantity == 0


class TestAllocationDraft:
    def test_state_machine(self, db_session, operator, lot_product, lots_a5_b3):
        a, b = lots_a5_b3
        draft = AllocationDraft(operator_id=operator.id, product_id=lot_product.id)
        assert draft.state == ALLOCATION_UNSELECTED

        draft.set_row(a.id, 2)
        draft.set_row(b.id, 1)
        assert draft.state == ALLOCATION_SELECTING
        assert draft.selected_quantity == 3

        plan = draft.validate()
        assert draft.state == ALLOCATION_VALID
        assert plan.quantity == 3

        draft.commit(unit_price_cents=250)
        assert draft.state == ALLOCATION_COMMITTED
        assert draft.movement.total_cents == 750

        with pytest.raises(StockError):
            draft.set_row(a.id, 1)

    def test_removing_all_rows_goes_back_to_unselected(self, db_session, operator, lot_product, lots_a5_b3):
        a, _ = lots_a5_b3
        draft = AllocationDraft(operator_id=operator.id, product_id=lot_product.id)
        draft.set_row(a.id, 2)
        draft.remove_row(a.id)
        assert draft.state == ALLOCATION_UNSELECTED

        with pytest.raises(NoQuantitySelected):
            draft.validate()

    def test_commit_revalidates_against_current_stock(self, db_session, operator, lot_product, lots_a5_b3):
        """Two drafts for the last units of one lot: the second commit loses."""
        _, b = lots_a5_b3
        first = AllocationDraft(operator_id=operator.id, product_id=lot_product.id)
        second = AllocationDraft(operator_id=operator.id, product_id=lot_product.id)
        first.set_row(b.id, 3)
        second.set_row(b.id, 2)
        first.validate()
        second.validate()

        first.commit()
        with pytest.raises(ExceedsLotStock) as exc_info:
            second.commit()

        assert "lot B has only 0 available, 2 requested" in str(exc_info.value)
        assert second.state == ALLOCATION_VALID
        db_session.expire_all()
        assert b.quantity == 0
        assert lot_product.stock == 5

    def test_plain_product_draft(self, db_session, operator, product):
        receive(operator, product, 5)
        draft = AllocationDraft(operator_id=operator.id, product_id=product.id, quantity=2)
        movement = draft.commit()
        assert movement.unit_price_cents == 1000
        assert product.stock == 3
