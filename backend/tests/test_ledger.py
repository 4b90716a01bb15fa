"""
Inventory ledger tests.

Verifies:
- The fold rules for every entry type, as a pure function
- Reserve / consume through the reservation service (scenarios 1-3)
- Stock administration (receive / issue / adjust / discontinue)
- Replay and verification against the materialized counters
"""

import logging

import pytest

from presstrack.errors import (
    ConsistencyError,
    DoubleConsume,
    InsufficientStock,
    InvalidQuantity,
    InvalidTransition,
    NotFound,
    OverRelease,
    Unauthorized,
)
from presstrack.extensions import db
from presstrack.models import InventoryTransaction, JobMaterialAllocation
from presstrack.services import ledger_service
from presstrack.services.ledger_service import LedgerState, apply_entry


# =============================================================================
# FOLD RULES
# =============================================================================


class TestApplyEntry:

    def test_in_and_out_move_total(self):
        state = apply_entry(LedgerState(), "in", 100)
        state = apply_entry(state, "out", 30)
        assert (state.total, state.reserved) == (70, 0)

    def test_out_cannot_dip_below_reserved(self):
        state = LedgerState(total=100, reserved=80, by_job={1: 80})
        with pytest.raises(InsufficientStock):
            apply_entry(state, "out", 30)

    def test_reserve_limited_to_available(self):
        state = LedgerState(total=100, reserved=60, by_job={1: 60})
        assert apply_entry(state, "reserve", 40, 2).available == 0
        with pytest.raises(InsufficientStock):
            apply_entry(state, "reserve", 41, 2)

    def test_release_tracks_per_job(self):
        state = LedgerState(total=100, reserved=50, by_job={1: 20, 2: 30})
        after = apply_entry(state, "release", 20, 1)
        assert after.reserved == 30
        assert after.by_job[1] == 0
        with pytest.raises(OverRelease):
            apply_entry(state, "release", 25, 1)

    def test_consume_requires_job_reservation(self):
        state = LedgerState(total=100, reserved=50, by_job={1: 50})
        after = apply_entry(state, "consume", 50, 1)
        assert (after.total, after.reserved) == (50, 0)
        with pytest.raises(InsufficientStock):
            apply_entry(state, "consume", 10, 2)

    def test_adjust_is_signed_but_respects_reserved(self):
        state = LedgerState(total=100, reserved=40, by_job={1: 40})
        assert apply_entry(state, "adjust", -60).total == 40
        assert apply_entry(state, "adjust", 15).total == 115
        with pytest.raises(InsufficientStock):
            apply_entry(state, "adjust", -61)

    def test_input_state_is_untouched(self):
        state = LedgerState(total=10)
        apply_entry(state, "reserve", 5, 1)
        assert state.reserved == 0
        assert state.by_job == {}


@pytest.mark.parametrize("bad", [0, -5, 2.5, "10", True, None])
def test_whole_sheets_only(bad):
    with pytest.raises(InvalidQuantity):
        ledger_service.require_whole_sheets(bad, operation="reserve")


def test_signed_quantities_still_reject_zero():
    assert ledger_service.require_whole_sheets(-5, operation="adjust", signed=True) == -5
    with pytest.raises(InvalidQuantity):
        ledger_service.require_whole_sheets(0, operation="adjust", signed=True)


# =============================================================================
# RESERVE / CONSUME SCENARIOS
# =============================================================================


class TestReservationScenarios:

    def test_reserve_then_overreserve_then_consume(self, reservations, make_item, make_paper, production):
        job = make_item()
        paper = make_paper(sheets=1000)

        allocation = reservations.reserve_for_job(job.id, paper.id, 500, production)
        paper = ledger_service.get_paper(paper.id)
        assert allocation.status == "reserved"
        assert (paper.total_sheets, paper.reserved_sheets, paper.available_sheets) == (1000, 500, 500)

        with pytest.raises(InsufficientStock) as exc:
            reservations.reserve_for_job(job.id, paper.id, 600, production)
        assert exc.value.current == {"available_sheets": 500}
        assert exc.value.requested == 600

        paper = ledger_service.get_paper(paper.id)
        assert (paper.total_sheets, paper.reserved_sheets) == (1000, 500)
        assert db.session.query(JobMaterialAllocation).count() == 1

        consumed = reservations.consume_material(allocation.id, production)
        assert consumed.status == "consumed"
        paper = ledger_service.get_paper(paper.id)
        assert (paper.total_sheets, paper.reserved_sheets) == (500, 0)

        with pytest.raises(DoubleConsume):
            reservations.consume_material(allocation.id, production)
        paper = ledger_service.get_paper(paper.id)
        assert (paper.total_sheets, paper.reserved_sheets) == (500, 0)

    def test_release_returns_sheets_once(self, reservations, make_item, make_paper, production):
        job = make_item()
        paper = make_paper(sheets=300)
        allocation = reservations.reserve_for_job(job.id, paper.id, 200, production)

        released = reservations.release_material(allocation.id, production)
        assert released.status == "released"
        assert ledger_service.get_paper(paper.id).available_sheets == 300

        with pytest.raises(OverRelease):
            reservations.release_material(allocation.id, production)
        with pytest.raises(DoubleConsume):
            reservations.consume_material(allocation.id, production)

    def test_consumed_allocation_has_exactly_one_consume_entry(self, reservations, make_item, make_paper, production):
        job = make_item()
        paper = make_paper(sheets=100)
        allocation = reservations.reserve_for_job(job.id, paper.id, 40, production)
        reservations.consume_material(allocation.id, production)

        entries = (
            db.session.query(InventoryTransaction)
            .filter_by(allocation_id=allocation.id, type="consume")
            .all()
        )
        assert len(entries) == 1
        assert entries[0].quantity == 40
        assert entries[0].job_id == job.id

    def test_fractional_sheets_rejected_before_any_write(self, reservations, make_item, make_paper, production):
        job = make_item()
        paper = make_paper(sheets=100)
        with pytest.raises(InvalidQuantity):
            reservations.reserve_for_job(job.id, paper.id, 2.5, production)
        assert db.session.query(JobMaterialAllocation).count() == 0

    def test_unknown_job_or_paper(self, reservations, make_item, make_paper, production):
        job = make_item()
        paper = make_paper()
        with pytest.raises(NotFound):
            reservations.reserve_for_job(987654, paper.id, 10, production)
        with pytest.raises(NotFound):
            reservations.reserve_for_job(job.id, 987654, 10, production)
        with pytest.raises(NotFound):
            reservations.consume_material(987654, production)

    def test_design_role_cannot_allocate(self, reservations, make_item, make_paper, designer):
        job = make_item()
        paper = make_paper()
        with pytest.raises(Unauthorized):
            reservations.reserve_for_job(job.id, paper.id, 10, designer)

    def test_discontinued_paper_cannot_be_reserved(self, inventory, reservations, make_item, make_paper, admin):
        job = make_item()
        paper = make_paper()
        inventory.discontinue_paper(paper.id, admin)
        with pytest.raises(InvalidTransition):
            reservations.reserve_for_job(job.id, paper.id, 10, admin)
        with pytest.raises(InvalidTransition):
            inventory.discontinue_paper(paper.id, admin)

    def test_reservations_leave_timeline_notes(self, workflow, reservations, make_item, make_paper, production):
        job = make_item()
        paper = make_paper()
        allocation = reservations.reserve_for_job(job.id, paper.id, 10, production)
        reservations.release_material(allocation.id, production)

        notes = [e for e in workflow.get_timeline(job.order_id, item_id=job.id) if e.action == "note_added"]
        assert len(notes) == 2
        assert all(not e.is_public for e in notes)
        assert "Reserved 10 sheets" in notes[0].notes


# =============================================================================
# STOCK ADMINISTRATION
# =============================================================================


class TestStockAdministration:

    def test_receive_issue_adjust(self, inventory, make_paper, admin):
        paper = make_paper(sheets=100)
        inventory.receive_stock(paper.id, 50, admin, notes="Delivery 42")
        inventory.issue_stock(paper.id, 30, admin)
        inventory.adjust_stock(paper.id, -5, admin, notes="Water damage")

        paper = inventory.get_paper(paper.id)
        assert paper.total_sheets == 115
        history = inventory.get_paper_history(paper.id)
        assert [tx.type for tx in history] == ["adjust", "out", "in", "in"]
        assert [tx.sequence for tx in history] == [4, 3, 2, 1]

    def test_adjust_below_reserved_rejected(self, inventory, reservations, make_item, make_paper, admin):
        job = make_item()
        paper = make_paper(sheets=100)
        reservations.reserve_for_job(job.id, paper.id, 80, admin)

        with pytest.raises(InsufficientStock):
            inventory.adjust_stock(paper.id, -21, admin)
        with pytest.raises(InsufficientStock):
            inventory.issue_stock(paper.id, 21, admin)
        assert inventory.get_paper(paper.id).total_sheets == 100

    def test_zero_or_negative_receipts_rejected(self, inventory, make_paper, admin):
        paper = make_paper(sheets=10)
        with pytest.raises(InvalidQuantity):
            inventory.receive_stock(paper.id, 0, admin)
        with pytest.raises(InvalidQuantity):
            inventory.receive_stock(paper.id, -5, admin)
        with pytest.raises(InvalidQuantity):
            inventory.adjust_stock(paper.id, 0, admin)

    def test_stock_changes_need_manage_inventory(self, inventory, make_paper, sales):
        paper = make_paper()
        with pytest.raises(Unauthorized):
            inventory.receive_stock(paper.id, 10, sales)

    def test_low_stock_lists_active_papers_at_threshold(self, inventory, reservations, make_item, make_paper, admin):
        low = make_paper(sheets=100, name="Kraft", reorder_threshold=50)
        make_paper(sheets=1000, name="Ivory", reorder_threshold=50)
        gone = make_paper(sheets=0, name="Old stock", reorder_threshold=50)
        inventory.discontinue_paper(gone.id, admin)

        assert inventory.list_low_stock() == []
        reservations.reserve_for_job(make_item().id, low.id, 50, admin)
        assert [p.name for p in inventory.list_low_stock()] == ["Kraft"]

    def test_list_papers_by_status(self, inventory, make_paper, admin):
        make_paper(name="A")
        b = make_paper(name="B")
        inventory.discontinue_paper(b.id, admin)
        assert [p.name for p in inventory.list_papers()] == ["A", "B"]
        assert [p.name for p in inventory.list_papers(status="active")] == ["A"]


# =============================================================================
# REPLAY / VERIFY
# =============================================================================


class TestReplay:

    def test_replay_matches_counters(self, inventory, reservations, make_item, make_paper, admin):
        job = make_item()
        paper = make_paper(sheets=1000)
        a1 = reservations.reserve_for_job(job.id, paper.id, 300, admin)
        a2 = reservations.reserve_for_job(job.id, paper.id, 200, admin)
        reservations.consume_material(a1.id, admin)
        reservations.release_material(a2.id, admin)
        inventory.adjust_stock(paper.id, 25, admin)

        assert inventory.replay_ledger(paper.id) == (725, 0)
        state = inventory.verify_ledger(paper.id)
        assert (state.total, state.reserved) == (725, 0)

    def test_counter_drift_is_a_consistency_error(self, inventory, make_paper, caplog):
        paper = make_paper(sheets=100)
        paper = ledger_service.get_paper(paper.id)
        paper.total_sheets = 90
        db.session.commit()

        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(ConsistencyError) as exc:
                inventory.verify_ledger(paper.id)
        assert exc.value.current == {"total_sheets": 90, "reserved_sheets": 0}
        assert exc.value.requested == {"total_sheets": 100, "reserved_sheets": 0}
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)
