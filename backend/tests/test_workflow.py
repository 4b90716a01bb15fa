"""
Workflow state machine tests.

Verifies:
- Item creation and priority
- Allowed stage transitions, fast paths and the outsource branch
- Outsource vendor steps, follow-up notes and the return gate
- Readiness gate, forced entry and the materials gate
- Production substeps (scenario 5) and sequence redefinition
- Department authorization and membership checks
- Dispatch, delivery dates, notes, milestones
- expected_version staleness
- Reads leave the item, timeline, allocations and paper untouched
"""

from datetime import timedelta

import pytest

from presstrack.errors import (
    InvalidQuantity,
    InvalidTransition,
    NotFound,
    StaleState,
    Unauthorized,
    UserNotInDepartment,
    ValidationError,
)
from presstrack.services import ledger_service
from presstrack.services.permission_service import RoleCapabilities, StaticDepartmentDirectory
from presstrack.services.workflow_service import WorkflowService
from presstrack.time_utils import today_utc


# =============================================================================
# CREATION
# =============================================================================


class TestCreate:

    def test_new_item_starts_in_sales(self, workflow, make_item):
        item = make_item(days=4)
        assert item.stage == "sales"
        assert item.assigned_department == "sales"
        assert item.priority == "yellow"
        assert item.is_ready_for_production is False
        assert item.version_id == 1

        events = workflow.get_timeline(item.order_id)
        assert [e.action for e in events] == ["created"]
        assert events[0].is_public is True

    def test_priority_is_recomputed_on_read(self, make_item):
        item = make_item(days=2)
        assert item.to_dict(today=today_utc() - timedelta(days=10))["priority"] == "blue"
        assert item.to_dict()["priority"] == "red"

    def test_only_sales_creates_items(self, workflow, designer):
        with pytest.raises(Unauthorized):
            workflow.create_order_item(
                order_id="ORD-1",
                product_name="Card",
                quantity=10,
                delivery_date=today_utc(),
                need_design=True,
                actor=designer,
            )

    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"quantity": 0}, InvalidQuantity),
            ({"quantity": 1.5}, InvalidQuantity),
            ({"product_name": " "}, ValidationError),
            ({"product_name": 5}, ValidationError),
            ({"product_name": ["Card"]}, ValidationError),
            ({"delivery_date": "next tuesday"}, ValidationError),
            ({"delivery_date": None}, ValidationError),
        ],
    )
    def test_rejects_bad_input(self, workflow, sales, overrides, error):
        kwargs = dict(
            order_id="ORD-1",
            product_name="Card",
            quantity=10,
            delivery_date=today_utc().isoformat(),
            need_design=False,
            actor=sales,
        )
        kwargs.update(overrides)
        with pytest.raises(error):
            workflow.create_order_item(**kwargs)


# =============================================================================
# STAGE TRANSITIONS
# =============================================================================


class TestTransitions:

    def test_sales_to_design_assigns_department(self, workflow, make_item, sales):
        item = make_item(need_design=True)
        item = workflow.transition_stage(item.id, "design", sales, assigned_user="u-design", notes="Artwork attached")

        assert item.stage == "design"
        assert item.assigned_department == "design"
        assert item.assigned_user == "u-design"

        last = workflow.get_timeline(item.order_id, item_id=item.id)[-1]
        assert last.action == "assigned"
        assert last.stage == "design"
        assert "Artwork attached" in last.notes

    def test_design_items_cannot_skip_design(self, workflow, make_item, sales):
        item = make_item(need_design=True)
        with pytest.raises(InvalidTransition) as exc:
            workflow.transition_stage(item.id, "prepress", sales)
        assert exc.value.current == "sales"
        assert exc.value.requested == "prepress"

    def test_no_design_fast_path_to_prepress(self, workflow, make_item, sales):
        item = make_item(need_design=False)
        assert workflow.transition_stage(item.id, "prepress", sales).stage == "prepress"

    @pytest.mark.parametrize("target", ["dispatch", "completed", "outsource", "nowhere"])
    def test_unreachable_targets_from_sales(self, workflow, make_item, sales, target):
        item = make_item(need_design=True)
        with pytest.raises(InvalidTransition):
            workflow.transition_stage(item.id, target, sales)

    def test_production_never_returns_to_sales(self, workflow, in_production, production, admin):
        item = in_production()
        for target in ("sales", "design", "prepress"):
            with pytest.raises(InvalidTransition):
                workflow.transition_stage(item.id, target, admin)

    def test_source_department_is_authorized(self, workflow, make_item, designer):
        item = make_item(need_design=True)
        with pytest.raises(Unauthorized) as exc:
            workflow.transition_stage(item.id, "design", designer)
        assert exc.value.current == "sales"

    def test_assigned_user_must_belong_to_target_department(self, workflow, make_item, sales):
        item = make_item(need_design=True)
        with pytest.raises(UserNotInDepartment):
            workflow.transition_stage(item.id, "design", sales, assigned_user="u-production")
        with pytest.raises(UserNotInDepartment):
            workflow.transition_stage(item.id, "design", sales, assigned_user="u-ghost")
        assert workflow.get_item(item.id).stage == "sales"

    def test_unknown_item(self, workflow, sales):
        with pytest.raises(NotFound):
            workflow.transition_stage(424242, "design", sales)


class TestOutsource:

    VENDOR_STEPS = ("vendor_in_progress", "vendor_dispatched", "received_from_vendor", "quality_check", "decision_pending")

    def _through_vendor(self, workflow, item_id, actor):
        item = None
        for step in self.VENDOR_STEPS:
            item = workflow.set_outsource_stage(item_id, step, actor)
        return item

    def test_outsource_returns_only_to_origin(self, workflow, make_item, sales, designer, production):
        item = make_item(need_design=True)
        workflow.transition_stage(item.id, "design", sales)
        item = workflow.transition_stage(
            item.id, "outsource", designer, assigned_user="u-outsource",
            outsource_info={"vendor": {"vendor_name": "Ravi Foils"}, "work_type": "foiling"},
        )
        assert item.assigned_department == "outsource"
        assert item.outsource_origin == "design"
        assert item.outsource_stage == "outsourced"
        assert item.outsource_info["vendor"] == {"vendor_name": "Ravi Foils"}
        assert item.outsource_info["follow_up_notes"] == []

        self._through_vendor(workflow, item.id, production)
        assert workflow.available_transitions(item.id, production) == ["design"]
        with pytest.raises(InvalidTransition):
            workflow.transition_stage(item.id, "prepress", production)

        item = workflow.transition_stage(item.id, "design", production)
        assert item.stage == "design"
        assert item.outsource_origin is None
        assert item.outsource_stage is None

    def test_return_waits_for_vendor_decision(self, workflow, make_item, sales, designer, production):
        item = make_item(need_design=True)
        workflow.transition_stage(item.id, "design", sales)
        workflow.transition_stage(item.id, "outsource", designer)

        assert workflow.available_transitions(item.id, production) == []
        with pytest.raises(InvalidTransition) as exc:
            workflow.transition_stage(item.id, "design", production)
        assert exc.value.current == {"stage": "outsource", "outsource_stage": "outsourced"}

    def test_production_role_brings_item_back_unforced(self, workflow, in_production, production):
        item = in_production(sequence=("foiling", "printing"))
        workflow.set_substage(item.id, "foiling", "completed", production)
        workflow.transition_stage(item.id, "outsource", production)
        self._through_vendor(workflow, item.id, production)

        assert workflow.available_transitions(item.id, production) == ["production"]
        item = workflow.transition_stage(item.id, "production", production)
        assert item.stage == "production"
        assert item.substage_statuses == {"foiling": "completed", "printing": "pending"}
        assert item.substage == "printing"
        assert item.is_ready_for_production is False

    def test_vendor_step_order(self, workflow, in_production, production):
        item = in_production()
        workflow.transition_stage(item.id, "outsource", production)

        with pytest.raises(InvalidTransition):
            workflow.set_outsource_stage(item.id, "quality_check", production)
        workflow.set_outsource_stage(item.id, "vendor_in_progress", production)
        item = workflow.set_outsource_stage(item.id, "outsourced", production)
        assert item.outsource_stage == "outsourced"
        with pytest.raises(InvalidTransition):
            workflow.set_outsource_stage(item.id, "decision_pending", production)

    def test_vendor_dispatch_and_failed_quality_check(self, workflow, in_production, production):
        item = in_production()
        workflow.transition_stage(item.id, "outsource", production)
        workflow.set_outsource_stage(item.id, "vendor_in_progress", production)
        item = workflow.set_outsource_stage(
            item.id, "vendor_dispatched", production,
            details={"courier_name": "Blue Dart", "tracking_number": "BD-77", "colour": "ignored"},
        )
        assert item.outsource_info["courier_name"] == "Blue Dart"
        assert item.outsource_info["tracking_number"] == "BD-77"
        assert "colour" not in item.outsource_info

        workflow.set_outsource_stage(item.id, "received_from_vendor", production)
        workflow.set_outsource_stage(item.id, "quality_check", production)
        item = workflow.set_outsource_stage(item.id, "vendor_in_progress", production, notes="Foil smudged")
        assert item.outsource_info["quality_check"]["passed"] is False

        notes = [e.notes for e in workflow.get_timeline(item.order_id) if e.action == "note_added"]
        assert notes[-1] == "Outsource: quality_check -> vendor_in_progress (QC failed): Foil smudged"

    def test_vendor_steps_need_outsource_department(self, workflow, in_production, production, sales):
        item = in_production()
        with pytest.raises(InvalidTransition):
            workflow.set_outsource_stage(item.id, "vendor_in_progress", production)
        workflow.transition_stage(item.id, "outsource", production)
        with pytest.raises(Unauthorized):
            workflow.set_outsource_stage(item.id, "vendor_in_progress", sales)

    def test_follow_up_notes(self, workflow, in_production, production):
        item = in_production()
        workflow.transition_stage(item.id, "outsource", production)
        item = workflow.add_outsource_note(item.id, "Vendor promised Friday", production)
        notes = item.outsource_info["follow_up_notes"]
        assert [n["note"] for n in notes] == ["Vendor promised Friday"]
        assert notes[0]["created_by"] == "u-production"

        last = workflow.get_timeline(item.order_id)[-1]
        assert last.notes == "Vendor follow-up: Vendor promised Friday"
        assert last.is_public is False

        with pytest.raises(ValidationError):
            workflow.add_outsource_note(item.id, "  ", production)


# =============================================================================
# READINESS & FORCE
# =============================================================================


class TestReadiness:

    def test_not_ready_blocks_production(self, workflow, make_item, sales):
        item = make_item(need_design=False)
        with pytest.raises(InvalidTransition) as exc:
            workflow.transition_stage(item.id, "production", sales)
        assert exc.value.current == {"stage": "sales", "is_ready_for_production": False}

    def test_sign_off_then_enter_production(self, workflow, make_item, sales):
        item = make_item(need_design=False)
        workflow.mark_ready_for_production(item.id, sales)
        item = workflow.transition_stage(item.id, "production", sales)

        assert item.stage == "production"
        assert item.substage == "foiling"
        assert item.substage_status == "pending"
        # Readiness now tracks the production substeps
        assert item.is_ready_for_production is False
        assert workflow.get_timeline(item.order_id)[-1].action == "sent_to_production"

    def test_sign_off_only_before_production(self, workflow, in_production, production):
        item = in_production()
        with pytest.raises(InvalidTransition):
            workflow.mark_ready_for_production(item.id, production)

    def test_force_needs_capability(self, workflow, make_item, sales, designer, prepress):
        item = make_item(need_design=True)
        workflow.transition_stage(item.id, "design", sales)
        with pytest.raises(Unauthorized):
            workflow.transition_stage(item.id, "production", designer, force=True)

        workflow.transition_stage(item.id, "prepress", designer)
        item = workflow.transition_stage(item.id, "production", prepress, force=True)
        assert item.stage == "production"
        assert "(forced)" in workflow.get_timeline(item.order_id)[-1].notes

    def test_dispatch_requires_finished_production(self, workflow, in_production, production, admin):
        item = in_production(sequence=("printing",))
        with pytest.raises(InvalidTransition):
            workflow.transition_stage(item.id, "dispatch", production)
        workflow.set_substage(item.id, "printing", "completed", production)
        assert workflow.transition_stage(item.id, "dispatch", production).stage == "dispatch"

    def test_materials_gate(self, app, workflow, make_item, make_paper, reservations, sales):
        gated = WorkflowService(
            capabilities=RoleCapabilities.from_mapping(app.config["ROLE_CAPABILITIES"]),
            directory=StaticDepartmentDirectory(app.config["DEPARTMENT_MEMBERS"]),
            default_sequence=app.config["DEFAULT_PRODUCTION_SEQUENCE"],
            require_materials_for_production=True,
        )
        item = make_item(need_design=False)
        gated.mark_ready_for_production(item.id, sales)

        with pytest.raises(InvalidTransition) as exc:
            gated.transition_stage(item.id, "production", sales)
        assert exc.value.current == {"reserved_allocations": 0}

        reservations.reserve_for_job(item.id, make_paper().id, 100, sales)
        assert gated.transition_stage(item.id, "production", sales).stage == "production"

    def test_available_transitions(self, workflow, make_item, sales, designer, prepress):
        item = make_item(need_design=False)
        assert workflow.available_transitions(item.id, sales) == ["design", "prepress"]
        assert workflow.available_transitions(item.id, designer) == []

        workflow.transition_stage(item.id, "prepress", sales)
        assert workflow.available_transitions(item.id, prepress) == ["design", "outsource", "production"]


# =============================================================================
# PRODUCTION SUBSTEPS
# =============================================================================


class TestSubstages:

    def test_completing_every_step_sets_readiness(self, workflow, in_production, production):
        item = in_production(sequence=("foiling", "printing"))

        item = workflow.set_substage(item.id, "foiling", "completed", production)
        assert item.is_ready_for_production is False
        item = workflow.set_substage(item.id, "printing", "completed", production)
        assert item.is_ready_for_production is True

        item = workflow.set_substage(item.id, "printing", "in_progress", production)
        assert item.is_ready_for_production is False
        assert item.substage_statuses == {"foiling": "completed", "printing": "in_progress"}

    def test_events_for_start_complete_and_packing(self, workflow, in_production, production):
        item = in_production(sequence=("printing", "packing"))
        workflow.set_substage(item.id, "printing", "in_progress", production)
        workflow.set_substage(item.id, "printing", "completed", production)
        workflow.set_substage(item.id, "packing", "completed", production)

        actions = [e.action for e in workflow.get_timeline(item.order_id, item_id=item.id)]
        assert actions[-4:] == ["substage_started", "substage_completed", "substage_completed", "packed"]

    def test_step_must_be_in_sequence(self, workflow, in_production, production):
        item = in_production(sequence=("foiling", "printing"))
        with pytest.raises(InvalidTransition):
            workflow.set_substage(item.id, "embossing", "completed", production)

    def test_cannot_go_back_to_pending(self, workflow, in_production, production):
        item = in_production()
        workflow.set_substage(item.id, "foiling", "in_progress", production)
        with pytest.raises(InvalidTransition):
            workflow.set_substage(item.id, "foiling", "pending", production)
        with pytest.raises(InvalidTransition):
            workflow.set_substage(item.id, "foiling", "done", production)

    def test_only_in_production(self, workflow, make_item, production):
        item = make_item()
        with pytest.raises(InvalidTransition):
            workflow.set_substage(item.id, "printing", "completed", production)

    def test_other_departments_cannot_update_steps(self, workflow, in_production, sales):
        item = in_production()
        with pytest.raises(Unauthorized):
            workflow.set_substage(item.id, "foiling", "completed", sales)

    def test_default_sequence_when_unset(self, workflow, make_item, sales, production):
        item = make_item(need_design=False)
        workflow.mark_ready_for_production(item.id, sales)
        item = workflow.transition_stage(item.id, "production", sales)
        assert list(item.substage_statuses) == [
            "foiling", "printing", "pasting", "cutting", "letterpress", "embossing", "packing",
        ]
        workflow.set_substage(item.id, "cutting", "in_progress", production)


class TestSequence:

    def test_define_before_production(self, workflow, make_item, sales):
        item = make_item()
        item = workflow.define_production_sequence(item.id, ["printing", "cutting"], sales)
        assert item.production_sequence == ["printing", "cutting"]

    @pytest.mark.parametrize("bad", [[], ["printing", "printing"], ["laminating"], "printing"])
    def test_rejects_bad_sequences(self, workflow, make_item, sales, bad):
        item = make_item()
        with pytest.raises(ValidationError):
            workflow.define_production_sequence(item.id, bad, sales)

    def test_redefining_in_production_needs_elevated_role(self, workflow, in_production, production, admin):
        item = in_production(sequence=("foiling", "printing", "cutting"))
        workflow.set_substage(item.id, "foiling", "completed", production)
        workflow.set_substage(item.id, "printing", "completed", production)

        with pytest.raises(Unauthorized):
            workflow.define_production_sequence(item.id, ["foiling", "printing"], production)

        item = workflow.define_production_sequence(item.id, ["foiling", "printing"], admin)
        assert item.substage_statuses == {"foiling": "completed", "printing": "completed"}
        assert item.is_ready_for_production is True

        item = workflow.define_production_sequence(item.id, ["foiling", "printing", "packing"], admin)
        assert item.substage_statuses["packing"] == "pending"
        assert item.is_ready_for_production is False
        assert item.substage == "packing"


# =============================================================================
# ASSIGNMENT, DISPATCH, DATES, NOTES
# =============================================================================


class TestAssignment:

    def test_assign_member_of_current_department(self, workflow, make_item, sales):
        item = make_item()
        item = workflow.assign_user(item.id, "u-sales", sales)
        assert item.assigned_user == "u-sales"
        assert "Sam Sales" in workflow.get_timeline(item.order_id)[-1].notes

    def test_assign_outsider_fails_closed(self, workflow, make_item, sales):
        item = make_item()
        with pytest.raises(UserNotInDepartment) as exc:
            workflow.assign_user(item.id, "u-design", sales)
        assert exc.value.current == "design"
        assert exc.value.requested == "sales"
        with pytest.raises(UserNotInDepartment):
            workflow.assign_user(item.id, "nobody", sales)


class TestDispatch:

    def _ready_for_dispatch(self, workflow, in_production, production):
        item = in_production(sequence=("printing",))
        workflow.set_substage(item.id, "printing", "completed", production)
        return workflow.transition_stage(item.id, "dispatch", production)

    def test_dispatch_completes_item(self, workflow, in_production, production):
        item = self._ready_for_dispatch(workflow, in_production, production)
        item = workflow.mark_dispatched(item.id, {"courier": "BlueDart", "tracking_number": "BD123"}, production)

        assert item.is_dispatched is True
        assert item.stage == "completed"
        assert item.dispatch_info["tracking_number"] == "BD123"
        assert workflow.available_transitions(item.id, production) == []

        dispatched = [e for e in workflow.get_timeline(item.order_id) if e.action == "dispatched"]
        assert len(dispatched) == 1
        assert "BD123" in dispatched[0].notes

    def test_dispatch_without_completing(self, workflow, in_production, production):
        item = self._ready_for_dispatch(workflow, in_production, production)
        with pytest.raises(InvalidTransition):
            workflow.transition_stage(item.id, "completed", production)

        item = workflow.mark_dispatched(item.id, {}, production, complete=False)
        assert item.stage == "dispatch"
        with pytest.raises(InvalidTransition):
            workflow.mark_dispatched(item.id, {}, production)
        assert workflow.transition_stage(item.id, "completed", production).stage == "completed"

    def test_only_from_dispatch(self, workflow, make_item, admin):
        item = make_item()
        with pytest.raises(InvalidTransition):
            workflow.mark_dispatched(item.id, {}, admin)


class TestDeliveryDate:

    def test_update_refreshes_priority(self, workflow, make_item, sales):
        item = make_item(days=10)
        assert item.priority == "blue"
        item = workflow.update_delivery_date(item.id, (today_utc() + timedelta(days=1)).isoformat(), sales)
        assert item.priority == "red"
        assert "Delivery date changed" in workflow.get_timeline(item.order_id)[-1].notes

    def test_only_sales_sets_dates(self, workflow, make_item, designer):
        item = make_item()
        with pytest.raises(Unauthorized):
            workflow.update_delivery_date(item.id, today_utc(), designer)


class TestNotesAndMilestones:

    def test_note_never_changes_item(self, workflow, make_item, designer):
        item = make_item()
        version = item.version_id
        event = workflow.record_note(item.id, "Customer called", designer)
        assert event.action == "note_added"
        assert event.actor_id == "u-design"
        assert workflow.get_item(item.id).version_id == version

    @pytest.mark.parametrize("text", ["   ", "", None, 42, {"text": "hi"}])
    def test_blank_or_non_text_note_rejected(self, workflow, make_item, sales, text):
        with pytest.raises(ValidationError):
            workflow.record_note(make_item().id, text, sales)

    def test_milestones(self, workflow, make_item, designer):
        item = make_item(need_design=True)
        event = workflow.record_milestone(
            item.id, "uploaded_proof", designer, attachments=["proofs/v1.pdf"]
        )
        assert event.attachments == ["proofs/v1.pdf"]
        assert event.is_public is True
        with pytest.raises(InvalidTransition):
            workflow.record_milestone(item.id, "dispatched", designer)

    def test_public_timeline(self, workflow, make_item, sales):
        item = make_item()
        workflow.record_note(item.id, "internal", sales)
        workflow.record_note(item.id, "for the customer", sales, is_public=True)
        public = workflow.get_timeline(item.order_id, public_only=True)
        assert [e.action for e in public] == ["created", "note_added"]
        assert public[-1].notes == "for the customer"

    def test_timeline_item_must_belong_to_order(self, workflow, make_item):
        a = make_item()
        b = make_item()
        with pytest.raises(NotFound):
            workflow.get_timeline(a.order_id, item_id=b.id)


# =============================================================================
# STALENESS
# =============================================================================


class TestExpectedVersion:

    def test_second_writer_with_same_version_is_stale(self, workflow, make_item, sales):
        item = make_item(need_design=False)
        version = item.version_id

        workflow.transition_stage(item.id, "design", sales, expected_version=version)
        with pytest.raises(StaleState) as exc:
            workflow.transition_stage(item.id, "prepress", sales, expected_version=version)
        assert exc.value.requested == version

        item = workflow.get_item(item.id)
        assert item.stage == "design"

    def test_unversioned_moves_apply_in_turn(self, workflow, make_item, sales, designer):
        item = make_item(need_design=False)
        moved = workflow.transition_stage(item.id, "design", sales)
        version = moved.version_id
        item = workflow.transition_stage(item.id, "prepress", designer)
        assert item.stage == "prepress"
        assert item.version_id > version

    def test_list_filters(self, workflow, make_item, sales):
        a = make_item(need_design=True)
        b = make_item(need_design=True)
        workflow.transition_stage(b.id, "design", sales, assigned_user="u-design")

        assert [i.id for i in workflow.list_items(stage="sales")] == [a.id]
        assert [i.id for i in workflow.list_items(department="design")] == [b.id]
        assert [i.id for i in workflow.list_items(assigned_user="u-design")] == [b.id]
        assert [i.id for i in workflow.list_items(order_id=a.order_id)] == [a.id]


# =============================================================================
# READS
# =============================================================================


class TestReadsHaveNoEffect:

    def test_repeated_reads_are_identical(self, workflow, reservations, in_production, make_paper, production):
        item = in_production(sequence=("foiling", "printing"))
        paper = make_paper(sheets=500)
        reservations.reserve_for_job(item.id, paper.id, 120, production)
        workflow.set_substage(item.id, "foiling", "in_progress", production)

        def snapshot():
            return (
                workflow.get_item(item.id).to_dict(),
                [i.to_dict() for i in workflow.list_items()],
                [e.to_dict() for e in workflow.get_timeline(item.order_id)],
                [a.to_dict() for a in reservations.get_job_materials(item.id)],
                ledger_service.get_paper(paper.id).to_dict(),
                workflow.available_transitions(item.id, production),
            )

        first = snapshot()
        assert snapshot() == first
        assert workflow.get_item(item.id).version_id == first[0]["version_id"]
