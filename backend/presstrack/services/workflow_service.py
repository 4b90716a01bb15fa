# Overview: Order item stage machine, production substeps, and department hand-offs.

"""
Order Item Workflow

================================================================================
PURPOSE: Move an order item through the department stages, track its
production substeps, and record every change on the timeline.
================================================================================

STAGES:
    sales -> design -> prepress -> production -> dispatch -> completed

    plus a lateral `outsource` branch, reachable from design, prepress and
    production, which can only return to the stage that sent the item out.

OUTSOURCE (ALLOWED_OUTSOURCE_MOVES):
    outsourced -> vendor_in_progress -> vendor_dispatched -> received_from_vendor
        -> quality_check -> decision_pending

- vendor_in_progress may fall back to outsourced; a failed quality check
  sends the job back to vendor_in_progress.
- The item may leave outsource only once it is decision_pending. Returning
  to production does not re-apply the readiness gate; finished substeps are
  kept and readiness is recomputed from them.

ALLOWED MOVES (ALLOWED_TRANSITIONS):
- At most one forward stage may be skipped (design -> production).
- sales -> prepress and sales -> production are fast paths for items that do
  not need design.
- Backward moves exist only before production (design -> sales for customer
  approval, prepress -> design for revisions). Once an item reaches
  production it can never get back to sales.
- dispatch -> completed requires the item to have been dispatched.

GATES:
- Entering production requires is_ready_for_production, or force=True by a
  role holding force_production. With REQUIRE_MATERIALS_FOR_PRODUCTION the
  item must also hold at least one reserved material allocation.
- production -> dispatch has the same readiness gate.
- Before production the flag is a sign-off (mark_ready_for_production).
  Entering production resets it from the substep statuses.

PRODUCTION SUBSTEPS:
- The sequence is the item's production_sequence, or the configured default
  when it is empty.
- pending -> in_progress -> completed, pending -> completed directly, and
  completed -> in_progress (reopen). Anything else is InvalidTransition.
- is_ready_for_production becomes true when every step of the sequence is
  completed and false again as soon as one is reopened.

CONCURRENCY:
Every mutation runs as one transaction on the item row. Callers may pass the
version_id they last read as expected_version; a mismatch, or a concurrent
write detected at flush, is StaleState. We never retry on the caller's behalf.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from flask import current_app

from ..errors import InvalidQuantity, InvalidTransition, NotFound, StaleState, ValidationError
from ..extensions import db
from ..models import JobMaterialAllocation, OrderItem, TimelineEvent
from presstrack.time_utils import parse_iso_date, to_utc_z, today_utc, utcnow
from . import timeline_service
from .concurrency import lock_for_update, run_in_transaction
from .permission_service import (
    ACTION_FORCE_PRODUCTION,
    ACTION_REDEFINE_SEQUENCE,
    DEPARTMENT_DESIGN,
    DEPARTMENT_OUTSOURCE,
    DEPARTMENT_PREPRESS,
    DEPARTMENT_PRODUCTION,
    DEPARTMENT_SALES,
    ActorContext,
    DepartmentDirectory,
    RoleCapabilities,
    require_member,
)
from .priority import compute_priority
from .reservation_service import ALLOCATION_RESERVED


STAGE_SALES = "sales"
STAGE_DESIGN = "design"
STAGE_PREPRESS = "prepress"
STAGE_PRODUCTION = "production"
STAGE_DISPATCH = "dispatch"
STAGE_COMPLETED = "completed"
STAGE_OUTSOURCE = "outsource"

VALID_STAGES = {
    STAGE_SALES,
    STAGE_DESIGN,
    STAGE_PREPRESS,
    STAGE_PRODUCTION,
    STAGE_DISPATCH,
    STAGE_COMPLETED,
    STAGE_OUTSOURCE,
}

PRE_PRODUCTION_STAGES = {STAGE_SALES, STAGE_DESIGN, STAGE_PREPRESS}

# Dispatch is handled by the production floor; completed items stay with it
STAGE_DEPARTMENTS = {
    STAGE_SALES: DEPARTMENT_SALES,
    STAGE_DESIGN: DEPARTMENT_DESIGN,
    STAGE_PREPRESS: DEPARTMENT_PREPRESS,
    STAGE_PRODUCTION: DEPARTMENT_PRODUCTION,
    STAGE_DISPATCH: DEPARTMENT_PRODUCTION,
    STAGE_COMPLETED: DEPARTMENT_PRODUCTION,
    STAGE_OUTSOURCE: DEPARTMENT_OUTSOURCE,
}

ALLOWED_TRANSITIONS = {
    STAGE_SALES: {STAGE_DESIGN, STAGE_PREPRESS, STAGE_PRODUCTION},
    STAGE_DESIGN: {STAGE_SALES, STAGE_PREPRESS, STAGE_PRODUCTION, STAGE_OUTSOURCE},
    STAGE_PREPRESS: {STAGE_DESIGN, STAGE_PRODUCTION, STAGE_OUTSOURCE},
    STAGE_PRODUCTION: {STAGE_DISPATCH, STAGE_OUTSOURCE},
    STAGE_DISPATCH: {STAGE_COMPLETED},
    STAGE_COMPLETED: set(),
}

# Moves that skip design entirely
NO_DESIGN_FAST_PATHS = {(STAGE_SALES, STAGE_PREPRESS), (STAGE_SALES, STAGE_PRODUCTION)}

OUTSOURCE_OUTSOURCED = "outsourced"
OUTSOURCE_VENDOR_IN_PROGRESS = "vendor_in_progress"
OUTSOURCE_VENDOR_DISPATCHED = "vendor_dispatched"
OUTSOURCE_RECEIVED = "received_from_vendor"
OUTSOURCE_QUALITY_CHECK = "quality_check"
OUTSOURCE_DECISION_PENDING = "decision_pending"

ALLOWED_OUTSOURCE_MOVES = {
    OUTSOURCE_OUTSOURCED: {OUTSOURCE_VENDOR_IN_PROGRESS},
    OUTSOURCE_VENDOR_IN_PROGRESS: {OUTSOURCE_VENDOR_DISPATCHED, OUTSOURCE_OUTSOURCED},
    OUTSOURCE_VENDOR_DISPATCHED: {OUTSOURCE_RECEIVED},
    OUTSOURCE_RECEIVED: {OUTSOURCE_QUALITY_CHECK},
    OUTSOURCE_QUALITY_CHECK: {OUTSOURCE_DECISION_PENDING, OUTSOURCE_VENDOR_IN_PROGRESS},
    OUTSOURCE_DECISION_PENDING: set(),
}

# Keys copied from the caller onto outsource_info when a job goes out
OUTSOURCE_JOB_FIELDS = ("vendor", "work_type", "expected_ready_date", "quantity_sent", "special_instructions")
# Keys accepted alongside an outsource stage move
OUTSOURCE_STAGE_FIELDS = ("courier_name", "tracking_number", "vendor_dispatch_date", "received_quantity")

SUBSTAGE_PENDING = "pending"
SUBSTAGE_IN_PROGRESS = "in_progress"
SUBSTAGE_COMPLETED = "completed"

VALID_SUBSTAGE_STATUSES = {SUBSTAGE_PENDING, SUBSTAGE_IN_PROGRESS, SUBSTAGE_COMPLETED}

ALLOWED_SUBSTAGE_MOVES = {
    (SUBSTAGE_PENDING, SUBSTAGE_IN_PROGRESS),
    (SUBSTAGE_PENDING, SUBSTAGE_COMPLETED),
    (SUBSTAGE_IN_PROGRESS, SUBSTAGE_COMPLETED),
    (SUBSTAGE_COMPLETED, SUBSTAGE_IN_PROGRESS),
}

KNOWN_SUBSTAGES = {"foiling", "printing", "pasting", "cutting", "letterpress", "embossing", "packing"}
SUBSTAGE_PACKING = "packing"

MILESTONE_ACTIONS = {
    timeline_service.ACTION_UPLOADED_PROOF,
    timeline_service.ACTION_CUSTOMER_APPROVED,
    timeline_service.ACTION_FINAL_PROOF_UPLOADED,
}


def department_for_stage(stage: str) -> str:
    return STAGE_DEPARTMENTS[stage]


class WorkflowService:
    """
    Stage machine for order items.

    Built once per app with the injected role table and department directory:

        WorkflowService(
            capabilities=RoleCapabilities.from_mapping(config["ROLE_CAPABILITIES"]),
            directory=StaticDepartmentDirectory(config["DEPARTMENT_MEMBERS"]),
            default_sequence=config["DEFAULT_PRODUCTION_SEQUENCE"],
        )
    """

    def __init__(
        self,
        *,
        capabilities: RoleCapabilities,
        directory: DepartmentDirectory,
        default_sequence: Sequence[str],
        require_materials_for_production: bool = False,
        clock: Callable = today_utc,
    ):
        self.capabilities = capabilities
        self.directory = directory
        self.default_sequence = list(default_sequence)
        self.require_materials_for_production = require_materials_for_production
        self.clock = clock
        self.known_substages = KNOWN_SUBSTAGES | set(self.default_sequence)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_order_item(
        self,
        *,
        order_id: str,
        product_name: str,
        quantity: int,
        delivery_date,
        need_design: bool,
        actor: ActorContext,
        sku: Optional[str] = None,
        specifications: Optional[dict] = None,
    ) -> OrderItem:
        """
        Entry point for order ingestion and manual entry. Items start in sales.
        """
        self.capabilities.require_department(
            actor, DEPARTMENT_SALES, entity="order_item", entity_id=None, operation="create_order_item"
        )
        if not order_id or not str(order_id).strip():
            raise ValidationError("order_id is required", entity="order_item", operation="create_order_item")
        if not isinstance(product_name, str) or not product_name.strip():
            raise ValidationError("product_name is required", entity="order_item", operation="create_order_item")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(
                f"quantity must be a positive whole number, got {quantity!r}",
                entity="order_item",
                operation="create_order_item",
                requested=quantity if isinstance(quantity, (int, float, str)) else repr(quantity),
            )
        delivery = self._parse_delivery_date(delivery_date, None, "create_order_item")

        def _op():
            item = OrderItem(
                order_id=str(order_id).strip(),
                product_name=product_name.strip(),
                sku=sku,
                quantity=quantity,
                specifications=specifications,
                need_design=bool(need_design),
                stage=STAGE_SALES,
                assigned_department=DEPARTMENT_SALES,
                substage_statuses={},
                production_sequence=[],
                delivery_date=delivery,
                priority=compute_priority(delivery, self.clock()),
                is_ready_for_production=False,
                is_dispatched=False,
            )
            db.session.add(item)
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_CREATED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=f"{item.product_name} x{item.quantity} created",
                is_public=True,
            )
            return item

        item = run_in_transaction(_op, entity="order_item", operation="create_order_item")
        current_app.logger.info("Order item %s created for order %s", item.id, item.order_id)
        return item

    # =========================================================================
    # Stage transitions
    # =========================================================================

    def transition_stage(
        self,
        item_id: int,
        target_stage: str,
        actor: ActorContext,
        *,
        assigned_user: Optional[str] = None,
        notes: Optional[str] = None,
        force: bool = False,
        outsource_info: Optional[dict] = None,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        """
        Move an item to target_stage and hand it to that stage's department.

        outsource_info (vendor, work_type, expected_ready_date, ...) is kept
        on the item when target_stage is outsource and ignored otherwise.

        Raises:
            InvalidTransition: target not reachable, or a readiness/material gate fails
            Unauthorized: actor cannot act on the source department, or forced without capability
            UserNotInDepartment: assigned_user is not in the target department
            ValidationError: outsource_info is not an object
            StaleState: the item changed since expected_version / concurrently
        """
        if outsource_info is not None and not isinstance(outsource_info, dict):
            raise ValidationError(
                "outsource_info must be an object",
                entity="order_item", entity_id=item_id, operation="transition_stage",
            )

        def _op():
            item = self._load(item_id, "transition_stage", expected_version)
            source = item.stage

            self.capabilities.require_department(
                actor, department_for_stage(source),
                entity="order_item", entity_id=item_id, operation="transition_stage",
            )
            if source == STAGE_OUTSOURCE and item.outsource_stage != OUTSOURCE_DECISION_PENDING:
                raise InvalidTransition(
                    f"Order item {item_id} is still with the vendor ({item.outsource_stage})",
                    entity="order_item", entity_id=item_id, operation="transition_stage",
                    current={"stage": source, "outsource_stage": item.outsource_stage},
                    requested=target_stage,
                )
            self._check_reachable(item, target_stage)

            forced = False
            if _is_gated(source, target_stage):
                forced = self._check_readiness(item, target_stage, actor, force)
                if target_stage == STAGE_PRODUCTION and self.require_materials_for_production:
                    self._check_materials(item)

            target_department = department_for_stage(target_stage)
            if assigned_user:
                require_member(
                    self.directory, assigned_user, target_department,
                    item_id=item_id, operation="transition_stage",
                )

            if target_stage == STAGE_OUTSOURCE:
                item.outsource_origin = source
                item.outsource_stage = OUTSOURCE_OUTSOURCED
                info = {k: outsource_info[k] for k in OUTSOURCE_JOB_FIELDS if k in (outsource_info or {})}
                info.update(
                    current_outsource_stage=OUTSOURCE_OUTSOURCED,
                    assigned_by=actor.actor_id,
                    assigned_at=to_utc_z(utcnow()),
                    follow_up_notes=[],
                )
                item.outsource_info = info
            elif source == STAGE_OUTSOURCE:
                item.outsource_origin = None
                item.outsource_stage = None

            item.stage = target_stage
            item.assigned_department = target_department
            item.assigned_user = assigned_user or None

            if target_stage == STAGE_PRODUCTION:
                self._enter_production(item)
            else:
                item.substage = None
                item.substage_status = None

            db.session.flush()

            message = f"Moved from {source} to {target_stage}"
            if forced:
                message += " (forced)"
            if notes:
                message += f": {notes}"
            action = (
                timeline_service.ACTION_SENT_TO_PRODUCTION
                if target_stage == STAGE_PRODUCTION
                else timeline_service.ACTION_ASSIGNED
            )
            timeline_service.record_event(
                item=item,
                action=action,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=message,
                is_public=True,
            )
            return item, source

        item, source = run_in_transaction(
            _op, entity="order_item", entity_id=item_id, operation="transition_stage"
        )
        current_app.logger.info(
            "Order item %s moved %s -> %s by %s", item_id, source, item.stage, actor.actor_id
        )
        return item

    def available_transitions(self, item_id: int, actor: ActorContext) -> list[str]:
        """Target stages this actor could request right now (read-only)."""
        item = self.get_item(item_id)
        if not self.capabilities.can_act_on(actor.actor_role, department_for_stage(item.stage)):
            return []
        can_force = self.capabilities.can_perform(actor.actor_role, ACTION_FORCE_PRODUCTION)

        targets = []
        for target in sorted(self._reachable_targets(item)):
            if _is_gated(item.stage, target) and not item.is_ready_for_production and not can_force:
                continue
            targets.append(target)
        return targets

    # =========================================================================
    # Outsource vendor steps
    # =========================================================================

    def set_outsource_stage(
        self,
        item_id: int,
        outsource_stage: str,
        actor: ActorContext,
        *,
        details: Optional[dict] = None,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        """
        Advance an outsourced job through the vendor steps.

        details carries courier_name, tracking_number, vendor_dispatch_date or
        received_quantity; other keys are ignored. Moving quality_check back
        to vendor_in_progress is a failed check and is recorded as such.
        """
        if details is not None and not isinstance(details, dict):
            raise ValidationError(
                "details must be an object",
                entity="order_item", entity_id=item_id, operation="set_outsource_stage",
            )

        def _op():
            item = self._require_outsourced(item_id, "set_outsource_stage", expected_version, actor)
            current = item.outsource_stage or OUTSOURCE_OUTSOURCED
            if outsource_stage not in ALLOWED_OUTSOURCE_MOVES.get(current, set()):
                raise InvalidTransition(
                    f"Outsourced job cannot go from {current} to {outsource_stage}",
                    entity="order_item", entity_id=item_id, operation="set_outsource_stage",
                    current=current, requested=outsource_stage,
                )

            info = dict(item.outsource_info or {})
            for key in OUTSOURCE_STAGE_FIELDS:
                if details and key in details:
                    info[key] = details[key]
            if current == OUTSOURCE_QUALITY_CHECK:
                info["quality_check"] = {
                    "passed": outsource_stage == OUTSOURCE_DECISION_PENDING,
                    "checked_by": actor.actor_id,
                    "checked_at": to_utc_z(utcnow()),
                    "notes": notes,
                }
            info["current_outsource_stage"] = outsource_stage
            item.outsource_info = info
            item.outsource_stage = outsource_stage
            db.session.flush()

            message = f"Outsource: {current} -> {outsource_stage}"
            if current == OUTSOURCE_QUALITY_CHECK:
                message += " (QC passed)" if outsource_stage == OUTSOURCE_DECISION_PENDING else " (QC failed)"
            if notes:
                message += f": {notes}"
            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=message,
                is_public=True,
            )
            return item, current

        item, previous = run_in_transaction(
            _op, entity="order_item", entity_id=item_id, operation="set_outsource_stage"
        )
        current_app.logger.info(
            "Order item %s outsource %s -> %s by %s", item_id, previous, item.outsource_stage, actor.actor_id
        )
        return item

    def add_outsource_note(
        self,
        item_id: int,
        text: str,
        actor: ActorContext,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        """Vendor follow-up; kept on outsource_info and mirrored as a private timeline note."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(
                "Follow-up note text is required",
                entity="order_item", entity_id=item_id, operation="add_outsource_note",
            )

        def _op():
            item = self._require_outsourced(item_id, "add_outsource_note", expected_version, actor)
            info = dict(item.outsource_info or {})
            follow_ups = list(info.get("follow_up_notes") or [])
            follow_ups.append({
                "note": text.strip(),
                "created_at": to_utc_z(utcnow()),
                "created_by": actor.actor_id,
                "created_by_name": actor.actor_name,
            })
            info["follow_up_notes"] = follow_ups
            item.outsource_info = info
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=f"Vendor follow-up: {text.strip()}",
            )
            return item

        return run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="add_outsource_note")

    # =========================================================================
    # Production substeps
    # =========================================================================

    def set_substage(
        self,
        item_id: int,
        substage_key: str,
        status: str,
        actor: ActorContext,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        def _op():
            item = self._load(item_id, "set_substage", expected_version)
            if item.stage != STAGE_PRODUCTION:
                raise InvalidTransition(
                    f"Order item {item_id} is in {item.stage}; substeps exist only in production",
                    entity="order_item", entity_id=item_id, operation="set_substage",
                    current=item.stage, requested=STAGE_PRODUCTION,
                )
            self.capabilities.require_department(
                actor, DEPARTMENT_PRODUCTION, entity="order_item", entity_id=item_id, operation="set_substage"
            )
            if status not in VALID_SUBSTAGE_STATUSES:
                raise InvalidTransition(
                    f"Unknown substage status '{status}'",
                    entity="order_item", entity_id=item_id, operation="set_substage", requested=status,
                )

            sequence = self.effective_sequence(item)
            if substage_key not in sequence:
                raise InvalidTransition(
                    f"'{substage_key}' is not part of this item's production sequence",
                    entity="order_item", entity_id=item_id, operation="set_substage",
                    current=sequence, requested=substage_key,
                )

            statuses = dict(item.substage_statuses or {})
            current = statuses.get(substage_key, SUBSTAGE_PENDING)
            if (current, status) not in ALLOWED_SUBSTAGE_MOVES:
                raise InvalidTransition(
                    f"Substage '{substage_key}' cannot go from {current} to {status}",
                    entity="order_item", entity_id=item_id, operation="set_substage",
                    current=current, requested=status,
                )

            statuses[substage_key] = status
            # JSON columns only notice reassignment
            item.substage_statuses = statuses
            item.substage = substage_key
            item.substage_status = status
            item.is_ready_for_production = self._all_completed(sequence, statuses)
            db.session.flush()

            if status == SUBSTAGE_COMPLETED:
                action = timeline_service.ACTION_SUBSTAGE_COMPLETED
                note = f"{substage_key} completed"
            else:
                action = timeline_service.ACTION_SUBSTAGE_STARTED
                note = f"{substage_key} reopened" if current == SUBSTAGE_COMPLETED else f"{substage_key} started"
            timeline_service.record_event(
                item=item,
                action=action,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=note,
                is_public=True,
            )
            if substage_key == SUBSTAGE_PACKING and status == SUBSTAGE_COMPLETED:
                timeline_service.record_event(
                    item=item,
                    action=timeline_service.ACTION_PACKED,
                    actor_id=actor.actor_id,
                    actor_name=actor.actor_name,
                    is_public=True,
                )
            return item

        return run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="set_substage")

    def define_production_sequence(
        self,
        item_id: int,
        ordered_substage_keys: Sequence[str],
        actor: ActorContext,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        """
        Replace the item's production sequence.

        Before production any role on the current department may do this.
        From production onwards it needs redefine_sequence; steps kept in the
        new sequence keep their status, dropped steps are forgotten, new ones
        start pending, and readiness is recomputed.
        """
        keys = self._validate_sequence(item_id, ordered_substage_keys)

        def _op():
            item = self._load(item_id, "define_production_sequence", expected_version)
            if item.stage == STAGE_COMPLETED:
                raise InvalidTransition(
                    f"Order item {item_id} is completed",
                    entity="order_item", entity_id=item_id, operation="define_production_sequence",
                    current=item.stage,
                )
            if item.stage in PRE_PRODUCTION_STAGES:
                self.capabilities.require_department(
                    actor, department_for_stage(item.stage),
                    entity="order_item", entity_id=item_id, operation="define_production_sequence",
                )
            else:
                self.capabilities.require_action(
                    actor, ACTION_REDEFINE_SEQUENCE,
                    entity="order_item", entity_id=item_id, operation="define_production_sequence",
                )

            item.production_sequence = list(keys)
            if item.substage_statuses:
                old = item.substage_statuses
                item.substage_statuses = {k: old.get(k, SUBSTAGE_PENDING) for k in keys}
                item.is_ready_for_production = self._all_completed(keys, item.substage_statuses)
            if item.stage == STAGE_PRODUCTION:
                self._point_at_next_substage(item, keys)
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes="Production sequence: " + " -> ".join(keys),
            )
            return item

        return run_in_transaction(
            _op, entity="order_item", entity_id=item_id, operation="define_production_sequence"
        )

    def mark_ready_for_production(
        self,
        item_id: int,
        actor: ActorContext,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        """
        Sign off a pre-production item so it may enter production unforced.

        Entering production resets the flag to track the production substeps.
        """
        def _op():
            item = self._load(item_id, "mark_ready_for_production", expected_version)
            if item.stage not in PRE_PRODUCTION_STAGES:
                raise InvalidTransition(
                    f"Order item {item_id} is in {item.stage}; only pre-production items can be signed off",
                    entity="order_item", entity_id=item_id, operation="mark_ready_for_production",
                    current=item.stage,
                )
            self.capabilities.require_department(
                actor, department_for_stage(item.stage),
                entity="order_item", entity_id=item_id, operation="mark_ready_for_production",
            )
            if item.is_ready_for_production:
                raise InvalidTransition(
                    f"Order item {item_id} is already ready for production",
                    entity="order_item", entity_id=item_id, operation="mark_ready_for_production",
                    current=True, requested=True,
                )
            if not self.effective_sequence(item):
                raise InvalidTransition(
                    f"Order item {item_id} has no production sequence",
                    entity="order_item", entity_id=item_id, operation="mark_ready_for_production",
                )

            item.is_ready_for_production = True
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes="Ready for production: " + " -> ".join(self.effective_sequence(item)),
            )
            return item

        return run_in_transaction(
            _op, entity="order_item", entity_id=item_id, operation="mark_ready_for_production"
        )

    def effective_sequence(self, item: OrderItem) -> list[str]:
        return list(item.production_sequence or self.default_sequence)

    # =========================================================================
    # Assignment, dispatch, delivery dates
    # =========================================================================

    def assign_user(
        self,
        item_id: int,
        user_id: str,
        actor: ActorContext,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        def _op():
            item = self._load(item_id, "assign_user", expected_version)
            self.capabilities.require_department(
                actor, item.assigned_department,
                entity="order_item", entity_id=item_id, operation="assign_user",
            )
            profile = require_member(
                self.directory, user_id, item.assigned_department, item_id=item_id, operation="assign_user"
            )
            item.assigned_user = profile.user_id
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_ASSIGNED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=f"Assigned to {profile.name or profile.user_id} ({item.assigned_department})",
            )
            return item

        return run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="assign_user")

    def mark_dispatched(
        self,
        item_id: int,
        dispatch_info: Optional[dict],
        actor: ActorContext,
        *,
        complete: bool = True,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        def _op():
            item = self._load(item_id, "mark_dispatched", expected_version)
            if item.stage != STAGE_DISPATCH:
                raise InvalidTransition(
                    f"Order item {item_id} is in {item.stage}, not dispatch",
                    entity="order_item", entity_id=item_id, operation="mark_dispatched",
                    current=item.stage, requested=STAGE_DISPATCH,
                )
            if item.is_dispatched:
                raise InvalidTransition(
                    f"Order item {item_id} is already dispatched",
                    entity="order_item", entity_id=item_id, operation="mark_dispatched",
                    current="dispatched",
                )
            self.capabilities.require_department(
                actor, department_for_stage(STAGE_DISPATCH),
                entity="order_item", entity_id=item_id, operation="mark_dispatched",
            )

            item.is_dispatched = True
            item.dispatch_info = dict(dispatch_info or {})
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_DISPATCHED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=_describe_dispatch(item.dispatch_info),
                is_public=True,
            )
            if complete:
                item.stage = STAGE_COMPLETED
                item.assigned_department = department_for_stage(STAGE_COMPLETED)
                db.session.flush()
            return item

        item = run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="mark_dispatched")
        current_app.logger.info("Order item %s dispatched by %s", item_id, actor.actor_id)
        return item

    def update_delivery_date(
        self,
        item_id: int,
        delivery_date,
        actor: ActorContext,
        *,
        expected_version: Optional[int] = None,
    ) -> OrderItem:
        """Only sales sets dates; the cached priority is refreshed in the same write."""
        new_date = self._parse_delivery_date(delivery_date, item_id, "update_delivery_date")

        def _op():
            item = self._load(item_id, "update_delivery_date", expected_version)
            self.capabilities.require_department(
                actor, DEPARTMENT_SALES, entity="order_item", entity_id=item_id, operation="update_delivery_date"
            )
            if item.stage == STAGE_COMPLETED:
                raise InvalidTransition(
                    f"Order item {item_id} is completed",
                    entity="order_item", entity_id=item_id, operation="update_delivery_date",
                    current=item.stage,
                )
            old_date = item.delivery_date
            item.delivery_date = new_date
            item.priority = compute_priority(new_date, self.clock())
            db.session.flush()

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=f"Delivery date changed from {old_date.isoformat()} to {new_date.isoformat()}",
            )
            return item

        return run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="update_delivery_date")

    # =========================================================================
    # Timeline-only operations
    # =========================================================================

    def record_note(self, item_id: int, text: str, actor: ActorContext, *, is_public: bool = False) -> TimelineEvent:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Note text is required", entity="order_item", entity_id=item_id, operation="record_note")

        def _op():
            item = self.get_item(item_id)
            return timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=text.strip(),
                is_public=is_public,
            )

        return run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="record_note")

    def record_milestone(
        self,
        item_id: int,
        action: str,
        actor: ActorContext,
        *,
        notes: Optional[str] = None,
        attachments: Optional[Sequence] = None,
        is_public: bool = True,
    ) -> TimelineEvent:
        """Proof uploads and customer approvals; the item itself is not changed."""
        if action not in MILESTONE_ACTIONS:
            raise InvalidTransition(
                f"'{action}' is not a milestone",
                entity="order_item", entity_id=item_id, operation="record_milestone",
                requested=action,
            )

        def _op():
            item = self.get_item(item_id)
            return timeline_service.record_event(
                item=item,
                action=action,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=notes,
                attachments=attachments,
                is_public=is_public,
            )

        return run_in_transaction(_op, entity="order_item", entity_id=item_id, operation="record_milestone")

    # =========================================================================
    # Reads
    # =========================================================================

    def get_item(self, item_id: int) -> OrderItem:
        item = db.session.get(OrderItem, item_id)
        if item is None:
            raise NotFound(f"Order item {item_id} not found", entity="order_item", entity_id=item_id, operation="get_item")
        return item

    def list_items(
        self,
        *,
        stage: Optional[str] = None,
        department: Optional[str] = None,
        assigned_user: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> list[OrderItem]:
        q = db.session.query(OrderItem)
        if stage:
            q = q.filter(OrderItem.stage == stage)
        if department:
            q = q.filter(OrderItem.assigned_department == department)
        if assigned_user:
            q = q.filter(OrderItem.assigned_user == assigned_user)
        if order_id:
            q = q.filter(OrderItem.order_id == order_id)
        return q.order_by(OrderItem.delivery_date.asc(), OrderItem.id.asc()).all()

    def get_timeline(
        self, order_id: str, *, item_id: Optional[int] = None, public_only: bool = False
    ) -> list[TimelineEvent]:
        """Timeline for a whole order, or one of its items. Oldest first."""
        if item_id is not None:
            item = self.get_item(item_id)
            if item.order_id != order_id:
                raise NotFound(
                    f"Order item {item_id} does not belong to order {order_id}",
                    entity="order_item", entity_id=item_id, operation="get_timeline",
                )
        return timeline_service.list_events(order_id, item_id=item_id, public_only=public_only)

    # =========================================================================
    # Internals
    # =========================================================================

    def _load(self, item_id: int, operation: str, expected_version: Optional[int]) -> OrderItem:
        item = lock_for_update(db.session.query(OrderItem).filter_by(id=item_id)).first()
        if item is None:
            raise NotFound(f"Order item {item_id} not found", entity="order_item", entity_id=item_id, operation=operation)
        if expected_version is not None and item.version_id != expected_version:
            raise StaleState(
                f"Order item {item_id} changed since version {expected_version}; re-read and retry",
                entity="order_item",
                entity_id=item_id,
                operation=operation,
                current=item.version_id,
                requested=expected_version,
            )
        return item

    def _require_outsourced(
        self, item_id: int, operation: str, expected_version: Optional[int], actor: ActorContext
    ) -> OrderItem:
        item = self._load(item_id, operation, expected_version)
        if item.stage != STAGE_OUTSOURCE:
            raise InvalidTransition(
                f"Order item {item_id} is in {item.stage}, not outsource",
                entity="order_item", entity_id=item_id, operation=operation,
                current=item.stage, requested=STAGE_OUTSOURCE,
            )
        self.capabilities.require_department(
            actor, DEPARTMENT_OUTSOURCE, entity="order_item", entity_id=item_id, operation=operation
        )
        return item

    def _reachable_targets(self, item: OrderItem) -> set[str]:
        if item.stage == STAGE_OUTSOURCE:
            if item.outsource_origin and item.outsource_stage == OUTSOURCE_DECISION_PENDING:
                return {item.outsource_origin}
            return set()
        targets = set(ALLOWED_TRANSITIONS.get(item.stage, set()))
        if item.need_design:
            targets -= {t for (s, t) in NO_DESIGN_FAST_PATHS if s == item.stage}
        if item.stage == STAGE_DISPATCH and not item.is_dispatched:
            targets.discard(STAGE_COMPLETED)
        return targets

    def _check_reachable(self, item: OrderItem, target_stage: str) -> None:
        if target_stage not in VALID_STAGES or target_stage not in self._reachable_targets(item):
            raise InvalidTransition(
                f"Order item {item.id} cannot move from {item.stage} to {target_stage}",
                entity="order_item",
                entity_id=item.id,
                operation="transition_stage",
                current=item.stage,
                requested=target_stage,
            )

    def _check_readiness(self, item: OrderItem, target_stage: str, actor: ActorContext, force: bool) -> bool:
        if item.is_ready_for_production:
            return False
        if force:
            self.capabilities.require_action(
                actor, ACTION_FORCE_PRODUCTION,
                entity="order_item", entity_id=item.id, operation="transition_stage",
            )
            current_app.logger.info(
                "Order item %s forced %s -> %s by %s (%s)",
                item.id, item.stage, target_stage, actor.actor_id, actor.actor_role,
            )
            return True
        raise InvalidTransition(
            f"Order item {item.id} is not ready for production",
            entity="order_item",
            entity_id=item.id,
            operation="transition_stage",
            current={"stage": item.stage, "is_ready_for_production": False},
            requested=target_stage,
        )

    def _check_materials(self, item: OrderItem) -> None:
        reserved = (
            db.session.query(JobMaterialAllocation)
            .filter_by(job_id=item.id, status=ALLOCATION_RESERVED)
            .count()
        )
        if reserved == 0:
            raise InvalidTransition(
                f"Order item {item.id} has no reserved material",
                entity="order_item",
                entity_id=item.id,
                operation="transition_stage",
                current={"reserved_allocations": 0},
                requested=STAGE_PRODUCTION,
            )

    def _enter_production(self, item: OrderItem) -> None:
        sequence = self.effective_sequence(item)
        old = item.substage_statuses or {}
        # Returning from outsource keeps finished work; a first entry starts clean
        item.substage_statuses = {k: old.get(k, SUBSTAGE_PENDING) for k in sequence}
        item.is_ready_for_production = self._all_completed(sequence, item.substage_statuses)
        self._point_at_next_substage(item, sequence)

    def _point_at_next_substage(self, item: OrderItem, sequence: Sequence[str]) -> None:
        statuses = item.substage_statuses or {}
        for key in sequence:
            if statuses.get(key, SUBSTAGE_PENDING) != SUBSTAGE_COMPLETED:
                item.substage = key
                item.substage_status = statuses.get(key, SUBSTAGE_PENDING)
                return
        item.substage = sequence[-1]
        item.substage_status = SUBSTAGE_COMPLETED

    @staticmethod
    def _all_completed(sequence: Sequence[str], statuses: dict) -> bool:
        return bool(sequence) and all(statuses.get(k) == SUBSTAGE_COMPLETED for k in sequence)

    def _validate_sequence(self, item_id: int, keys) -> list[str]:
        if isinstance(keys, str) or not isinstance(keys, (list, tuple)) or not keys:
            raise ValidationError(
                "Production sequence must be a non-empty list of substage keys",
                entity="order_item", entity_id=item_id, operation="define_production_sequence",
            )
        unknown = [k for k in keys if k not in self.known_substages]
        if unknown:
            raise ValidationError(
                f"Unknown substages: {', '.join(map(str, unknown))}",
                entity="order_item", entity_id=item_id, operation="define_production_sequence",
                requested=list(keys),
            )
        if len(set(keys)) != len(keys):
            raise ValidationError(
                "Production sequence may not repeat a substage",
                entity="order_item", entity_id=item_id, operation="define_production_sequence",
                requested=list(keys),
            )
        return list(keys)

    def _parse_delivery_date(self, value, item_id, operation):
        try:
            parsed = parse_iso_date(value)
        except (TypeError, ValueError):
            parsed = None
        if parsed is None:
            raise ValidationError(
                f"delivery_date must be an ISO-8601 date, got {value!r}",
                entity="order_item", entity_id=item_id, operation=operation,
            )
        return parsed


def _is_gated(source: str, target: str) -> bool:
    """Readiness gate: entering production (except back from outsource) and leaving it for dispatch."""
    if target == STAGE_PRODUCTION:
        return source != STAGE_OUTSOURCE
    return source == STAGE_PRODUCTION and target == STAGE_DISPATCH


def _describe_dispatch(info: dict) -> str:
    if not info:
        return "Dispatched"
    parts = [f"{k}: {v}" for k, v in sorted(info.items())]
    return "Dispatched (" + ", ".join(parts) + ")"
