# Overview: Reserve / consume / release paper against an order item's job.

"""
Material Reservation Service

================================================================================
PURPOSE: Bind paper stock to production jobs without letting the allocation
rows and the inventory ledger disagree.
================================================================================

STATE MACHINE (per allocation):
    reserved -> consumed    (production used the material)
    reserved -> released    (job cancelled or revised)

    consumed and released are terminal. Consuming anything but a reserved
    allocation is DoubleConsume; releasing anything but a reserved allocation
    is OverRelease.

TWO-STEP WRITES:
Each operation writes the allocation row first, then appends the ledger
entry that justifies it. This is the one place where a multi-step write is
accepted, guarded by an explicit compensating action:

    1. write allocation (insert, or status change)
    2. append ledger entry (reserve / consume / release)
    3. if (2) is rejected: undo (1) -- delete the new row, or put the status
       back to reserved -- then re-raise the ledger's error

The compensation is attempted twice. If it still fails we cannot vouch for
the allocation any more: that is a ConsistencyError, logged CRITICAL and
raised to the caller. Both steps run inside one storage transaction, so
readers never observe the intermediate state.

Every successful operation also leaves a non-public note on the job's
timeline.
"""

from __future__ import annotations

from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ConsistencyError, DoubleConsume, InvalidTransition, NotFound, OverRelease, PressTrackError
from ..extensions import db
from ..models import JobMaterialAllocation, OrderItem
from . import ledger_service, timeline_service
from .concurrency import lock_for_update, run_in_transaction
from .inventory_service import PAPER_STATUS_DISCONTINUED
from .permission_service import ACTION_ALLOCATE_MATERIAL, ActorContext, RoleCapabilities


ALLOCATION_RESERVED = "reserved"
ALLOCATION_CONSUMED = "consumed"
ALLOCATION_RELEASED = "released"

COMPENSATION_ATTEMPTS = 2


class ReservationService:

    def __init__(self, capabilities: RoleCapabilities):
        self.capabilities = capabilities

    def reserve_for_job(
        self,
        job_id: int,
        paper_id: int,
        sheets: int,
        actor: ActorContext,
        notes: Optional[str] = None,
    ) -> JobMaterialAllocation:
        """
        Create a reserved allocation and its reserve ledger entry.

        Raises:
            InsufficientStock: sheets > available_sheets (nothing is kept)
            InvalidQuantity: sheets is not a positive whole number
            NotFound: unknown job or paper
        """
        self.capabilities.require_action(
            actor, ACTION_ALLOCATE_MATERIAL, entity="order_item", entity_id=job_id, operation="reserve_for_job"
        )
        ledger_service.require_whole_sheets(sheets, operation="reserve_for_job", entity_id=paper_id)

        def _op():
            item = self._get_item(job_id, "reserve_for_job")
            paper = ledger_service.get_paper(paper_id, lock=True)
            if paper.status == PAPER_STATUS_DISCONTINUED:
                raise InvalidTransition(
                    f"Paper {paper_id} is discontinued and cannot be reserved",
                    entity="paper",
                    entity_id=paper_id,
                    operation="reserve_for_job",
                    current=paper.status,
                )

            allocation = JobMaterialAllocation(
                job_id=job_id,
                paper_id=paper_id,
                sheets_required=sheets,
                sheets_allocated=sheets,
                status=ALLOCATION_RESERVED,
                created_by=actor.actor_id,
            )
            db.session.add(allocation)
            db.session.flush()

            def _undo():
                db.session.delete(allocation)
                db.session.flush()

            self._append_or_compensate(
                paper=paper,
                tx_type=ledger_service.TX_RESERVE,
                allocation=allocation,
                actor=actor,
                notes=notes or "Reserved for job",
                undo=_undo,
                operation="reserve_for_job",
            )

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=f"Reserved {sheets} sheets of {paper.name}",
            )
            return allocation

        allocation = run_in_transaction(_op, entity="paper", entity_id=paper_id, operation="reserve_for_job")
        current_app.logger.info(
            "Allocation %s: reserved %s sheets of paper %s for job %s",
            allocation.id, sheets, paper_id, job_id,
        )
        return allocation

    def consume_material(self, allocation_id: int, actor: ActorContext) -> JobMaterialAllocation:
        return self._close(
            allocation_id,
            actor,
            target=ALLOCATION_CONSUMED,
            tx_type=ledger_service.TX_CONSUME,
            error_cls=DoubleConsume,
            operation="consume_material",
            note="Material consumed in production",
        )

    def release_material(self, allocation_id: int, actor: ActorContext) -> JobMaterialAllocation:
        return self._close(
            allocation_id,
            actor,
            target=ALLOCATION_RELEASED,
            tx_type=ledger_service.TX_RELEASE,
            error_cls=OverRelease,
            operation="release_material",
            note="Reservation released",
        )

    # -- reads --

    def get_allocation(self, allocation_id: int) -> JobMaterialAllocation:
        allocation = db.session.get(JobMaterialAllocation, allocation_id)
        if allocation is None:
            raise NotFound(
                f"Allocation {allocation_id} not found",
                entity="allocation",
                entity_id=allocation_id,
                operation="get_allocation",
            )
        return allocation

    def get_job_materials(self, job_id: int) -> list[JobMaterialAllocation]:
        self._get_item(job_id, "get_job_materials")
        return (
            db.session.query(JobMaterialAllocation)
            .filter(JobMaterialAllocation.job_id == job_id)
            .order_by(JobMaterialAllocation.created_at.asc(), JobMaterialAllocation.id.asc())
            .all()
        )

    # -- internals --

    def _close(self, allocation_id, actor, *, target, tx_type, error_cls, operation, note):
        """reserved -> target, with the matching ledger entry."""
        self.capabilities.require_action(
            actor, ACTION_ALLOCATE_MATERIAL, entity="allocation", entity_id=allocation_id, operation=operation
        )

        def _op():
            allocation = lock_for_update(
                db.session.query(JobMaterialAllocation).filter_by(id=allocation_id)
            ).first()
            if allocation is None:
                raise NotFound(
                    f"Allocation {allocation_id} not found",
                    entity="allocation",
                    entity_id=allocation_id,
                    operation=operation,
                )
            if allocation.status != ALLOCATION_RESERVED:
                raise error_cls(
                    f"Allocation {allocation_id} must be reserved to {operation.split('_')[0]}; "
                    f"current status is {allocation.status}",
                    entity="allocation",
                    entity_id=allocation_id,
                    operation=operation,
                    current=allocation.status,
                    requested=target,
                )

            item = self._get_item(allocation.job_id, operation)
            paper = ledger_service.get_paper(allocation.paper_id, lock=True)

            allocation.status = target
            db.session.flush()

            def _undo():
                allocation.status = ALLOCATION_RESERVED
                db.session.flush()

            self._append_or_compensate(
                paper=paper,
                tx_type=tx_type,
                allocation=allocation,
                actor=actor,
                notes=note,
                undo=_undo,
                operation=operation,
            )

            timeline_service.record_event(
                item=item,
                action=timeline_service.ACTION_NOTE_ADDED,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                notes=f"{note}: {allocation.sheets_allocated} sheets of {paper.name}",
            )
            return allocation

        allocation = run_in_transaction(_op, entity="allocation", entity_id=allocation_id, operation=operation)
        current_app.logger.info("Allocation %s -> %s by %s", allocation_id, target, actor.actor_id)
        return allocation

    def _append_or_compensate(self, *, paper, tx_type, allocation, actor, notes, undo, operation):
        try:
            return ledger_service.append_transaction(
                paper=paper,
                tx_type=tx_type,
                quantity=allocation.sheets_allocated,
                actor_id=actor.actor_id,
                job_id=allocation.job_id,
                allocation_id=allocation.id,
                notes=notes,
            )
        except PressTrackError:
            self._compensate(undo, allocation_id=allocation.id, operation=operation)
            raise

    def _compensate(self, undo, *, allocation_id, operation):
        last_exc = None
        for attempt in range(1, COMPENSATION_ATTEMPTS + 1):
            try:
                undo()
                return
            except SQLAlchemyError as exc:
                last_exc = exc
                current_app.logger.warning(
                    "Compensation for allocation %s (%s) failed on attempt %s: %s",
                    allocation_id, operation, attempt, exc,
                )

        current_app.logger.critical(
            "CONSISTENCY: allocation %s may disagree with the ledger after failed %s; "
            "operator intervention required",
            allocation_id, operation,
        )
        raise ConsistencyError(
            f"Could not roll back allocation {allocation_id} after a rejected ledger entry",
            entity="allocation",
            entity_id=allocation_id,
            operation=operation,
        ) from last_exc

    def _get_item(self, job_id, operation) -> OrderItem:
        item = db.session.get(OrderItem, job_id)
        if item is None:
            raise NotFound(f"Order item {job_id} not found", entity="order_item", entity_id=job_id, operation=operation)
        return item
