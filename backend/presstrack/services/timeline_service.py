# Overview: Append-only audit timeline for order items.

from __future__ import annotations

from typing import Optional, Sequence

from ..errors import InvalidTransition
from ..extensions import db
from ..models import OrderItem, TimelineEvent
"""
Timeline Invariants (authoritative)

- Append-only: events are never updated or deleted.
- Events are written inside the same DB transaction as the state change they
  record; a rolled-back change leaves no event behind.
- action is a closed, wire-visible vocabulary (TIMELINE_ACTIONS).
- Workflow and reservation services write here; neither ever reads back.
"""


ACTION_CREATED = "created"
ACTION_ASSIGNED = "assigned"
ACTION_UPLOADED_PROOF = "uploaded_proof"
ACTION_CUSTOMER_APPROVED = "customer_approved"
ACTION_FINAL_PROOF_UPLOADED = "final_proof_uploaded"
ACTION_SENT_TO_PRODUCTION = "sent_to_production"
ACTION_SUBSTAGE_STARTED = "substage_started"
ACTION_SUBSTAGE_COMPLETED = "substage_completed"
ACTION_PACKED = "packed"
ACTION_DISPATCHED = "dispatched"
ACTION_NOTE_ADDED = "note_added"

TIMELINE_ACTIONS = (
    ACTION_CREATED,
    ACTION_ASSIGNED,
    ACTION_UPLOADED_PROOF,
    ACTION_CUSTOMER_APPROVED,
    ACTION_FINAL_PROOF_UPLOADED,
    ACTION_SENT_TO_PRODUCTION,
    ACTION_SUBSTAGE_STARTED,
    ACTION_SUBSTAGE_COMPLETED,
    ACTION_PACKED,
    ACTION_DISPATCHED,
    ACTION_NOTE_ADDED,
)


def record_event(
    *,
    item: OrderItem,
    action: str,
    actor_id: str,
    actor_name: Optional[str] = None,
    notes: Optional[str] = None,
    attachments: Optional[Sequence] = None,
    is_public: bool = False,
) -> TimelineEvent:
    """
    Append one event for item at its current stage/substage.

    No commit here; the caller's transaction owns it.
    """
    if action not in TIMELINE_ACTIONS:
        raise InvalidTransition(
            f"Unknown timeline action '{action}'",
            entity="timeline_event",
            entity_id=item.id,
            operation="record_event",
            requested=action,
        )

    ev = TimelineEvent(
        order_id=item.order_id,
        item_id=item.id,
        stage=item.stage,
        substage=item.substage,
        action=action,
        actor_id=actor_id,
        actor_name=actor_name,
        notes=notes,
        attachments=list(attachments or []),
        is_public=is_public,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_events(order_id: str, *, item_id: int | None = None, public_only: bool = False) -> list[TimelineEvent]:
    """Events for an order, oldest first. Read-only."""
    q = db.session.query(TimelineEvent).filter(TimelineEvent.order_id == order_id)
    if item_id is not None:
        q = q.filter(TimelineEvent.item_id == item_id)
    if public_only:
        q = q.filter(TimelineEvent.is_public.is_(True))
    return q.order_by(TimelineEvent.created_at.asc(), TimelineEvent.id.asc()).all()
