from __future__ import annotations

from ..extensions import db
from presstrack.time_utils import to_utc_z


class TimelineEvent(db.Model):
    __tablename__ = "timeline_events"
    __table_args__ = (
        db.Index("ix_timeline_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    order_id = db.Column(db.String(64), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=True, index=True)

    stage = db.Column(db.String(16), nullable=False)
    substage = db.Column(db.String(32), nullable=True)
    action = db.Column(db.String(32), nullable=False, index=True)

    actor_id = db.Column(db.String(64), nullable=False)
    actor_name = db.Column(db.String(255), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    # Opaque references (URLs, storage keys); file storage is not our concern
    attachments = db.Column(db.JSON, nullable=False, default=list)

    is_public = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "event_id": self.id,
            "order_id": self.order_id,
            "item_id": self.item_id,
            "stage": self.stage,
            "substage": self.substage,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "notes": self.notes,
            "attachments": list(self.attachments or []),
            "is_public": self.is_public,
            "created_at": to_utc_z(self.created_at),
        }
