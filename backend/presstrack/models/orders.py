from __future__ import annotations

from ..extensions import db
from presstrack.time_utils import to_utc_z


class OrderItem(db.Model):
    """
    A unit of production work moving through the department stages.

    STATE:
    - stage: sales | design | prepress | production | dispatch | completed | outsource
    - substage / substage_status: only set while stage == production
    - substage_statuses: key -> pending|in_progress|completed for every entry
      of the production sequence; kept across outsource round-trips so work
      already done in production is not lost
    - outsource_stage: outsourced | vendor_in_progress | vendor_dispatched |
      received_from_vendor | quality_check | decision_pending, only while
      stage == outsource
    - production_sequence: empty list means "use the configured default"

    Rows are never deleted; completed is the terminal stage.

    CONCURRENCY:
    version_id is an optimistic lock. Every write bumps it; a write based on
    a stale read fails with StaleDataError and is reported as StaleState.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.Index("ix_order_items_stage_department", "stage", "assigned_department"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # External order reference (WooCommerce number or manual order code)
    order_id = db.Column(db.String(64), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    specifications = db.Column(db.JSON, nullable=True)
    need_design = db.Column(db.Boolean, nullable=False, default=True)

    stage = db.Column(db.String(16), nullable=False, default="sales", index=True)
    substage = db.Column(db.String(32), nullable=True)
    substage_status = db.Column(db.String(16), nullable=True)
    substage_statuses = db.Column(db.JSON, nullable=False, default=dict)
    production_sequence = db.Column(db.JSON, nullable=False, default=list)

    # Stage that sent the item to outsource; outsource may only return here
    outsource_origin = db.Column(db.String(16), nullable=True)
    # Vendor step while stage == outsource; cleared when the item returns
    outsource_stage = db.Column(db.String(32), nullable=True)
    # Vendor, job details, courier, QC result and follow-up notes of the last outsource run
    outsource_info = db.Column(db.JSON, nullable=True)

    assigned_department = db.Column(db.String(16), nullable=False, default="sales", index=True)
    assigned_user = db.Column(db.String(64), nullable=True, index=True)

    delivery_date = db.Column(db.Date, nullable=False)
    # Read-through cache of compute_priority(); refreshed on every delivery-date write
    priority = db.Column(db.String(8), nullable=False)

    is_ready_for_production = db.Column(db.Boolean, nullable=False, default=False)
    is_dispatched = db.Column(db.Boolean, nullable=False, default=False)
    dispatch_info = db.Column(db.JSON, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<OrderItem id={self.id} order_id={self.order_id!r} stage={self.stage!r}>"

    def to_dict(self, today=None) -> dict:
        from ..services.priority import compute_priority

        return {
            "item_id": self.id,
            "order_id": self.order_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "specifications": self.specifications,
            "need_design": self.need_design,
            "stage": self.stage,
            "substage": self.substage,
            "substage_status": self.substage_status,
            "substage_statuses": dict(self.substage_statuses or {}),
            "production_sequence": list(self.production_sequence or []),
            "outsource_origin": self.outsource_origin,
            "outsource_stage": self.outsource_stage,
            "outsource_info": self.outsource_info,
            "assigned_department": self.assigned_department,
            "assigned_user": self.assigned_user,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            # Priority is a view over delivery_date; never trust the cached column on read
            "priority": compute_priority(self.delivery_date, today),
            "is_ready_for_production": self.is_ready_for_production,
            "is_dispatched": self.is_dispatched,
            "dispatch_info": self.dispatch_info,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
