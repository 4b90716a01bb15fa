from __future__ import annotations

from ..extensions import db
from presstrack.time_utils import to_utc_z


class PaperStockItem(db.Model):
    """
    One SKU of paper stock.

    COUNTERS:
    total_sheets and reserved_sheets are materialized projections of the
    inventory ledger. They are written ONLY by ledger_service.append_transaction
    while it holds this row's lock, and must always equal a replay of
    InventoryTransaction rows for this paper in sequence order.

    available_sheets is never stored; it is total_sheets - reserved_sheets.

    last_sequence is the sequence number of the newest ledger entry, so the
    next entry is always last_sequence + 1 (linearized per paper).
    """
    __tablename__ = "paper_stock_items"
    __table_args__ = (
        db.CheckConstraint("reserved_sheets >= 0", name="ck_paper_reserved_nonneg"),
        db.CheckConstraint("reserved_sheets <= total_sheets", name="ck_paper_reserved_le_total"),
        db.Index("ix_paper_stock_status_name", "status", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    brand = db.Column(db.String(128), nullable=True)
    gsm = db.Column(db.Integer, nullable=False)
    width = db.Column(db.Integer, nullable=False)
    height = db.Column(db.Integer, nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="mm")
    location = db.Column(db.String(128), nullable=True)

    total_sheets = db.Column(db.Integer, nullable=False, default=0)
    reserved_sheets = db.Column(db.Integer, nullable=False, default=0)
    reorder_threshold = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    last_sequence = db.Column(db.Integer, nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_sheets(self) -> int:
        return self.total_sheets - self.reserved_sheets

    def __repr__(self) -> str:
        return (
            f"<PaperStockItem id={self.id} name={self.name!r} "
            f"total={self.total_sheets} reserved={self.reserved_sheets}>"
        )

    def to_dict(self) -> dict:
        return {
            "paper_id": self.id,
            "name": self.name,
            "brand": self.brand,
            "gsm": self.gsm,
            "width": self.width,
            "height": self.height,
            "unit": self.unit,
            "location": self.location,
            "total_sheets": self.total_sheets,
            "reserved_sheets": self.reserved_sheets,
            "available_sheets": self.available_sheets,
            "reorder_threshold": self.reorder_threshold,
            "status": self.status,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryTransaction(db.Model):
    """
    Immutable ledger entry. Append-only: never updated, never deleted.

    quantity is positive for every type except adjust, which is signed.
    (paper_id, sequence) is unique; two writers racing for the same slot
    cannot both commit.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.UniqueConstraint("paper_id", "sequence", name="uq_invtx_paper_sequence"),
        db.Index("ix_invtx_job_paper_type", "job_id", "paper_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    paper_id = db.Column(db.Integer, db.ForeignKey("paper_stock_items.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    job_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=True, index=True)
    allocation_id = db.Column(db.Integer, db.ForeignKey("job_material_allocations.id"), nullable=True, index=True)

    actor_id = db.Column(db.String(64), nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "tx_id": self.id,
            "paper_id": self.paper_id,
            "sequence": self.sequence,
            "type": self.type,
            "quantity": self.quantity,
            "job_id": self.job_id,
            "allocation_id": self.allocation_id,
            "actor_id": self.actor_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class JobMaterialAllocation(db.Model):
    """
    Binds a quantity of one paper to one order item.

    reserved -> consumed | released, both terminal. Status and the ledger must
    agree: consumed implies exactly one consume entry for sheets_allocated.
    """
    __tablename__ = "job_material_allocations"
    __table_args__ = (
        db.Index("ix_job_materials_job_status", "job_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    job_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    paper_id = db.Column(db.Integer, db.ForeignKey("paper_stock_items.id"), nullable=False, index=True)

    sheets_required = db.Column(db.Integer, nullable=False)
    sheets_allocated = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="reserved", index=True)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    paper = db.relationship("PaperStockItem")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "allocation_id": self.id,
            "job_id": self.job_id,
            "paper_id": self.paper_id,
            "paper_name": self.paper.name if self.paper else None,
            "sheets_required": self.sheets_required,
            "sheets_allocated": self.sheets_allocated,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
