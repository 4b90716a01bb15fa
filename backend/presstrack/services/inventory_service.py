# Overview: Paper stock administration on top of the inventory ledger.

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..errors import InvalidQuantity, InvalidTransition, ValidationError
from ..extensions import db
from ..models import PaperStockItem, InventoryTransaction
from . import ledger_service
from .concurrency import run_in_transaction
from .permission_service import ACTION_MANAGE_INVENTORY, ActorContext, RoleCapabilities
"""
Paper Stock Invariants (authoritative)

- Stock is never written directly. Receiving, issuing and correcting stock
  all append a ledger entry (in / out / adjust); counters follow the ledger.
- A paper starts with zero counters. Opening stock is an `in` entry so that
  a replay from an empty state reproduces it.
- Discontinued papers keep their history and counters but accept no new
  reservations.
- Low stock: active papers with available_sheets <= reorder_threshold.
"""


PAPER_STATUS_ACTIVE = "active"
PAPER_STATUS_DISCONTINUED = "discontinued"


def _require_non_negative_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQuantity(
            f"{field_name} must be a non-negative whole number, got {value!r}",
            entity="paper",
            operation="add_paper_item",
            requested=value if isinstance(value, (int, float, str)) else repr(value),
        )
    return value


class InventoryService:
    """Admin operations on paper stock. Mutations need manage_inventory."""

    def __init__(self, capabilities: RoleCapabilities):
        self.capabilities = capabilities

    # -- writes --

    def add_paper_item(
        self,
        *,
        name: str,
        gsm: int,
        width: int,
        height: int,
        actor: ActorContext,
        reorder_threshold: int = 0,
        brand: Optional[str] = None,
        location: Optional[str] = None,
        unit: str = "mm",
        initial_sheets: int = 0,
    ) -> PaperStockItem:
        self.capabilities.require_action(actor, ACTION_MANAGE_INVENTORY, entity="paper", operation="add_paper_item")

        if not name or not name.strip():
            raise ValidationError("Paper name is required", entity="paper", operation="add_paper_item")
        for field_name, value in (("gsm", gsm), ("width", width), ("height", height)):
            _require_non_negative_int(value, field_name)
        _require_non_negative_int(reorder_threshold, "reorder_threshold")
        _require_non_negative_int(initial_sheets, "initial_sheets")

        def _op():
            paper = PaperStockItem(
                name=name.strip(),
                brand=brand,
                gsm=gsm,
                width=width,
                height=height,
                unit=unit,
                location=location,
                reorder_threshold=reorder_threshold,
                status=PAPER_STATUS_ACTIVE,
                total_sheets=0,
                reserved_sheets=0,
                last_sequence=0,
            )
            db.session.add(paper)
            db.session.flush()

            if initial_sheets > 0:
                ledger_service.append_transaction(
                    paper=paper,
                    tx_type=ledger_service.TX_IN,
                    quantity=initial_sheets,
                    actor_id=actor.actor_id,
                    notes="Opening stock",
                )
            return paper

        paper = run_in_transaction(_op, entity="paper", operation="add_paper_item")
        current_app.logger.info("Paper %s (%s) added by %s", paper.id, paper.name, actor.actor_id)
        return paper

    def receive_stock(self, paper_id: int, sheets: int, actor: ActorContext, notes: Optional[str] = None) -> InventoryTransaction:
        return self._append(paper_id, ledger_service.TX_IN, sheets, actor, notes, operation="receive_stock")

    def issue_stock(self, paper_id: int, sheets: int, actor: ActorContext, notes: Optional[str] = None) -> InventoryTransaction:
        return self._append(paper_id, ledger_service.TX_OUT, sheets, actor, notes, operation="issue_stock")

    def adjust_stock(self, paper_id: int, delta: int, actor: ActorContext, notes: Optional[str] = None) -> InventoryTransaction:
        """Signed administrative correction; may not leave total below reserved."""
        return self._append(paper_id, ledger_service.TX_ADJUST, delta, actor, notes, operation="adjust_stock")

    def discontinue_paper(self, paper_id: int, actor: ActorContext) -> PaperStockItem:
        self.capabilities.require_action(
            actor, ACTION_MANAGE_INVENTORY, entity="paper", entity_id=paper_id, operation="discontinue_paper"
        )

        def _op():
            paper = ledger_service.get_paper(paper_id, lock=True)
            if paper.status == PAPER_STATUS_DISCONTINUED:
                raise InvalidTransition(
                    f"Paper {paper_id} is already discontinued",
                    entity="paper",
                    entity_id=paper_id,
                    operation="discontinue_paper",
                    current=paper.status,
                    requested=PAPER_STATUS_DISCONTINUED,
                )
            paper.status = PAPER_STATUS_DISCONTINUED
            return paper

        return run_in_transaction(_op, entity="paper", entity_id=paper_id, operation="discontinue_paper")

    def _append(self, paper_id, tx_type, quantity, actor, notes, *, operation):
        self.capabilities.require_action(
            actor, ACTION_MANAGE_INVENTORY, entity="paper", entity_id=paper_id, operation=operation
        )

        def _op():
            paper = ledger_service.get_paper(paper_id, lock=True)
            return ledger_service.append_transaction(
                paper=paper,
                tx_type=tx_type,
                quantity=quantity,
                actor_id=actor.actor_id,
                notes=notes,
            )

        tx = run_in_transaction(_op, entity="paper", entity_id=paper_id, operation=operation)
        current_app.logger.info(
            "Stock %s on paper %s: %s sheets by %s", tx_type, paper_id, quantity, actor.actor_id
        )
        return tx

    # -- reads --

    def get_paper(self, paper_id: int) -> PaperStockItem:
        return ledger_service.get_paper(paper_id)

    def list_papers(self, status: Optional[str] = None) -> list[PaperStockItem]:
        q = db.session.query(PaperStockItem)
        if status:
            q = q.filter(PaperStockItem.status == status)
        return q.order_by(PaperStockItem.name.asc(), PaperStockItem.id.asc()).all()

    def list_low_stock(self) -> list[PaperStockItem]:
        return (
            db.session.query(PaperStockItem)
            .filter(
                PaperStockItem.status == PAPER_STATUS_ACTIVE,
                (PaperStockItem.total_sheets - PaperStockItem.reserved_sheets) <= PaperStockItem.reorder_threshold,
            )
            .order_by(PaperStockItem.name.asc(), PaperStockItem.id.asc())
            .all()
        )

    def get_paper_history(self, paper_id: int) -> list[InventoryTransaction]:
        ledger_service.get_paper(paper_id)
        return ledger_service.list_transactions(paper_id, newest_first=True)

    def replay_ledger(self, paper_id: int) -> tuple[int, int]:
        """(total_sheets, reserved_sheets) folded from the ledger alone."""
        ledger_service.get_paper(paper_id)
        state = ledger_service.replay(paper_id)
        return state.total, state.reserved

    def verify_ledger(self, paper_id: int) -> ledger_service.LedgerState:
        return ledger_service.verify(paper_id)
