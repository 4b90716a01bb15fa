# Overview: Append-only paper inventory ledger; the only writer of stock counters.

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from flask import current_app
from sqlalchemy import case, func

from ..errors import ConsistencyError, InsufficientStock, InvalidQuantity, NotFound, OverRelease, PressTrackError
from ..extensions import db
from ..models import InventoryTransaction, PaperStockItem
from .concurrency import lock_for_update
"""
Inventory Ledger Invariants (authoritative)

- InventoryTransaction rows are the single source of truth. They are appended,
  never updated or deleted; corrections are new adjust/release entries.
- PaperStockItem.total_sheets / reserved_sheets are a materialized fold over
  the ledger, maintained here and nowhere else.
- Entries for one paper are linearized by `sequence` (assigned under the paper
  row lock), not by created_at, so clock skew cannot reorder history.
- 0 <= reserved_sheets <= total_sheets after every entry. An entry that would
  break this is rejected before it is written; nothing is clamped.

Fold rules (quantity is positive except for adjust):
    in       total += q
    out      total -= q                 (total must stay >= reserved)
    reserve  reserved += q              (q <= available)
    release  reserved -= q              (q <= reserved, and <= job's reservation)
    consume  reserved -= q; total -= q  (job must hold >= q reserved)
    adjust   total += q (signed)        (total must stay >= reserved)
"""


TX_IN = "in"
TX_OUT = "out"
TX_RESERVE = "reserve"
TX_RELEASE = "release"
TX_CONSUME = "consume"
TX_ADJUST = "adjust"

TRANSACTION_TYPES = (TX_IN, TX_OUT, TX_RESERVE, TX_RELEASE, TX_CONSUME, TX_ADJUST)


def require_whole_sheets(value, *, operation: str, entity_id=None, signed: bool = False) -> int:
    """
    Validate a sheet count. Whole numbers only, never rounded.

    signed=False: must be a positive int. signed=True: any non-zero int.
    """
    # bool is an int subclass; True sheets is not a quantity
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantity(
            f"Sheet quantity must be a whole number, got {value!r}",
            entity="paper",
            entity_id=entity_id,
            operation=operation,
            requested=value if isinstance(value, (int, float, str)) else repr(value),
        )
    if value == 0 or (value < 0 and not signed):
        raise InvalidQuantity(
            f"Sheet quantity must be {'non-zero' if signed else 'positive'}, got {value}",
            entity="paper",
            entity_id=entity_id,
            operation=operation,
            requested=value,
        )
    return value


@dataclass(frozen=True)
class LedgerState:
    """Counters for one paper, plus each job's outstanding reservation."""
    total: int = 0
    reserved: int = 0
    by_job: dict = field(default_factory=dict)

    @property
    def available(self) -> int:
        return self.total - self.reserved


def apply_entry(state: LedgerState, tx_type: str, quantity: int, job_id=None, *, paper_id=None) -> LedgerState:
    """
    One fold step. Returns the new state or raises without side effects.

    Used both to validate an entry before it is appended and to replay history.
    """
    ctx = dict(entity="paper", entity_id=paper_id, operation=tx_type)
    job_reserved = state.by_job.get(job_id, 0)

    if tx_type == TX_IN:
        return replace(state, total=state.total + quantity)

    if tx_type in (TX_OUT, TX_ADJUST):
        delta = -quantity if tx_type == TX_OUT else quantity
        new_total = state.total + delta
        if new_total < state.reserved:
            raise InsufficientStock(
                f"Paper {paper_id}: {tx_type} of {quantity} would leave {new_total} sheets "
                f"against {state.reserved} reserved",
                current={"total_sheets": state.total, "reserved_sheets": state.reserved},
                requested=quantity,
                **ctx,
            )
        return replace(state, total=new_total)

    if tx_type == TX_RESERVE:
        if quantity > state.available:
            raise InsufficientStock(
                f"Paper {paper_id}: requested {quantity} sheets, only {state.available} available",
                current={"available_sheets": state.available},
                requested=quantity,
                **ctx,
            )
        by_job = dict(state.by_job)
        if job_id is not None:
            by_job[job_id] = job_reserved + quantity
        return replace(state, reserved=state.reserved + quantity, by_job=by_job)

    if tx_type == TX_RELEASE:
        if quantity > state.reserved or (job_id is not None and quantity > job_reserved):
            raise OverRelease(
                f"Paper {paper_id}: cannot release {quantity} sheets; "
                f"{state.reserved} reserved in total, {job_reserved} for job {job_id}",
                current={"reserved_sheets": state.reserved, "job_reserved": job_reserved},
                requested=quantity,
                **ctx,
            )
        by_job = dict(state.by_job)
        if job_id is not None:
            by_job[job_id] = job_reserved - quantity
        return replace(state, reserved=state.reserved - quantity, by_job=by_job)

    if tx_type == TX_CONSUME:
        if job_id is None or quantity > job_reserved:
            raise InsufficientStock(
                f"Paper {paper_id}: cannot consume {quantity} sheets; job {job_id} holds {job_reserved} reserved",
                current={"job_reserved": job_reserved},
                requested=quantity,
                **ctx,
            )
        by_job = dict(state.by_job)
        by_job[job_id] = job_reserved - quantity
        return replace(
            state,
            total=state.total - quantity,
            reserved=state.reserved - quantity,
            by_job=by_job,
        )

    raise InvalidQuantity(f"Unknown ledger entry type '{tx_type}'", requested=tx_type, **ctx)


def get_paper(paper_id: int, *, lock: bool = False) -> PaperStockItem:
    query = db.session.query(PaperStockItem).filter_by(id=paper_id)
    if lock:
        query = lock_for_update(query)
    paper = query.first()
    if paper is None:
        raise NotFound(f"Paper {paper_id} not found", entity="paper", entity_id=paper_id, operation="lookup")
    return paper


def get_job_reserved(paper_id: int, job_id: int) -> int:
    """Sheets of paper_id currently held in reserve for job_id, from the ledger."""
    signed = case(
        (InventoryTransaction.type == TX_RESERVE, InventoryTransaction.quantity),
        (InventoryTransaction.type.in_([TX_RELEASE, TX_CONSUME]), -InventoryTransaction.quantity),
        else_=0,
    )
    total = db.session.query(func.coalesce(func.sum(signed), 0)).filter(
        InventoryTransaction.paper_id == paper_id,
        InventoryTransaction.job_id == job_id,
    ).scalar()
    return int(total or 0)


def append_transaction(
    *,
    paper: PaperStockItem,
    tx_type: str,
    quantity: int,
    actor_id: str,
    job_id: Optional[int] = None,
    allocation_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> InventoryTransaction:
    """
    Validate and append one ledger entry, then move the paper's counters.

    The caller must have loaded `paper` with lock=True inside the current
    transaction and owns the commit. On rejection nothing is written.
    """
    require_whole_sheets(quantity, operation=tx_type, entity_id=paper.id, signed=(tx_type == TX_ADJUST))

    by_job = {}
    if job_id is not None and tx_type in (TX_RELEASE, TX_CONSUME):
        by_job[job_id] = get_job_reserved(paper.id, job_id)

    before = LedgerState(total=paper.total_sheets, reserved=paper.reserved_sheets, by_job=by_job)
    after = apply_entry(before, tx_type, quantity, job_id, paper_id=paper.id)

    paper.last_sequence = (paper.last_sequence or 0) + 1
    tx = InventoryTransaction(
        paper_id=paper.id,
        sequence=paper.last_sequence,
        type=tx_type,
        quantity=quantity,
        job_id=job_id,
        allocation_id=allocation_id,
        actor_id=actor_id,
        notes=notes,
    )
    paper.total_sheets = after.total
    paper.reserved_sheets = after.reserved

    db.session.add(tx)
    db.session.flush()  # assigns tx.id and surfaces sequence/version conflicts now

    current_app.logger.debug(
        "Ledger %s paper=%s seq=%s qty=%s job=%s -> total=%s reserved=%s",
        tx_type, paper.id, tx.sequence, quantity, job_id, after.total, after.reserved,
    )
    return tx


def list_transactions(paper_id: int, *, newest_first: bool = False) -> list[InventoryTransaction]:
    q = db.session.query(InventoryTransaction).filter(InventoryTransaction.paper_id == paper_id)
    order = InventoryTransaction.sequence.desc() if newest_first else InventoryTransaction.sequence.asc()
    return q.order_by(order).all()


def replay(paper_id: int) -> LedgerState:
    """
    Fold every committed entry for paper_id in sequence order.

    A history that cannot be folded means the ledger itself is corrupt.
    """
    state = LedgerState()
    for tx in list_transactions(paper_id):
        try:
            state = apply_entry(state, tx.type, tx.quantity, tx.job_id, paper_id=paper_id)
        except PressTrackError as exc:
            current_app.logger.critical(
                "Ledger for paper %s cannot be replayed at sequence %s: %s",
                paper_id, tx.sequence, exc.message,
            )
            raise ConsistencyError(
                f"Ledger for paper {paper_id} is invalid at sequence {tx.sequence}: {exc.message}",
                entity="paper",
                entity_id=paper_id,
                operation="replay",
            ) from exc
    return state


def verify(paper_id: int) -> LedgerState:
    """Replay and compare against the materialized counters; drift is fatal."""
    paper = get_paper(paper_id)
    state = replay(paper_id)
    if (state.total, state.reserved) != (paper.total_sheets, paper.reserved_sheets):
        current_app.logger.critical(
            "Stock counters drifted for paper %s: stored total=%s reserved=%s, ledger total=%s reserved=%s",
            paper_id, paper.total_sheets, paper.reserved_sheets, state.total, state.reserved,
        )
        raise ConsistencyError(
            f"Paper {paper_id} counters do not match its ledger",
            entity="paper",
            entity_id=paper_id,
            operation="verify",
            current={"total_sheets": paper.total_sheets, "reserved_sheets": paper.reserved_sheets},
            requested={"total_sheets": state.total, "reserved_sheets": state.reserved},
        )
    return state
