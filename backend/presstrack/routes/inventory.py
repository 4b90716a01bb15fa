# backend/presstrack/routes/inventory.py
"""
Paper inventory and material reservation routes.

Papers:
- POST /api/inventory/papers                    - add a paper (manage_inventory)
- GET  /api/inventory/papers                    - list, optional ?status=
- GET  /api/inventory/papers/:id                - one paper with live counters
- GET  /api/inventory/papers/:id/history        - ledger entries, newest first
- GET  /api/inventory/papers/:id/verify         - replay the ledger against the counters
- POST /api/inventory/papers/:id/receive        - `in` entry
- POST /api/inventory/papers/:id/issue          - `out` entry
- POST /api/inventory/papers/:id/adjust         - signed `adjust` entry
- POST /api/inventory/papers/:id/discontinue
- GET  /api/inventory/low-stock

Allocations (allocate_material):
- POST /api/inventory/allocations               - reserve sheets for a job
- GET  /api/inventory/allocations/:id
- POST /api/inventory/allocations/:id/consume
- POST /api/inventory/allocations/:id/release

Quantities are whole sheets. They are passed to the services untouched so a
fractional or negative value is reported as invalid_quantity, never rounded.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, error_response
from ..errors import PressTrackError
from ..validation import coerce_int, optional_str, require_fields


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _inventory():
    return current_app.extensions["presstrack.inventory"]


def _reservations():
    return current_app.extensions["presstrack.reservations"]


@inventory_bp.post("/papers")
@require_actor
def add_paper_route():
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "name", "gsm", "width", "height")
        paper = _inventory().add_paper_item(
            name=payload["name"],
            gsm=coerce_int(payload["gsm"], "gsm"),
            width=coerce_int(payload["width"], "width"),
            height=coerce_int(payload["height"], "height"),
            reorder_threshold=coerce_int(payload.get("reorder_threshold"), "reorder_threshold", required=False) or 0,
            brand=optional_str(payload.get("brand"), "brand", max_len=128),
            location=optional_str(payload.get("location"), "location", max_len=128),
            unit=optional_str(payload.get("unit"), "unit", max_len=16) or "mm",
            initial_sheets=payload.get("initial_sheets", 0),
            actor=g.actor,
        )
        return jsonify({"paper": paper.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add paper")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/papers")
@require_actor
def list_papers_route():
    papers = _inventory().list_papers(status=request.args.get("status") or None)
    return jsonify({"papers": [p.to_dict() for p in papers]}), 200


@inventory_bp.get("/papers/<int:paper_id>")
@require_actor
def get_paper_route(paper_id: int):
    try:
        return jsonify({"paper": _inventory().get_paper(paper_id).to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)


@inventory_bp.get("/papers/<int:paper_id>/history")
@require_actor
def paper_history_route(paper_id: int):
    try:
        rows = _inventory().get_paper_history(paper_id)
        return jsonify({"transactions": [r.to_dict() for r in rows]}), 200
    except PressTrackError as e:
        return error_response(e)


@inventory_bp.get("/papers/<int:paper_id>/verify")
@require_actor
def verify_paper_route(paper_id: int):
    """
    200 with the replayed counters when they match; 500 consistency_error
    (logged CRITICAL) when the stored counters drifted from the ledger.
    """
    try:
        state = _inventory().verify_ledger(paper_id)
        return jsonify({
            "paper_id": paper_id,
            "consistent": True,
            "total_sheets": state.total,
            "reserved_sheets": state.reserved,
        }), 200
    except PressTrackError as e:
        return error_response(e)


def _stock_entry(paper_id: int, method_name: str, quantity_field: str):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, quantity_field)
        method = getattr(_inventory(), method_name)
        tx = method(
            paper_id,
            payload[quantity_field],
            g.actor,
            notes=optional_str(payload.get("notes"), "notes"),
        )
        paper = _inventory().get_paper(paper_id)
        return jsonify({"transaction": tx.to_dict(), "paper": paper.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to %s on paper %s", method_name, paper_id)
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/papers/<int:paper_id>/receive")
@require_actor
def receive_stock_route(paper_id: int):
    return _stock_entry(paper_id, "receive_stock", "sheets")


@inventory_bp.post("/papers/<int:paper_id>/issue")
@require_actor
def issue_stock_route(paper_id: int):
    return _stock_entry(paper_id, "issue_stock", "sheets")


@inventory_bp.post("/papers/<int:paper_id>/adjust")
@require_actor
def adjust_stock_route(paper_id: int):
    """Body: delta (signed whole sheets), notes."""
    return _stock_entry(paper_id, "adjust_stock", "delta")


@inventory_bp.post("/papers/<int:paper_id>/discontinue")
@require_actor
def discontinue_paper_route(paper_id: int):
    try:
        paper = _inventory().discontinue_paper(paper_id, g.actor)
        return jsonify({"paper": paper.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to discontinue paper %s", paper_id)
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/low-stock")
@require_actor
def low_stock_route():
    papers = _inventory().list_low_stock()
    return jsonify({"papers": [p.to_dict() for p in papers]}), 200


@inventory_bp.post("/allocations")
@require_actor
def reserve_route():
    """
    Reserve sheets of one paper for one order item.

    Body: job_id, paper_id, sheets, notes.

    Error responses:
        409: insufficient_stock (nothing is kept)
        400: invalid_quantity
        404: unknown job or paper
    """
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "job_id", "paper_id", "sheets")
        allocation = _reservations().reserve_for_job(
            coerce_int(payload["job_id"], "job_id"),
            coerce_int(payload["paper_id"], "paper_id"),
            payload["sheets"],
            g.actor,
            notes=optional_str(payload.get("notes"), "notes"),
        )
        return jsonify({"allocation": allocation.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reserve material")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/allocations/<int:allocation_id>")
@require_actor
def get_allocation_route(allocation_id: int):
    try:
        return jsonify({"allocation": _reservations().get_allocation(allocation_id).to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)


@inventory_bp.post("/allocations/<int:allocation_id>/consume")
@require_actor
def consume_route(allocation_id: int):
    try:
        allocation = _reservations().consume_material(allocation_id, g.actor)
        return jsonify({"allocation": allocation.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to consume allocation %s", allocation_id)
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/allocations/<int:allocation_id>/release")
@require_actor
def release_route(allocation_id: int):
    try:
        allocation = _reservations().release_material(allocation_id, g.actor)
        return jsonify({"allocation": allocation.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to release allocation %s", allocation_id)
        return jsonify({"error": "Internal server error"}), 500
