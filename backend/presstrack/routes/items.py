# backend/presstrack/routes/items.py
"""
Order item workflow routes.

- POST /api/items                       - create an item (enters sales)
- GET  /api/items                       - list, filter by stage/department/assigned_user/order_id
- GET  /api/items/:id                   - one item, priority recomputed for today
- GET  /api/items/:id/transitions       - stages this actor may request now
- POST /api/items/:id/transition        - move to another stage
- POST /api/items/:id/outsource-stage   - advance an outsourced job through the vendor steps
- POST /api/items/:id/outsource-notes   - vendor follow-up note
- POST /api/items/:id/substage          - set a production substep status
- POST /api/items/:id/assign            - assign a user of the current department
- POST /api/items/:id/sequence          - define the production sequence
- POST /api/items/:id/ready             - pre-production sign-off
- POST /api/items/:id/notes             - free-text timeline note
- POST /api/items/:id/milestones        - proof / approval milestones
- POST /api/items/:id/dispatch          - mark dispatched (and complete)
- POST /api/items/:id/delivery-date     - change delivery date
- GET  /api/items/:id/timeline          - timeline events for the item
- GET  /api/items/:id/materials         - material allocations for the item

SECURITY:
- Every route requires an actor context (X-Actor-Id / X-Actor-Role)
- actor ids written to the timeline come from the headers, never the body

CONCURRENCY:
- Mutations accept "expected_version" (the version_id last read). A 409 with
  code "stale_state" means re-read and retry; the server never retries.
- Without "expected_version" a mutation applies to whatever state it finds.
  Two such requests for the same item are serialized and both apply if both
  are valid from the state the first one left.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, error_response
from ..errors import PressTrackError
from ..validation import coerce_bool, coerce_int, optional_str, require_fields


items_bp = Blueprint("items", __name__, url_prefix="/api/items")


def _workflow():
    return current_app.extensions["presstrack.workflow"]


def _reservations():
    return current_app.extensions["presstrack.reservations"]


def _expected_version(payload):
    return coerce_int(payload.get("expected_version"), "expected_version", required=False)


@items_bp.post("")
@require_actor
def create_item_route():
    """
    Create an order item.

    Body: order_id, product_name, quantity, delivery_date (YYYY-MM-DD),
    need_design, optional sku and specifications.
    """
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "order_id", "product_name", "quantity", "delivery_date")
        item = _workflow().create_order_item(
            order_id=str(payload["order_id"]),
            product_name=payload["product_name"],
            quantity=payload["quantity"],
            delivery_date=payload["delivery_date"],
            need_design=coerce_bool(payload.get("need_design"), "need_design", default=True),
            sku=optional_str(payload.get("sku"), "sku", max_len=64),
            specifications=payload.get("specifications"),
            actor=g.actor,
        )
        return jsonify({"item": item.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order item")
        return jsonify({"error": "Internal server error"}), 500


@items_bp.get("")
@require_actor
def list_items_route():
    items = _workflow().list_items(
        stage=request.args.get("stage") or None,
        department=request.args.get("department") or None,
        assigned_user=request.args.get("assigned_user") or None,
        order_id=request.args.get("order_id") or None,
    )
    return jsonify({"items": [i.to_dict() for i in items]}), 200


@items_bp.get("/<int:item_id>")
@require_actor
def get_item_route(item_id: int):
    try:
        return jsonify({"item": _workflow().get_item(item_id).to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)


@items_bp.get("/<int:item_id>/transitions")
@require_actor
def available_transitions_route(item_id: int):
    try:
        targets = _workflow().available_transitions(item_id, g.actor)
        return jsonify({"item_id": item_id, "targets": targets}), 200
    except PressTrackError as e:
        return error_response(e)


@items_bp.post("/<int:item_id>/transition")
@require_actor
def transition_route(item_id: int):
    """
    Move an item to another stage.

    Body: target_stage, optional assigned_user, notes, force, outsource_info,
    expected_version.

    Send expected_version to make the move conditional on the item not having
    changed since it was read; without it a second request simply moves the
    item on from wherever the first one left it.

    Error responses:
        403: role cannot act on the item's department, or force without capability
        409: target not reachable / not ready for production / stale_state
        400: assigned_user not in the target department
    """
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "target_stage")
        item = _workflow().transition_stage(
            item_id,
            payload["target_stage"],
            g.actor,
            assigned_user=optional_str(payload.get("assigned_user"), "assigned_user", max_len=64),
            notes=optional_str(payload.get("notes"), "notes", max_len=2000),
            force=coerce_bool(payload.get("force"), "force"),
            outsource_info=payload.get("outsource_info"),
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to transition order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/outsource-stage")
@require_actor
def outsource_stage_route(item_id: int):
    """
    Body: outsource_stage, optional details (courier_name, tracking_number,
    vendor_dispatch_date, received_quantity), notes, expected_version.
    """
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "outsource_stage")
        item = _workflow().set_outsource_stage(
            item_id,
            payload["outsource_stage"],
            g.actor,
            details=payload.get("details"),
            notes=optional_str(payload.get("notes"), "notes", max_len=2000),
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update outsource stage on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/outsource-notes")
@require_actor
def outsource_note_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "note")
        item = _workflow().add_outsource_note(
            item_id,
            payload["note"],
            g.actor,
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add follow-up note on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/substage")
@require_actor
def substage_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "substage", "status")
        item = _workflow().set_substage(
            item_id,
            payload["substage"],
            payload["status"],
            g.actor,
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update substage on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/assign")
@require_actor
def assign_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "user_id")
        item = _workflow().assign_user(
            item_id,
            str(payload["user_id"]),
            g.actor,
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to assign order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/sequence")
@require_actor
def sequence_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "sequence")
        item = _workflow().define_production_sequence(
            item_id,
            payload["sequence"],
            g.actor,
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set production sequence on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/ready")
@require_actor
def ready_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        item = _workflow().mark_ready_for_production(
            item_id, g.actor, expected_version=_expected_version(payload)
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark order item %s ready", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/notes")
@require_actor
def note_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        event = _workflow().record_note(
            item_id,
            payload.get("text") or "",
            g.actor,
            is_public=coerce_bool(payload.get("is_public"), "is_public"),
        )
        return jsonify({"event": event.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record note on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/milestones")
@require_actor
def milestone_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "action")
        attachments = payload.get("attachments") or []
        if not isinstance(attachments, list):
            return jsonify({"error": "attachments must be a list"}), 400
        event = _workflow().record_milestone(
            item_id,
            payload["action"],
            g.actor,
            notes=optional_str(payload.get("notes"), "notes", max_len=2000),
            attachments=attachments,
            is_public=coerce_bool(payload.get("is_public"), "is_public", default=True),
        )
        return jsonify({"event": event.to_dict()}), 201
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record milestone on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/dispatch")
@require_actor
def dispatch_route(item_id: int):
    """
    Body: dispatch_info (courier, tracking_number, ...), complete (default true),
    expected_version.
    """
    payload = request.get_json(silent=True) or {}

    try:
        dispatch_info = payload.get("dispatch_info") or {}
        if not isinstance(dispatch_info, dict):
            return jsonify({"error": "dispatch_info must be an object"}), 400
        item = _workflow().mark_dispatched(
            item_id,
            dispatch_info,
            g.actor,
            complete=coerce_bool(payload.get("complete"), "complete", default=True),
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to dispatch order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.post("/<int:item_id>/delivery-date")
@require_actor
def delivery_date_route(item_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        require_fields(payload, "delivery_date")
        item = _workflow().update_delivery_date(
            item_id,
            payload["delivery_date"],
            g.actor,
            expected_version=_expected_version(payload),
        )
        return jsonify({"item": item.to_dict()}), 200
    except PressTrackError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update delivery date on order item %s", item_id)
        return jsonify({"error": "Internal server error"}), 500


@items_bp.get("/<int:item_id>/timeline")
@require_actor
def timeline_route(item_id: int):
    try:
        public_only = coerce_bool(request.args.get("public_only"), "public_only")
        item = _workflow().get_item(item_id)
        events = _workflow().get_timeline(item.order_id, item_id=item.id, public_only=public_only)
        return jsonify({"events": [e.to_dict() for e in events]}), 200
    except PressTrackError as e:
        return error_response(e)


@items_bp.get("/<int:item_id>/materials")
@require_actor
def materials_route(item_id: int):
    try:
        allocations = _reservations().get_job_materials(item_id)
        return jsonify({"allocations": [a.to_dict() for a in allocations]}), 200
    except PressTrackError as e:
        return error_response(e)
