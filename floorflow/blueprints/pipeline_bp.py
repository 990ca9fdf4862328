"""
Workflow blueprint.

Endpoint groups:
  Workflows        GET/POST /api/v1/workflows
                   GET      /api/v1/workflows/<id>
                   POST     /api/v1/workflows/<id>/pause | /resume
  Spaces           GET      /api/v1/workflows/<id>/spaces
                   PATCH    /api/v1/workflows/<id>/spaces/<space_id>
  Actions          POST     /api/v1/workflows/<id>/actions
                   GET      /api/v1/workflows/<id>/route
                   POST     /api/v1/workflows/<id>/advance
  Step outputs     POST     /api/v1/workflows/<id>/step-outputs
                   POST     /api/v1/workflows/<id>/step-failures
  Events           GET      /api/v1/workflows/<id>/events
  Contract         GET      /api/v1/contract

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import floorflow.services.workflow_service as ws
from floorflow.models.generation import MAX_RETRY_ATTEMPTS
from floorflow.pipeline import endpoint_guard
from floorflow.pipeline.phase_contract import describe_contract
from floorflow.services import stage_advancer
from floorflow.services.event_log import list_events
from floorflow.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

pipeline_bp = Blueprint("pipeline", __name__, url_prefix="/api/v1")

register_error_handlers(pipeline_bp, logger)


# ═════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/workflows", methods=["GET"])
def list_workflows():
    """Query params: owner_id?, project_id?"""
    items = ws.list_workflows(
        owner_id=request.args.get("owner_id"),
        project_id=request.args.get("project_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@pipeline_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Body: {owner_id, project_id?, name?, floor_plan_upload_id?,
    aspect_ratio?, quality_tier?, with_design_references?}
    """
    data = request.get_json(silent=True) or {}
    return jsonify(ws.create_workflow(data)), 201


@pipeline_bp.route("/workflows/<int:pipeline_id>", methods=["GET"])
def get_workflow(pipeline_id):
    return jsonify(ws.get_workflow(pipeline_id)), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/pause", methods=["POST"])
def pause_workflow(pipeline_id):
    return jsonify(ws.set_enabled(pipeline_id, False)), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/resume", methods=["POST"])
def resume_workflow(pipeline_id):
    return jsonify(ws.set_enabled(pipeline_id, True)), 200


# ── Spaces ───────────────────────────────────────────────────────────────────


@pipeline_bp.route("/workflows/<int:pipeline_id>/spaces", methods=["GET"])
def list_spaces(pipeline_id):
    return jsonify({"items": ws.list_spaces(pipeline_id)}), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/spaces/<int:space_id>", methods=["PATCH"])
def update_space(pipeline_id, space_id):
    """Body: {include_in_generation?, is_excluded?}"""
    data = request.get_json(silent=True) or {}
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "include_in_generation or is_excluded is required")
    return jsonify(ws.update_space(pipeline_id, space_id, data)), 200


# ═════════════════════════════════════════════════════════════════════════
# Actions
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/workflows/<int:pipeline_id>/actions", methods=["POST"])
def dispatch_action(pipeline_id):
    """Route a UI action and run it.

    Body: {action_type, phase_at_click, extra_params?}
    Returns: {action, route, result}
    """
    data = request.get_json(silent=True) or {}
    action_type = (data.get("action_type") or "").strip()
    if not action_type:
        return api_error(E.VALIDATION_REQUIRED, "action_type is required")
    phase_at_click = (data.get("phase_at_click") or "").strip()
    if not phase_at_click:
        return api_error(E.VALIDATION_REQUIRED, "phase_at_click is required")
    extra = data.get("extra_params") or {}
    if not isinstance(extra, dict):
        return api_error(E.VALIDATION_INVALID, "extra_params must be an object")

    result = ws.dispatch_action(pipeline_id, action_type, phase_at_click, extra)
    result["max_retry_attempts"] = MAX_RETRY_ATTEMPTS
    return jsonify(result), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/route", methods=["GET"])
def preview_route(pipeline_id):
    """Query params: action_type (required), phase? (defaults to the persisted phase)"""
    action_type = (request.args.get("action_type") or "").strip()
    if not action_type:
        return api_error(E.VALIDATION_REQUIRED, "action_type is required")
    return jsonify(ws.preview_route(pipeline_id, action_type, request.args.get("phase"))), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/advance", methods=["POST"])
def advance(pipeline_id):
    """Body: {from_step}

    A paused workflow answers 200 with ``success: false, paused: true``.
    """
    data = request.get_json(silent=True) or {}
    if "from_step" not in data:
        return api_error(E.VALIDATION_REQUIRED, "from_step is required")
    return jsonify(stage_advancer.advance(pipeline_id, data["from_step"])), 200


# ── Step outputs (Generator callbacks) ───────────────────────────────────────


@pipeline_bp.route("/workflows/<int:pipeline_id>/step-outputs", methods=["POST"])
def record_step_output(pipeline_id):
    """Body: {step_output: {...}, spaces?: [{name, space_type?}]}"""
    data = request.get_json(silent=True) or {}
    if "step_output" not in data:
        return api_error(E.VALIDATION_REQUIRED, "step_output is required")
    return jsonify(ws.record_step_output(pipeline_id, data)), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/step-failures", methods=["POST"])
def record_step_failure(pipeline_id):
    """Body: {error}"""
    data = request.get_json(silent=True) or {}
    return jsonify(ws.record_step_failure(pipeline_id, str(data.get("error") or ""))), 200


@pipeline_bp.route("/workflows/<int:pipeline_id>/events", methods=["GET"])
def events(pipeline_id):
    """Query params: limit? (default 100, max 500)"""
    ws.get_pipeline_or_404(pipeline_id)
    limit = min(request.args.get("limit", 100, type=int), 500)
    return jsonify({"items": list_events(pipeline_id, limit)}), 200


# ── Contract ─────────────────────────────────────────────────────────────────


@pipeline_bp.route("/contract", methods=["GET"])
def contract():
    """Phase contract plus the guard's allowed phases per endpoint."""
    result = describe_contract()
    result["endpoint_phases"] = {
        name: sorted(phases) for name, phases in endpoint_guard.ENDPOINT_ALLOWED_PHASES.items()
    }
    result["max_retry_attempts"] = MAX_RETRY_ATTEMPTS
    return jsonify(result), 200
