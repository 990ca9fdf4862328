"""
Generation unit blueprint (renders, panoramas, final 360s).

Endpoint groups:
  Listing          GET  /api/v1/workflows/<id>/units?asset_type=
                   GET  /api/v1/units/<asset_type>/<unit_id>
  Review           POST /api/v1/units/<asset_type>/<unit_id>/reject
                   POST /api/v1/units/<asset_type>/<unit_id>/approve
                   GET  /api/v1/units/<asset_type>/<unit_id>/rejections
  Generator        POST /api/v1/units/<asset_type>/<unit_id>/completion
  callbacks        POST /api/v1/units/<asset_type>/<unit_id>/failure

asset_type is one of render | panorama | final360.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import floorflow.services.generation_service as gs
from floorflow.services import reject_retry_service
from floorflow.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

generation_bp = Blueprint("generation", __name__, url_prefix="/api/v1")

register_error_handlers(generation_bp, logger)


@generation_bp.route("/workflows/<int:pipeline_id>/units", methods=["GET"])
def list_units(pipeline_id):
    items = gs.list_units(pipeline_id, request.args.get("asset_type"))
    return jsonify({"items": items, "total": len(items)}), 200


@generation_bp.route("/units/<asset_type>/<int:unit_id>", methods=["GET"])
def get_unit(asset_type, unit_id):
    return jsonify(gs.get_unit(asset_type, unit_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Review
# ═════════════════════════════════════════════════════════════════════════


@generation_bp.route("/units/<asset_type>/<int:unit_id>/reject", methods=["POST"])
def reject_unit(asset_type, unit_id):
    """Reject a unit's output.

    Body: {rejection_notes?, rejection_category?, is_post_approval_reject?}
    Returns one of:
        {inpaint_triggered: true, ...}
        {retry_triggered: true, attempt_count, learning_applied, retry_patch, ...}
        {retry_triggered: false, blocked_for_human: true, rejection_history, ...}
    """
    data = request.get_json(silent=True) or {}
    post_approval = data.get("is_post_approval_reject", False)
    if not isinstance(post_approval, bool):
        return api_error(E.VALIDATION_INVALID, "is_post_approval_reject must be a boolean")
    notes = data.get("rejection_notes")
    if notes is not None and not isinstance(notes, str):
        return api_error(E.VALIDATION_INVALID, "rejection_notes must be a string")

    result = reject_retry_service.reject(
        asset_type, unit_id,
        rejection_notes=notes,
        rejection_category=data.get("rejection_category"),
        is_post_approval_reject=post_approval,
    )
    return jsonify(result), 200


@generation_bp.route("/units/<asset_type>/<int:unit_id>/approve", methods=["POST"])
def approve_unit(asset_type, unit_id):
    return jsonify(gs.approve_unit(asset_type, unit_id)), 200


@generation_bp.route("/units/<asset_type>/<int:unit_id>/rejections", methods=["GET"])
def rejection_history(asset_type, unit_id):
    items = reject_retry_service.rejection_history(asset_type, unit_id)
    return jsonify({"items": items, "total": len(items)}), 200


# ── Generator callbacks ──────────────────────────────────────────────────────


@generation_bp.route("/units/<asset_type>/<int:unit_id>/completion", methods=["POST"])
def record_completion(asset_type, unit_id):
    """Body: {output_upload_id, structured_qa_result, prompt_text?, auto_retry?}"""
    data = request.get_json(silent=True) or {}
    if "structured_qa_result" not in data:
        return api_error(E.VALIDATION_REQUIRED, "structured_qa_result is required")
    return jsonify(gs.record_completion(asset_type, unit_id, data)), 200


@generation_bp.route("/units/<asset_type>/<int:unit_id>/failure", methods=["POST"])
def record_failure(asset_type, unit_id):
    """Body: {error}"""
    data = request.get_json(silent=True) or {}
    return jsonify(gs.record_failure(asset_type, unit_id, str(data.get("error") or ""))), 200
