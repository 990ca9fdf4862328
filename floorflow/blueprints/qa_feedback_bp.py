"""
QA feedback and calibration blueprint.

Endpoints:
  POST /api/v1/workflows/<id>/qa-feedback      vote on one attempt image
  GET  /api/v1/workflows/<id>/qa-feedback      ?step_id=
  POST /api/v1/calibration/record              fold a vote in directly
  GET  /api/v1/calibration/stats               ?owner_id=&project_id=&step_id=
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import floorflow.services.calibration_service as cs
from floorflow.services.workflow_service import get_pipeline_or_404
from floorflow.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

qa_feedback_bp = Blueprint("qa_feedback", __name__, url_prefix="/api/v1")

register_error_handlers(qa_feedback_bp, logger)


@qa_feedback_bp.route("/workflows/<int:pipeline_id>/qa-feedback", methods=["POST"])
def store_feedback(pipeline_id):
    """Body: {step_id, attempt_number, image_id, qa_decision, user_vote,
    user_category?, user_comment_short?, user_score?, qa_reasons?, context_snapshot?}

    Returns 201 for a new vote, 200 when an existing vote was updated.
    """
    data = request.get_json(silent=True) or {}
    result = cs.store_attempt_feedback(pipeline_id, data)
    return jsonify(result), 201 if result["created"] else 200


@qa_feedback_bp.route("/workflows/<int:pipeline_id>/qa-feedback", methods=["GET"])
def list_feedback(pipeline_id):
    get_pipeline_or_404(pipeline_id)
    items = cs.list_attempt_feedback(pipeline_id, request.args.get("step_id", type=int))
    return jsonify({"items": items, "total": len(items)}), 200


@qa_feedback_bp.route("/calibration/record", methods=["POST"])
def record_calibration():
    """Body: {owner_id, project_id?, step_id, category, ai_decision, human_vote, human_score?}"""
    data = request.get_json(silent=True) or {}
    owner_id = str(data.get("owner_id") or "").strip()
    if not owner_id:
        return api_error(E.VALIDATION_REQUIRED, "owner_id is required")
    step_id = data.get("step_id")
    if isinstance(step_id, bool) or not isinstance(step_id, int):
        return api_error(E.VALIDATION_INVALID, "step_id must be an integer")
    score = data.get("human_score")
    if score is not None and (isinstance(score, bool) or not isinstance(score, int)):
        return api_error(E.VALIDATION_INVALID, "human_score must be an integer")

    stat = cs.record(
        owner_id, data.get("project_id"), step_id, data.get("category") or "",
        data.get("ai_decision"), data.get("human_vote"), score,
    )
    return jsonify(stat.to_dict()), 200


@qa_feedback_bp.route("/calibration/stats", methods=["GET"])
def calibration_stats():
    items = cs.list_stats(
        owner_id=request.args.get("owner_id"),
        project_id=request.args.get("project_id", type=int),
        step_id=request.args.get("step_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200
