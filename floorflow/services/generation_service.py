"""
Generation unit service: batch dispatch, completion ingestion, manual approval.

    start_batch()        renders_pending / panoramas_pending / merging_pending
                         -> *_in_progress, one Generator job per unit
    record_completion()  Generator callback with output + structured QA result;
                         a failed QA with auto_retry goes through the
                         rejection engine
    approve_unit()       human lock-approval (also releases blocked_for_human)

When every active unit of the running step has settled, the workflow moves
to the step's review phase.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from floorflow.core.exceptions import GenerationDispatchError, NotFoundError, ValidationError
from floorflow.integrations.generation_gateway import generator_client
from floorflow.models import db
from floorflow.models.generation import UNIT_MODELS
from floorflow.models.pipeline import FloorplanPipeline
from floorflow.pipeline import endpoint_guard
from floorflow.pipeline import phase_contract as pc
from floorflow.pipeline.qa_schema import parse_quality_report
from floorflow.services import reject_retry_service
from floorflow.services.event_log import log_event
from floorflow.services.reject_retry_service import commit_unit

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = frozenset({"pending", "planned", "failed"})
IN_FLIGHT_STATUSES = frozenset({"running", "retrying", "editing"})
SETTLED_STATUSES = frozenset({"completed", "failed", "blocked_for_human"})
APPROVABLE_STATUSES = frozenset({"completed", "blocked_for_human"})

# batch endpoint -> unit model
BATCH_MODELS = {
    pc.EP_BATCH_RENDERS: UNIT_MODELS["render"],
    pc.EP_BATCH_PANORAMAS: UNIT_MODELS["panorama"],
    pc.EP_BATCH_MERGES: UNIT_MODELS["final360"],
}


def _load_unit(asset_type: str, asset_id: int):
    model = UNIT_MODELS.get(asset_type)
    if model is None:
        raise ValidationError(f"Unknown asset_type: {asset_type}",
                              details={"asset_type": f"must be one of {sorted(UNIT_MODELS)}"})
    unit = db.session.get(model, asset_id)
    if unit is None:
        raise NotFoundError(model.__name__, asset_id)
    return unit


def _active_units(pipeline: FloorplanPipeline, model) -> list:
    space_ids = [s.id for s in pipeline.active_spaces()]
    if not space_ids:
        return []
    return db.session.execute(
        select(model)
        .where(model.pipeline_id == pipeline.id, model.space_id.in_(space_ids))
        .order_by(model.space_id, model.kind)
    ).scalars().all()


def list_units(pipeline_id: int, asset_type: str | None = None) -> list[dict]:
    if db.session.get(FloorplanPipeline, pipeline_id) is None:
        raise NotFoundError("FloorplanPipeline", pipeline_id)
    if asset_type is not None and asset_type not in UNIT_MODELS:
        raise ValidationError(f"Unknown asset_type: {asset_type}",
                              details={"asset_type": f"must be one of {sorted(UNIT_MODELS)}"})
    models = [UNIT_MODELS[asset_type]] if asset_type else list(UNIT_MODELS.values())
    result = []
    for model in models:
        rows = db.session.execute(
            select(model).where(model.pipeline_id == pipeline_id).order_by(model.space_id, model.kind)
        ).scalars()
        result.extend(u.to_dict() for u in rows)
    return result


def get_unit(asset_type: str, asset_id: int) -> dict:
    return _load_unit(asset_type, asset_id).to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Batch dispatch
# ═════════════════════════════════════════════════════════════════════════════


def start_batch(pipeline_id: int, endpoint: str) -> dict:
    """Dispatch every dispatchable unit of the step handled by ``endpoint``.

    A unit whose job the Generator refuses is marked ``failed``; the batch
    carries on with the rest.
    """
    pipeline = db.session.get(FloorplanPipeline, pipeline_id)
    if pipeline is None:
        raise NotFoundError("FloorplanPipeline", pipeline_id)
    model = BATCH_MODELS.get(endpoint)
    if model is None:
        raise ValidationError(f"{endpoint} is not a batch endpoint", details={"endpoint": endpoint})
    endpoint_guard.require(endpoint, pipeline.phase)

    units = [u for u in _active_units(pipeline, model) if u.status in DISPATCHABLE_STATUSES]
    if not units:
        raise ValidationError(
            f"No {model.ASSET_TYPE}s to dispatch for the active spaces",
            details={"asset_type": model.ASSET_TYPE},
            status=409,
        )

    previous = pipeline.phase
    pipeline.phase = pc.RUNNING_PHASE_FOR[previous]
    for unit in units:
        unit.status = "running"
        unit.job_type = "generate"
        unit.last_error = None
    log_event(pipeline, "generation_dispatched",
              f"Dispatching {len(units)} {model.ASSET_TYPE}s ({previous} -> {pipeline.phase})",
              step_number=model.STEP, progress_int=5)
    db.session.commit()

    dispatched, failed = [], []
    for unit in units:
        try:
            generator_client.dispatch_unit(unit, attempt_number=unit.attempt_count)
        except GenerationDispatchError as exc:
            unit.status = "failed"
            unit.last_error = str(exc)
            log_event(pipeline, "generation_failed", f"{unit.label} dispatch failed: {exc}",
                      step_number=model.STEP)
            failed.append(unit.id)
            continue
        dispatched.append(unit.id)
    db.session.commit()

    if failed:
        logger.warning("Batch %s pipeline=%s dispatched=%d failed=%d", endpoint, pipeline.id,
                       len(dispatched), len(failed), extra={"pipeline_id": pipeline.id})
    _maybe_enter_review(pipeline, model)
    return {
        "success": True,
        "phase": pipeline.phase,
        "asset_type": model.ASSET_TYPE,
        "dispatched": dispatched,
        "failed": failed,
    }


def _maybe_enter_review(pipeline: FloorplanPipeline, model) -> bool:
    """Move *_in_progress -> review once every active unit has settled."""
    if pipeline.phase not in pc.COMPLETED_PHASE_FOR or pc.get_step_for_phase(pipeline.phase) != model.STEP:
        return False
    units = _active_units(pipeline, model)
    if not units or any(u.status not in SETTLED_STATUSES for u in units):
        return False
    previous = pipeline.phase
    pipeline.phase = pc.COMPLETED_PHASE_FOR[previous]
    log_event(pipeline, "step_review_ready", f"All {model.ASSET_TYPE}s settled; {pipeline.phase}",
              step_number=model.STEP, progress_int=100)
    db.session.commit()
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Generator callbacks
# ═════════════════════════════════════════════════════════════════════════════


def record_completion(asset_type: str, asset_id: int, data: dict) -> dict:
    """Ingest a finished job for one unit.

    Payload: output_upload_id (required), structured_qa_result (required),
    prompt_text, auto_retry (default true).
    """
    unit = _load_unit(asset_type, asset_id)
    if unit.status not in IN_FLIGHT_STATUSES:
        raise ValidationError(
            f"{unit.label} #{unit.id} is not awaiting output (status {unit.status})",
            details={"status": unit.status},
            status=409,
        )
    upload_id = data.get("output_upload_id")
    if not isinstance(upload_id, str) or not upload_id.strip():
        raise ValidationError("output_upload_id is required", details={"output_upload_id": "required"})
    report = parse_quality_report(data.get("structured_qa_result"))

    pipeline = db.session.get(FloorplanPipeline, unit.pipeline_id)
    unit.output_upload_id = upload_id.strip()
    unit.structured_qa_result = report.to_dict()
    if data.get("prompt_text"):
        unit.prompt_text = data["prompt_text"]
    unit.qa_report = {**(unit.qa_report or {}), "reason_short": report.reason_short,
                      "confidence_score": report.confidence_score}
    unit.last_error = None

    if report.passed:
        unit.status = "completed"
        unit.qa_status = "passed"
        log_event(pipeline, "generation_completed", f"{unit.label} passed QA", step_number=unit.STEP)
        commit_unit(unit)
        _maybe_enter_review(pipeline, type(unit))
        return {"unit": unit.to_dict(), "qa_passed": True}

    unit.status = "completed"
    unit.qa_status = "failed"
    log_event(pipeline, "qa_failed", f"{unit.label} failed QA: {report.reason_short}", step_number=unit.STEP)
    commit_unit(unit)

    rejection = None
    if data.get("auto_retry", True):
        rejection = reject_retry_service.reject(
            unit.ASSET_TYPE, unit.id,
            rejection_notes=report.reason_short,
            rejection_category=report.issues[0].type if report.issues else None,
            auto_triggered=True,
        )
    _maybe_enter_review(pipeline, type(unit))
    return {"unit": unit.to_dict(), "qa_passed": False, "rejection": rejection}


def record_failure(asset_type: str, asset_id: int, error: str) -> dict:
    """The Generator reports that a unit's job failed outright."""
    unit = _load_unit(asset_type, asset_id)
    if unit.status not in IN_FLIGHT_STATUSES:
        raise ValidationError(f"{unit.label} #{unit.id} is not running (status {unit.status})",
                              details={"status": unit.status}, status=409)
    pipeline = db.session.get(FloorplanPipeline, unit.pipeline_id)
    unit.status = "failed"
    unit.last_error = error or "Generation failed"
    log_event(pipeline, "generation_failed", f"{unit.label} failed: {unit.last_error}", step_number=unit.STEP)
    commit_unit(unit)
    _maybe_enter_review(pipeline, type(unit))
    return unit.to_dict()


# ── Manual approval ──────────────────────────────────────────────────────────


def approve_unit(asset_type: str, asset_id: int) -> dict:
    """Lock-approve a unit's current output."""
    unit = _load_unit(asset_type, asset_id)
    if not unit.output_upload_id:
        raise ValidationError(f"{unit.label} #{unit.id} has no output to approve",
                              details={"output_upload_id": None}, status=409)
    if unit.status not in APPROVABLE_STATUSES:
        raise ValidationError(f"{unit.label} #{unit.id} cannot be approved while {unit.status}",
                              details={"status": unit.status}, status=409)

    pipeline = db.session.get(FloorplanPipeline, unit.pipeline_id)
    was_blocked = unit.status == "blocked_for_human"
    unit.locked_approved = True
    unit.qa_status = "approved"
    unit.status = "completed"
    log_event(pipeline, "unit_approved",
              f"{unit.label} approved" + (" after manual review" if was_blocked else ""),
              step_number=unit.STEP)
    commit_unit(unit)
    return unit.to_dict()
