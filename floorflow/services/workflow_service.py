"""
Workflow lifecycle service.

Creates and reads workflows, owns their spaces, ingests step-level outputs
from the Generator and runs routed actions:

    dispatch_action()  Router -> endpoint handler -> Endpoint Guard -> logic

Every handler re-validates the persisted phase through the Endpoint Guard
before touching anything; the phase reported by the client is only used for
routing.

Rules:
  - owner_id / project_id are explicit parameters (never from g).
  - db.session.commit() happens only in service modules.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from floorflow.core.exceptions import (
    GenerationDispatchError,
    NotFoundError,
    OutdatedTransitionError,
    ValidationError,
)
from floorflow.integrations.generation_gateway import generator_client
from floorflow.models import db
from floorflow.models.generation import UNIT_MODELS
from floorflow.models.pipeline import (
    ASPECT_RATIOS,
    DEFAULT_ASPECT_RATIO,
    DEFAULT_QUALITY_TIER,
    QUALITY_TIERS,
    FloorplanPipeline,
    PipelineSpace,
)
from floorflow.pipeline import endpoint_guard
from floorflow.pipeline import phase_contract as pc
from floorflow.pipeline.qa_schema import parse_step_output
from floorflow.pipeline.router import create_action_context, route
from floorflow.services import generation_service, stage_advancer
from floorflow.services.event_log import log_event

logger = logging.getLogger(__name__)

SPACE_MUTABLE_FIELDS = frozenset({"include_in_generation", "is_excluded"})

# Phases in which the Generator may report detected spaces.
SPACE_RECORDING_PHASES = frozenset({"space_analysis_running", "detecting_spaces"})


def get_pipeline_or_404(pipeline_id: int) -> FloorplanPipeline:
    pipeline = db.session.get(FloorplanPipeline, pipeline_id)
    if pipeline is None:
        raise NotFoundError("FloorplanPipeline", pipeline_id)
    return pipeline


# ── Workflow CRUD ────────────────────────────────────────────────────────────


def create_workflow(data: dict) -> dict:
    """Create a workflow at phase ``upload`` (step 0).

    Raises:
        ValidationError: missing owner_id or unsupported ratio / quality.
    """
    owner_id = str(data.get("owner_id") or "").strip()
    if not owner_id:
        raise ValidationError("owner_id is required", details={"owner_id": "required"})

    aspect_ratio = data.get("aspect_ratio") or DEFAULT_ASPECT_RATIO
    if aspect_ratio not in ASPECT_RATIOS:
        raise ValidationError(f"aspect_ratio must be one of {sorted(ASPECT_RATIOS)}",
                              details={"aspect_ratio": aspect_ratio})
    quality_tier = data.get("quality_tier") or DEFAULT_QUALITY_TIER
    if quality_tier not in QUALITY_TIERS:
        raise ValidationError(f"quality_tier must be one of {sorted(QUALITY_TIERS)}",
                              details={"quality_tier": quality_tier})

    phase = "design_reference_pending" if data.get("with_design_references") else "upload"
    pipeline = FloorplanPipeline(
        owner_id=owner_id,
        project_id=data.get("project_id"),
        name=(data.get("name") or "").strip(),
        floor_plan_upload_id=data.get("floor_plan_upload_id"),
        aspect_ratio=aspect_ratio,
        quality_tier=quality_tier,
        phase=phase,
        current_step=0,
        step_outputs={},
    )
    db.session.add(pipeline)
    db.session.flush()
    log_event(pipeline, "pipeline_created", f"Pipeline created at phase {phase}", step_number=0)
    db.session.commit()
    logger.info("Pipeline %s created owner=%s project=%s", pipeline.id, owner_id, pipeline.project_id,
                extra={"pipeline_id": pipeline.id, "project_id": pipeline.project_id})
    return pipeline.to_dict()


def _unit_counts(pipeline_id: int) -> dict:
    counts = {}
    for asset_type, model in UNIT_MODELS.items():
        rows = db.session.execute(
            select(model.status, func.count(model.id))
            .where(model.pipeline_id == pipeline_id)
            .group_by(model.status)
        ).all()
        approved = db.session.execute(
            select(func.count(model.id)).where(
                model.pipeline_id == pipeline_id, model.locked_approved.is_(True),
            )
        ).scalar()
        counts[asset_type] = {"by_status": {r[0]: r[1] for r in rows}, "approved": approved}
    return counts


def get_workflow(pipeline_id: int) -> dict:
    pipeline = get_pipeline_or_404(pipeline_id)
    result = pipeline.to_dict(include_children=True)
    rule = pc.get_rule(pipeline.phase)
    result["next_action"] = rule.to_dict() if rule else None
    result["contract_version"] = pc.CONTRACT_VERSION
    result["units"] = _unit_counts(pipeline.id)
    return result


def list_workflows(owner_id: str | None = None, project_id: int | None = None) -> list[dict]:
    stmt = select(FloorplanPipeline)
    if owner_id:
        stmt = stmt.where(FloorplanPipeline.owner_id == owner_id)
    if project_id is not None:
        stmt = stmt.where(FloorplanPipeline.project_id == project_id)
    stmt = stmt.order_by(FloorplanPipeline.id.desc())
    return [p.to_dict() for p in db.session.execute(stmt).scalars()]


def set_enabled(pipeline_id: int, enabled: bool) -> dict:
    """Pause / resume. Pausing stops new work; dispatched jobs keep running."""
    pipeline = get_pipeline_or_404(pipeline_id)
    if pipeline.is_enabled == enabled:
        return pipeline.to_dict()
    pipeline.is_enabled = enabled
    log_event(pipeline, "pipeline_resumed" if enabled else "pipeline_paused",
              "Pipeline resumed" if enabled else "Pipeline paused")
    db.session.commit()
    return pipeline.to_dict()


# ── Spaces ───────────────────────────────────────────────────────────────────


def list_spaces(pipeline_id: int) -> list[dict]:
    pipeline = get_pipeline_or_404(pipeline_id)
    return [s.to_dict() for s in pipeline.spaces]


def _record_spaces(pipeline: FloorplanPipeline, spaces: list) -> int:
    """Create detected spaces, skipping names that already exist."""
    if not isinstance(spaces, list):
        raise ValidationError("spaces must be a list", details={"spaces": "expected list"})
    existing = {s.name for s in pipeline.spaces}
    next_order = len(existing)
    created = 0
    for idx, item in enumerate(spaces):
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            raise ValidationError(f"spaces[{idx}].name is required",
                                  details={f"spaces[{idx}].name": "required"})
        name = str(item["name"]).strip()
        if name in existing:
            continue
        existing.add(name)
        db.session.add(PipelineSpace(
            pipeline_id=pipeline.id,
            name=name,
            space_type=str(item.get("space_type") or "room"),
            sort_order=next_order,
            include_in_generation=bool(item.get("include_in_generation", True)),
            is_excluded=bool(item.get("is_excluded", False)),
        ))
        next_order += 1
        created += 1
    return created


def update_space(pipeline_id: int, space_id: int, data: dict) -> dict:
    """Toggle participation flags. Every other field is read-only."""
    space = db.session.get(PipelineSpace, space_id)
    if space is None or space.pipeline_id != pipeline_id:
        raise NotFoundError("PipelineSpace", space_id)

    unknown = set(data) - SPACE_MUTABLE_FIELDS
    if unknown:
        raise ValidationError(
            "Only include_in_generation and is_excluded can be changed",
            details={k: "read-only" for k in sorted(unknown)},
        )
    for key in SPACE_MUTABLE_FIELDS & set(data):
        if not isinstance(data[key], bool):
            raise ValidationError(f"{key} must be a boolean", details={key: data[key]})
        setattr(space, key, data[key])
    db.session.commit()
    logger.info("Space %s updated include=%s excluded=%s", space.id,
                space.include_in_generation, space.is_excluded)
    return space.to_dict()


# ── Step outputs ─────────────────────────────────────────────────────────────


def record_step_output(pipeline_id: int, data: dict) -> dict:
    """Store a validated step output and move the step to its review phase.

    Optional ``spaces`` (list of {name, space_type}) are recorded when the
    running step is space analysis or space detection.
    """
    pipeline = get_pipeline_or_404(pipeline_id)
    output = parse_step_output(data.get("step_output"))

    phase = pipeline.phase
    if not pc.is_phase_running(phase) or pc.get_step_for_phase(phase) != output.step:
        raise ValidationError(
            f'Step {output.step} output does not match pipeline phase "{phase}"',
            details={"phase": phase, "step": output.step},
            status=409,
        )

    spaces_created = 0
    if data.get("spaces") is not None:
        if phase not in SPACE_RECORDING_PHASES:
            raise ValidationError(f'Spaces cannot be recorded at phase "{phase}"',
                                  details={"phase": phase}, status=409)
        spaces_created = _record_spaces(pipeline, data["spaces"])

    key = f"step{output.step}"
    if phase.startswith("design_reference"):
        key = "design_reference"
    pipeline.step_outputs = {**(pipeline.step_outputs or {}), key: output.to_dict()}
    pipeline.phase = pc.COMPLETED_PHASE_FOR[phase]
    pipeline.last_error = None
    log_event(pipeline, "step_completed", f"Step {output.step} output recorded; phase {pipeline.phase}",
              step_number=output.step, progress_int=100)
    db.session.commit()
    result = pipeline.to_dict()
    result["spaces_created"] = spaces_created
    return result


def record_step_failure(pipeline_id: int, error: str) -> dict:
    """The Generator reports that a running step job failed."""
    pipeline = get_pipeline_or_404(pipeline_id)
    if not pc.is_phase_running(pipeline.phase):
        raise ValidationError(f'No step is running at phase "{pipeline.phase}"',
                              details={"phase": pipeline.phase}, status=409)
    _fail_step(pipeline, error or "Step failed")
    db.session.commit()
    return pipeline.to_dict()


def _fail_step(pipeline: FloorplanPipeline, error: str) -> None:
    previous = pipeline.phase
    pipeline.phase = "design_reference_failed" if previous.startswith("design_reference") else "failed"
    pipeline.last_error = error
    log_event(pipeline, "step_failed", f"{previous} failed: {error}")


# ═════════════════════════════════════════════════════════════════════════════
# Action dispatch
# ═════════════════════════════════════════════════════════════════════════════


def _run_step_job(pipeline: FloorplanPipeline, endpoint: str, payload: dict) -> dict:
    endpoint_guard.require(endpoint, pipeline.phase)
    previous = pipeline.phase
    if pipeline.phase == "upload":
        pipeline.current_step = 0
    pipeline.phase = pc.RUNNING_PHASE_FOR[previous]
    step = pc.get_step_for_phase(pipeline.phase)
    log_event(pipeline, "step_started", f"{endpoint}: {previous} -> {pipeline.phase}", step_number=step)
    db.session.commit()

    params = {k: v for k, v in payload.items() if k != "pipeline_id"}
    try:
        job = generator_client.dispatch_step(pipeline, step, endpoint, params)
    except GenerationDispatchError as exc:
        _fail_step(pipeline, str(exc))
        db.session.commit()
        raise
    return {"success": True, "phase": pipeline.phase, "job": job}


def _continue(pipeline: FloorplanPipeline, endpoint: str, payload: dict) -> dict:
    from_step = payload.get("from_step")
    if isinstance(from_step, int) and from_step < pipeline.current_step:
        raise OutdatedTransitionError(from_step, pipeline.current_step, pipeline.phase)
    endpoint_guard.require(endpoint, pipeline.phase)
    from_phase = payload.get("from_phase")
    if from_phase and from_phase != pipeline.phase:
        raise ValidationError(
            f'Phase changed since the action was requested: clicked at "{from_phase}", '
            f'pipeline is at "{pipeline.phase}"',
            details={"from_phase": from_phase, "phase": pipeline.phase},
            status=409,
        )
    return stage_advancer.advance(pipeline.id, from_step)


def _confirm_camera_intent(pipeline: FloorplanPipeline, endpoint: str, payload: dict) -> dict:
    endpoint_guard.require(endpoint, pipeline.phase)
    intents = payload.get("camera_intents")
    if intents is not None:
        if not isinstance(intents, list):
            raise ValidationError("camera_intents must be a list", details={"camera_intents": "expected list"})
        pipeline.step_outputs = {**(pipeline.step_outputs or {}), "camera_intent": {"intents": intents}}
    pipeline.phase = "camera_intent_confirmed"
    log_event(pipeline, "camera_intent_confirmed", "Camera intent confirmed", step_number=3)
    db.session.commit()
    return {"success": True, "phase": pipeline.phase}


def _batch(pipeline: FloorplanPipeline, endpoint: str, payload: dict) -> dict:
    return generation_service.start_batch(pipeline.id, endpoint)


def _retry_step(pipeline: FloorplanPipeline, endpoint: str, payload: dict) -> dict:
    endpoint_guard.require(endpoint, pipeline.phase)
    pipeline.phase = pc.PENDING_PHASE_FOR_STEP.get(pipeline.current_step, "space_analysis_pending")
    pipeline.last_error = None
    log_event(pipeline, "step_retry", f"Restarting step {pipeline.current_step} at {pipeline.phase}")
    db.session.commit()
    return {"success": True, "phase": pipeline.phase}


ACTION_HANDLERS = {
    pc.EP_DESIGN_REFERENCE_SCAN: _run_step_job,
    pc.EP_SPACE_ANALYSIS: _run_step_job,
    pc.EP_PIPELINE_STEP: _run_step_job,
    pc.EP_DETECT_SPACES: _run_step_job,
    pc.EP_CONTINUE: _continue,
    pc.EP_CONFIRM_CAMERA_INTENT: _confirm_camera_intent,
    pc.EP_BATCH_RENDERS: _batch,
    pc.EP_BATCH_PANORAMAS: _batch,
    pc.EP_BATCH_MERGES: _batch,
    pc.EP_RETRY_STEP: _retry_step,
}


def preview_route(pipeline_id: int, action_type: str, phase_at_click: str | None = None,
                  extra_params: dict | None = None) -> dict:
    """Route without executing (phase defaults to the persisted one)."""
    pipeline = get_pipeline_or_404(pipeline_id)
    return route(phase_at_click or pipeline.phase, action_type, pipeline.id, extra_params).to_dict()


def dispatch_action(pipeline_id: int, action_type: str, phase_at_click: str,
                    extra_params: dict | None = None) -> dict:
    """Route a client action and run the named endpoint.

    Raises:
        ValidationError: routing failed (422) or the guard rejected the
                         persisted phase (409).
    """
    pipeline = get_pipeline_or_404(pipeline_id)
    routed = route(phase_at_click, action_type, pipeline.id, extra_params)
    if not routed.valid:
        raise ValidationError(routed.error, details={"phase_at_click": phase_at_click,
                                                     "action_type": action_type})
    # DISABLED / NONE phases route validly but have nothing to run
    if routed.endpoint is None:
        context = create_action_context(phase_at_click, None, routed.action_name)
        return {
            "action": context,
            "route": routed.to_dict(),
            "result": {
                "success": False,
                "action_type": action_type,
                "phase": pipeline.phase,
                "message": f'No action available in phase "{phase_at_click}"',
            },
        }
    # continue-pipeline-step answers a paused workflow itself (success=False, paused=True)
    if not pipeline.is_enabled and routed.endpoint != pc.EP_CONTINUE:
        raise ValidationError("Pipeline is paused. Resume it before starting new work.",
                              details={"is_enabled": False}, status=409)
    context = create_action_context(phase_at_click, routed.endpoint, routed.action_name)
    logger.info("Action %s %s -> %s pipeline=%s", context["action_id"], routed.action_name,
                routed.endpoint, pipeline.id, extra={"pipeline_id": pipeline.id})

    handler = ACTION_HANDLERS[routed.endpoint]
    result = handler(pipeline, routed.endpoint, routed.payload)
    return {"action": context, "route": routed.to_dict(), "result": result}
