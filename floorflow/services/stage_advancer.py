"""
Stage Advancer.

Moves a workflow from a review/confirmed phase to the next step, creating the
next step's generation units when that step has them.

Order of checks (each one mutates nothing when it rejects):
    1. outdated from_step          -> OutdatedTransitionError
    2. workflow paused             -> {"success": False, "paused": True}
    3. approval gate (steps 4-6)   -> ApprovalIncompleteError
    4. legal transition lookup     -> ValidationError
Then units are created for the entered step, skipping (space_id, kind) keys
that already exist, and the new phase/step is committed with a
``stage_advanced`` event.

Rules:
  - db.session.commit() happens only in this file for advancement writes.
  - The phase/step written is derived from the persisted phase, never from
    the caller.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from floorflow.core.exceptions import (
    ApprovalIncompleteError,
    NotFoundError,
    OutdatedTransitionError,
    ValidationError,
)
from floorflow.models import db
from floorflow.models.generation import SpaceFinal360, SpacePanorama, SpaceRender
from floorflow.models.pipeline import FloorplanPipeline
from floorflow.pipeline.phase_contract import LEGAL_PHASE_TRANSITIONS, get_step_for_phase
from floorflow.services.event_log import log_event

logger = logging.getLogger(__name__)

RENDER_KINDS = ("A", "B")

# step -> (unit model, units required per active space)
APPROVAL_GATES = {
    SpaceRender.STEP: (SpaceRender, 2),
    SpacePanorama.STEP: (SpacePanorama, 2),
    SpaceFinal360.STEP: (SpaceFinal360, 1),
}

# phase entered -> label used in action_taken
_CREATION_LABELS = {
    "renders_pending": "renders",
    "panoramas_pending": "panoramas",
    "merging_pending": "final360s",
}


def _load_pipeline(workflow_id: int) -> FloorplanPipeline:
    pipeline = db.session.get(FloorplanPipeline, workflow_id)
    if pipeline is None:
        raise NotFoundError("FloorplanPipeline", workflow_id)
    return pipeline


def _existing_keys(model, pipeline_id: int, space_ids: list[int]) -> set[tuple[int, str]]:
    if not space_ids:
        return set()
    rows = db.session.execute(
        select(model.space_id, model.kind).where(
            model.pipeline_id == pipeline_id,
            model.space_id.in_(space_ids),
        )
    ).all()
    return {(r[0], r[1]) for r in rows}


# ── Approval gate ────────────────────────────────────────────────────────────


def approval_counts(pipeline: FloorplanPipeline, step: int) -> tuple[int, int] | None:
    """(approved, required) for a gated step, or None when the step has no gate."""
    gate = APPROVAL_GATES.get(step)
    if gate is None:
        return None
    model, per_space = gate
    space_ids = [s.id for s in pipeline.active_spaces()]
    required = per_space * len(space_ids)
    if not space_ids:
        return 0, 0
    approved_keys = db.session.execute(
        select(model.space_id, model.kind).where(
            model.pipeline_id == pipeline.id,
            model.space_id.in_(space_ids),
            model.locked_approved.is_(True),
        )
    ).all()
    approved = len({(r[0], r[1]) for r in approved_keys})
    return approved, required


def _check_approval_gate(pipeline: FloorplanPipeline, step: int) -> None:
    counts = approval_counts(pipeline, step)
    if counts is None:
        return
    approved, required = counts
    if required == 0:
        raise ValidationError(
            f"Cannot advance from step {step}: no active spaces",
            details={"active_spaces": 0},
            status=409,
        )
    if approved < required:
        model = APPROVAL_GATES[step][0]
        logger.info("Advance blocked pipeline=%s step=%s approved=%d/%d",
                    pipeline.id, step, approved, required,
                    extra={"pipeline_id": pipeline.id, "event_type": "approval_incomplete"})
        raise ApprovalIncompleteError(step, model.ASSET_TYPE, approved, required)


# ── Idempotent unit creation ─────────────────────────────────────────────────


def _create_renders(pipeline: FloorplanPipeline, spaces) -> int:
    existing = _existing_keys(SpaceRender, pipeline.id, [s.id for s in spaces])
    created = 0
    for space in spaces:
        for kind in RENDER_KINDS:
            if (space.id, kind) in existing:
                continue
            db.session.add(SpaceRender(
                pipeline_id=pipeline.id,
                space_id=space.id,
                owner_id=pipeline.owner_id,
                kind=kind,
                status="pending",
                ratio=pipeline.aspect_ratio,
                quality=pipeline.quality_tier,
            ))
            created += 1
    return created


def _create_panoramas(pipeline: FloorplanPipeline, spaces) -> int:
    space_ids = [s.id for s in spaces]
    existing = _existing_keys(SpacePanorama, pipeline.id, space_ids)
    if not space_ids:
        return 0
    approved_renders = db.session.execute(
        select(SpaceRender).where(
            SpaceRender.pipeline_id == pipeline.id,
            SpaceRender.space_id.in_(space_ids),
            SpaceRender.locked_approved.is_(True),
        ).order_by(SpaceRender.space_id, SpaceRender.kind)
    ).scalars().all()

    created = 0
    for render in approved_renders:
        key = (render.space_id, render.kind)
        if key in existing:
            continue
        existing.add(key)
        db.session.add(SpacePanorama(
            pipeline_id=pipeline.id,
            space_id=render.space_id,
            owner_id=pipeline.owner_id,
            kind=render.kind,
            status="pending",
            source_render_id=render.id,
            quality=pipeline.quality_tier,
        ))
        created += 1
    return created


def _create_final360s(pipeline: FloorplanPipeline, spaces) -> int:
    space_ids = [s.id for s in spaces]
    existing = _existing_keys(SpaceFinal360, pipeline.id, space_ids)
    if not space_ids:
        return 0
    approved = db.session.execute(
        select(SpacePanorama).where(
            SpacePanorama.pipeline_id == pipeline.id,
            SpacePanorama.space_id.in_(space_ids),
            SpacePanorama.locked_approved.is_(True),
        )
    ).scalars().all()
    by_space: dict[int, dict[str, SpacePanorama]] = {}
    for pano in approved:
        by_space.setdefault(pano.space_id, {})[pano.kind] = pano

    created = 0
    for space in spaces:
        panos = by_space.get(space.id, {})
        if "A" not in panos or "B" not in panos:
            continue
        if (space.id, SpaceFinal360.KIND) in existing:
            continue
        db.session.add(SpaceFinal360(
            pipeline_id=pipeline.id,
            space_id=space.id,
            owner_id=pipeline.owner_id,
            kind=SpaceFinal360.KIND,
            status="pending",
            panorama_a_id=panos["A"].id,
            panorama_b_id=panos["B"].id,
        ))
        created += 1
    return created


_CREATORS = {
    "renders_pending": _create_renders,
    "panoramas_pending": _create_panoramas,
    "merging_pending": _create_final360s,
}


# ── Public API ───────────────────────────────────────────────────────────────


def advance(workflow_id: int, from_step: int) -> dict:
    """Advance a workflow past ``from_step``.

    Returns:
        {"success": True, "action_taken", "active_spaces", "previous_phase",
         "new_phase", "new_step", "units_created"}
        or {"success": False, "paused": True, ...} for a disabled workflow.

    Raises:
        NotFoundError, OutdatedTransitionError, ApprovalIncompleteError,
        ValidationError (from_step ahead of the workflow, or no legal transition).
    """
    if isinstance(from_step, bool) or not isinstance(from_step, int):
        raise ValidationError("from_step must be an integer", details={"from_step": from_step})

    pipeline = _load_pipeline(workflow_id)

    if from_step < pipeline.current_step:
        logger.info("Outdated advance ignored pipeline=%s from_step=%s current_step=%s",
                    pipeline.id, from_step, pipeline.current_step,
                    extra={"pipeline_id": pipeline.id, "event_type": "outdated_step"})
        raise OutdatedTransitionError(from_step, pipeline.current_step, pipeline.phase)

    if not pipeline.is_enabled:
        return {
            "success": False,
            "paused": True,
            "message": "Pipeline is paused. Resume it before continuing.",
            "current_phase": pipeline.phase,
            "current_step": pipeline.current_step,
        }

    if from_step > pipeline.current_step:
        raise ValidationError(
            f"from_step={from_step} is ahead of the pipeline (step {pipeline.current_step})",
            details={"from_step": from_step, "current_step": pipeline.current_step},
            status=409,
        )

    _check_approval_gate(pipeline, from_step)

    previous_phase = pipeline.phase
    next_phase = LEGAL_PHASE_TRANSITIONS.get(previous_phase)
    if next_phase is None:
        raise ValidationError(
            f'No legal transition from phase "{previous_phase}"',
            details={"phase": previous_phase, "from_step": from_step},
            status=409,
        )

    spaces = pipeline.active_spaces()
    units_created = 0
    creator = _CREATORS.get(next_phase)
    if creator is not None:
        units_created = creator(pipeline, spaces)
        action_taken = f"initialized_{_CREATION_LABELS[next_phase]}_{units_created}"
    elif next_phase == "completed":
        action_taken = "completed"
    else:
        action_taken = f"advanced_to_{next_phase}"

    new_step = get_step_for_phase(next_phase)
    pipeline.phase = next_phase
    pipeline.current_step = new_step
    pipeline.last_error = None

    log_event(
        pipeline, "stage_advanced",
        f"{previous_phase} -> {next_phase} ({action_taken})",
        step_number=new_step,
        progress_int=100 if next_phase == "completed" else 0,
    )
    db.session.commit()

    logger.info("Pipeline %s advanced %s -> %s units_created=%d",
                pipeline.id, previous_phase, next_phase, units_created,
                extra={"pipeline_id": pipeline.id, "event_type": "stage_advanced"})
    return {
        "success": True,
        "action_taken": action_taken,
        "active_spaces": len(spaces),
        "previous_phase": previous_phase,
        "new_phase": next_phase,
        "new_step": new_step,
        "units_created": units_created,
    }
