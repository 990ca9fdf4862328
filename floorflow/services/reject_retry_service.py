"""
Rejection / retry engine for generation units (render, panorama, final 360).

Entry point: ``reject(asset_type, asset_id, ...)``. Every call ends in exactly
one of three outcomes, stated in the response:

    inpaint_triggered   targeted edit of an output the AI (or a human) had
                        approved; attempt_count and output are left alone
    retry_triggered     full regeneration with the bounded learning loop
                        (analysis -> prompt improvement -> retry patch)
    blocked_for_human   retry budget spent; no Generator call is made

Rules:
  - The attempt increment is committed before the Generator is called. A
    dispatch failure leaves the unit ``failed`` with the attempt spent.
  - Units carry an optimistic ``version``; a concurrent write surfaces as
    ConflictError (HTTP 409) instead of a lost update.
  - Rejection events are append-only; the full history is copied into
    ``qa_report.rejection_history`` when the unit is blocked.
  - db.session.commit() happens only in this file for rejection writes.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from floorflow.core.exceptions import (
    ConflictError,
    GenerationDispatchError,
    NotFoundError,
    RetryBudgetExhausted,
    ValidationError,
)
from floorflow.integrations.generation_gateway import (
    generator_client,
    prompt_improvement_client,
    rejection_analysis_client,
)
from floorflow.models import db
from floorflow.models.generation import MAX_RETRY_ATTEMPTS, UNIT_MODELS, RejectionEvent
from floorflow.models.pipeline import FloorplanPipeline, PipelineSpace
from floorflow.pipeline import endpoint_guard
from floorflow.pipeline.qa_schema import structured_status
from floorflow.services.event_log import log_event
from floorflow.services.retry_patch import build_retry_patch

logger = logging.getLogger(__name__)

APPROVED_QA_STATUSES = frozenset({"passed", "approved"})
APPROVED_STRUCTURED_STATUSES = frozenset({"pass", "passed"})

AUTO_REJECTION_REASON = "AI-QA rejection"


def was_ai_approved(unit) -> bool:
    """True when the unit's last quality decision was a pass."""
    if unit.qa_status in APPROVED_QA_STATUSES:
        return True
    return structured_status(unit.structured_qa_result) in APPROVED_STRUCTURED_STATUSES


def _load_unit(asset_type: str, asset_id: int):
    model = UNIT_MODELS.get(asset_type)
    if model is None:
        raise ValidationError(
            f"Unknown asset_type: {asset_type}",
            details={"asset_type": f"must be one of {sorted(UNIT_MODELS)}"},
        )
    unit = db.session.get(model, asset_id)
    if unit is None:
        raise NotFoundError(model.__name__, asset_id)
    return unit


def commit_unit(unit) -> None:
    """Commit, translating a lost optimistic-version race into ConflictError."""
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning("Concurrent modification of %s %s", unit.ASSET_TYPE, unit.id)
        raise ConflictError(
            type(unit).__name__, "version", str(unit.id),
            message=f"{unit.label} #{unit.id} was modified concurrently; reload and retry",
        )


def _append_rejection(unit, *, attempt_number: int, notes: str | None, category: str | None,
                      outcome: str, learning_applied: bool = False, analysis=None,
                      retry_patch=None) -> RejectionEvent:
    event = RejectionEvent(
        pipeline_id=unit.pipeline_id,
        asset_type=unit.ASSET_TYPE,
        asset_id=unit.id,
        attempt_number=attempt_number,
        notes=notes or None,
        category=category or None,
        outcome=outcome,
        learning_applied=learning_applied,
        analysis=analysis.to_dict() if analysis is not None else None,
        retry_patch=retry_patch,
        qa_snapshot=unit.structured_qa_result,
    )
    db.session.add(event)
    return event


def rejection_history(asset_type: str, asset_id: int) -> list[dict]:
    """Ordered rejection history of one unit (oldest first)."""
    unit = _load_unit(asset_type, asset_id)
    rows = db.session.execute(
        select(RejectionEvent)
        .where(RejectionEvent.asset_type == unit.ASSET_TYPE, RejectionEvent.asset_id == unit.id)
        .order_by(RejectionEvent.id)
    ).scalars()
    return [r.to_history_dict() for r in rows]


def _next_attempt(unit) -> int:
    new_attempt = (unit.attempt_count or 0) + 1
    if new_attempt > MAX_RETRY_ATTEMPTS:
        raise RetryBudgetExhausted(unit.attempt_count, MAX_RETRY_ATTEMPTS)
    return new_attempt


# ═════════════════════════════════════════════════════════════════════════════
# Entry point
# ═════════════════════════════════════════════════════════════════════════════


def reject(asset_type: str, asset_id: int, rejection_notes: str | None = None,
           rejection_category: str | None = None, is_post_approval_reject: bool = False,
           *, auto_triggered: bool = False) -> dict:
    """Handle one rejection of a generation unit.

    Raises:
        ValidationError:          unknown asset type, missing notes on a
                                  post-approval reject, or phase guard failure.
        NotFoundError:            unit does not exist.
        ConflictError:            the unit changed under us.
        GenerationDispatchError:  the Generator refused the job (unit now failed).
    """
    notes = (rejection_notes or "").strip()
    if is_post_approval_reject and not notes:
        raise ValidationError(
            "Edit instructions are required for post-approval rejections",
            details={"rejection_notes": "required when is_post_approval_reject is true"},
        )

    unit = _load_unit(asset_type, asset_id)
    pipeline = db.session.get(FloorplanPipeline, unit.pipeline_id)
    endpoint_guard.require(endpoint_guard.EP_REJECT_UNIT, pipeline.phase)

    logger.info(
        "Rejecting %s %s attempt=%s post_approval=%s auto=%s",
        unit.ASSET_TYPE, unit.id, unit.attempt_count, is_post_approval_reject, auto_triggered,
        extra={"pipeline_id": unit.pipeline_id, "asset_type": unit.ASSET_TYPE, "asset_id": unit.id},
    )

    if (is_post_approval_reject or was_ai_approved(unit)) and unit.output_upload_id and notes:
        return _targeted_edit(pipeline, unit, notes, rejection_category)

    try:
        new_attempt = _next_attempt(unit)
    except RetryBudgetExhausted as exhausted:
        return _block_for_human(pipeline, unit, notes, rejection_category, exhausted)
    return _full_retry(pipeline, unit, new_attempt, notes, rejection_category)


# ── Targeted edit ────────────────────────────────────────────────────────────


def _targeted_edit(pipeline, unit, notes: str, category: str | None) -> dict:
    unit.pre_rejection_qa_status = unit.qa_status
    unit.status = "editing"
    unit.job_type = "edit_inpaint"
    unit.source_image_upload_id = unit.output_upload_id
    unit.user_correction_text = notes
    unit.correction_mode = "inpaint"
    unit.qa_status = "pending"
    unit.locked_approved = False
    unit.last_error = None

    _append_rejection(unit, attempt_number=unit.attempt_count, notes=notes,
                      category=category, outcome="edit")
    log_event(pipeline, "edit_inpaint_started",
              f"Editing {unit.label} (preserving approved image)",
              step_number=unit.STEP, progress_int=5)
    commit_unit(unit)

    try:
        generator_client.dispatch_edit(unit, notes)
    except GenerationDispatchError as exc:
        _mark_dispatch_failed(pipeline, unit, exc)
        raise

    return {
        "inpaint_triggered": True,
        "outcome": "edit",
        "asset_type": unit.ASSET_TYPE,
        "asset_id": unit.id,
        "attempt_count": unit.attempt_count,
        "max_attempts": MAX_RETRY_ATTEMPTS,
        "message": f"Edit started for {unit.label}; the current image is kept until the edit completes",
    }


# ── Budget exhausted ─────────────────────────────────────────────────────────


def _block_for_human(pipeline, unit, notes: str, category: str | None,
                     exhausted: RetryBudgetExhausted) -> dict:
    _append_rejection(unit, attempt_number=unit.attempt_count, notes=notes,
                      category=category, outcome="blocked")
    db.session.flush()
    history = [
        r.to_history_dict() for r in db.session.execute(
            select(RejectionEvent)
            .where(RejectionEvent.asset_type == unit.ASSET_TYPE, RejectionEvent.asset_id == unit.id)
            .order_by(RejectionEvent.id)
        ).scalars()
    ]

    unit.status = "blocked_for_human"
    unit.qa_status = "rejected"
    unit.locked_approved = False
    unit.qa_report = {
        **(unit.qa_report or {}),
        "rejection_notes": notes or None,
        "rejection_category": category,
        "blocked_reason": "Max retry attempts reached",
        "total_attempts": unit.attempt_count,
        "rejection_history": history,
        "all_rejection_reasons": [h["notes"] or h["category"] or "Unknown" for h in history],
    }
    log_event(pipeline, "retry_exhausted",
              f"{unit.label} blocked after {exhausted.max_attempts} attempts - manual approval required",
              step_number=unit.STEP)
    commit_unit(unit)

    logger.warning("%s %s blocked for human review (%s)", unit.ASSET_TYPE, unit.id, exhausted,
                   extra={"pipeline_id": unit.pipeline_id, "asset_type": unit.ASSET_TYPE, "asset_id": unit.id,
                          "event_type": "retry_exhausted"})
    return {
        "retry_triggered": False,
        "blocked_for_human": True,
        "outcome": "blocked",
        "asset_type": unit.ASSET_TYPE,
        "asset_id": unit.id,
        "attempt_count": unit.attempt_count,
        "max_attempts": exhausted.max_attempts,
        "rejection_history": history,
        "message": f"Max attempts ({exhausted.max_attempts}) reached. Manual review required.",
    }


# ── Full retry ───────────────────────────────────────────────────────────────


def _full_retry(pipeline, unit, new_attempt: int, notes: str, category: str | None) -> dict:
    rejected_attempt = unit.attempt_count or 0
    space = db.session.get(PipelineSpace, unit.space_id)

    analysis = rejection_analysis_client.analyze(
        asset_type=unit.ASSET_TYPE,
        asset_id=unit.id,
        step_number=unit.STEP,
        reject_reason=notes or AUTO_REJECTION_REASON,
        previous_prompt=unit.prompt_text,
        space_type=space.space_type if space else None,
        project_id=pipeline.project_id,
    )

    previous_prompt = unit.prompt_text
    improved_prompt = previous_prompt
    if analysis is not None or notes:
        candidate = prompt_improvement_client.improve(
            step_number=unit.STEP,
            previous_prompt=previous_prompt or "",
            analysis=analysis,
            rejection_category=category,
        )
        if candidate and candidate != previous_prompt:
            improved_prompt = candidate
    improved_prompt_used = improved_prompt != previous_prompt

    patch = build_retry_patch(unit.structured_qa_result, category, analysis)
    patch_dict = patch.to_dict()

    _append_rejection(unit, attempt_number=rejected_attempt, notes=notes, category=category,
                      outcome="retry", learning_applied=patch.learning_applied,
                      analysis=analysis, retry_patch=patch_dict)

    unit.status = "retrying"
    unit.qa_status = "pending"
    unit.attempt_count = new_attempt
    unit.locked_approved = False
    unit.output_upload_id = None
    unit.job_type = "generate"
    unit.source_image_upload_id = None
    unit.user_correction_text = None
    unit.correction_mode = None
    unit.last_error = None
    unit.prompt_text = improved_prompt
    unit.qa_report = {
        **(unit.qa_report or {}),
        "previous_rejection": {
            "attempt": rejected_attempt,
            "notes": notes or None,
            "category": category,
            "analysis": analysis.to_dict() if analysis is not None else None,
        },
        "retry_patch": patch_dict,
        "improved_prompt_used": improved_prompt_used,
    }

    summary = f" - fixing: {analysis.root_cause_summary[:50]}" if analysis and analysis.root_cause_summary else ""
    log_event(pipeline, "retry_started",
              f"Retrying {unit.label} (attempt {new_attempt}/{MAX_RETRY_ATTEMPTS}){summary}",
              step_number=unit.STEP, progress_int=5)
    commit_unit(unit)

    try:
        generator_client.dispatch_unit(
            unit,
            is_retry=True,
            attempt_number=new_attempt,
            retry_patch=patch_dict,
            improved_prompt=improved_prompt,
        )
    except GenerationDispatchError as exc:
        _mark_dispatch_failed(pipeline, unit, exc)
        raise

    logger.info("Retry %d/%d dispatched for %s %s learning=%s",
                new_attempt, MAX_RETRY_ATTEMPTS, unit.ASSET_TYPE, unit.id, patch.learning_applied,
                extra={"pipeline_id": unit.pipeline_id, "asset_type": unit.ASSET_TYPE,
                       "asset_id": unit.id, "event_type": "retry_started"})
    return {
        "retry_triggered": True,
        "outcome": "retry",
        "asset_type": unit.ASSET_TYPE,
        "asset_id": unit.id,
        "attempt_count": new_attempt,
        "max_attempts": MAX_RETRY_ATTEMPTS,
        "learning_applied": patch.learning_applied,
        "improved_prompt_used": improved_prompt_used,
        "retry_patch": patch_dict,
        "message": f"Retry {new_attempt}/{MAX_RETRY_ATTEMPTS} started"
                   + (" with learning" if patch.learning_applied else ""),
    }


def _mark_dispatch_failed(pipeline, unit, exc: GenerationDispatchError) -> None:
    unit.status = "failed"
    unit.last_error = str(exc)
    unit.qa_report = {**(unit.qa_report or {}), "retry_error": str(exc)}
    log_event(pipeline, "generation_failed", f"{unit.label} dispatch failed: {exc}",
              step_number=unit.STEP)
    commit_unit(unit)
    logger.error("Dispatch failed for %s %s: %s", unit.ASSET_TYPE, unit.id, exc,
                 extra={"pipeline_id": unit.pipeline_id, "asset_type": unit.ASSET_TYPE, "asset_id": unit.id,
                        "event_type": "generation_failed"})
