"""
QA calibration store.

Tracks how often human reviewers agree with the automated QA decision, per
(owner, project, step, category). Also owns the per-attempt feedback rows the
votes come from.

Rules:
  - Counters only grow; a changed vote is recorded as a new signal.
  - db.session.commit() happens only in this file for calibration writes.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from floorflow.core.exceptions import NotFoundError, ValidationError
from floorflow.models import db
from floorflow.models.calibration import (
    AI_DECISIONS,
    COMMENT_MAX_LENGTH,
    FEEDBACK_CATEGORIES,
    HUMAN_VOTES,
    QAAttemptFeedback,
    QACalibrationStat,
)
from floorflow.models.pipeline import FloorplanPipeline

logger = logging.getLogger(__name__)

STRONG_SIGNAL_SCORE_THRESHOLD = 40
STRONG_SIGNAL_WEIGHT = 2

_COUNTER_FOR_OUTCOME = {
    "confirmed_correct": "confirmed_correct_count",
    "false_reject": "false_reject_count",
    "false_approve": "false_approve_count",
}


def classify(ai_decision: str, human_vote: str) -> str:
    """agree → confirmed_correct; disagree on rejected → false_reject; else false_approve."""
    if human_vote == "agree":
        return "confirmed_correct"
    if ai_decision == "rejected":
        return "false_reject"
    return "false_approve"


def signal_weight(ai_decision: str, human_score: int | None) -> int:
    """A confidently bad score on something the AI approved counts double."""
    if human_score is not None and human_score < STRONG_SIGNAL_SCORE_THRESHOLD and ai_decision == "approved":
        return STRONG_SIGNAL_WEIGHT
    return 1


# ── Calibration counters ─────────────────────────────────────────────────────


def record(owner_id: str, project_id: int | None, step_id: int, category: str,
           ai_decision: str, human_vote: str, human_score: int | None = None,
           *, commit: bool = True) -> QACalibrationStat:
    """Fold one human vote into the calibration counters.

    Returns the upserted QACalibrationStat row.

    Raises:
        ValidationError: unknown ai_decision / human_vote, or empty category.
    """
    if ai_decision not in AI_DECISIONS:
        raise ValidationError("ai_decision must be 'approved' or 'rejected'",
                              details={"ai_decision": ai_decision})
    if human_vote not in HUMAN_VOTES:
        raise ValidationError("human_vote must be 'agree' or 'disagree'",
                              details={"human_vote": human_vote})
    category = (category or "").strip()
    if not category:
        raise ValidationError("category is required", details={"category": "required"})

    outcome = classify(ai_decision, human_vote)
    weight = signal_weight(ai_decision, human_score)
    counter = _COUNTER_FOR_OUTCOME[outcome]

    stmt = select(QACalibrationStat).where(
        QACalibrationStat.owner_id == owner_id,
        QACalibrationStat.step_id == step_id,
        QACalibrationStat.category == category,
    )
    if project_id is None:
        stmt = stmt.where(QACalibrationStat.project_id.is_(None))
    else:
        stmt = stmt.where(QACalibrationStat.project_id == project_id)
    stat = db.session.execute(stmt).scalar_one_or_none()

    if stat is None:
        stat = QACalibrationStat(
            owner_id=owner_id,
            project_id=project_id,
            step_id=step_id,
            category=category,
            false_reject_count=0,
            false_approve_count=0,
            confirmed_correct_count=0,
        )
        db.session.add(stat)

    setattr(stat, counter, (getattr(stat, counter) or 0) + weight)

    if commit:
        db.session.commit()
    logger.info(
        "Calibration %s +%d owner=%s project=%s step=%s category=%s",
        outcome, weight, owner_id, project_id, step_id, category,
        extra={"project_id": project_id, "event_type": "calibration_recorded"},
    )
    return stat


def list_stats(owner_id: str | None = None, project_id: int | None = None,
               step_id: int | None = None) -> list[dict]:
    stmt = select(QACalibrationStat)
    if owner_id is not None:
        stmt = stmt.where(QACalibrationStat.owner_id == owner_id)
    if project_id is not None:
        stmt = stmt.where(QACalibrationStat.project_id == project_id)
    if step_id is not None:
        stmt = stmt.where(QACalibrationStat.step_id == step_id)
    stmt = stmt.order_by(QACalibrationStat.step_id, QACalibrationStat.category)
    return [s.to_dict() for s in db.session.execute(stmt).scalars()]


# ── Attempt feedback ─────────────────────────────────────────────────────────


def store_attempt_feedback(pipeline_id: int, data: dict) -> dict:
    """Upsert a human vote on one attempt image, then update calibration.

    Expected keys: step_id, attempt_number, image_id, qa_decision, user_vote,
    and optionally user_category, user_comment_short, user_score, qa_reasons,
    context_snapshot.
    """
    pipeline = db.session.get(FloorplanPipeline, pipeline_id)
    if pipeline is None:
        raise NotFoundError("FloorplanPipeline", pipeline_id)

    errors = {}
    for key in ("step_id", "attempt_number"):
        if not isinstance(data.get(key), int) or isinstance(data.get(key), bool):
            errors[key] = "integer required"
    image_id = str(data.get("image_id") or "").strip()
    if not image_id:
        errors["image_id"] = "required"
    qa_decision = data.get("qa_decision")
    if qa_decision not in AI_DECISIONS:
        errors["qa_decision"] = "must be 'approved' or 'rejected'"
    user_vote = data.get("user_vote")
    if user_vote not in HUMAN_VOTES:
        errors["user_vote"] = "must be 'agree' or 'disagree'"
    category = data.get("user_category") or "other"
    if category not in FEEDBACK_CATEGORIES:
        errors["user_category"] = f"must be one of {sorted(FEEDBACK_CATEGORIES)}"
    score = data.get("user_score")
    if score is not None and (isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100):
        errors["user_score"] = "must be an integer between 0 and 100"
    if errors:
        raise ValidationError("Invalid QA attempt feedback", details=errors)

    comment = data.get("user_comment_short")
    if comment:
        comment = str(comment).strip()[:COMMENT_MAX_LENGTH] or None

    feedback = db.session.execute(
        select(QAAttemptFeedback).where(
            QAAttemptFeedback.pipeline_id == pipeline_id,
            QAAttemptFeedback.step_id == data["step_id"],
            QAAttemptFeedback.attempt_number == data["attempt_number"],
            QAAttemptFeedback.image_id == image_id,
        )
    ).scalar_one_or_none()
    is_new = feedback is None
    if is_new:
        feedback = QAAttemptFeedback(
            pipeline_id=pipeline_id,
            project_id=pipeline.project_id,
            owner_id=pipeline.owner_id,
            step_id=data["step_id"],
            attempt_number=data["attempt_number"],
            image_id=image_id,
        )
        db.session.add(feedback)

    feedback.qa_decision = qa_decision
    feedback.qa_reasons = data.get("qa_reasons") or []
    feedback.user_vote = user_vote
    feedback.user_category = category
    feedback.user_comment_short = comment
    feedback.user_score = score
    feedback.context_snapshot = data.get("context_snapshot") or {}

    stat = record(
        pipeline.owner_id, pipeline.project_id, data["step_id"], category,
        qa_decision, user_vote, score, commit=False,
    )
    db.session.commit()
    logger.info("QA feedback %s pipeline=%s step=%s attempt=%s vote=%s",
                "stored" if is_new else "updated", pipeline_id,
                data["step_id"], data["attempt_number"], user_vote)
    return {"feedback": feedback.to_dict(), "calibration": stat.to_dict(), "created": is_new}


def list_attempt_feedback(pipeline_id: int, step_id: int | None = None) -> list[dict]:
    stmt = select(QAAttemptFeedback).where(QAAttemptFeedback.pipeline_id == pipeline_id)
    if step_id is not None:
        stmt = stmt.where(QAAttemptFeedback.step_id == step_id)
    stmt = stmt.order_by(QAAttemptFeedback.step_id, QAAttemptFeedback.attempt_number)
    return [f.to_dict() for f in db.session.execute(stmt).scalars()]
