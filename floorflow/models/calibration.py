"""
Floorplan Pipeline Orchestrator
QA calibration models.

Models:
    - QAAttemptFeedback:  one human vote per (pipeline, step, attempt, image)
    - QACalibrationStat:  per (owner, project, step, category) agreement counters

Counters on QACalibrationStat only ever grow. A vote that changes later is a
new signal; it never decrements an earlier one.
"""

from datetime import datetime, timezone

from floorflow.models import db

AI_DECISIONS = frozenset({"approved", "rejected"})
HUMAN_VOTES = frozenset({"agree", "disagree"})

CALIBRATION_OUTCOMES = ("confirmed_correct", "false_reject", "false_approve")

FEEDBACK_CATEGORIES = frozenset({
    "wrong_room", "furniture_scale", "extra_furniture", "structural_change",
    "flooring_mismatch", "perspective_distortion", "seam_artifact", "other",
})

COMMENT_MAX_LENGTH = 200


class QAAttemptFeedback(db.Model):
    """Human vote on an automated QA decision for one attempt image."""

    __tablename__ = "qa_attempt_feedback"

    id = db.Column(db.Integer, primary_key=True)
    pipeline_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_pipelines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id = db.Column(db.Integer, nullable=True)
    owner_id = db.Column(db.String(64), nullable=False)
    step_id = db.Column(db.Integer, nullable=False)
    attempt_number = db.Column(db.Integer, nullable=False)
    image_id = db.Column(db.String(64), nullable=False)

    qa_decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    qa_reasons = db.Column(db.JSON, nullable=False, default=list)
    user_vote = db.Column(db.String(20), nullable=False, comment="agree | disagree")
    user_category = db.Column(db.String(50), nullable=False, default="other")
    user_comment_short = db.Column(db.String(COMMENT_MAX_LENGTH), nullable=True)
    user_score = db.Column(db.Integer, nullable=True)
    context_snapshot = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "pipeline_id", "step_id", "attempt_number", "image_id",
            name="uq_qa_feedback_attempt_image",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "project_id": self.project_id,
            "step_id": self.step_id,
            "attempt_number": self.attempt_number,
            "image_id": self.image_id,
            "qa_decision": self.qa_decision,
            "qa_reasons": self.qa_reasons or [],
            "user_vote": self.user_vote,
            "user_category": self.user_category,
            "user_comment_short": self.user_comment_short,
            "user_score": self.user_score,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<QAAttemptFeedback #{self.id} step={self.step_id} attempt={self.attempt_number}>"


class QACalibrationStat(db.Model):
    """Accumulated agreement between automated QA and human review."""

    __tablename__ = "qa_calibration_stats"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(db.Integer, nullable=True)
    step_id = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(50), nullable=False)

    false_reject_count = db.Column(db.Integer, nullable=False, default=0)
    false_approve_count = db.Column(db.Integer, nullable=False, default=0)
    confirmed_correct_count = db.Column(db.Integer, nullable=False, default=0)

    last_updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "owner_id", "project_id", "step_id", "category",
            name="uq_calibration_scope",
        ),
    )

    @property
    def total_votes(self):
        return (
            (self.false_reject_count or 0)
            + (self.false_approve_count or 0)
            + (self.confirmed_correct_count or 0)
        )

    def to_dict(self):
        total = self.total_votes
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "project_id": self.project_id,
            "step_id": self.step_id,
            "category": self.category,
            "false_reject_count": self.false_reject_count,
            "false_approve_count": self.false_approve_count,
            "confirmed_correct_count": self.confirmed_correct_count,
            "agreement_rate": round(self.confirmed_correct_count / total, 4) if total else None,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
        }

    def __repr__(self):
        return f"<QACalibrationStat {self.owner_id}/{self.project_id} step={self.step_id} {self.category}>"
