"""
Floorplan Pipeline Orchestrator
Generation unit models.

Models:
    - SpaceRender:       first-pass render, step 4, kinds A/B per space
    - SpacePanorama:     derivative panorama, step 5, one per approved render
    - SpaceFinal360:     merged composite, step 6, one per space (panorama A + B)
    - RejectionEvent:    immutable rejection history row for any unit

All three unit kinds share GenerationUnitMixin and therefore one lifecycle:

    pending → running → completed
    running → failed | retrying | editing
    completed → retrying | editing | blocked_for_human
    planned is an explicit pre-pending state used by batch planning.

Each unit row carries a ``version`` column wired as SQLAlchemy's
``version_id_col``: every UPDATE is conditional on the version that was read,
so two concurrent rejections of the same unit cannot both increment
``attempt_count`` from the same starting value.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from floorflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

UNIT_STATUSES = frozenset({
    "pending", "planned", "running", "retrying",
    "blocked_for_human", "failed", "completed", "editing",
})

QA_STATUSES = frozenset({"pending", "passed", "failed", "approved", "rejected"})

JOB_TYPES = frozenset({"generate", "edit_inpaint"})

REJECTION_OUTCOMES = frozenset({"retry", "blocked", "edit"})

MAX_RETRY_ATTEMPTS = 5


def _now():
    return datetime.now(timezone.utc)


class GenerationUnitMixin:
    """Columns and behaviour common to renders, panoramas and final 360s."""

    ASSET_TYPE = ""
    STEP = 0

    @declared_attr
    def pipeline_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("floorplan_pipelines.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def space_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("floorplan_pipeline_spaces.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    owner_id = db.Column(db.String(64), nullable=False)
    kind = db.Column(db.String(10), nullable=False)

    status = db.Column(db.String(30), nullable=False, default="pending")
    job_type = db.Column(db.String(20), nullable=False, default="generate")
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    locked_approved = db.Column(db.Boolean, nullable=False, default=False)

    qa_status = db.Column(db.String(20), nullable=False, default="pending")
    pre_rejection_qa_status = db.Column(db.String(20), nullable=True)
    structured_qa_result = db.Column(db.JSON, nullable=True)
    qa_report = db.Column(db.JSON, nullable=False, default=dict)

    prompt_text = db.Column(db.Text, nullable=True)
    output_upload_id = db.Column(db.String(64), nullable=True)
    source_image_upload_id = db.Column(db.String(64), nullable=True)
    user_correction_text = db.Column(db.Text, nullable=True)
    correction_mode = db.Column(db.String(20), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    @property
    def label(self):
        return f"{self.ASSET_TYPE} {self.kind}"

    def _base_dict(self):
        return {
            "id": self.id,
            "asset_type": self.ASSET_TYPE,
            "step": self.STEP,
            "pipeline_id": self.pipeline_id,
            "space_id": self.space_id,
            "kind": self.kind,
            "status": self.status,
            "job_type": self.job_type,
            "attempt_count": self.attempt_count,
            "max_attempts": MAX_RETRY_ATTEMPTS,
            "locked_approved": self.locked_approved,
            "qa_status": self.qa_status,
            "pre_rejection_qa_status": self.pre_rejection_qa_status,
            "structured_qa_result": self.structured_qa_result,
            "qa_report": self.qa_report or {},
            "prompt_text": self.prompt_text,
            "output_upload_id": self.output_upload_id,
            "source_image_upload_id": self.source_image_upload_id,
            "user_correction_text": self.user_correction_text,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class SpaceRender(GenerationUnitMixin, db.Model):
    """First-pass eye-level render of a space (two camera kinds, A and B)."""

    __tablename__ = "floorplan_space_renders"

    ASSET_TYPE = "render"
    STEP = 4

    id = db.Column(db.Integer, primary_key=True)
    ratio = db.Column(db.String(10), nullable=False, default="16:9")
    quality = db.Column(db.String(10), nullable=False, default="2K")
    camera_label = db.Column(db.String(120), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_render_pipeline_space_kind", "pipeline_id", "space_id", "kind"),
    )

    def to_dict(self):
        result = self._base_dict()
        result.update({"ratio": self.ratio, "quality": self.quality, "camera_label": self.camera_label})
        return result

    def __repr__(self):
        return f"<SpaceRender #{self.id} space={self.space_id} {self.kind} {self.status}>"


class SpacePanorama(GenerationUnitMixin, db.Model):
    """360 panorama derived from one approved render."""

    __tablename__ = "floorplan_space_panoramas"

    ASSET_TYPE = "panorama"
    STEP = 5

    id = db.Column(db.Integer, primary_key=True)
    source_render_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_space_renders.id", ondelete="SET NULL"),
        nullable=True,
    )
    ratio = db.Column(db.String(10), nullable=False, default="2:1")
    quality = db.Column(db.String(10), nullable=False, default="2K")

    version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_panorama_pipeline_space_kind", "pipeline_id", "space_id", "kind"),
    )

    def to_dict(self):
        result = self._base_dict()
        result.update({
            "source_render_id": self.source_render_id,
            "ratio": self.ratio,
            "quality": self.quality,
        })
        return result

    def __repr__(self):
        return f"<SpacePanorama #{self.id} space={self.space_id} {self.kind} {self.status}>"


class SpaceFinal360(GenerationUnitMixin, db.Model):
    """Merged 360 composite of a space's two approved panoramas."""

    __tablename__ = "floorplan_space_final360"

    ASSET_TYPE = "final360"
    STEP = 6
    KIND = "M"

    id = db.Column(db.Integer, primary_key=True)
    panorama_a_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_space_panoramas.id", ondelete="SET NULL"),
        nullable=True,
    )
    panorama_b_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_space_panoramas.id", ondelete="SET NULL"),
        nullable=True,
    )

    version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_final360_pipeline_space", "pipeline_id", "space_id"),
    )

    def to_dict(self):
        result = self._base_dict()
        result.update({"panorama_a_id": self.panorama_a_id, "panorama_b_id": self.panorama_b_id})
        return result

    def __repr__(self):
        return f"<SpaceFinal360 #{self.id} space={self.space_id} {self.status}>"


UNIT_MODELS = {
    SpaceRender.ASSET_TYPE: SpaceRender,
    SpacePanorama.ASSET_TYPE: SpacePanorama,
    SpaceFinal360.ASSET_TYPE: SpaceFinal360,
}


class RejectionEvent(db.Model):
    """
    Immutable record of one rejection of a generation unit.

    Polymorphic target: (asset_type, asset_id) identifies the unit, the same
    way sign-off style audit tables point at heterogeneous rows. Rows are
    never updated or deleted; ordering by id gives the unit's full history.
    """

    __tablename__ = "generation_rejection_events"

    id = db.Column(db.Integer, primary_key=True)
    pipeline_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_pipelines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    asset_type = db.Column(db.String(20), nullable=False, comment="render | panorama | final360")
    asset_id = db.Column(db.Integer, nullable=False)

    attempt_number = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=True)
    outcome = db.Column(db.String(20), nullable=False, comment="retry | blocked | edit")
    learning_applied = db.Column(db.Boolean, nullable=False, default=False)
    analysis = db.Column(db.JSON, nullable=True)
    retry_patch = db.Column(db.JSON, nullable=True)
    qa_snapshot = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        db.Index("ix_rejection_asset", "asset_type", "asset_id"),
    )

    def to_history_dict(self):
        """Shape persisted into qa_report.rejection_history and returned to callers."""
        return {
            "attempt": self.attempt_number,
            "notes": self.notes,
            "category": self.category,
            "outcome": self.outcome,
            "learning_applied": self.learning_applied,
            "analysis": self.analysis,
            "retry_patch": self.retry_patch,
            "structured_qa": self.qa_snapshot,
            "rejected_at": self.created_at.isoformat() if self.created_at else None,
        }

    def to_dict(self):
        result = self.to_history_dict()
        result.update({
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "asset_type": self.asset_type,
            "asset_id": self.asset_id,
        })
        return result

    def __repr__(self):
        return f"<RejectionEvent #{self.id} {self.asset_type}/{self.asset_id} attempt={self.attempt_number}>"
