"""
Floorplan Pipeline Orchestrator
Workflow domain models.

Models:
    - FloorplanPipeline:  one workflow per uploaded floor plan
    - PipelineSpace:      a room / sub-unit detected on the plan
    - PipelineEvent:      append-only lifecycle event feed

Architecture:
    FloorplanPipeline ──1:N──▶ PipelineSpace ──1:N──▶ SpaceRender / SpacePanorama / SpaceFinal360
    FloorplanPipeline ──1:N──▶ PipelineEvent

Lifecycle:
    phase is one of the 30 values declared in floorflow.pipeline.phase_contract.
    Rows are never deleted; a workflow ends in ``completed`` or ``failed``.
"""

from datetime import datetime, timezone

from floorflow.models import db

DEFAULT_ASPECT_RATIO = "16:9"
DEFAULT_QUALITY_TIER = "2K"

ASPECT_RATIOS = {"1:1", "4:3", "3:2", "16:9", "2:1"}
QUALITY_TIERS = {"1K", "2K", "4K"}


class FloorplanPipeline(db.Model):
    """
    One end-to-end run from an uploaded floor plan to approved 360 outputs.

    ``phase`` and ``current_step`` are mutated only by the action endpoints and
    the Stage Advancer. ``step_outputs`` holds validated step-level outputs
    keyed ``"step<N>"`` (see floorflow.pipeline.qa_schema.StepOutput).
    """

    __tablename__ = "floorplan_pipelines"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    project_id = db.Column(db.Integer, nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False, default="")
    floor_plan_upload_id = db.Column(db.String(64), nullable=True)

    current_step = db.Column(db.Integer, nullable=False, default=0)
    phase = db.Column(db.String(40), nullable=False, default="upload", index=True)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    # Per-step configuration
    aspect_ratio = db.Column(db.String(10), nullable=False, default=DEFAULT_ASPECT_RATIO)
    quality_tier = db.Column(db.String(10), nullable=False, default=DEFAULT_QUALITY_TIER)

    step_outputs = db.Column(db.JSON, nullable=False, default=dict)
    last_error = db.Column(db.Text, nullable=True)

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

    spaces = db.relationship(
        "PipelineSpace", backref="pipeline", lazy="dynamic",
        cascade="all, delete-orphan", order_by="PipelineSpace.sort_order",
    )
    events = db.relationship(
        "PipelineEvent", backref="pipeline", lazy="dynamic",
        cascade="all, delete-orphan", order_by="PipelineEvent.id",
    )

    def active_spaces(self):
        """Spaces that participate in render/panorama/merge steps."""
        return (
            self.spaces
            .filter(PipelineSpace.include_in_generation.is_(True))
            .filter(PipelineSpace.is_excluded.is_(False))
            .all()
        )

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "owner_id": self.owner_id,
            "project_id": self.project_id,
            "name": self.name,
            "floor_plan_upload_id": self.floor_plan_upload_id,
            "current_step": self.current_step,
            "phase": self.phase,
            "is_enabled": self.is_enabled,
            "aspect_ratio": self.aspect_ratio,
            "quality_tier": self.quality_tier,
            "step_outputs": self.step_outputs or {},
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_children:
            result["spaces"] = [s.to_dict() for s in self.spaces]
        return result

    def __repr__(self):
        return f"<FloorplanPipeline #{self.id} step={self.current_step} phase={self.phase}>"


class PipelineSpace(db.Model):
    """
    A room on the floor plan.

    Created when space analysis / detection completes. Afterwards only the
    two participation flags change.
    """

    __tablename__ = "floorplan_pipeline_spaces"

    id = db.Column(db.Integer, primary_key=True)
    pipeline_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_pipelines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    space_type = db.Column(db.String(50), nullable=False, default="room")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    include_in_generation = db.Column(db.Boolean, nullable=False, default=True)
    is_excluded = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_active(self):
        return bool(self.include_in_generation) and not self.is_excluded

    def to_dict(self):
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "space_type": self.space_type,
            "sort_order": self.sort_order,
            "include_in_generation": self.include_in_generation,
            "is_excluded": self.is_excluded,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<PipelineSpace #{self.id} {self.name}>"


class PipelineEvent(db.Model):
    """Append-only lifecycle event (retry_started, retry_exhausted, stage_advanced, ...)."""

    __tablename__ = "floorplan_pipeline_events"

    id = db.Column(db.Integer, primary_key=True)
    pipeline_id = db.Column(
        db.Integer,
        db.ForeignKey("floorplan_pipelines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id = db.Column(db.String(64), nullable=True)
    step_number = db.Column(db.Integer, nullable=False, default=0)
    event_type = db.Column(db.String(40), nullable=False)
    message = db.Column(db.Text, nullable=False, default="")
    progress_int = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "step_number": self.step_number,
            "type": self.event_type,
            "message": self.message,
            "progress_int": self.progress_int,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<PipelineEvent #{self.id} {self.event_type}>"
