"""floorplan_pipeline_initial

Creates the orchestrator tables:
  - floorplan_pipelines: one workflow per uploaded floor plan
  - floorplan_pipeline_spaces: rooms detected on the plan
  - floorplan_pipeline_events: append-only lifecycle feed
  - floorplan_space_renders: step 4 units (kinds A/B)
  - floorplan_space_panoramas: step 5 units
  - floorplan_space_final360: step 6 units
  - generation_rejection_events: immutable rejection history
  - qa_attempt_feedback: human votes per attempt image
  - qa_calibration_stats: AI/human agreement counters

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7f3a9c1e2b40
Revises:
Create Date: 2026-10-19 09:12:44.512308
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7f3a9c1e2b40'
down_revision = None
branch_labels = None
depends_on = None


def _unit_columns():
    """Columns shared by the three generation unit tables."""
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pipeline_id", sa.Integer(), nullable=False),
        sa.Column("space_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=10), nullable=False),
        sa.Column(
            "status", sa.String(length=30), nullable=False, server_default="pending",
            comment="pending | planned | running | retrying | blocked_for_human | failed | completed | editing",
        ),
        sa.Column("job_type", sa.String(length=20), nullable=False, server_default="generate"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("qa_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("pre_rejection_qa_status", sa.String(length=20), nullable=True),
        sa.Column("structured_qa_result", sa.JSON(), nullable=True),
        sa.Column("qa_report", sa.JSON(), nullable=False),
        sa.Column("prompt_text", sa.Text(), nullable=True),
        sa.Column("output_upload_id", sa.String(length=64), nullable=True),
        sa.Column("source_image_upload_id", sa.String(length=64), nullable=True),
        sa.Column("user_correction_text", sa.Text(), nullable=True),
        sa.Column("correction_mode", sa.String(length=20), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "version", sa.Integer(), nullable=False, server_default="1",
            comment="Optimistic concurrency counter (SQLAlchemy version_id_col).",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["pipeline_id"], ["floorplan_pipelines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["space_id"], ["floorplan_pipeline_spaces.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── FloorplanPipeline ─────────────────────────────────────────────────
    if "floorplan_pipelines" not in existing:
        op.create_table(
            "floorplan_pipelines",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("floor_plan_upload_id", sa.String(length=64), nullable=True),
            sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("phase", sa.String(length=40), nullable=False, server_default="upload"),
            sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("aspect_ratio", sa.String(length=10), nullable=False, server_default="16:9"),
            sa.Column("quality_tier", sa.String(length=10), nullable=False, server_default="2K"),
            sa.Column("step_outputs", sa.JSON(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_floorplan_pipelines_owner_id", "floorplan_pipelines", ["owner_id"])
        op.create_index("ix_floorplan_pipelines_project_id", "floorplan_pipelines", ["project_id"])
        op.create_index("ix_floorplan_pipelines_phase", "floorplan_pipelines", ["phase"])

    # ── PipelineSpace ─────────────────────────────────────────────────────
    if "floorplan_pipeline_spaces" not in existing:
        op.create_table(
            "floorplan_pipeline_spaces",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("space_type", sa.String(length=50), nullable=False, server_default="room"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("include_in_generation", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_excluded", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["pipeline_id"], ["floorplan_pipelines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_floorplan_pipeline_spaces_pipeline_id", "floorplan_pipeline_spaces", ["pipeline_id"])

    # ── PipelineEvent ─────────────────────────────────────────────────────
    if "floorplan_pipeline_events" not in existing:
        op.create_table(
            "floorplan_pipeline_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=True),
            sa.Column("step_number", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("progress_int", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["pipeline_id"], ["floorplan_pipelines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_floorplan_pipeline_events_pipeline_id", "floorplan_pipeline_events", ["pipeline_id"])

    # ── SpaceRender ───────────────────────────────────────────────────────
    if "floorplan_space_renders" not in existing:
        op.create_table(
            "floorplan_space_renders",
            *_unit_columns(),
            sa.Column("ratio", sa.String(length=10), nullable=False, server_default="16:9"),
            sa.Column("quality", sa.String(length=10), nullable=False, server_default="2K"),
            sa.Column("camera_label", sa.String(length=120), nullable=True),
        )
        op.create_index("ix_render_pipeline_space_kind", "floorplan_space_renders",
                        ["pipeline_id", "space_id", "kind"])

    # ── SpacePanorama ─────────────────────────────────────────────────────
    if "floorplan_space_panoramas" not in existing:
        op.create_table(
            "floorplan_space_panoramas",
            *_unit_columns(),
            sa.Column("source_render_id", sa.Integer(), nullable=True),
            sa.Column("ratio", sa.String(length=10), nullable=False, server_default="2:1"),
            sa.Column("quality", sa.String(length=10), nullable=False, server_default="2K"),
            sa.ForeignKeyConstraint(["source_render_id"], ["floorplan_space_renders.id"], ondelete="SET NULL"),
        )
        op.create_index("ix_panorama_pipeline_space_kind", "floorplan_space_panoramas",
                        ["pipeline_id", "space_id", "kind"])

    # ── SpaceFinal360 ─────────────────────────────────────────────────────
    if "floorplan_space_final360" not in existing:
        op.create_table(
            "floorplan_space_final360",
            *_unit_columns(),
            sa.Column("panorama_a_id", sa.Integer(), nullable=True),
            sa.Column("panorama_b_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["panorama_a_id"], ["floorplan_space_panoramas.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["panorama_b_id"], ["floorplan_space_panoramas.id"], ondelete="SET NULL"),
        )
        op.create_index("ix_final360_pipeline_space", "floorplan_space_final360", ["pipeline_id", "space_id"])

    # ── RejectionEvent ────────────────────────────────────────────────────
    if "generation_rejection_events" not in existing:
        op.create_table(
            "generation_rejection_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.Integer(), nullable=False),
            sa.Column("asset_type", sa.String(length=20), nullable=False,
                      comment="render | panorama | final360"),
            sa.Column("asset_id", sa.Integer(), nullable=False),
            sa.Column("attempt_number", sa.Integer(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=50), nullable=True),
            sa.Column("outcome", sa.String(length=20), nullable=False, comment="retry | blocked | edit"),
            sa.Column("learning_applied", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("analysis", sa.JSON(), nullable=True),
            sa.Column("retry_patch", sa.JSON(), nullable=True),
            sa.Column("qa_snapshot", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["pipeline_id"], ["floorplan_pipelines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_generation_rejection_events_pipeline_id", "generation_rejection_events",
                        ["pipeline_id"])
        op.create_index("ix_rejection_asset", "generation_rejection_events", ["asset_type", "asset_id"])

    # ── QAAttemptFeedback ─────────────────────────────────────────────────
    if "qa_attempt_feedback" not in existing:
        op.create_table(
            "qa_attempt_feedback",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("step_id", sa.Integer(), nullable=False),
            sa.Column("attempt_number", sa.Integer(), nullable=False),
            sa.Column("image_id", sa.String(length=64), nullable=False),
            sa.Column("qa_decision", sa.String(length=20), nullable=False, comment="approved | rejected"),
            sa.Column("qa_reasons", sa.JSON(), nullable=False),
            sa.Column("user_vote", sa.String(length=20), nullable=False, comment="agree | disagree"),
            sa.Column("user_category", sa.String(length=50), nullable=False, server_default="other"),
            sa.Column("user_comment_short", sa.String(length=200), nullable=True),
            sa.Column("user_score", sa.Integer(), nullable=True),
            sa.Column("context_snapshot", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["pipeline_id"], ["floorplan_pipelines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("pipeline_id", "step_id", "attempt_number", "image_id",
                                name="uq_qa_feedback_attempt_image"),
        )
        op.create_index("ix_qa_attempt_feedback_pipeline_id", "qa_attempt_feedback", ["pipeline_id"])

    # ── QACalibrationStat ─────────────────────────────────────────────────
    if "qa_calibration_stats" not in existing:
        op.create_table(
            "qa_calibration_stats",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("step_id", sa.Integer(), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False),
            sa.Column("false_reject_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("false_approve_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("confirmed_correct_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("owner_id", "project_id", "step_id", "category", name="uq_calibration_scope"),
        )


def downgrade():
    for table in (
        "qa_calibration_stats",
        "qa_attempt_feedback",
        "generation_rejection_events",
        "floorplan_space_final360",
        "floorplan_space_panoramas",
        "floorplan_space_renders",
        "floorplan_pipeline_events",
        "floorplan_pipeline_spaces",
        "floorplan_pipelines",
    ):
        op.drop_table(table)
