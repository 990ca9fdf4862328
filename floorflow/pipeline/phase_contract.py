"""
Floorplan Pipeline Orchestrator
Phase → action contract (single source of truth).

Every persisted ``FloorplanPipeline.phase`` value appears here exactly once,
with the step it belongs to, the one action type a caller may request while
the workflow sits in that phase, the endpoint that serves the action and a
display label.

The table is built once at import time and exposed read-only
(``types.MappingProxyType`` of frozen dataclasses). Changing it is a deploy,
not a runtime mutation: bump CONTRACT_VERSION and update
ENDPOINT_ALLOWED_PHASES (floorflow.pipeline.endpoint_guard) in the same
change. ``verify_contract_consistency()`` runs in the app factory and refuses
to start when the two tables disagree.

Step layout:
    0  upload, design reference scan, space analysis
    1  top-down 3D
    2  style
    3  detect spaces, camera intent
    4  renders        (generation units: SpaceRender, A/B per space)
    5  panoramas      (generation units: SpacePanorama, A/B per space)
    6  merge          (generation units: SpaceFinal360, one per space)
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

CONTRACT_VERSION = "2026.10.1"

# ── Action types ─────────────────────────────────────────────────────────────

RUN = "RUN"
CONTINUE = "CONTINUE"
APPROVE = "APPROVE"
EDITOR = "EDITOR"
DISABLED = "DISABLED"
NONE = "NONE"

ACTION_TYPES = (RUN, CONTINUE, APPROVE, EDITOR, DISABLED, NONE)

# ── Endpoint names ───────────────────────────────────────────────────────────

EP_DESIGN_REFERENCE_SCAN = "run-design-reference-scan"
EP_SPACE_ANALYSIS = "run-space-analysis"
EP_PIPELINE_STEP = "run-pipeline-step"
EP_DETECT_SPACES = "run-detect-spaces"
EP_CONFIRM_CAMERA_INTENT = "confirm-camera-intent"
EP_CONTINUE = "continue-pipeline-step"
EP_BATCH_RENDERS = "run-batch-space-renders"
EP_BATCH_PANORAMAS = "run-batch-space-panoramas"
EP_BATCH_MERGES = "run-batch-space-merges"
EP_RETRY_STEP = "retry-pipeline-step"

# Endpoints that move the workflow forward; their payload carries from_step/from_phase.
ADVANCING_ENDPOINTS = frozenset({EP_CONTINUE})


@dataclass(frozen=True)
class PhaseRule:
    """One row of the contract."""

    phase: str
    step: int
    action_type: str
    endpoint: str | None
    action_name: str
    label: str

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "step": self.step,
            "allowed_action_type": self.action_type,
            "endpoint": self.endpoint,
            "action_name": self.action_name,
            "display_label": self.label,
        }


_RULES = (
    # Step 0.1: design reference scan (optional)
    PhaseRule("design_reference_pending", 0, RUN, EP_DESIGN_REFERENCE_SCAN,
              "DESIGN_REFERENCE_SCAN_START", "Analyze Design References"),
    PhaseRule("design_reference_running", 0, DISABLED, None,
              "DESIGN_REFERENCE_SCAN_RUNNING", "Analyzing References..."),
    PhaseRule("design_reference_complete", 0, CONTINUE, EP_CONTINUE,
              "DESIGN_REFERENCE_SCAN_CONTINUE", "Continue to Space Analysis"),
    PhaseRule("design_reference_failed", 0, RUN, EP_DESIGN_REFERENCE_SCAN,
              "DESIGN_REFERENCE_SCAN_START", "Retry Design Reference Scan"),

    # Step 0.2: space analysis
    PhaseRule("upload", 0, RUN, EP_SPACE_ANALYSIS,
              "SPACE_ANALYSIS_START", "Analyze Floor Plan"),
    PhaseRule("space_analysis_pending", 0, RUN, EP_SPACE_ANALYSIS,
              "SPACE_ANALYSIS_START", "Start Space Analysis"),
    PhaseRule("space_analysis_running", 0, DISABLED, None,
              "SPACE_ANALYSIS_RUNNING", "Analyzing..."),
    PhaseRule("space_analysis_complete", 0, CONTINUE, EP_CONTINUE,
              "SPACE_ANALYSIS_CONTINUE", "Continue to Top-Down 3D"),

    # Step 1: top-down 3D
    PhaseRule("top_down_3d_pending", 1, RUN, EP_PIPELINE_STEP,
              "TOP_DOWN_3D_START", "Generate Top-Down 3D"),
    PhaseRule("top_down_3d_running", 1, DISABLED, None,
              "TOP_DOWN_3D_RUNNING", "Generating..."),
    PhaseRule("top_down_3d_review", 1, APPROVE, EP_CONTINUE,
              "TOP_DOWN_3D_APPROVE", "Approve Top-Down 3D"),

    # Step 2: style
    PhaseRule("style_pending", 2, RUN, EP_PIPELINE_STEP,
              "STYLE_START", "Apply Style"),
    PhaseRule("style_running", 2, DISABLED, None,
              "STYLE_RUNNING", "Styling..."),
    PhaseRule("style_review", 2, APPROVE, EP_CONTINUE,
              "STYLE_APPROVE", "Approve Style"),

    # Step 3: detect spaces + camera intent
    PhaseRule("detect_spaces_pending", 3, RUN, EP_DETECT_SPACES,
              "DETECT_SPACES_START", "Detect Spaces"),
    PhaseRule("detecting_spaces", 3, DISABLED, None,
              "DETECT_SPACES_RUNNING", "Detecting..."),
    PhaseRule("spaces_detected", 3, CONTINUE, EP_CONTINUE,
              "DETECT_SPACES_CONTINUE", "Continue to Camera Intent"),
    PhaseRule("camera_intent_pending", 3, EDITOR, EP_CONFIRM_CAMERA_INTENT,
              "CAMERA_INTENT_SELECT", "Define Camera Intent"),
    PhaseRule("camera_intent_confirmed", 3, CONTINUE, EP_CONTINUE,
              "CAMERA_INTENT_CONTINUE", "Continue to Renders"),

    # Step 4: renders
    PhaseRule("renders_pending", 4, RUN, EP_BATCH_RENDERS,
              "RENDERS_START", "Start All Renders"),
    PhaseRule("renders_in_progress", 4, DISABLED, None,
              "RENDERS_RUNNING", "Rendering..."),
    PhaseRule("renders_review", 4, APPROVE, EP_CONTINUE,
              "RENDERS_APPROVE", "Review Renders"),

    # Step 5: panoramas
    PhaseRule("panoramas_pending", 5, RUN, EP_BATCH_PANORAMAS,
              "PANORAMAS_START", "Start All Panoramas"),
    PhaseRule("panoramas_in_progress", 5, DISABLED, None,
              "PANORAMAS_RUNNING", "Generating Panoramas..."),
    PhaseRule("panoramas_review", 5, APPROVE, EP_CONTINUE,
              "PANORAMAS_APPROVE", "Review Panoramas"),

    # Step 6: merge
    PhaseRule("merging_pending", 6, RUN, EP_BATCH_MERGES,
              "MERGE_START", "Start Merge"),
    PhaseRule("merging_in_progress", 6, DISABLED, None,
              "MERGE_RUNNING", "Merging..."),
    PhaseRule("merging_review", 6, APPROVE, EP_CONTINUE,
              "MERGE_APPROVE", "Review Final 360s"),

    # Terminal
    PhaseRule("completed", 6, NONE, None,
              "PIPELINE_COMPLETE", "Pipeline Complete"),
    PhaseRule("failed", 0, RUN, EP_RETRY_STEP,
              "PIPELINE_RETRY", "Retry Pipeline"),
)

PHASE_CONTRACT: MappingProxyType = MappingProxyType({r.phase: r for r in _RULES})

PIPELINE_PHASES = frozenset(PHASE_CONTRACT)

TERMINAL_PHASES = frozenset({"completed", "failed"})

# Review/confirmed phase → next phase. Used by the Stage Advancer.
LEGAL_PHASE_TRANSITIONS: MappingProxyType = MappingProxyType({
    "design_reference_complete": "space_analysis_pending",
    "space_analysis_complete": "top_down_3d_pending",
    "top_down_3d_review": "style_pending",
    "style_review": "detect_spaces_pending",
    "spaces_detected": "camera_intent_pending",
    "camera_intent_confirmed": "renders_pending",
    "renders_review": "panoramas_pending",
    "panoramas_review": "merging_pending",
    "merging_review": "completed",
})

# Pending phase → running phase, for endpoints that start a job.
RUNNING_PHASE_FOR: MappingProxyType = MappingProxyType({
    "upload": "space_analysis_running",
    "space_analysis_pending": "space_analysis_running",
    "design_reference_pending": "design_reference_running",
    "design_reference_failed": "design_reference_running",
    "top_down_3d_pending": "top_down_3d_running",
    "style_pending": "style_running",
    "detect_spaces_pending": "detecting_spaces",
    "renders_pending": "renders_in_progress",
    "panoramas_pending": "panoramas_in_progress",
    "merging_pending": "merging_in_progress",
})

# Running phase → phase entered once the job's output has been recorded.
COMPLETED_PHASE_FOR: MappingProxyType = MappingProxyType({
    "design_reference_running": "design_reference_complete",
    "space_analysis_running": "space_analysis_complete",
    "top_down_3d_running": "top_down_3d_review",
    "style_running": "style_review",
    "detecting_spaces": "spaces_detected",
    "renders_in_progress": "renders_review",
    "panoramas_in_progress": "panoramas_review",
    "merging_in_progress": "merging_review",
})

# Step → the phase a failed workflow restarts from.
PENDING_PHASE_FOR_STEP: MappingProxyType = MappingProxyType({
    0: "space_analysis_pending",
    1: "top_down_3d_pending",
    2: "style_pending",
    3: "detect_spaces_pending",
    4: "renders_pending",
    5: "panoramas_pending",
    6: "merging_pending",
})


# ── Helpers ──────────────────────────────────────────────────────────────────


def get_rule(phase: str) -> PhaseRule | None:
    """Return the contract row for a phase, or None for unknown phases."""
    return PHASE_CONTRACT.get(phase)


def get_step_for_phase(phase: str) -> int:
    rule = PHASE_CONTRACT.get(phase)
    return rule.step if rule else 0


def get_endpoint_for_phase(phase: str, action_type: str) -> str | None:
    """Endpoint serving ``action_type`` in ``phase``; None when not permitted."""
    rule = PHASE_CONTRACT.get(phase)
    if rule is None or rule.action_type != action_type:
        return None
    return rule.endpoint


def is_phase_runnable(phase: str) -> bool:
    rule = PHASE_CONTRACT.get(phase)
    return rule is not None and rule.action_type == RUN


def is_phase_running(phase: str) -> bool:
    rule = PHASE_CONTRACT.get(phase)
    return rule is not None and rule.action_type == DISABLED


def is_review_phase(phase: str) -> bool:
    rule = PHASE_CONTRACT.get(phase)
    return rule is not None and rule.action_type == APPROVE


def is_step_complete(phase: str, step_number: int) -> bool:
    return get_step_for_phase(phase) > step_number


def describe_contract() -> dict:
    """Serializable view of the whole contract (served by the API)."""
    return {
        "version": CONTRACT_VERSION,
        "phases": [rule.to_dict() for rule in _RULES],
        "transitions": dict(LEGAL_PHASE_TRANSITIONS),
    }
