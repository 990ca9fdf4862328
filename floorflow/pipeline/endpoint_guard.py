"""
Floorplan Pipeline Orchestrator
Endpoint guard.

Each named endpoint declares the set of persisted phases it may act on. The
guard runs before any business logic, against the phase read from the
database, so a stale client view can never trigger the wrong operation.

``verify_contract_consistency()`` cross-checks this table with the phase
contract; the app factory calls it and refuses to start on a mismatch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType

from floorflow.core.exceptions import ValidationError
from floorflow.pipeline import phase_contract as pc

logger = logging.getLogger(__name__)

# Generation units may be rejected while the step is generating or in review.
EP_REJECT_UNIT = "reject-generation-unit"

ENDPOINT_ALLOWED_PHASES: MappingProxyType = MappingProxyType({
    pc.EP_DESIGN_REFERENCE_SCAN: frozenset({"design_reference_pending", "design_reference_failed"}),
    pc.EP_SPACE_ANALYSIS: frozenset({"upload", "space_analysis_pending"}),
    pc.EP_PIPELINE_STEP: frozenset({"top_down_3d_pending", "style_pending"}),
    pc.EP_DETECT_SPACES: frozenset({"detect_spaces_pending"}),
    pc.EP_CONFIRM_CAMERA_INTENT: frozenset({"camera_intent_pending"}),
    pc.EP_CONTINUE: frozenset({
        "design_reference_complete",
        "space_analysis_complete",
        "top_down_3d_review",
        "style_review",
        "spaces_detected",
        "camera_intent_confirmed",
        "renders_review",
        "panoramas_review",
        "merging_review",
    }),
    pc.EP_BATCH_RENDERS: frozenset({"renders_pending"}),
    pc.EP_BATCH_PANORAMAS: frozenset({"panoramas_pending"}),
    pc.EP_BATCH_MERGES: frozenset({"merging_pending"}),
    pc.EP_RETRY_STEP: frozenset({"failed"}),
    EP_REJECT_UNIT: frozenset({
        "renders_in_progress", "renders_review",
        "panoramas_in_progress", "panoramas_review",
        "merging_in_progress", "merging_review",
    }),
})


@dataclass(frozen=True)
class GuardResult:
    valid: bool
    error: str | None = None

    def to_dict(self) -> dict:
        result = {"valid": self.valid}
        if self.error:
            result["error"] = self.error
        return result


def _format_phases(phases) -> str:
    return "[" + ", ".join(sorted(phases)) + "]"


def validate(endpoint_name: str, persisted_phase: str) -> GuardResult:
    """Check that ``endpoint_name`` may act on a workflow at ``persisted_phase``."""
    allowed = ENDPOINT_ALLOWED_PHASES.get(endpoint_name)
    if allowed is None:
        return GuardResult(
            valid=False,
            error=f"Unknown endpoint: {endpoint_name}. No phase guard is registered for it.",
        )
    if persisted_phase not in allowed:
        return GuardResult(
            valid=False,
            error=(
                f"Phase mismatch: {endpoint_name} handles phases {_format_phases(allowed)}, "
                f'but pipeline is at phase "{persisted_phase}"'
            ),
        )
    return GuardResult(valid=True)


def require(endpoint_name: str, persisted_phase: str) -> None:
    """Raise ValidationError (HTTP 409) when the guard rejects the call."""
    result = validate(endpoint_name, persisted_phase)
    if not result.valid:
        logger.warning("Endpoint guard rejected %s at phase=%s", endpoint_name, persisted_phase)
        raise ValidationError(
            result.error,
            details={
                "endpoint": endpoint_name,
                "phase": persisted_phase,
                "allowed_phases": sorted(ENDPOINT_ALLOWED_PHASES.get(endpoint_name, ())),
            },
            status=409,
        )


def contract_consistency_errors() -> list[str]:
    """Every disagreement between the phase contract and the guard table."""
    errors = []
    for phase, rule in pc.PHASE_CONTRACT.items():
        if rule.endpoint is None:
            continue
        allowed = ENDPOINT_ALLOWED_PHASES.get(rule.endpoint)
        if allowed is None:
            errors.append(f"endpoint {rule.endpoint} (phase {phase}) has no guard entry")
        elif phase not in allowed:
            errors.append(f"phase {phase} routes to {rule.endpoint} but is not in its allowed set")

    for endpoint, phases in ENDPOINT_ALLOWED_PHASES.items():
        for phase in phases:
            if phase not in pc.PHASE_CONTRACT:
                errors.append(f"guard for {endpoint} names unknown phase {phase}")

    for source, target in pc.LEGAL_PHASE_TRANSITIONS.items():
        if source not in pc.PHASE_CONTRACT or target not in pc.PHASE_CONTRACT:
            errors.append(f"transition {source} -> {target} names an unknown phase")
    return errors


def verify_contract_consistency() -> None:
    """Raise RuntimeError when the contract and guard table disagree."""
    errors = contract_consistency_errors()
    if errors:
        raise RuntimeError(
            f"Phase contract {pc.CONTRACT_VERSION} is inconsistent with endpoint guards: "
            + "; ".join(errors)
        )
    logger.debug("Phase contract %s consistent with %d endpoint guards",
                 pc.CONTRACT_VERSION, len(ENDPOINT_ALLOWED_PHASES))
