"""
Floorplan Pipeline Orchestrator
Unified action router.

``route()`` is the only place that turns (phase, requested action type) into
an endpoint name. It is pure: no database access, no logging side effects
beyond debug output, so it can be tested over the full phase × action-type
cross product.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from floorflow.pipeline.phase_contract import ADVANCING_ENDPOINTS, ACTION_TYPES, PHASE_CONTRACT


@dataclass(frozen=True)
class RouteResult:
    endpoint: str | None
    action_name: str
    payload: dict = field(default_factory=dict)
    display_label: str = ""
    valid: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        result = {
            "endpoint": self.endpoint,
            "action_name": self.action_name,
            "payload": dict(self.payload),
            "display_label": self.display_label,
            "valid": self.valid,
        }
        if self.error:
            result["error"] = self.error
        return result


def route(phase: str, requested_action_type: str, workflow_id, extra_params: dict | None = None) -> RouteResult:
    """Route an action requested while the workflow shows ``phase``.

    Returns ``valid=False`` with a descriptive error when the phase is unknown
    or the requested action type is not the one the contract allows there.
    Payloads for advancing endpoints carry ``from_step`` and ``from_phase`` so
    the receiving endpoint can re-check them against persisted state.
    """
    rule = PHASE_CONTRACT.get(phase)
    if rule is None:
        return RouteResult(
            endpoint=None,
            action_name="UNKNOWN",
            payload={"pipeline_id": workflow_id},
            display_label="Unknown Phase",
            error=f"Unknown phase: {phase}",
        )

    if requested_action_type != rule.action_type:
        if requested_action_type not in ACTION_TYPES:
            detail = f"unknown action type {requested_action_type!r}"
        else:
            detail = f"phase allows {rule.action_type}"
        return RouteResult(
            endpoint=None,
            action_name=rule.action_name,
            payload={"pipeline_id": workflow_id},
            display_label=rule.label,
            error=(
                f'Phase "{phase}" does not support {requested_action_type} action '
                f"({detail})"
            ),
        )

    payload = dict(extra_params or {})
    payload["pipeline_id"] = workflow_id
    if rule.endpoint in ADVANCING_ENDPOINTS:
        payload["from_step"] = rule.step
        payload["from_phase"] = phase

    return RouteResult(
        endpoint=rule.endpoint,
        action_name=rule.action_name,
        payload=payload,
        display_label=rule.label,
        valid=True,
    )


def create_action_context(phase: str, endpoint: str | None, action_name: str) -> dict:
    """Correlation record for one click: logged on dispatch and on completion."""
    return {
        "action_id": uuid.uuid4().hex,
        "action_name": action_name,
        "phase_at_click": phase,
        "endpoint_expected": endpoint,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
