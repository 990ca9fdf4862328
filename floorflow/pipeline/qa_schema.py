"""
Floorplan Pipeline Orchestrator
Versioned schemas for data that crosses the service boundary.

Two payloads are accepted from collaborators and persisted as JSON:

    QualityReport  ->  <unit>.structured_qa_result
    StepOutput     ->  FloorplanPipeline.step_outputs["step<N>"]

Both are tagged with ``schema_version``. Payloads are parsed into frozen
dataclasses first and validated second; anything that fails raises
ValidationError with one entry per offending field, and nothing is written.
Persisted JSON is always produced by ``to_dict()`` of a validated object.

Usage:
    report = parse_quality_report(request_json["structured_qa_result"])
    unit.structured_qa_result = report.to_dict()
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from floorflow.core.exceptions import ValidationError

QUALITY_REPORT_VERSIONS = frozenset({"1"})
STEP_OUTPUT_VERSIONS = frozenset({"1"})

REPORT_STATUSES = frozenset({"PASS", "FAIL"})
REPORT_SEVERITIES = frozenset({"low", "medium", "high", "critical"})
ISSUE_SEVERITIES = frozenset({"critical", "major", "minor", "info"})
SUGGESTION_TYPES = frozenset({
    "prompt_delta", "settings_delta", "seed_change", "input_change", "manual_review",
})

# Steps whose output is a single image rather than per-space units.
STEP_OUTPUT_STEPS = frozenset({0, 1, 2, 3})


@dataclass(frozen=True)
class QualityIssue:
    type: str
    severity: str
    description: str = ""


@dataclass(frozen=True)
class QualityReport:
    """Automated quality judgement of one generated image."""

    schema_version: str
    status: str
    reason_short: str
    severity: str
    confidence_score: float
    reasons: tuple = ()
    issues: tuple[QualityIssue, ...] = ()
    room_type_violation: bool = False
    structural_violation: bool = False
    detected_room_type: str | None = None
    retry_suggestion: dict = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == "PASS"

    def to_dict(self) -> dict:
        result = asdict(self)
        result["reasons"] = list(self.reasons)
        result["issues"] = [asdict(i) for i in self.issues]
        return result


@dataclass(frozen=True)
class StepOutput:
    """Step-level output reported by the Generator for steps 0-3."""

    schema_version: str
    step: int
    output_upload_id: str
    qa_status: str = "pending"
    quality_report: QualityReport | None = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "step": self.step,
            "output_upload_id": self.output_upload_id,
            "qa_status": self.qa_status,
            "quality_report": self.quality_report.to_dict() if self.quality_report else None,
            "metadata": dict(self.metadata),
        }


# ── Parsing ──────────────────────────────────────────────────────────────────


def _require_mapping(data: Any, label: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError(f"{label} must be a JSON object", details={label: "expected object"})
    return data


def _check_version(data: dict, supported, label: str, errors: dict) -> str:
    version = str(data.get("schema_version") or "")
    if not version:
        errors["schema_version"] = "required"
    elif version not in supported:
        errors["schema_version"] = f"unsupported {label} version {version!r}; expected one of {sorted(supported)}"
    return version


def _parse_issues(raw, errors: dict) -> tuple[QualityIssue, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        errors["issues"] = "must be a list"
        return ()
    issues = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            errors[f"issues[{idx}]"] = "must be an object"
            continue
        issue_type = str(item.get("type") or "").strip()
        severity = str(item.get("severity") or "").strip().lower()
        if not issue_type:
            errors[f"issues[{idx}].type"] = "required"
        if severity not in ISSUE_SEVERITIES:
            errors[f"issues[{idx}].severity"] = f"must be one of {sorted(ISSUE_SEVERITIES)}"
        issues.append(QualityIssue(issue_type, severity, str(item.get("description") or "")))
    return tuple(issues)


def parse_quality_report(data: Any) -> QualityReport:
    """Parse and validate a structured QA result."""
    data = _require_mapping(data, "structured_qa_result")
    errors: dict[str, str] = {}

    version = _check_version(data, QUALITY_REPORT_VERSIONS, "quality report", errors)

    status = str(data.get("status") or "").upper()
    if status not in REPORT_STATUSES:
        errors["status"] = "must be 'PASS' or 'FAIL'"

    reason_short = data.get("reason_short")
    if not isinstance(reason_short, str) or not reason_short.strip():
        errors["reason_short"] = "must be a non-empty string"
        reason_short = ""

    reasons = data.get("reasons", [])
    if not isinstance(reasons, list):
        errors["reasons"] = "must be a list"
        reasons = []
    elif status == "FAIL" and not reasons:
        errors["reasons"] = "at least one reason is required for FAIL"

    severity = str(data.get("severity") or "").lower()
    if severity not in REPORT_SEVERITIES:
        errors["severity"] = f"must be one of {sorted(REPORT_SEVERITIES)}"

    confidence = data.get("confidence_score")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
        errors["confidence_score"] = "must be a number between 0 and 1"
        confidence = 0.0

    suggestion = data.get("retry_suggestion") or {}
    if not isinstance(suggestion, dict):
        errors["retry_suggestion"] = "must be an object"
        suggestion = {}
    elif suggestion and suggestion.get("type") not in SUGGESTION_TYPES:
        errors["retry_suggestion.type"] = f"must be one of {sorted(SUGGESTION_TYPES)}"

    issues = _parse_issues(data.get("issues"), errors)

    detected = data.get("detected_room_type")
    if detected is not None and not isinstance(detected, str):
        errors["detected_room_type"] = "must be a string"

    if errors:
        raise ValidationError("Invalid structured QA result", details=errors)

    return QualityReport(
        schema_version=version,
        status=status,
        reason_short=reason_short.strip(),
        severity=severity,
        confidence_score=float(confidence),
        reasons=tuple(reasons),
        issues=issues,
        room_type_violation=bool(data.get("room_type_violation")),
        structural_violation=bool(data.get("structural_violation")),
        detected_room_type=detected or None,
        retry_suggestion=dict(suggestion),
    )


def parse_step_output(data: Any) -> StepOutput:
    """Parse and validate a step-level output report."""
    data = _require_mapping(data, "step_output")
    errors: dict[str, str] = {}

    version = _check_version(data, STEP_OUTPUT_VERSIONS, "step output", errors)

    step = data.get("step")
    if isinstance(step, bool) or not isinstance(step, int) or step not in STEP_OUTPUT_STEPS:
        errors["step"] = f"must be one of {sorted(STEP_OUTPUT_STEPS)}"

    upload_id = data.get("output_upload_id")
    if not isinstance(upload_id, str) or not upload_id.strip():
        errors["output_upload_id"] = "must be a non-empty string"
        upload_id = ""

    qa_status = str(data.get("qa_status") or "pending")
    if qa_status not in {"pending", "passed", "failed"}:
        errors["qa_status"] = "must be pending, passed or failed"

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        errors["metadata"] = "must be an object"
        metadata = {}

    report = None
    if data.get("quality_report") is not None:
        try:
            report = parse_quality_report(data["quality_report"])
        except ValidationError as exc:
            for key, msg in exc.details.items():
                errors[f"quality_report.{key}"] = msg

    if errors:
        raise ValidationError("Invalid step output", details=errors)

    return StepOutput(
        schema_version=version,
        step=step,
        output_upload_id=upload_id.strip(),
        qa_status=qa_status,
        quality_report=report,
        metadata=dict(metadata),
    )


def structured_status(structured_qa_result: dict | None) -> str:
    """Lower-cased status of a persisted structured QA result ('' when absent)."""
    if not structured_qa_result:
        return ""
    return str(structured_qa_result.get("status") or "").lower()
