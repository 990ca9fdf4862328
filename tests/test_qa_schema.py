"""Tests for the versioned structured-QA and step-output schemas."""

import pytest

from floorflow.core.exceptions import ValidationError
from floorflow.pipeline.qa_schema import parse_quality_report, parse_step_output, structured_status


class TestQualityReport:
    def test_valid_failure(self, qa_fail):
        report = parse_quality_report(qa_fail)
        assert not report.passed
        assert report.issues[0].type == "wrong_room"
        assert report.detected_room_type == "bathroom"
        stored = report.to_dict()
        assert stored["status"] == "FAIL"
        assert stored["issues"][1] == {"type": "seam", "severity": "minor",
                                       "description": "Faint seam on the left"}
        assert stored["reasons"] == ["Bathroom fixtures present"]

    def test_status_is_normalised(self, qa_pass):
        qa_pass["status"] = "pass"
        assert parse_quality_report(qa_pass).passed

    def test_unsupported_version(self, qa_pass):
        qa_pass["schema_version"] = "9"
        with pytest.raises(ValidationError) as exc:
            parse_quality_report(qa_pass)
        assert "schema_version" in exc.value.details

    def test_fail_requires_reason(self, qa_fail):
        qa_fail["reasons"] = []
        with pytest.raises(ValidationError) as exc:
            parse_quality_report(qa_fail)
        assert exc.value.details["reasons"] == "at least one reason is required for FAIL"

    def test_collects_every_bad_field(self):
        with pytest.raises(ValidationError) as exc:
            parse_quality_report({
                "schema_version": "1",
                "status": "MAYBE",
                "severity": "apocalyptic",
                "confidence_score": 1.7,
                "issues": [{"type": "", "severity": "huge"}],
            })
        details = exc.value.details
        for key in ("status", "severity", "confidence_score", "reason_short",
                    "issues[0].type", "issues[0].severity"):
            assert key in details, key

    def test_boolean_is_not_a_confidence(self, qa_pass):
        qa_pass["confidence_score"] = True
        with pytest.raises(ValidationError):
            parse_quality_report(qa_pass)

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            parse_quality_report(["PASS"])

    def test_unknown_retry_suggestion_type(self, qa_fail):
        qa_fail["retry_suggestion"] = {"type": "pray"}
        with pytest.raises(ValidationError) as exc:
            parse_quality_report(qa_fail)
        assert "retry_suggestion.type" in exc.value.details


class TestStepOutput:
    def test_valid(self, qa_pass):
        output = parse_step_output({
            "schema_version": "1", "step": 1, "output_upload_id": "img-1",
            "qa_status": "passed", "quality_report": qa_pass, "metadata": {"model": "x"},
        })
        stored = output.to_dict()
        assert stored["step"] == 1
        assert stored["quality_report"]["status"] == "PASS"
        assert stored["metadata"] == {"model": "x"}

    def test_unit_steps_are_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_step_output({"schema_version": "1", "step": 4, "output_upload_id": "img"})
        assert "step" in exc.value.details

    def test_nested_report_errors_are_prefixed(self):
        with pytest.raises(ValidationError) as exc:
            parse_step_output({
                "schema_version": "1", "step": 2, "output_upload_id": "img",
                "quality_report": {"schema_version": "1", "status": "PASS"},
            })
        assert "quality_report.reason_short" in exc.value.details


def test_structured_status():
    assert structured_status(None) == ""
    assert structured_status({"status": "PASS"}) == "pass"
