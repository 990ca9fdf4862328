"""Tests for the QA calibration store and attempt feedback."""

import pytest

from floorflow.core.exceptions import NotFoundError, ValidationError
from floorflow.services import calibration_service as cal


def _feedback(**overrides):
    data = {
        "step_id": 4,
        "attempt_number": 1,
        "image_id": "img-1",
        "qa_decision": "rejected",
        "user_vote": "disagree",
        "user_category": "furniture_scale",
        "qa_reasons": ["Sofa too large"],
    }
    data.update(overrides)
    return data


class TestClassification:
    @pytest.mark.parametrize("ai_decision,vote,expected", [
        ("approved", "agree", "confirmed_correct"),
        ("rejected", "agree", "confirmed_correct"),
        ("rejected", "disagree", "false_reject"),
        ("approved", "disagree", "false_approve"),
    ])
    def test_classify(self, ai_decision, vote, expected):
        assert cal.classify(ai_decision, vote) == expected

    def test_strong_signal_weight(self):
        assert cal.signal_weight("approved", 20) == 2
        assert cal.signal_weight("approved", 40) == 1
        assert cal.signal_weight("rejected", 10) == 1
        assert cal.signal_weight("approved", None) == 1


class TestRecord:
    def test_upsert_accumulates(self):
        cal.record("owner-1", 7, 4, "wrong_room", "rejected", "disagree")
        cal.record("owner-1", 7, 4, "wrong_room", "approved", "agree")
        stat = cal.record("owner-1", 7, 4, "wrong_room", "approved", "disagree", 10)

        assert stat.false_reject_count == 1
        assert stat.confirmed_correct_count == 1
        assert stat.false_approve_count == 2
        stats = cal.list_stats(owner_id="owner-1")
        assert len(stats) == 1
        assert stats[0]["agreement_rate"] == 0.25

    def test_scopes_are_separate(self):
        cal.record("owner-1", 7, 4, "seam_artifact", "approved", "agree")
        cal.record("owner-1", None, 4, "seam_artifact", "approved", "agree")
        cal.record("owner-1", 7, 5, "seam_artifact", "approved", "agree")
        assert len(cal.list_stats(owner_id="owner-1")) == 3
        assert len(cal.list_stats(step_id=4)) == 2

    def test_invalid_vote(self):
        with pytest.raises(ValidationError):
            cal.record("owner-1", 7, 4, "other", "approved", "maybe")
        with pytest.raises(ValidationError):
            cal.record("owner-1", 7, 4, "other", "passed", "agree")
        with pytest.raises(ValidationError):
            cal.record("owner-1", 7, 4, "  ", "approved", "agree")


class TestAttemptFeedback:
    def test_store_creates_feedback_and_stat(self, pipeline):
        result = cal.store_attempt_feedback(pipeline.id, _feedback())
        assert result["created"] is True
        assert result["feedback"]["user_vote"] == "disagree"
        assert result["calibration"]["false_reject_count"] == 1
        assert result["calibration"]["project_id"] == pipeline.project_id

    def test_same_attempt_is_updated(self, pipeline):
        cal.store_attempt_feedback(pipeline.id, _feedback())
        result = cal.store_attempt_feedback(pipeline.id, _feedback(user_vote="agree"))
        assert result["created"] is False
        assert len(cal.list_attempt_feedback(pipeline.id)) == 1
        assert result["feedback"]["user_vote"] == "agree"
        # counters never go down
        assert result["calibration"]["false_reject_count"] == 1
        assert result["calibration"]["confirmed_correct_count"] == 1

    def test_comment_truncated(self, pipeline):
        result = cal.store_attempt_feedback(pipeline.id, _feedback(user_comment_short="x" * 500))
        assert len(result["feedback"]["user_comment_short"]) == 200

    def test_category_defaults_to_other(self, pipeline):
        result = cal.store_attempt_feedback(pipeline.id, _feedback(user_category=None))
        assert result["feedback"]["user_category"] == "other"

    def test_validation_errors_are_collected(self, pipeline):
        with pytest.raises(ValidationError) as exc:
            cal.store_attempt_feedback(pipeline.id, _feedback(
                step_id="4", image_id="", user_vote="meh", user_score=101,
            ))
        assert set(exc.value.details) == {"step_id", "image_id", "user_vote", "user_score"}

    def test_unknown_pipeline(self):
        with pytest.raises(NotFoundError):
            cal.store_attempt_feedback(999, _feedback())

    def test_filter_by_step(self, pipeline):
        cal.store_attempt_feedback(pipeline.id, _feedback())
        cal.store_attempt_feedback(pipeline.id, _feedback(step_id=5, image_id="img-2"))
        assert [f["step_id"] for f in cal.list_attempt_feedback(pipeline.id, step_id=5)] == [5]
