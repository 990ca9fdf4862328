"""Unit tests for floorflow.services.reject_retry_service.

Test strategy
-------------
All Generator traffic is mocked via patch.object on the module-level
``generator_client`` singleton. The analysis and prompt-improvement
collaborators are left unconfigured (they answer None) unless a test
patches them to exercise the learning loop.

Coverage
--------
    1. five rejects retry with attempts 1..5, the sixth blocks without dispatch
    2. blocked unit carries a six-entry rejection history
    3. approved output + notes takes the edit path and keeps the output
    4. dispatch failure leaves the unit failed with the attempt spent
    5. analysis + improved prompt flow into the retry patch and dispatch
    6. post-approval reject without notes is refused
    7. reject outside the review/in-progress phases is refused
    8. concurrent modification surfaces as ConflictError
    9. panoramas and final 360s follow the same budget, edit and failure paths
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select, text

import floorflow.services.reject_retry_service as rr
from floorflow.core.exceptions import ConflictError, GenerationDispatchError, ValidationError
from floorflow.integrations.generation_gateway import RejectionAnalysis
from floorflow.models import db
from floorflow.models.generation import MAX_RETRY_ATTEMPTS, UNIT_MODELS, RejectionEvent, SpaceRender
from floorflow.models.pipeline import PipelineEvent


@pytest.fixture()
def review_pipeline(pipeline_factory):
    return pipeline_factory("renders_review", 4)


def _make_render(pipeline, *, qa_status="failed", output="out-1", structured=None, **extra):
    space = pipeline.active_spaces()[0]
    unit = SpaceRender(
        pipeline_id=pipeline.id, space_id=space.id, owner_id=pipeline.owner_id,
        kind="A", status="completed", qa_status=qa_status, output_upload_id=output,
        prompt_text="eye-level render of the living room", structured_qa_result=structured,
        **extra,
    )
    db.session.add(unit)
    db.session.commit()
    return unit


# ── Retry budget ─────────────────────────────────────────────────────────────


class TestRetryBudget:
    def test_attempts_progress_then_block(self, review_pipeline):
        unit = _make_render(review_pipeline)
        with patch.object(rr, "generator_client") as gen:
            for expected in range(1, MAX_RETRY_ATTEMPTS + 1):
                result = rr.reject("render", unit.id, "Sofa is floating")
                assert result["retry_triggered"] is True
                assert result["attempt_count"] == expected
                assert unit.attempt_count == expected
                assert unit.status == "retrying"
                assert unit.output_upload_id is None
            assert gen.dispatch_unit.call_count == MAX_RETRY_ATTEMPTS

            blocked = rr.reject("render", unit.id, "Still floating")
            assert gen.dispatch_unit.call_count == MAX_RETRY_ATTEMPTS

        assert blocked["blocked_for_human"] is True
        assert blocked["retry_triggered"] is False
        assert blocked["outcome"] == "blocked"
        assert unit.status == "blocked_for_human"
        assert unit.attempt_count == MAX_RETRY_ATTEMPTS

    def test_blocked_history_has_six_entries(self, review_pipeline):
        unit = _make_render(review_pipeline)
        with patch.object(rr, "generator_client"):
            for _ in range(MAX_RETRY_ATTEMPTS + 1):
                rr.reject("render", unit.id, "Wrong flooring", "flooring_mismatch")

        history = unit.qa_report["rejection_history"]
        assert len(history) == 6
        assert [h["attempt"] for h in history] == [0, 1, 2, 3, 4, 5]
        assert [h["outcome"] for h in history] == ["retry"] * 5 + ["blocked"]
        assert unit.qa_report["blocked_reason"] == "Max retry attempts reached"
        assert unit.qa_report["all_rejection_reasons"] == ["Wrong flooring"] * 6
        assert rr.rejection_history("render", unit.id) == history

    def test_dispatch_payload(self, review_pipeline):
        unit = _make_render(review_pipeline)
        with patch.object(rr, "generator_client") as gen:
            rr.reject("render", unit.id, "Too dark")
        kwargs = gen.dispatch_unit.call_args.kwargs
        assert kwargs["is_retry"] is True
        assert kwargs["attempt_number"] == 1
        assert kwargs["retry_patch"]["new_seed"] >= 0
        assert kwargs["improved_prompt"] == "eye-level render of the living room"

    def test_retry_clears_approval(self, review_pipeline):
        unit = _make_render(review_pipeline, locked_approved=True)
        with patch.object(rr, "generator_client"):
            rr.reject("render", unit.id, "")
        assert unit.locked_approved is False
        event = db.session.execute(select(RejectionEvent)).scalar_one()
        assert event.notes is None


# ── Edit path ────────────────────────────────────────────────────────────────


class TestEditPath:
    def test_ai_approved_output_is_edited(self, review_pipeline):
        unit = _make_render(review_pipeline, qa_status="passed")
        with patch.object(rr, "generator_client") as gen:
            result = rr.reject("render", unit.id, "Remove the extra chair")

        assert result["inpaint_triggered"] is True
        gen.dispatch_edit.assert_called_once_with(unit, "Remove the extra chair")
        gen.dispatch_unit.assert_not_called()
        assert unit.output_upload_id == "out-1"
        assert unit.source_image_upload_id == "out-1"
        assert unit.attempt_count == 0
        assert unit.status == "editing"
        assert unit.job_type == "edit_inpaint"
        assert unit.pre_rejection_qa_status == "passed"

    def test_structured_pass_counts_as_approved(self, review_pipeline):
        unit = _make_render(review_pipeline, qa_status="pending", structured={"status": "PASS"})
        with patch.object(rr, "generator_client") as gen:
            result = rr.reject("render", unit.id, "Lamp is too big")
        assert result["outcome"] == "edit"
        gen.dispatch_edit.assert_called_once()

    def test_approved_without_notes_retries(self, review_pipeline):
        unit = _make_render(review_pipeline, qa_status="passed")
        with patch.object(rr, "generator_client") as gen:
            result = rr.reject("render", unit.id)
        assert result["outcome"] == "retry"
        gen.dispatch_edit.assert_not_called()

    def test_post_approval_without_notes(self, review_pipeline):
        unit = _make_render(review_pipeline, qa_status="approved", locked_approved=True)
        with patch.object(rr, "generator_client") as gen:
            with pytest.raises(ValidationError) as exc:
                rr.reject("render", unit.id, "   ", is_post_approval_reject=True)
            gen.dispatch_edit.assert_not_called()
        assert exc.value.status == 422
        assert unit.locked_approved is True


# ── Failure handling ─────────────────────────────────────────────────────────


class TestFailures:
    def test_dispatch_failure_marks_unit_failed(self, review_pipeline):
        unit = _make_render(review_pipeline)
        with patch.object(rr, "generator_client") as gen:
            gen.dispatch_unit.side_effect = GenerationDispatchError("Generator rejected job: HTTP 503")
            with pytest.raises(GenerationDispatchError):
                rr.reject("render", unit.id, "Wrong room")

        assert unit.status == "failed"
        assert unit.attempt_count == 1
        assert "HTTP 503" in unit.qa_report["retry_error"]
        events = db.session.execute(
            select(PipelineEvent.event_type).where(PipelineEvent.pipeline_id == review_pipeline.id)
        ).scalars().all()
        assert "generation_failed" in events

    def test_guard_rejects_wrong_phase(self, pipeline_factory):
        p = pipeline_factory("style_review", 2)
        unit = _make_render(p)
        with pytest.raises(ValidationError) as exc:
            rr.reject("render", unit.id, "nope")
        assert exc.value.status == 409
        assert unit.attempt_count == 0

    def test_unknown_asset_type(self):
        with pytest.raises(ValidationError):
            rr.reject("hologram", 1, "x")

    def test_concurrent_modification(self, review_pipeline):
        unit = _make_render(review_pipeline)
        db.session.execute(
            text("UPDATE floorplan_space_renders SET version = version + 1 WHERE id = :id"),
            {"id": unit.id},
        )
        unit.status = "retrying"
        with pytest.raises(ConflictError):
            rr.commit_unit(unit)


# ── Learning loop ────────────────────────────────────────────────────────────


class TestLearningLoop:
    def test_analysis_and_improved_prompt(self, review_pipeline, qa_fail):
        unit = _make_render(review_pipeline, structured=qa_fail)
        analysis = RejectionAnalysis(
            failure_categories=["wrong room"],
            root_cause_summary="Prompt never named the room type",
            constraints_to_add=["Render a kitchen with counters and cabinets"],
            confidence=0.8,
        )
        with patch.object(rr, "generator_client") as gen, \
                patch.object(rr.rejection_analysis_client, "analyze", return_value=analysis) as analyze, \
                patch.object(rr.prompt_improvement_client, "improve", return_value="kitchen render, counters") as improve:
            result = rr.reject("render", unit.id, "This is a bathroom", "wrong_room")

        analyze.assert_called_once()
        assert analyze.call_args.kwargs["reject_reason"] == "This is a bathroom"
        assert improve.call_args.kwargs["analysis"] is analysis
        assert result["learning_applied"] is True
        assert result["improved_prompt_used"] is True
        assert unit.prompt_text == "kitchen render, counters"
        assert gen.dispatch_unit.call_args.kwargs["improved_prompt"] == "kitchen render, counters"
        entries = result["retry_patch"]["category_patches"]
        assert entries[0]["category"] == "wrong_room"
        assert {"category": "learned_constraint",
                "patch_text": "Render a kitchen with counters and cabinets"} in entries
        assert unit.qa_report["previous_rejection"]["analysis"]["root_cause_summary"] == \
            "Prompt never named the room type"

    def test_unconfigured_collaborators_degrade(self, review_pipeline):
        unit = _make_render(review_pipeline)
        with patch.object(rr, "generator_client") as gen:
            result = rr.reject("render", unit.id, "Walls are crooked")
        assert result["retry_triggered"] is True
        assert result["improved_prompt_used"] is False
        assert unit.qa_report["previous_rejection"]["analysis"] is None
        gen.dispatch_unit.assert_called_once()


# ── Every unit kind shares the reject/retry lifecycle ────────────────────────


UNIT_KINDS = [
    ("render", "renders_review", 4, "A"),
    ("panorama", "panoramas_review", 5, "B"),
    ("final360", "merging_review", 6, "M"),
]


@pytest.fixture(params=UNIT_KINDS, ids=[k[0] for k in UNIT_KINDS])
def any_unit(request, pipeline_factory):
    """(asset_type, unit) with the workflow parked at the unit's review phase."""
    asset_type, phase, step, kind = request.param
    pipeline = pipeline_factory(phase, step)
    space = pipeline.active_spaces()[0]
    unit = UNIT_MODELS[asset_type](
        pipeline_id=pipeline.id, space_id=space.id, owner_id=pipeline.owner_id,
        kind=kind, status="completed", qa_status="failed", output_upload_id="out-1",
        prompt_text=f"{asset_type} of the living room",
    )
    db.session.add(unit)
    db.session.commit()
    return asset_type, unit


class TestAllUnitKinds:
    def test_budget_then_blocked_with_history(self, any_unit):
        asset_type, unit = any_unit
        with patch.object(rr, "generator_client") as gen:
            for expected in range(1, MAX_RETRY_ATTEMPTS + 1):
                result = rr.reject(asset_type, unit.id, "Wrong flooring")
                assert result["asset_type"] == asset_type
                assert result["attempt_count"] == expected
            blocked = rr.reject(asset_type, unit.id, "Wrong flooring")
            assert gen.dispatch_unit.call_count == MAX_RETRY_ATTEMPTS

        assert blocked["blocked_for_human"] is True
        assert unit.status == "blocked_for_human"
        history = unit.qa_report["rejection_history"]
        assert [h["attempt"] for h in history] == [0, 1, 2, 3, 4, 5]
        assert rr.rejection_history(asset_type, unit.id) == history

    def test_dispatch_receives_the_unit(self, any_unit):
        asset_type, unit = any_unit
        with patch.object(rr, "generator_client") as gen:
            rr.reject(asset_type, unit.id, "Too dark")
        dispatched = gen.dispatch_unit.call_args.args[0]
        assert dispatched is unit
        assert dispatched.ASSET_TYPE == asset_type
        kwargs = gen.dispatch_unit.call_args.kwargs
        assert kwargs["attempt_number"] == 1
        assert kwargs["improved_prompt"] == f"{asset_type} of the living room"

    def test_edit_path(self, any_unit):
        asset_type, unit = any_unit
        unit.qa_status = "passed"
        db.session.commit()
        with patch.object(rr, "generator_client") as gen:
            result = rr.reject(asset_type, unit.id, "Remove the plant")
        assert result["inpaint_triggered"] is True
        gen.dispatch_edit.assert_called_once_with(unit, "Remove the plant")
        assert unit.status == "editing"
        assert unit.output_upload_id == "out-1"
        assert unit.attempt_count == 0

    def test_dispatch_failure(self, any_unit):
        asset_type, unit = any_unit
        with patch.object(rr, "generator_client") as gen:
            gen.dispatch_unit.side_effect = GenerationDispatchError("Generator rejected job: HTTP 502")
            with pytest.raises(GenerationDispatchError):
                rr.reject(asset_type, unit.id, "Seam visible")
        assert unit.status == "failed"
        assert unit.attempt_count == 1
        assert "HTTP 502" in unit.last_error
