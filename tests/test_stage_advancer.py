"""Tests for the Stage Advancer.

Coverage
--------
    - outdated from_step is refused without mutation
    - paused workflow answers success=False, paused=True
    - approval gate: 3/4 and 4/6 approved renders block; 4/4 creates 4 panoramas
    - unit creation is idempotent per (space_id, kind)
    - merge creation needs both approved panoramas of a space
    - excluded spaces do not count towards the gate
"""

import pytest
from sqlalchemy import func, select

from floorflow.core.exceptions import ApprovalIncompleteError, OutdatedTransitionError, ValidationError
from floorflow.models import db
from floorflow.models.generation import SpaceFinal360, SpacePanorama, SpaceRender
from floorflow.models.pipeline import PipelineEvent
from floorflow.services import stage_advancer


def _count(model, pipeline_id):
    return db.session.execute(
        select(func.count(model.id)).where(model.pipeline_id == pipeline_id)
    ).scalar()


def _make_units(pipeline, model, *, approved=True, kinds=("A", "B"), **extra):
    units = []
    for space in pipeline.active_spaces():
        for kind in kinds:
            unit = model(
                pipeline_id=pipeline.id, space_id=space.id, owner_id=pipeline.owner_id,
                kind=kind, status="completed", locked_approved=approved,
                output_upload_id=f"out-{space.id}-{kind}", **extra,
            )
            db.session.add(unit)
            units.append(unit)
    db.session.commit()
    return units


class TestOrderingGuards:
    def test_outdated_step_is_refused(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4)
        with pytest.raises(OutdatedTransitionError) as exc:
            stage_advancer.advance(p.id, 3)
        body = exc.value.to_dict()
        assert body["blocked_reason"] == "outdated_step"
        assert body["current_step"] == 4
        assert db.session.get(type(p), p.id).phase == "renders_review"

    def test_paused_workflow(self, pipeline_factory):
        p = pipeline_factory("style_review", 2, is_enabled=False)
        result = stage_advancer.advance(p.id, 2)
        assert result["success"] is False
        assert result["paused"] is True
        assert result["current_phase"] == "style_review"
        assert p.phase == "style_review"

    def test_future_step_is_refused(self, pipeline_factory):
        p = pipeline_factory("style_review", 2)
        with pytest.raises(ValidationError) as exc:
            stage_advancer.advance(p.id, 3)
        assert exc.value.status == 409

    def test_non_integer_step(self, pipeline_factory):
        p = pipeline_factory("style_review", 2)
        with pytest.raises(ValidationError):
            stage_advancer.advance(p.id, "2")

    def test_phase_without_transition(self, pipeline_factory):
        p = pipeline_factory("style_pending", 2)
        with pytest.raises(ValidationError) as exc:
            stage_advancer.advance(p.id, 2)
        assert 'No legal transition from phase "style_pending"' in str(exc.value)


class TestSimpleTransitions:
    def test_style_review_to_detect_spaces(self, pipeline_factory):
        p = pipeline_factory("style_review", 2)
        result = stage_advancer.advance(p.id, 2)
        assert result["success"] is True
        assert result["new_phase"] == "detect_spaces_pending"
        assert result["new_step"] == 3
        assert result["action_taken"] == "advanced_to_detect_spaces_pending"
        event = db.session.execute(select(PipelineEvent).where(PipelineEvent.pipeline_id == p.id)).scalar_one()
        assert event.event_type == "stage_advanced"

    def test_camera_intent_confirmed_creates_renders(self, pipeline_factory):
        p = pipeline_factory("camera_intent_confirmed", 3)
        result = stage_advancer.advance(p.id, 3)
        assert result["new_phase"] == "renders_pending"
        assert result["units_created"] == 4
        assert result["action_taken"] == "initialized_renders_4"
        assert result["active_spaces"] == 2
        assert _count(SpaceRender, p.id) == 4


class TestApprovalGate:
    def test_three_of_four_blocks(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4)
        units = _make_units(p, SpaceRender)
        units[-1].locked_approved = False
        db.session.commit()

        with pytest.raises(ApprovalIncompleteError) as exc:
            stage_advancer.advance(p.id, 4)
        body = exc.value.to_dict()
        assert body["blocked_reason"] == "approval_incomplete"
        assert (body["approved"], body["required"]) == (3, 4)
        assert _count(SpacePanorama, p.id) == 0
        assert p.phase == "renders_review"

    def test_four_of_six_blocks(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4, spaces=("Living Room", "Kitchen", "Bedroom"))
        units = _make_units(p, SpaceRender)
        units[-1].locked_approved = False
        units[-2].locked_approved = False
        db.session.commit()

        with pytest.raises(ApprovalIncompleteError) as exc:
            stage_advancer.advance(p.id, 4)
        body = exc.value.to_dict()
        assert body["success"] is False
        assert body["blocked_reason"] == "approval_incomplete"
        assert body["approved"] == 4
        assert body["required"] == 6
        assert body["step"] == 4
        assert _count(SpacePanorama, p.id) == 0
        assert p.phase == "renders_review"
        assert p.current_step == 4

    def test_four_of_four_creates_panoramas(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4)
        _make_units(p, SpaceRender)
        result = stage_advancer.advance(p.id, 4)
        assert result["new_phase"] == "panoramas_pending"
        assert result["units_created"] == 4
        panos = db.session.execute(select(SpacePanorama)).scalars().all()
        assert {pano.source_render_id for pano in panos} == {
            r.id for r in db.session.execute(select(SpaceRender)).scalars()
        }

    def test_excluded_space_is_ignored(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4, spaces=("Living Room", "Kitchen", "Garage"))
        garage = [s for s in p.active_spaces() if s.name == "Garage"][0]
        garage.is_excluded = True
        db.session.commit()
        _make_units(p, SpaceRender)
        result = stage_advancer.advance(p.id, 4)
        assert result["units_created"] == 4
        assert result["active_spaces"] == 2

    def test_no_active_spaces(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4, spaces=())
        with pytest.raises(ValidationError) as exc:
            stage_advancer.advance(p.id, 4)
        assert exc.value.status == 409

    def test_duplicate_approval_does_not_double_count(self, pipeline_factory):
        p = pipeline_factory("renders_review", 4, spaces=("Living Room",))
        _make_units(p, SpaceRender, kinds=("A",))
        _make_units(p, SpaceRender, kinds=("A",))
        assert stage_advancer.approval_counts(p, 4) == (1, 2)


class TestIdempotentCreation:
    def test_existing_units_are_not_recreated(self, pipeline_factory):
        p = pipeline_factory("camera_intent_confirmed", 3)
        space = p.active_spaces()[0]
        db.session.add(SpaceRender(pipeline_id=p.id, space_id=space.id, owner_id=p.owner_id, kind="A"))
        db.session.commit()

        result = stage_advancer.advance(p.id, 3)
        assert result["units_created"] == 3
        assert _count(SpaceRender, p.id) == 4

    def test_second_advance_is_outdated(self, pipeline_factory):
        p = pipeline_factory("camera_intent_confirmed", 3)
        stage_advancer.advance(p.id, 3)
        with pytest.raises(OutdatedTransitionError):
            stage_advancer.advance(p.id, 3)
        assert _count(SpaceRender, p.id) == 4


class TestMerge:
    def test_final360_needs_both_panoramas(self, pipeline_factory):
        p = pipeline_factory("panoramas_review", 5)
        units = _make_units(p, SpacePanorama)
        result = stage_advancer.advance(p.id, 5)
        assert result["new_phase"] == "merging_pending"
        assert result["units_created"] == 2
        final = db.session.execute(select(SpaceFinal360)).scalars().first()
        assert final.kind == "M"
        assert {final.panorama_a_id, final.panorama_b_id} <= {u.id for u in units}

    def test_merging_review_completes(self, pipeline_factory):
        p = pipeline_factory("merging_review", 6)
        _make_units(p, SpaceFinal360, kinds=("M",))
        result = stage_advancer.advance(p.id, 6)
        assert result["new_phase"] == "completed"
        assert result["action_taken"] == "completed"
        assert result["new_step"] == 6
