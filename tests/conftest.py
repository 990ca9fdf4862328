"""
Shared pytest fixtures for the Floorplan Pipeline Orchestrator test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - pipeline: Pre-created workflow with two active spaces
    - qa_pass / qa_fail: structured QA result payloads
"""

import pytest

from floorflow import create_app
from floorflow.models import db as _db
from floorflow.models.pipeline import FloorplanPipeline, PipelineSpace


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


def make_pipeline(phase="upload", current_step=0, *, spaces=("Living Room", "Kitchen"),
                  owner_id="owner-1", project_id=7, is_enabled=True):
    """Create and commit a workflow with the given phase and active spaces."""
    pipeline = FloorplanPipeline(
        owner_id=owner_id,
        project_id=project_id,
        name="Test Plan",
        floor_plan_upload_id="upload-plan-1",
        phase=phase,
        current_step=current_step,
        is_enabled=is_enabled,
        step_outputs={},
    )
    _db.session.add(pipeline)
    _db.session.flush()
    for idx, name in enumerate(spaces):
        _db.session.add(PipelineSpace(
            pipeline_id=pipeline.id, name=name, space_type="room", sort_order=idx,
        ))
    _db.session.commit()
    return pipeline


@pytest.fixture()
def pipeline():
    """Workflow at phase ``upload`` with two active spaces."""
    return make_pipeline()


@pytest.fixture()
def qa_pass():
    return {
        "schema_version": "1",
        "status": "PASS",
        "reason_short": "Looks correct",
        "severity": "low",
        "confidence_score": 0.92,
        "reasons": [],
        "issues": [],
    }


@pytest.fixture()
def qa_fail():
    return {
        "schema_version": "1",
        "status": "FAIL",
        "reason_short": "Bathtub rendered in kitchen",
        "severity": "high",
        "confidence_score": 0.81,
        "reasons": ["Bathroom fixtures present"],
        "issues": [
            {"type": "wrong_room", "severity": "critical", "description": "Shows a bathroom"},
            {"type": "seam", "severity": "minor", "description": "Faint seam on the left"},
        ],
        "room_type_violation": True,
        "detected_room_type": "bathroom",
    }


@pytest.fixture()
def pipeline_factory():
    """Return ``make_pipeline`` for tests that need a specific phase."""
    return make_pipeline
