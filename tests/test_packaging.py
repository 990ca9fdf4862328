"""Packaging declares what the runtime configuration can ask for."""

from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def test_redis_storage_extra_is_declared():
    project = tomllib.loads(PYPROJECT.read_text())["project"]
    assert any(req.startswith("limits[redis]") for req in project["optional-dependencies"]["redis"])
