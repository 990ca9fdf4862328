"""Formatter tests: workflow fields passed through ``extra=`` reach both outputs."""

import json
import logging

from floorflow.middleware.logging_config import JSONFormatter, ReadableFormatter, workflow_scope


def _record(msg="Retry dispatched", **extra):
    record = logging.LogRecord("floorflow.test", logging.WARNING, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_workflow_scope_label():
    record = _record(pipeline_id=3, asset_type="panorama", asset_id=12,
                     event_type="retry_started", collaborator="generator")
    assert workflow_scope(record) == "pipeline=3 panorama/12 retry_started via generator"
    assert workflow_scope(_record()) == ""


def test_json_nests_workflow_fields():
    record = _record(pipeline_id=3, asset_id=12, event_type="retry_exhausted",
                     request_id="abc", status=200)
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "Retry dispatched"
    assert entry["request_id"] == "abc"
    assert entry["status"] == 200
    assert entry["workflow"] == {"pipeline_id": 3, "asset_id": 12, "event_type": "retry_exhausted"}


def test_json_without_workflow_fields():
    entry = json.loads(JSONFormatter().format(_record()))
    assert "workflow" not in entry
    assert entry["level"] == "WARNING"


def test_readable_line():
    line = ReadableFormatter().format(_record(pipeline_id=7, duration_ms=12.4))
    assert "Retry dispatched [pipeline=7] (12ms)" in line
