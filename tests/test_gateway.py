"""Unit tests for floorflow.integrations.generation_gateway.

The HTTP session is a MagicMock passed to CollaboratorGateway, and
time.sleep is patched so retry backoff does not slow the suite.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

import floorflow.integrations.generation_gateway as gw_module
from floorflow.core.exceptions import GenerationDispatchError
from floorflow.integrations.generation_gateway import (
    CollaboratorGateway,
    GeneratorClient,
    PromptImprovementClient,
    RejectionAnalysisClient,
)


def _response(status=200, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    resp.text = str(body)
    return resp


@pytest.fixture()
def configured(app, monkeypatch):
    monkeypatch.setitem(app.config, "GENERATOR_BASE_URL", "http://generator.test/")
    monkeypatch.setitem(app.config, "ANALYSIS_BASE_URL", "http://analysis.test")
    monkeypatch.setitem(app.config, "PROMPT_IMPROVER_BASE_URL", "http://improver.test")
    monkeypatch.setitem(app.config, "COLLABORATOR_API_KEY", "secret-key")
    return app


def _gateway(name="generator", key="GENERATOR_BASE_URL", max_retries=1, *responses):
    session = MagicMock()
    session.post.side_effect = list(responses)
    return CollaboratorGateway(name, key, max_retries=max_retries, session=session), session


class TestCollaboratorGateway:
    def test_success(self, configured):
        gateway, session = _gateway("generator", "GENERATOR_BASE_URL", 1, _response(200, {"job_id": "j1"}))
        result = gateway.post("/jobs/render", {"asset_id": 3})

        assert result.ok
        assert result.data == {"job_id": "j1"}
        assert result.payload_hash
        url = session.post.call_args.args[0]
        assert url == "http://generator.test/jobs/render"
        headers = session.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer secret-key"
        assert session.post.call_args.kwargs["timeout"] == 1

    def test_non_2xx_is_not_retried(self, configured):
        gateway, session = _gateway("generator", "GENERATOR_BASE_URL", 1, _response(400, {"error": "bad"}))
        with patch.object(gw_module.time, "sleep") as sleep:
            result = gateway.post("/jobs/render", {})
        assert not result.ok
        assert result.status_code == 400
        assert result.error.startswith("HTTP 400")
        assert session.post.call_count == 1
        sleep.assert_not_called()

    def test_timeout_is_retried(self, configured):
        gateway, session = _gateway(
            "analysis", "ANALYSIS_BASE_URL", 1,
            requests.Timeout("slow"), _response(200, {"analysis": {}}),
        )
        with patch.object(gw_module.time, "sleep") as sleep:
            result = gateway.post("/analyze-rejection", {})
        assert result.ok
        assert session.post.call_count == 2
        sleep.assert_called_once_with(1)

    def test_network_error_exhausts_retries(self, configured):
        gateway, session = _gateway(
            "analysis", "ANALYSIS_BASE_URL", 1,
            requests.ConnectionError("refused"), requests.ConnectionError("refused"),
        )
        with patch.object(gw_module.time, "sleep"):
            result = gateway.post("/analyze-rejection", {})
        assert not result.ok
        assert result.status_code is None
        assert "refused" in result.error
        assert session.post.call_count == 2

    def test_unconfigured_never_calls_out(self):
        gateway, session = _gateway("generator", "GENERATOR_BASE_URL", 0)
        result = gateway.post("/jobs/render", {})
        assert not result.ok
        assert "GENERATOR_BASE_URL unset" in result.error
        session.post.assert_not_called()


class TestGeneratorClient:
    def test_dispatch_raises_on_failure(self, configured):
        gateway, session = _gateway("generator", "GENERATOR_BASE_URL", 0, _response(503, {"error": "busy"}))
        client = GeneratorClient(gateway)
        unit = MagicMock(ASSET_TYPE="render", id=5, pipeline_id=1, space_id=2, kind="A",
                         attempt_count=0, prompt_text="p")
        with pytest.raises(GenerationDispatchError) as exc:
            client.dispatch_unit(unit)
        assert exc.value.status_code == 503
        assert exc.value.to_dict()["asset_id"] == 5

    def test_dispatch_unit_payload(self, configured):
        gateway, session = _gateway("generator", "GENERATOR_BASE_URL", 0, _response(202, {"job_id": "x"}))
        client = GeneratorClient(gateway)
        unit = MagicMock(ASSET_TYPE="panorama", id=9, pipeline_id=1, space_id=2, kind="B",
                         attempt_count=2, prompt_text="old")
        assert client.dispatch_unit(unit, is_retry=True, attempt_number=3,
                                    retry_patch={"new_seed": 1}, improved_prompt="new") == {"job_id": "x"}
        payload = session.post.call_args.kwargs["json"]
        assert session.post.call_args.args[0].endswith("/jobs/panorama")
        assert payload["attempt_number"] == 3
        assert payload["prompt_text"] == "new"
        assert payload["retry_patch"] == {"new_seed": 1}

    def test_unconfigured_generator_raises(self):
        client = GeneratorClient(CollaboratorGateway("generator", "GENERATOR_BASE_URL", max_retries=0))
        pipeline = MagicMock(id=1, floor_plan_upload_id="u", aspect_ratio="16:9", quality_tier="2K")
        with pytest.raises(GenerationDispatchError):
            client.dispatch_step(pipeline, 1, "run-space-analysis")


class TestBestEffortClients:
    def test_analysis_parsed(self, configured):
        body = {"analysis": {"failure_categories": ["wrong_room"], "root_cause_summary": "x",
                             "constraints_to_add": ["keep walls"], "confidence": "0.7"}}
        gateway, _ = _gateway("analysis", "ANALYSIS_BASE_URL", 1, _response(200, body))
        analysis = RejectionAnalysisClient(gateway).analyze(
            asset_type="render", asset_id=1, step_number=4, reject_reason="wrong",
        )
        assert analysis.failure_categories == ["wrong_room"]
        assert analysis.confidence == 0.7

    def test_analysis_failure_yields_none(self, configured):
        gateway, _ = _gateway("analysis", "ANALYSIS_BASE_URL", 0, _response(500, {"error": "x"}))
        assert RejectionAnalysisClient(gateway).analyze(
            asset_type="render", asset_id=1, step_number=4, reject_reason="wrong",
        ) is None

    def test_analysis_without_object_yields_none(self, configured):
        gateway, _ = _gateway("analysis", "ANALYSIS_BASE_URL", 0, _response(200, {"analysis": "nope"}))
        assert RejectionAnalysisClient(gateway).analyze(
            asset_type="render", asset_id=1, step_number=4, reject_reason="wrong",
        ) is None

    def test_improver_returns_prompt(self, configured):
        gateway, session = _gateway("improver", "PROMPT_IMPROVER_BASE_URL", 0,
                                    _response(200, {"optimized_prompt": "better"}))
        assert PromptImprovementClient(gateway).improve(
            step_number=4, previous_prompt="old", analysis=None, rejection_category="seam",
        ) == "better"
        assert session.post.call_args.kwargs["json"]["mode"] == "improve_after_rejection"

    def test_improver_blank_prompt_yields_none(self, configured):
        gateway, _ = _gateway("improver", "PROMPT_IMPROVER_BASE_URL", 0,
                              _response(200, {"optimized_prompt": "  "}))
        assert PromptImprovementClient(gateway).improve(
            step_number=4, previous_prompt="old", analysis=None,
        ) is None
