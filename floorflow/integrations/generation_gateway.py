"""
Collaborator gateway: Generator, Rejection Analysis, Prompt Improvement.

All outbound HTTP calls to the generation side go through this module.
Direct `requests` calls in services or blueprints are FORBIDDEN.

Design mirrors a classic integration gateway:
  - One `CollaboratorGateway` per collaborator, base URL read from app config
    at call time (GENERATOR_BASE_URL, ANALYSIS_BASE_URL,
    PROMPT_IMPROVER_BASE_URL)
  - Timeout: COLLABORATOR_TIMEOUT_SECONDS (default 30 s)
  - Retry: best-effort collaborators retry network errors once; the Generator
    never retries (a duplicate dispatch would start two jobs)
  - Structured `GatewayResult` returned to the typed client facades

Failure policy:
  - GeneratorClient raises GenerationDispatchError on any failure.
  - RejectionAnalysisClient / PromptImprovementClient never raise; they
    return None and log a warning so the retry path degrades gracefully.

Testability: pass a mock `session` to CollaboratorGateway() in tests, or
``patch.object`` the module-level client singletons.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field

import requests
from flask import current_app, has_app_context

from floorflow.core.exceptions import GenerationDispatchError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30
_RETRY_BACKOFF_SECONDS = [1, 4]


class GatewayResult:
    """Structured return value from CollaboratorGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body, else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        payload_hash:   SHA-256 of the serialised request payload (hex).
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        payload_hash: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.payload_hash = payload_hash


class CollaboratorGateway:
    """JSON-over-HTTP gateway to one collaborator service.

    Usage:
        gateway = CollaboratorGateway("generator", "GENERATOR_BASE_URL", max_retries=0)
        result = gateway.post("/jobs/render", {"unit_id": 12})
    """

    def __init__(
        self,
        name: str,
        base_url_key: str,
        *,
        max_retries: int = 1,
        session: requests.Session | None = None,
    ) -> None:
        self.name = name
        self.base_url_key = base_url_key
        self.max_retries = max_retries
        self._session: requests.Session | None = session

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Configuration ────────────────────────────────────────────────────────

    def _config(self, key: str, default=None):
        if not has_app_context():
            return default
        return current_app.config.get(key, default)

    @property
    def base_url(self) -> str:
        return (self._config(self.base_url_key) or "").rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        api_key = self._config("COLLABORATOR_API_KEY")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _compute_payload_hash(payload: dict | None) -> str | None:
        if payload is None:
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    # ── Core request dispatcher ──────────────────────────────────────────────

    def post(self, path: str, payload: dict, *, timeout: int | None = None) -> GatewayResult:
        """POST ``payload`` to ``<base_url><path>``. Always returns, never raises."""
        if not self.configured:
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error=f"{self.name} is not configured ({self.base_url_key} unset)",
                duration_ms=0,
            )

        timeout = timeout or int(self._config("COLLABORATOR_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT))
        url = f"{self.base_url}{path}"
        payload_hash = self._compute_payload_hash(payload)
        last_error = "Unknown error"
        last_status: int | None = None
        duration_ms = 0

        for attempt in range(self.max_retries + 1):
            t0 = time.perf_counter()
            try:
                resp = self.session.post(url, json=payload, headers=self._headers(), timeout=timeout)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code
                if resp.ok:
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(True, resp.status_code, data, None, duration_ms, payload_hash)

                # Non-2xx is an answer, not a transport failure: no retry
                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                logger.warning(
                    "%s request failed status=%d url=%s", self.name, resp.status_code, url,
                    extra={"collaborator": self.name},
                )
                break

            except requests.Timeout:
                duration_ms = int(timeout * 1000)
                last_error = f"Request timed out after {timeout}s"
                logger.warning("%s request timed out attempt=%d/%d url=%s",
                               self.name, attempt + 1, self.max_retries + 1, url,
                               extra={"collaborator": self.name})

            except requests.RequestException as exc:
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_error = str(exc)[:500]
                logger.warning("%s network error attempt=%d/%d url=%s error=%s",
                               self.name, attempt + 1, self.max_retries + 1, url, last_error,
                               extra={"collaborator": self.name})

            if attempt < self.max_retries:
                time.sleep(_RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)])

        return GatewayResult(False, last_status, None, last_error, duration_ms, payload_hash)


# ═════════════════════════════════════════════════════════════════════════════
# Generator
# ═════════════════════════════════════════════════════════════════════════════


class GeneratorClient:
    """Starts image-generation jobs. Every failure raises GenerationDispatchError."""

    def __init__(self, gateway: CollaboratorGateway) -> None:
        self.gateway = gateway

    def _send(self, path: str, payload: dict, *, asset_type=None, asset_id=None) -> dict:
        result = self.gateway.post(path, payload)
        if not result.ok:
            logger.error(
                "Generator dispatch failed path=%s asset=%s/%s error=%s",
                path, asset_type, asset_id, result.error,
                extra={"asset_type": asset_type, "asset_id": asset_id,
                       "event_type": "generation_failed", "collaborator": self.gateway.name},
            )
            raise GenerationDispatchError(
                f"Generator rejected job: {result.error}",
                asset_type=asset_type,
                asset_id=asset_id,
                status_code=result.status_code,
            )
        logger.info("Generator accepted job path=%s asset=%s/%s (%dms)",
                    path, asset_type, asset_id, result.duration_ms)
        return result.data or {}

    def dispatch_unit(
        self,
        unit,
        *,
        is_retry: bool = False,
        attempt_number: int | None = None,
        retry_patch: dict | None = None,
        improved_prompt: str | None = None,
    ) -> dict:
        """Start (re)generation of one render / panorama / final 360."""
        payload = {
            "asset_type": unit.ASSET_TYPE,
            "asset_id": unit.id,
            "pipeline_id": unit.pipeline_id,
            "space_id": unit.space_id,
            "kind": unit.kind,
            "is_retry": is_retry,
            "attempt_number": attempt_number if attempt_number is not None else unit.attempt_count,
            "prompt_text": improved_prompt or unit.prompt_text,
        }
        if retry_patch is not None:
            payload["retry_patch"] = retry_patch
        return self._send(f"/jobs/{unit.ASSET_TYPE}", payload,
                          asset_type=unit.ASSET_TYPE, asset_id=unit.id)

    def dispatch_edit(self, unit, correction_text: str) -> dict:
        """Start a targeted in-place edit of the unit's current output."""
        payload = {
            "asset_type": unit.ASSET_TYPE,
            "asset_id": unit.id,
            "pipeline_id": unit.pipeline_id,
            "source_image_upload_id": unit.source_image_upload_id,
            "correction_text": correction_text,
        }
        return self._send(f"/jobs/{unit.ASSET_TYPE}/edit", payload,
                          asset_type=unit.ASSET_TYPE, asset_id=unit.id)

    def dispatch_step(self, pipeline, step: int, endpoint: str, params: dict | None = None) -> dict:
        """Start a step-level job (space analysis, top-down 3D, style, detection)."""
        payload = {
            "pipeline_id": pipeline.id,
            "step": step,
            "endpoint": endpoint,
            "floor_plan_upload_id": pipeline.floor_plan_upload_id,
            "aspect_ratio": pipeline.aspect_ratio,
            "quality_tier": pipeline.quality_tier,
            "params": params or {},
        }
        return self._send(f"/jobs/steps/{step}", payload, asset_type="step", asset_id=pipeline.id)


# ═════════════════════════════════════════════════════════════════════════════
# Rejection analysis
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class RejectionAnalysis:
    """Structured explanation of why an output was rejected."""

    failure_categories: list[str] = field(default_factory=list)
    root_cause_summary: str = ""
    constraints_to_add: list[str] = field(default_factory=list)
    constraints_to_remove: list[str] = field(default_factory=list)
    confidence: float = 0.0
    analyzed_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "RejectionAnalysis":
        def _strings(value) -> list[str]:
            return [str(v) for v in value] if isinstance(value, list) else []

        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        return cls(
            failure_categories=_strings(data.get("failure_categories")),
            root_cause_summary=str(data.get("root_cause_summary") or ""),
            constraints_to_add=_strings(data.get("constraints_to_add")),
            constraints_to_remove=_strings(data.get("constraints_to_remove")),
            confidence=confidence,
            analyzed_at=data.get("analyzed_at"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class RejectionAnalysisClient:
    """Best-effort: any failure yields None."""

    def __init__(self, gateway: CollaboratorGateway) -> None:
        self.gateway = gateway

    def analyze(
        self,
        *,
        asset_type: str,
        asset_id: int,
        step_number: int,
        reject_reason: str,
        previous_prompt: str | None = None,
        space_type: str | None = None,
        project_id: int | None = None,
    ) -> RejectionAnalysis | None:
        if not self.gateway.configured:
            logger.debug("Rejection analysis skipped: collaborator not configured")
            return None
        result = self.gateway.post("/analyze-rejection", {
            "asset_type": asset_type,
            "asset_id": asset_id,
            "step_number": step_number,
            "reject_reason": reject_reason,
            "previous_prompt": previous_prompt,
            "space_type": space_type,
            "project_id": project_id,
        })
        if not result.ok:
            logger.warning("Rejection analysis unavailable for %s/%s: %s",
                           asset_type, asset_id, result.error)
            return None
        body = result.data if isinstance(result.data, dict) else {}
        analysis = body.get("analysis")
        if not isinstance(analysis, dict):
            logger.warning("Rejection analysis for %s/%s returned no analysis object", asset_type, asset_id)
            return None
        return RejectionAnalysis.from_dict(analysis)


# ═════════════════════════════════════════════════════════════════════════════
# Prompt improvement
# ═════════════════════════════════════════════════════════════════════════════


class PromptImprovementClient:
    """Best-effort: any failure yields None."""

    def __init__(self, gateway: CollaboratorGateway) -> None:
        self.gateway = gateway

    def improve(
        self,
        *,
        step_number: int,
        previous_prompt: str,
        analysis: RejectionAnalysis | None,
        rejection_category: str | None = None,
    ) -> str | None:
        if not self.gateway.configured:
            logger.debug("Prompt improvement skipped: collaborator not configured")
            return None
        if not rejection_category and analysis and analysis.failure_categories:
            rejection_category = analysis.failure_categories[0]
        result = self.gateway.post("/optimize-pipeline-prompt", {
            "step_number": step_number,
            "previous_prompt": previous_prompt,
            "rejection_analysis": analysis.to_dict() if analysis else None,
            "rejection_category": rejection_category,
            "mode": "improve_after_rejection",
        })
        if not result.ok:
            logger.warning("Prompt improvement unavailable for step %s: %s", step_number, result.error)
            return None
        body = result.data if isinstance(result.data, dict) else {}
        prompt = body.get("optimized_prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return None
        return prompt


# ── Module-level singletons ──────────────────────────────────────────────────

generator_client = GeneratorClient(
    CollaboratorGateway("generator", "GENERATOR_BASE_URL", max_retries=0)
)
rejection_analysis_client = RejectionAnalysisClient(
    CollaboratorGateway("rejection-analysis", "ANALYSIS_BASE_URL", max_retries=1)
)
prompt_improvement_client = PromptImprovementClient(
    CollaboratorGateway("prompt-improver", "PROMPT_IMPROVER_BASE_URL", max_retries=1)
)
