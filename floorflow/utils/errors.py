"""Standardised API error responses.

Usage
-----
    from floorflow.utils.errors import api_error, E

    return api_error(E.VALIDATION_REQUIRED, "action_type is required")
    return api_error(E.CONFLICT_STATE, "Phase mismatch", details={"phase": phase})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"
    OUTDATED_STEP = "ERR_OUTDATED_STEP"
    APPROVAL_INCOMPLETE = "ERR_APPROVAL_INCOMPLETE"

    # Upstream – HTTP 502
    UPSTREAM_DISPATCH = "ERR_UPSTREAM_DISPATCH"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_VERSION: 409,
    E.OUTDATED_STEP: 409,
    E.APPROVAL_INCOMPLETE: 409,
    E.UPSTREAM_DISPATCH: 502,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    extra: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Field-level breakdown.
    extra : dict, optional
        Top-level keys merged into the body (``blocked_reason``, counts).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {}
    if extra:
        body.update(extra)
    body["error"] = message
    body["code"] = code
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── Blueprint error handlers ──────────────────────────────────────────
def register_error_handlers(bp, logger):
    """Map service exceptions to JSON responses on ``bp``.

    Every API blueprint registers the same set, so a service raising
    ``ValidationError`` answers identically whichever route called it.
    """
    from werkzeug.exceptions import HTTPException

    from floorflow.core.exceptions import (
        ApprovalIncompleteError,
        ConflictError,
        GenerationDispatchError,
        NotFoundError,
        OutdatedTransitionError,
        ValidationError,
    )

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        code = E.CONFLICT_STATE if error.status == 409 else E.VALIDATION_RULE
        return api_error(code, str(error), status=error.status, details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_VERSION, str(error),
                         details={"resource": error.resource, "field": error.field})

    @bp.errorhandler(OutdatedTransitionError)
    def _handle_outdated(error: OutdatedTransitionError):
        return api_error(E.OUTDATED_STEP, str(error), extra=error.to_dict())

    @bp.errorhandler(ApprovalIncompleteError)
    def _handle_approval(error: ApprovalIncompleteError):
        return api_error(E.APPROVAL_INCOMPLETE, str(error), extra=error.to_dict())

    @bp.errorhandler(GenerationDispatchError)
    def _handle_dispatch(error: GenerationDispatchError):
        return api_error(E.UPSTREAM_DISPATCH, str(error), extra=error.to_dict())

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint", bp.name)
        return api_error(E.INTERNAL, "Internal server error")
