"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Entity not found")
    return api_error(E.VALIDATION_REQUIRED, "entity_type is required")
    return api_error(E.STALE_STAGE, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • WF_   prefix for workflow engine errors
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Workflow engine
    WORKFLOW = "WF_ERROR"
    UNKNOWN_ENTITY_TYPE = "WF_UNKNOWN_ENTITY_TYPE"
    INVALID_TRANSITION = "WF_INVALID_TRANSITION"
    STALE_STAGE = "WF_STALE_STAGE_ASSUMPTION"
    DUPLICATE_OPEN_REQUEST = "WF_DUPLICATE_OPEN_REQUEST"
    OUT_OF_ORDER_APPROVAL = "WF_OUT_OF_ORDER_APPROVAL"
    REQUEST_TERMINAL = "WF_REQUEST_ALREADY_TERMINAL"
    CONVERSION_NOT_ALLOWED = "WF_CONVERSION_NOT_ALLOWED"
    ATOMICITY_VIOLATION = "WF_ATOMICITY_VIOLATION"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.WORKFLOW: 409,
    E.UNKNOWN_ENTITY_TYPE: 422,
    E.INVALID_TRANSITION: 422,
    E.STALE_STAGE: 409,
    E.DUPLICATE_OPEN_REQUEST: 409,
    E.OUT_OF_ORDER_APPROVAL: 409,
    E.REQUEST_TERMINAL: 409,
    E.CONVERSION_NOT_ALLOWED: 409,
    E.ATOMICITY_VIOLATION: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
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
        Extra structured payload (expected stage, pending role, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Attach the canonical service-exception handlers to a blueprint.

    Service layer raises; blueprints translate. The session is rolled back
    before answering so a failed request never leaves a half-written unit.
    """
    import logging

    from app.core.exceptions import (
        AtomicityViolation,
        ConflictError,
        NotFoundError,
        ValidationError,
        WorkflowError,
    )
    from app.models import db

    logger = logging.getLogger(bp.import_name)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(WorkflowError)
    def _handle_workflow(error: WorkflowError):
        db.session.rollback()
        if isinstance(error, AtomicityViolation):
            logger.error("Data-integrity alarm: %s", error, extra={"event_type": "atomicity_violation"})
        else:
            logger.info("Workflow request refused: %s", error)
        return api_error(error.code, str(error), status=error.status, details=error.details)
