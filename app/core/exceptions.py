"""
Platform-wide exception hierarchy.

Why this module exists:
  Every service raises one of the canonical types below so that blueprints
  can register a single error handler per type and answer with consistent
  HTTP status codes. Callers never import exception classes from service
  modules.

  The workflow engine errors (``WorkflowError`` subclasses) are all
  recoverable by the caller. None of them is retried automatically: stale
  stage assumptions must be re-read, replays and out-of-order approvals are
  client synchronisation bugs.

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransition

    raise NotFoundError(resource="Entity", resource_id="e-42")
    raise InvalidTransition("Pilot", "design", "active")
"""

from app.utils.errors import E


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Entity", "ApprovalRequest").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. unknown decision outcome).

    Maps to HTTP 422 in blueprint error handlers.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConfigurationError(ValidationError):
    """Raised at load time when the workflow configuration is inconsistent."""


# ═════════════════════════════════════════════════════════════════════════════
# Workflow engine errors
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowError(Exception):
    """Base class for typed workflow engine failures.

    Attributes:
        code: Machine-readable error code (``E.*``).
        status: HTTP status the blueprints answer with.
        details: Structured context for API responses and logs.
    """

    code = E.WORKFLOW
    status = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class UnknownEntityType(WorkflowError):
    code = E.UNKNOWN_ENTITY_TYPE
    status = 422

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(
            f"Unknown entity type '{entity_type}'",
            details={"entity_type": entity_type},
        )


class InvalidTransition(WorkflowError):
    code = E.INVALID_TRANSITION
    status = 422

    def __init__(self, entity_type: str, from_stage: str, to_stage: str, reason: str | None = None) -> None:
        self.entity_type = entity_type
        self.from_stage = from_stage
        self.to_stage = to_stage
        msg = f"{entity_type}: no transition '{from_stage}' -> '{to_stage}'"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg, details={
            "entity_type": entity_type,
            "from_stage": from_stage,
            "to_stage": to_stage,
        })


class StaleStageAssumption(WorkflowError):
    """The caller's view of the entity stage is out of date; re-read and retry."""

    code = E.STALE_STAGE

    def __init__(self, entity_id: str, expected: str, actual: str) -> None:
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Entity {entity_id} is at '{actual}', not '{expected}'",
            details={"entity_id": entity_id, "expected_stage": expected, "current_stage": actual},
        )


class DuplicateOpenRequest(WorkflowError):
    code = E.DUPLICATE_OPEN_REQUEST

    def __init__(self, entity_id: str, gate_id: str, request_id: int | None = None) -> None:
        self.entity_id = entity_id
        self.gate_id = gate_id
        self.request_id = request_id
        super().__init__(
            f"Entity {entity_id} already has an open approval request for gate '{gate_id}'",
            details={"entity_id": entity_id, "gate_id": gate_id, "request_id": request_id},
        )


class OutOfOrderApproval(WorkflowError):
    code = E.OUT_OF_ORDER_APPROVAL

    def __init__(self, request_id: int, role: str, expected_role: str) -> None:
        self.request_id = request_id
        self.role = role
        self.expected_role = expected_role
        super().__init__(
            f"Approval request {request_id} is waiting for '{expected_role}', not '{role}'",
            details={"request_id": request_id, "role": role, "expected_role": expected_role},
        )


class RequestAlreadyTerminal(WorkflowError):
    code = E.REQUEST_TERMINAL

    def __init__(self, request_id: int, status: str) -> None:
        self.request_id = request_id
        self.request_status = status
        super().__init__(
            f"Approval request {request_id} is already {status}",
            details={"request_id": request_id, "status": status},
        )


class ConversionNotAllowed(WorkflowError):
    code = E.CONVERSION_NOT_ALLOWED

    def __init__(self, source_type: str, source_id: str, target_type: str, status: str, reason: str | None = None) -> None:
        self.status_label = status
        super().__init__(
            f"{source_type} {source_id} cannot be converted to {target_type} ({reason or status})",
            details={
                "source_type": source_type,
                "source_id": source_id,
                "target_type": target_type,
                "status": status,
                "reason": reason,
            },
        )


class AtomicityViolation(WorkflowError):
    """A conversion record was requested without a matching target creation.

    Data-integrity alarm: the host must log and reconcile; the engine does not
    self-heal.
    """

    code = E.ATOMICITY_VIOLATION
    status = 500
