"""Error taxonomy for the service-request engine.

Every error is recoverable at the API boundary: the exception handlers in
``agriops.main`` render them into the standard response envelope using
``status_code``, ``error_code`` and the field-level ``errors`` list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Violation:
    field: str
    message: str
    # "validation" for malformed input, "business_rule" for broken domain constraints
    kind: str = "validation"

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ServiceRequestError(Exception):
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, errors: Optional[list[Violation]] = None):
        self.message = message
        self.errors = list(errors or [])
        super().__init__(message)


class Unauthenticated(ServiceRequestError):
    status_code = 401
    error_code = "UNAUTHENTICATED"


class ValidationError(ServiceRequestError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class PermissionDenied(ServiceRequestError):
    status_code = 403
    error_code = "PERMISSION_DENIED"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFound(ServiceRequestError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidTransition(ServiceRequestError):
    status_code = 400
    error_code = "INVALID_TRANSITION"


class BusinessRuleViolation(ServiceRequestError):
    status_code = 422
    error_code = "BUSINESS_RULE_VIOLATION"


class FeedbackAlreadySubmitted(ServiceRequestError):
    status_code = 409
    error_code = "FEEDBACK_ALREADY_SUBMITTED"

    def __init__(self, message: str = "Feedback has already been submitted for this request"):
        super().__init__(message)


class Conflict(ServiceRequestError):
    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, message: str = "Service request was modified by another operation"):
        super().__init__(message)


def raise_for_violations(violations: list[Violation], message: str = "Service request is invalid") -> None:
    """Raise the matching error for a non-empty violation list.

    Domain-rule breaks win over plain input errors; the raised error carries
    every violation either way.
    """
    if not violations:
        return
    if any(v.kind == "business_rule" for v in violations):
        raise BusinessRuleViolation(message, violations)
    raise ValidationError(message, violations)
