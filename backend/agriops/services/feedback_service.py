import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from agriops.core.auth import CurrentUser
from agriops.core.errors import FeedbackAlreadySubmitted, InvalidTransition, raise_for_violations
from agriops.models.service_request import ServiceRequest
from agriops.schemas.service_request import ServiceRequestStatus
from agriops.services.permissions import Action, ensure_allowed
from agriops.services.request_rules import validate_feedback
from agriops.services.transition_service import create_audit_log, utc_now

logger = logging.getLogger(__name__)


def can_submit_feedback(request: ServiceRequest) -> bool:
    return request.status == ServiceRequestStatus.COMPLETED.value and not request.feedback


def submit_feedback(
    db: Session,
    *,
    request: ServiceRequest,
    principal: CurrentUser,
    payload: dict[str, Any],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    """Attach feedback once to the owner's completed request.

    The caller commits. A repeat submission raises ``FeedbackAlreadySubmitted``
    and never overwrites what is stored.
    """
    ensure_allowed(principal, Action.SUBMIT_FEEDBACK, request)

    if request.feedback:
        raise FeedbackAlreadySubmitted()
    if request.status != ServiceRequestStatus.COMPLETED.value:
        raise InvalidTransition("Feedback can only be submitted for completed requests")

    result = validate_feedback(payload)
    raise_for_violations(result.violations, "Feedback is invalid")

    feedback = {**result.value, "submitted_at": utc_now().isoformat()}
    request.feedback = feedback
    create_audit_log(
        db,
        entity_id=str(request.id),
        action="FEEDBACK_SUBMITTED",
        old_value=None,
        new_value={"feedback": feedback},
        actor=principal,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"request_number": request.request_number},
    )
    logger.info("Feedback submitted for %s rating=%s", request.request_number, feedback.get("rating"))
    return request
