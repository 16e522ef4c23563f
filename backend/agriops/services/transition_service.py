import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from agriops.core.auth import CurrentUser
from agriops.core.config import get_settings
from agriops.core.errors import InvalidTransition, ValidationError, Violation
from agriops.models.service_request import AuditLog, ServiceRequest
from agriops.schemas.service_request import ServiceRequestStatus as Status

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    Status.PENDING: [Status.APPROVED, Status.REJECTED, Status.CANCELLED],
    Status.APPROVED: [Status.ASSIGNED, Status.IN_PROGRESS, Status.COMPLETED, Status.CANCELLED],
    Status.ASSIGNED: [Status.IN_PROGRESS],
    Status.IN_PROGRESS: [Status.COMPLETED, Status.ON_HOLD],
    Status.ON_HOLD: [Status.IN_PROGRESS, Status.CANCELLED],
    Status.COMPLETED: [],
    Status.REJECTED: [],
    Status.CANCELLED: [],
}

# Repeating these is a no-op instead of an illegal transition.
IDEMPOTENT_STATUSES = {Status.APPROVED}

# Statuses that require an executor on the request.
AGENT_REQUIRED = {Status.ASSIGNED, Status.IN_PROGRESS, Status.COMPLETED}

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "street_address",
    "national_id",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def create_audit_log(
    db: Session,
    *,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor: CurrentUser,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    entity_type: str = "service_request",
) -> None:
    settings = get_settings()
    old_value = _jsonable(old_value)
    new_value = _jsonable(new_value)
    metadata = _jsonable(metadata)
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_value=old_value,
            new_value=new_value,
            actor_type=actor.role.upper(),
            actor_id=actor.id,
            ip_address=ip_address,
            user_agent=user_agent,
            audit_meta=metadata,
        )
    )


def is_transition_allowed(current: Status, new: Status) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, [])


def _effect_approved(request: ServiceRequest, actor: CurrentUser, now: datetime, details: dict) -> dict:
    return {
        "approved_at": now,
        "approved_by": actor.id,
        "rejected_at": None,
        "rejected_by": None,
        "rejection_reason": None,
    }


def _effect_rejected(request: ServiceRequest, actor: CurrentUser, now: datetime, details: dict) -> dict:
    reason = (details.get("rejection_reason") or "").strip()
    if not reason:
        raise ValidationError(
            "Rejection reason is required",
            [Violation("rejection_reason", "rejection_reason is required")],
        )
    return {"rejected_at": now, "rejected_by": actor.id, "rejection_reason": reason}


def _effect_in_progress(request: ServiceRequest, actor: CurrentUser, now: datetime, details: dict) -> dict:
    if Status(request.status) == Status.ON_HOLD:
        # Resuming keeps the original start.
        return {}
    started_at = as_utc(details.get("started_at")) or now
    floor = as_utc(request.scheduled_date) or as_utc(request.approved_at)
    if details.get("started_at") is not None and floor is not None and started_at < floor:
        raise ValidationError(
            "Start date cannot be earlier than the scheduled date",
            [Violation("actual_start_date", "actual_start_date cannot be earlier than the scheduled date")],
        )
    changes = {"started_at": started_at}
    if details.get("start_notes"):
        changes["start_notes"] = details["start_notes"]
    return changes


def _effect_completed(request: ServiceRequest, actor: CurrentUser, now: datetime, details: dict) -> dict:
    changes: dict[str, Any] = {"completed_at": now, "completed_by": actor.id}
    if details.get("completion_notes"):
        changes["completion_notes"] = details["completion_notes"]
    if details.get("final_cost") is not None:
        changes["final_cost"] = details["final_cost"]
    harvest_completion = details.get("harvest_completion") or {}
    if harvest_completion:
        if request.harvest_details is None:
            raise ValidationError(
                "Harvest completion fields are only allowed for harvest requests",
                [Violation(key, f"{key} is only allowed for harvest requests") for key in harvest_completion],
            )
        # Merge into a fresh dict so approval data survives and the JSON column sees a new value.
        changes["harvest_details"] = {**request.harvest_details, **harvest_completion}
    return changes


EFFECTS = {
    Status.APPROVED: _effect_approved,
    Status.REJECTED: _effect_rejected,
    Status.IN_PROGRESS: _effect_in_progress,
    Status.COMPLETED: _effect_completed,
}


def plan_transition(
    request: ServiceRequest,
    new_status: Status,
    *,
    actor: CurrentUser,
    now: Optional[datetime] = None,
    details: Optional[dict[str, Any]] = None,
    changes: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Compute the field changes of a transition without touching the request.

    Returns an empty dict for an idempotent repeat. Raises
    ``InvalidTransition`` for unreachable targets and ``ValidationError`` when
    a transition's required fields are missing.
    """
    current = Status(request.status)
    now = now or utc_now()
    details = details or {}

    if new_status == current and current in IDEMPOTENT_STATUSES:
        return {}

    if not is_transition_allowed(current, new_status):
        raise InvalidTransition(f"Cannot change status from {current.value} to {new_status.value}")

    planned: dict[str, Any] = dict(changes or {})
    agent_id = planned.get("agent_id", request.agent_id)
    if new_status in AGENT_REQUIRED and not agent_id:
        raise InvalidTransition(f"An agent must be assigned before the request can be {new_status.value}")

    effect = EFFECTS.get(new_status)
    if effect is not None:
        planned.update(effect(request, actor, now, details))
    if details.get("notes"):
        planned["notes"] = details["notes"]
    planned["status"] = new_status.value
    return planned


def normalize_completion(request: ServiceRequest, now: Optional[datetime] = None) -> None:
    """Keep ``completed_at`` set exactly when the request is completed."""
    if request.status == Status.COMPLETED.value:
        if request.completed_at is None:
            request.completed_at = now or utc_now()
    elif request.completed_at is not None:
        request.completed_at = None


def apply_changes(request: ServiceRequest, changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        setattr(request, key, value)


def apply_transition(
    db: Session,
    *,
    request: ServiceRequest,
    new_status: Status,
    actor: CurrentUser,
    details: Optional[dict[str, Any]] = None,
    changes: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    action: str = "STATUS_CHANGE",
) -> bool:
    now = utc_now()
    planned = plan_transition(
        request,
        new_status,
        actor=actor,
        now=now,
        details=details,
        changes=changes,
    )
    if not planned:
        return False

    old_status = request.status
    old_snapshot = {key: getattr(request, key) for key in planned}
    apply_changes(request, planned)
    normalize_completion(request, now)

    create_audit_log(
        db,
        entity_id=str(request.id),
        action=action,
        old_value=old_snapshot,
        new_value=planned,
        actor=actor,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"request_number": request.request_number},
    )
    logger.info(
        "Service request %s %s -> %s by %s:%s",
        request.request_number,
        old_status,
        request.status,
        actor.role,
        actor.id,
    )
    return True
