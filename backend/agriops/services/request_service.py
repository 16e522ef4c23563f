"""Service-request operations.

Every public function follows the same path: load the request, check the
caller's capability, validate the input, run the lifecycle transition (if
any), write audit and notification rows, then commit once. Any error before
the commit leaves nothing behind; the session is rolled back by the caller's
request scope.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from agriops.core.auth import ADMIN, AGENT, FARMER, CurrentUser
from agriops.core.errors import (
    Conflict,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
    Violation,
    raise_for_violations,
)
from agriops.models.service_request import ServiceRequest
from agriops.schemas.service_request import TERMINAL_STATUSES, ServiceRequestStatus as Status
from agriops.services import feedback_service, request_rules
from agriops.services.notification_outbox import notify_request_event
from agriops.services.permissions import Action, ensure_allowed
from agriops.services.transition_service import (
    apply_changes,
    apply_transition,
    create_audit_log,
    normalize_completion,
    utc_now,
)
from agriops.services.user_directory import find_active_agent
from agriops.utils.numbering import generate_request_number

logger = logging.getLogger(__name__)

MAX_LIMIT = 100
REQUEST_NUMBER_ATTEMPTS = 3

# Harvest keys written after submission; a content edit must not drop them.
POST_SUBMISSION_HARVEST_KEYS = (
    "approved_workers",
    "approved_equipment",
    "actual_workers_used",
    "actual_harvest_amount",
    "harvest_quality_notes",
    "completion_images",
)

FARMER_STATUS_TARGETS = {Status.PENDING, Status.CANCELLED}
AGENT_STATUS_TARGETS = {Status.IN_PROGRESS, Status.COMPLETED, Status.ON_HOLD}
FARMER_CANCELLABLE = {Status.PENDING, Status.APPROVED}
STARTABLE = {Status.APPROVED, Status.ASSIGNED}
COMPLETABLE = {Status.APPROVED, Status.IN_PROGRESS}
UNDELETABLE = {Status.ASSIGNED, Status.IN_PROGRESS}

STATUS_EVENTS = {
    Status.APPROVED: "service_request.approved",
    Status.REJECTED: "service_request.rejected",
    Status.ASSIGNED: "service_request.assigned",
    Status.IN_PROGRESS: "service_request.started",
    Status.COMPLETED: "service_request.completed",
    Status.CANCELLED: "service_request.cancelled",
    Status.ON_HOLD: "service_request.on_hold",
}


@dataclass
class AuditContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ListFilters:
    status: Optional[str] = None
    service_type: Optional[str] = None
    priority: Optional[str] = None
    farmer_id: Optional[str] = None
    agent_id: Optional[str] = None
    province: Optional[str] = None
    district: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = None


@dataclass
class Page:
    items: list[ServiceRequest]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


# ── loading / committing ─────────────────────────────────────────────


def _parse_request_id(request_id: Any) -> uuid.UUID:
    if isinstance(request_id, uuid.UUID):
        return request_id
    try:
        return uuid.UUID(str(request_id))
    except (TypeError, ValueError):
        raise NotFound("Service request not found")


def get_request(db: Session, request_id: Any) -> ServiceRequest:
    request = db.get(ServiceRequest, _parse_request_id(request_id))
    if request is None:
        raise NotFound("Service request not found")
    return request


def _load(db: Session, request_id: Any, expected_version: Optional[int]) -> ServiceRequest:
    request = get_request(db, request_id)
    if expected_version is not None and expected_version != request.row_version:
        logger.info(
            "Version mismatch for %s: expected=%s actual=%s",
            request.request_number,
            expected_version,
            request.row_version,
        )
        raise Conflict()
    return request


def _commit(db: Session, request: Optional[ServiceRequest] = None) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.warning("Concurrent write lost for %s", getattr(request, "request_number", None))
        raise Conflict()
    if request is not None:
        db.refresh(request)


def _status(request: ServiceRequest) -> Status:
    return Status(request.status)


def _today():
    return request_rules.utc_today()


def _ctx(context: Optional[AuditContext]) -> AuditContext:
    return context or AuditContext()


def _notify(db: Session, request: ServiceRequest, new_status: Status) -> None:
    event = STATUS_EVENTS.get(new_status)
    if event:
        notify_request_event(db, request, event)


def _transition(
    db: Session,
    request: ServiceRequest,
    new_status: Status,
    principal: CurrentUser,
    context: Optional[AuditContext],
    *,
    details: Optional[dict[str, Any]] = None,
    changes: Optional[dict[str, Any]] = None,
    action: str = "STATUS_CHANGE",
) -> ServiceRequest:
    context = _ctx(context)
    changed = apply_transition(
        db,
        request=request,
        new_status=new_status,
        actor=principal,
        details=details,
        changes=changes,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        action=action,
    )
    if not changed:
        return request
    _notify(db, request, new_status)
    _commit(db, request)
    return request


# ── create / read ────────────────────────────────────────────────────


def create_request(
    db: Session,
    principal: CurrentUser,
    payload: dict[str, Any],
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    ensure_allowed(principal, Action.CREATE)
    result = request_rules.validate_create(payload, today=_today())
    raise_for_violations(result.violations)
    cleaned = result.value
    context = _ctx(context)

    for attempt in range(1, REQUEST_NUMBER_ATTEMPTS + 1):
        now = utc_now()
        request = ServiceRequest(
            id=uuid.uuid4(),
            request_number=generate_request_number(db, now),
            farmer_id=principal.id,
            status=Status.PENDING.value,
            requested_date=now,
            province=cleaned["location"].get("province"),
            district=cleaned["location"].get("district"),
            **cleaned,
        )
        db.add(request)
        create_audit_log(
            db,
            entity_id=str(request.id),
            action="CREATE",
            old_value=None,
            new_value={
                "request_number": request.request_number,
                "service_type": request.service_type,
                "status": request.status,
                "farmer_info": request.farmer_info,
            },
            actor=principal,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        try:
            db.commit()
        except IntegrityError:
            # Two writers drew the same request number between check and insert.
            db.rollback()
            logger.warning("Request number clash on attempt %s", attempt)
            continue
        db.refresh(request)
        logger.info(
            "Service request %s created by farmer %s type=%s",
            request.request_number,
            principal.id,
            request.service_type,
        )
        return request
    raise Conflict("Could not allocate a unique request number")


def create_harvest_request(
    db: Session,
    principal: CurrentUser,
    payload: dict[str, Any],
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    payload = dict(payload)
    payload["service_type"] = payload.get("service_type") or "harvest"
    if not request_rules.is_harvest_type(payload["service_type"]):
        raise ValidationError(
            "Service request is invalid",
            [Violation("service_type", "service_type must be a harvest service type")],
        )
    return create_request(db, principal, payload, context)


def get_for_principal(db: Session, principal: CurrentUser, request_id: Any) -> ServiceRequest:
    request = get_request(db, request_id)
    ensure_allowed(principal, Action.READ, request)
    return request


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _day_end(value: date) -> datetime:
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def _scoped_query(principal: CurrentUser, filters: ListFilters, *, agent_pool_only: bool = True):
    stmt = select(ServiceRequest)
    if principal.role == FARMER:
        stmt = stmt.where(ServiceRequest.farmer_id == principal.id)
    elif principal.role == AGENT and agent_pool_only:
        # Agents see their own work plus the unassigned pool.
        stmt = stmt.where(
            or_(ServiceRequest.agent_id == principal.id, ServiceRequest.agent_id.is_(None))
        )

    if filters.status:
        stmt = stmt.where(ServiceRequest.status == filters.status)
    if filters.service_type:
        stmt = stmt.where(ServiceRequest.service_type == filters.service_type)
    if filters.priority:
        stmt = stmt.where(ServiceRequest.priority == filters.priority)
    if filters.farmer_id and principal.role in (ADMIN, AGENT):
        stmt = stmt.where(ServiceRequest.farmer_id == filters.farmer_id)
    if filters.agent_id and principal.role == ADMIN:
        stmt = stmt.where(ServiceRequest.agent_id == filters.agent_id)
    if filters.province and principal.role != FARMER:
        stmt = stmt.where(ServiceRequest.province == filters.province)
    if filters.district and principal.role != FARMER:
        stmt = stmt.where(ServiceRequest.district == filters.district)
    if filters.date_from:
        stmt = stmt.where(ServiceRequest.requested_date >= _day_start(filters.date_from))
    if filters.date_to:
        stmt = stmt.where(ServiceRequest.requested_date <= _day_end(filters.date_to))
    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        stmt = stmt.where(
            or_(
                ServiceRequest.title.ilike(pattern),
                ServiceRequest.description.ilike(pattern),
                ServiceRequest.request_number.ilike(pattern),
            )
        )
    return stmt


def _paginate(db: Session, stmt, page: int, limit: int) -> Page:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_LIMIT)
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = (
        db.execute(
            stmt.order_by(ServiceRequest.requested_date.desc(), ServiceRequest.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return Page(items=list(items), page=page, limit=limit, total=int(total or 0))


def list_requests(
    db: Session,
    principal: CurrentUser,
    filters: Optional[ListFilters] = None,
    *,
    page: int = 1,
    limit: int = 10,
) -> Page:
    ensure_allowed(principal, Action.LIST)
    filters = filters or ListFilters()
    return _paginate(db, _scoped_query(principal, filters), page, limit)


def list_for_farmer(
    db: Session,
    principal: CurrentUser,
    farmer_id: str,
    filters: Optional[ListFilters] = None,
    *,
    page: int = 1,
    limit: int = 10,
) -> Page:
    if principal.role == FARMER and principal.id != farmer_id:
        logger.warning("Farmer %s tried to list requests of farmer %s", principal.id, farmer_id)
        raise PermissionDenied()
    if principal.role not in (ADMIN, AGENT, FARMER):
        raise PermissionDenied()
    ensure_allowed(principal, Action.LIST)
    filters = filters or ListFilters()
    filters.farmer_id = None
    # Agents look up a farmer's whole history here, not just their own pool.
    stmt = _scoped_query(principal, filters, agent_pool_only=False)
    stmt = stmt.where(ServiceRequest.farmer_id == farmer_id)
    return _paginate(db, stmt, page, limit)


def list_for_agent(
    db: Session,
    principal: CurrentUser,
    agent_id: str,
    filters: Optional[ListFilters] = None,
    *,
    page: int = 1,
    limit: int = 10,
) -> Page:
    if principal.role == AGENT and principal.id != agent_id:
        logger.warning("Agent %s tried to list requests of agent %s", principal.id, agent_id)
        raise PermissionDenied()
    if principal.role not in (ADMIN, AGENT):
        raise PermissionDenied()
    ensure_allowed(principal, Action.LIST)
    filters = filters or ListFilters()
    stmt = _scoped_query(principal, filters).where(ServiceRequest.agent_id == agent_id)
    return _paginate(db, stmt, page, limit)


# ── edit / delete ────────────────────────────────────────────────────


def _merge_harvest(current: Optional[dict[str, Any]], incoming: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if incoming is None or not current:
        return incoming
    kept = {key: current[key] for key in POST_SUBMISSION_HARVEST_KEYS if key in current}
    return {**incoming, **kept}


def update_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    changes: dict[str, Any],
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.UPDATE, request)

    status = _status(request)
    if status in TERMINAL_STATUSES:
        raise InvalidTransition(f"Cannot edit a {status.value} service request")
    if (
        "service_type" in changes
        and changes["service_type"] != request.service_type
        and status != Status.PENDING
    ):
        raise ValidationError(
            "Service request is invalid",
            [Violation("service_type", "service_type can only be changed while the request is pending")],
        )

    result = request_rules.validate_update(
        changes,
        {"service_type": request.service_type},
        today=_today(),
    )
    raise_for_violations(result.violations)
    cleaned = result.value
    if not cleaned:
        return request

    if "harvest_details" in cleaned:
        cleaned["harvest_details"] = _merge_harvest(request.harvest_details, cleaned["harvest_details"])
    if "location" in cleaned:
        cleaned["province"] = cleaned["location"].get("province")
        cleaned["district"] = cleaned["location"].get("district")

    old_snapshot = {key: getattr(request, key) for key in cleaned}
    apply_changes(request, cleaned)
    normalize_completion(request)

    context = _ctx(context)
    create_audit_log(
        db,
        entity_id=str(request.id),
        action="UPDATE",
        old_value=old_snapshot,
        new_value=cleaned,
        actor=principal,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"request_number": request.request_number},
    )
    _commit(db, request)
    logger.info("Service request %s updated by %s:%s", request.request_number, principal.role, principal.id)
    return request


def delete_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> None:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.DELETE, request)
    if _status(request) in UNDELETABLE:
        raise InvalidTransition("Cannot delete an assigned or in-progress service request")

    context = _ctx(context)
    create_audit_log(
        db,
        entity_id=str(request.id),
        action="DELETE",
        old_value={
            "request_number": request.request_number,
            "status": request.status,
            "service_type": request.service_type,
        },
        new_value=None,
        actor=principal,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    request_number = request.request_number
    db.delete(request)
    _commit(db)
    logger.info("Service request %s deleted by %s:%s", request_number, principal.role, principal.id)


# ── lifecycle ────────────────────────────────────────────────────────


def _require_agent(db: Session, agent_id: str) -> str:
    agent = find_active_agent(db, agent_id)
    if agent is None:
        raise NotFound("Agent not found or inactive")
    return str(agent.id)


def approve_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    payload: dict[str, Any],
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.APPROVE, request)
    if _status(request) == Status.APPROVED:
        return request

    violations: list[Violation] = []
    changes: dict[str, Any] = {}
    cost = request_rules.validate_cost(payload.get("cost_estimate"), "cost_estimate")
    violations.extend(cost.violations)
    changes.update(cost.value)
    if payload.get("scheduled_date") is not None:
        changes["scheduled_date"] = payload["scheduled_date"]

    approval = request_rules.validate_approval_details(
        payload.get("approved_workers"),
        payload.get("approved_equipment"),
    )
    violations.extend(approval.violations)
    if approval.value:
        if request.harvest_details is None:
            violations.extend(
                Violation(key, f"{key} is only allowed for harvest requests") for key in approval.value
            )
        else:
            changes["harvest_details"] = {**request.harvest_details, **approval.value}
    raise_for_violations(violations)

    if payload.get("agent_id"):
        changes["agent_id"] = _require_agent(db, payload["agent_id"])

    return _transition(
        db,
        request,
        Status.APPROVED,
        principal,
        context,
        details={"notes": payload.get("notes")},
        changes=changes,
        action="APPROVE",
    )


def reject_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    rejection_reason: Optional[str],
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.REJECT, request)
    return _transition(
        db,
        request,
        Status.REJECTED,
        principal,
        context,
        details={"rejection_reason": rejection_reason},
        action="REJECT",
    )


def assign_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    payload: dict[str, Any],
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.ASSIGN, request)

    status = _status(request)
    if status not in (Status.APPROVED, Status.ASSIGNED):
        raise InvalidTransition("Only approved requests can be assigned")

    cost = request_rules.validate_cost(payload.get("cost_estimate"), "cost_estimate")
    if not payload.get("agent_id"):
        cost.violations.append(Violation("agent_id", "agent_id is required"))
    raise_for_violations(cost.violations)

    changes: dict[str, Any] = {"agent_id": _require_agent(db, payload["agent_id"]), **cost.value}
    if payload.get("scheduled_date") is not None:
        changes["scheduled_date"] = payload["scheduled_date"]

    if status == Status.APPROVED:
        return _transition(
            db,
            request,
            Status.ASSIGNED,
            principal,
            context,
            details={"notes": payload.get("notes")},
            changes=changes,
            action="ASSIGN",
        )

    # Reassignment keeps the status and only swaps the executor.
    if payload.get("notes"):
        changes["notes"] = payload["notes"]
    old_snapshot = {key: getattr(request, key) for key in changes}
    apply_changes(request, changes)
    context = _ctx(context)
    create_audit_log(
        db,
        entity_id=str(request.id),
        action="REASSIGN",
        old_value=old_snapshot,
        new_value=changes,
        actor=principal,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata={"request_number": request.request_number},
    )
    notify_request_event(db, request, "service_request.assigned")
    _commit(db, request)
    logger.info("Service request %s reassigned to agent %s", request.request_number, request.agent_id)
    return request


def start_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    payload: dict[str, Any],
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.START, request)
    if _status(request) not in STARTABLE:
        raise InvalidTransition("Only approved or assigned requests can be started")
    return _transition(
        db,
        request,
        Status.IN_PROGRESS,
        principal,
        context,
        details={
            "started_at": payload.get("actual_start_date"),
            "start_notes": payload.get("start_notes"),
        },
        action="START",
    )


def complete_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    payload: dict[str, Any],
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.COMPLETE, request)
    if _status(request) not in COMPLETABLE:
        raise InvalidTransition("Only approved or in-progress requests can be completed")

    cost = request_rules.validate_cost(payload.get("final_cost"), "final_cost")
    completion = request_rules.validate_completion_details(payload)
    raise_for_violations(cost.violations + completion.violations)

    return _transition(
        db,
        request,
        Status.COMPLETED,
        principal,
        context,
        details={
            "completion_notes": payload.get("completion_notes"),
            "final_cost": cost.value.get("final_cost"),
            "harvest_completion": completion.value,
        },
        action="COMPLETE",
    )


def cancel_request(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    notes: Optional[str] = None,
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.CANCEL, request)
    if not principal.is_admin and _status(request) not in FARMER_CANCELLABLE:
        raise InvalidTransition("Only pending or approved requests can be cancelled")
    return _transition(
        db,
        request,
        Status.CANCELLED,
        principal,
        context,
        details={"notes": notes},
        action="CANCEL",
    )


def update_status(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    new_status: str,
    notes: Optional[str] = None,
    *,
    expected_version: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    """Generic status change, limited per role to the targets it may reach."""
    request = _load(db, request_id, expected_version)
    ensure_allowed(principal, Action.UPDATE_STATUS, request)

    try:
        target = Status(new_status)
    except ValueError:
        raise ValidationError(
            "Service request is invalid",
            [Violation("status", "status must be a valid service request status")],
        )

    allowed_targets = {
        FARMER: FARMER_STATUS_TARGETS,
        AGENT: AGENT_STATUS_TARGETS,
    }.get(principal.role)
    if allowed_targets is not None and target not in allowed_targets:
        logger.warning(
            "Status target %s not available to %s:%s on %s",
            target.value,
            principal.role,
            principal.id,
            request.request_number,
        )
        raise PermissionDenied()
    if (
        principal.role == FARMER
        and target == Status.CANCELLED
        and _status(request) not in FARMER_CANCELLABLE
    ):
        raise InvalidTransition("Only pending or approved requests can be cancelled")

    details: dict[str, Any] = {"notes": notes}
    if target == Status.REJECTED:
        details = {"rejection_reason": notes}
    return _transition(
        db,
        request,
        target,
        principal,
        context,
        details=details,
        action="STATUS_CHANGE",
    )


def submit_feedback(
    db: Session,
    principal: CurrentUser,
    request_id: Any,
    payload: dict[str, Any],
    context: Optional[AuditContext] = None,
) -> ServiceRequest:
    request = get_request(db, request_id)
    context = _ctx(context)
    feedback_service.submit_feedback(
        db,
        request=request,
        principal=principal,
        payload=payload,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    _commit(db, request)
    return request
