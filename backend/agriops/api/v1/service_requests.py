from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from sqlalchemy.orm import Session

from agriops.core.auth import ADMIN, FARMER, CurrentUser, get_current_user, require_roles
from agriops.core.dependencies import get_db
from agriops.core.errors import ValidationError, Violation
from agriops.models.service_request import ServiceRequest
from agriops.schemas.service_request import (
    ApproveRequest,
    AssignRequest,
    CancelRequest,
    CompleteRequest,
    FeedbackRequest,
    HarvestRequestCreate,
    RejectRequest,
    ServiceRequestCreate,
    ServiceRequestListResponse,
    ServiceRequestOut,
    ServiceRequestResponse,
    ServiceRequestUpdate,
    StartRequest,
    StatusUpdateRequest,
)
from agriops.services import request_service
from agriops.services.request_service import AuditContext, ListFilters, Page
from agriops.services.transition_service import as_utc
from agriops.utils.responses import paginated_response, success_response

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None


def _context(request: Request) -> AuditContext:
    return AuditContext(ip_address=_client_ip(request), user_agent=_user_agent(request))


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _etag(service_request: ServiceRequest) -> str:
    return f'"{service_request.row_version}"'


def _expected_version(body_version: Optional[int], if_match: Optional[str]) -> Optional[int]:
    """Body ``expected_version`` wins over ``If-Match``; ``*`` means any version."""
    if body_version is not None:
        return body_version
    if not if_match:
        return None
    raw = if_match.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    raw = raw.strip('"')
    if raw == "*":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(
            "Invalid If-Match header",
            [Violation("If-Match", "If-Match must carry the request version")],
        ) from exc


def _request_to_out(service_request: ServiceRequest) -> ServiceRequestOut:
    return ServiceRequestOut(
        id=str(service_request.id),
        request_number=service_request.request_number,
        farmer_id=service_request.farmer_id,
        agent_id=service_request.agent_id,
        service_type=service_request.service_type,
        title=service_request.title,
        description=service_request.description,
        status=service_request.status,
        priority=service_request.priority,
        requested_date=as_utc(service_request.requested_date),
        scheduled_date=as_utc(service_request.scheduled_date),
        started_at=as_utc(service_request.started_at),
        completed_at=as_utc(service_request.completed_at),
        approved_at=as_utc(service_request.approved_at),
        rejected_at=as_utc(service_request.rejected_at),
        approved_by=service_request.approved_by,
        rejected_by=service_request.rejected_by,
        completed_by=service_request.completed_by,
        rejection_reason=service_request.rejection_reason,
        location=service_request.location or {},
        cost_estimate=_money(service_request.cost_estimate),
        final_cost=_money(service_request.final_cost),
        notes=service_request.notes,
        start_notes=service_request.start_notes,
        completion_notes=service_request.completion_notes,
        harvest_details=service_request.harvest_details,
        pest_management_details=service_request.pest_management_details,
        farmer_info=service_request.farmer_info,
        attachments=service_request.attachments or [],
        feedback=service_request.feedback,
        version=service_request.row_version,
        created_at=as_utc(service_request.created_at),
        updated_at=as_utc(service_request.updated_at),
    )


def _single(service_request: ServiceRequest, message: str, response: Optional[Response] = None) -> dict[str, Any]:
    if response is not None:
        response.headers["ETag"] = _etag(service_request)
    return success_response(_request_to_out(service_request).model_dump(mode="json"), message)


def _page(result: Page, message: str) -> dict[str, Any]:
    return paginated_response(
        [_request_to_out(item).model_dump(mode="json") for item in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        pages=result.pages,
        message=message,
    )


def _list_filters(
    status: Optional[str] = None,
    service_type: Optional[str] = None,
    priority: Optional[str] = None,
    farmer_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    province: Optional[str] = None,
    district: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    search: Optional[str] = Query(None, max_length=200),
) -> ListFilters:
    return ListFilters(
        status=status,
        service_type=service_type,
        priority=priority,
        farmer_id=farmer_id,
        agent_id=agent_id,
        province=province,
        district=district,
        date_from=date_from,
        date_to=date_to,
        search=search,
    )


@router.post("/service-requests", response_model=ServiceRequestResponse, status_code=201)
async def create_service_request(
    payload: ServiceRequestCreate,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(require_roles(FARMER)),
    db: Session = Depends(get_db),
):
    created = request_service.create_request(db, current_user, payload.model_dump(), _context(request))
    return _single(created, "Service request created successfully", response)


@router.post("/service-requests/harvest", response_model=ServiceRequestResponse, status_code=201)
async def create_harvest_request(
    payload: HarvestRequestCreate,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(require_roles(FARMER)),
    db: Session = Depends(get_db),
):
    created = request_service.create_harvest_request(db, current_user, payload.model_dump(), _context(request))
    return _single(created, "Harvest request created successfully", response)


@router.get("/service-requests", response_model=ServiceRequestListResponse)
async def list_service_requests(
    filters: ListFilters = Depends(_list_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = request_service.list_requests(db, current_user, filters, page=page, limit=limit)
    return _page(result, "Service requests retrieved successfully")


@router.get("/service-requests/farmer/{farmer_id}", response_model=ServiceRequestListResponse)
async def list_farmer_service_requests(
    farmer_id: str,
    filters: ListFilters = Depends(_list_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = request_service.list_for_farmer(db, current_user, farmer_id, filters, page=page, limit=limit)
    return _page(result, "Farmer service requests retrieved successfully")


@router.get("/service-requests/agent/{agent_id}", response_model=ServiceRequestListResponse)
async def list_agent_service_requests(
    agent_id: str,
    filters: ListFilters = Depends(_list_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = request_service.list_for_agent(db, current_user, agent_id, filters, page=page, limit=limit)
    return _page(result, "Agent service requests retrieved successfully")


@router.get("/service-requests/{request_id}", response_model=ServiceRequestResponse)
async def get_service_request(
    request_id: str,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    found = request_service.get_for_principal(db, current_user, request_id)
    return _single(found, "Service request retrieved successfully", response)


@router.put("/service-requests/{request_id}", response_model=ServiceRequestResponse)
async def update_service_request(
    request_id: str,
    payload: ServiceRequestUpdate,
    request: Request,
    response: Response,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    changes.pop("expected_version", None)
    updated = request_service.update_request(
        db,
        current_user,
        request_id,
        changes,
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(updated, "Service request updated successfully", response)


@router.delete("/service-requests/{request_id}", response_model=ServiceRequestResponse)
async def delete_service_request(
    request_id: str,
    request: Request,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    request_service.delete_request(
        db,
        current_user,
        request_id,
        expected_version=_expected_version(None, if_match),
        context=_context(request),
    )
    return success_response(message="Service request deleted successfully")


@router.put("/service-requests/{request_id}/assign", response_model=ServiceRequestResponse)
async def assign_service_request(
    request_id: str,
    payload: AssignRequest,
    request: Request,
    response: Response,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(require_roles(ADMIN)),
    db: Session = Depends(get_db),
):
    assigned = request_service.assign_request(
        db,
        current_user,
        request_id,
        payload.model_dump(exclude={"expected_version"}),
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(assigned, "Agent assigned successfully", response)


@router.put("/service-requests/{request_id}/approve", response_model=ServiceRequestResponse)
async def approve_service_request(
    request_id: str,
    request: Request,
    response: Response,
    payload: Optional[ApproveRequest] = None,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(require_roles(ADMIN)),
    db: Session = Depends(get_db),
):
    payload = payload or ApproveRequest()
    approved = request_service.approve_request(
        db,
        current_user,
        request_id,
        payload.model_dump(exclude={"expected_version"}),
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(approved, "Service request approved successfully", response)


@router.put("/service-requests/{request_id}/reject", response_model=ServiceRequestResponse)
async def reject_service_request(
    request_id: str,
    payload: RejectRequest,
    request: Request,
    response: Response,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(require_roles(ADMIN)),
    db: Session = Depends(get_db),
):
    rejected = request_service.reject_request(
        db,
        current_user,
        request_id,
        payload.rejection_reason,
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(rejected, "Service request rejected", response)


@router.put("/service-requests/{request_id}/start", response_model=ServiceRequestResponse)
async def start_service_request(
    request_id: str,
    request: Request,
    response: Response,
    payload: Optional[StartRequest] = None,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = payload or StartRequest()
    started = request_service.start_request(
        db,
        current_user,
        request_id,
        payload.model_dump(exclude={"expected_version"}),
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(started, "Service request started successfully", response)


@router.put("/service-requests/{request_id}/complete", response_model=ServiceRequestResponse)
async def complete_service_request(
    request_id: str,
    request: Request,
    response: Response,
    payload: Optional[CompleteRequest] = None,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = payload or CompleteRequest()
    completed = request_service.complete_request(
        db,
        current_user,
        request_id,
        payload.model_dump(exclude={"expected_version"}),
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(completed, "Service request completed successfully", response)


@router.put("/service-requests/{request_id}/cancel", response_model=ServiceRequestResponse)
async def cancel_service_request(
    request_id: str,
    request: Request,
    response: Response,
    payload: Optional[CancelRequest] = None,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = payload or CancelRequest()
    cancelled = request_service.cancel_request(
        db,
        current_user,
        request_id,
        payload.notes,
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(cancelled, "Service request cancelled", response)


@router.put("/service-requests/{request_id}/status", response_model=ServiceRequestResponse)
async def update_service_request_status(
    request_id: str,
    payload: StatusUpdateRequest,
    request: Request,
    response: Response,
    if_match: Optional[str] = Header(None, alias="If-Match"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = request_service.update_status(
        db,
        current_user,
        request_id,
        payload.status,
        payload.notes,
        expected_version=_expected_version(payload.expected_version, if_match),
        context=_context(request),
    )
    return _single(updated, "Service request status updated successfully", response)


@router.post("/service-requests/{request_id}/feedback", response_model=ServiceRequestResponse)
async def submit_service_request_feedback(
    request_id: str,
    payload: FeedbackRequest,
    request: Request,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = request_service.submit_feedback(db, current_user, request_id, payload.model_dump(), _context(request))
    return _single(updated, "Feedback submitted successfully", response)
