from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServiceRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


TERMINAL_STATUSES = {
    ServiceRequestStatus.COMPLETED,
    ServiceRequestStatus.REJECTED,
    ServiceRequestStatus.CANCELLED,
}


class ServiceType(str, Enum):
    CROP_CONSULTATION = "crop_consultation"
    PEST_CONTROL = "pest_control"
    SOIL_TESTING = "soil_testing"
    IRRIGATION_SETUP = "irrigation_setup"
    EQUIPMENT_MAINTENANCE = "equipment_maintenance"
    FERTILIZER_APPLICATION = "fertilizer_application"
    HARVEST_ASSISTANCE = "harvest_assistance"
    HARVEST = "harvest"
    PLANTING = "planting"
    MAINTENANCE = "maintenance"
    CONSULTATION = "consultation"
    MARKET_LINKAGE = "market_linkage"
    TRAINING = "training"
    OTHER = "other"


HARVEST_SERVICE_TYPES = {ServiceType.HARVEST.value, ServiceType.HARVEST_ASSISTANCE.value}
PEST_SERVICE_TYPES = {ServiceType.PEST_CONTROL.value}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class HassSize(str, Enum):
    C12C14 = "c12c14"
    C16C18 = "c16c18"
    C20C24 = "c20c24"


class PestSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Numeric payload fields accept numbers or numeric strings; the domain checks
# in ``request_rules`` report every problem at once.


class _VersionedPayload(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=1)


class ServiceRequestCreate(BaseModel):
    service_type: str
    title: str = ""
    description: str = ""
    priority: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    cost_estimate: Optional[Any] = None
    notes: Optional[str] = None
    harvest_details: Optional[Dict[str, Any]] = None
    pest_management_details: Optional[Dict[str, Any]] = None
    farmer_info: Optional[Dict[str, Any]] = None
    attachments: List[str] = Field(default_factory=list)


class HarvestRequestCreate(ServiceRequestCreate):
    service_type: str = ServiceType.HARVEST.value
    harvest_details: Dict[str, Any]


class ServiceRequestUpdate(_VersionedPayload):
    model_config = ConfigDict(extra="forbid")

    service_type: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    scheduled_date: Optional[datetime] = None
    cost_estimate: Optional[Any] = None
    final_cost: Optional[Any] = None
    notes: Optional[str] = None
    harvest_details: Optional[Dict[str, Any]] = None
    pest_management_details: Optional[Dict[str, Any]] = None
    farmer_info: Optional[Dict[str, Any]] = None
    attachments: Optional[List[str]] = None


class ApproveRequest(_VersionedPayload):
    agent_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    cost_estimate: Optional[Any] = None
    approved_workers: Optional[Any] = None
    approved_equipment: Optional[List[str]] = None
    notes: Optional[str] = None


class RejectRequest(_VersionedPayload):
    rejection_reason: Optional[str] = None


class AssignRequest(_VersionedPayload):
    agent_id: str
    scheduled_date: Optional[datetime] = None
    cost_estimate: Optional[Any] = None
    notes: Optional[str] = None


class StartRequest(_VersionedPayload):
    start_notes: Optional[str] = None
    actual_start_date: Optional[datetime] = None


class CompleteRequest(_VersionedPayload):
    completion_notes: Optional[str] = None
    final_cost: Optional[Any] = None
    actual_workers_used: Optional[Any] = None
    actual_harvest_amount: Optional[str] = None
    harvest_quality_notes: Optional[str] = None
    completion_images: Optional[List[str]] = None


class CancelRequest(_VersionedPayload):
    notes: Optional[str] = None


class StatusUpdateRequest(_VersionedPayload):
    status: str
    notes: Optional[str] = None


class FeedbackRequest(BaseModel):
    rating: Any = None
    comment: Optional[str] = None
    farmer_satisfaction: Optional[Any] = None
    agent_professionalism: Optional[Any] = None
    service_quality: Optional[Any] = None
    would_recommend: Optional[bool] = None


class ServiceRequestOut(BaseModel):
    id: str
    request_number: str
    farmer_id: str
    agent_id: Optional[str] = None
    service_type: str
    title: str
    description: str
    status: ServiceRequestStatus
    priority: Priority
    requested_date: Optional[datetime] = None
    scheduled_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    completed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    location: Dict[str, Any]
    cost_estimate: Optional[float] = None
    final_cost: Optional[float] = None
    notes: Optional[str] = None
    start_notes: Optional[str] = None
    completion_notes: Optional[str] = None
    harvest_details: Optional[Dict[str, Any]] = None
    pest_management_details: Optional[Dict[str, Any]] = None
    farmer_info: Optional[Dict[str, Any]] = None
    attachments: List[str] = Field(default_factory=list)
    feedback: Optional[Dict[str, Any]] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApiError(BaseModel):
    field: str
    message: str


class ApiMeta(BaseModel):
    timestamp: datetime
    version: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ServiceRequestResponse(BaseModel):
    success: bool
    message: str
    data: Optional[ServiceRequestOut] = None
    errors: Optional[List[ApiError]] = None
    meta: ApiMeta


class ServiceRequestListResponse(BaseModel):
    success: bool
    message: str
    data: List[ServiceRequestOut]
    pagination: Pagination
    meta: ApiMeta
