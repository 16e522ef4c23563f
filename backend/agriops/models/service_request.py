import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")

SERVICE_REQUEST_STATUSES = (
    "pending",
    "approved",
    "rejected",
    "assigned",
    "in_progress",
    "completed",
    "cancelled",
    "on_hold",
)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('admin','agent','farmer','shop_manager')", name="chk_user_role"),
        CheckConstraint("status IN ('active','inactive')", name="chk_user_status"),
        Index("idx_users_role_status", "role", "status"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(200))
    phone = Column(String(20))
    role = Column(String(32), nullable=False, default="farmer", server_default=text("'farmer'"))
    status = Column(String(16), nullable=False, default="active", server_default=text("'active'"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ServiceRequest(Base):
    """A farmer-initiated work order.

    Embedded sub-documents (location, harvest/pest details, feedback) live in
    JSON columns and are always replaced wholesale, never mutated in place.
    ``row_version`` is the optimistic-concurrency counter: every UPDATE is
    issued as ``... WHERE row_version = <version read>``.
    """

    __tablename__ = "service_requests"
    __table_args__ = (
        UniqueConstraint("request_number", name="uniq_service_requests_number"),
        CheckConstraint(
            "status IN ('pending','approved','rejected','assigned','in_progress','completed','cancelled','on_hold')",
            name="chk_service_request_status",
        ),
        CheckConstraint("priority IN ('low','medium','high','urgent')", name="chk_service_request_priority"),
        Index("idx_service_requests_farmer_status", "farmer_id", "status"),
        Index("idx_service_requests_agent_status", "agent_id", "status"),
        Index("idx_service_requests_type_status", "service_type", "status"),
        Index("idx_service_requests_province_district", "province", "district"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    request_number = Column(String(32), nullable=False)
    farmer_id = Column(String(64), nullable=False)
    agent_id = Column(String(64))
    service_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    priority = Column(String(16), nullable=False, default="medium", server_default=text("'medium'"))

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    location = Column(JSON_TYPE, nullable=False)
    # Denormalised from ``location`` for filtering.
    province = Column(String(100))
    district = Column(String(100))

    requested_date = Column(DateTime(timezone=True), nullable=False)
    scheduled_date = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    approved_at = Column(DateTime(timezone=True))
    rejected_at = Column(DateTime(timezone=True))

    approved_by = Column(String(64))
    rejected_by = Column(String(64))
    completed_by = Column(String(64))
    rejection_reason = Column(Text)

    cost_estimate = Column(Numeric(12, 2))
    final_cost = Column(Numeric(12, 2))
    notes = Column(Text)
    start_notes = Column(Text)
    completion_notes = Column(Text)

    harvest_details = Column(JSON_TYPE)
    pest_management_details = Column(JSON_TYPE)
    farmer_info = Column(JSON_TYPE)
    attachments = Column(JSON_TYPE)
    feedback = Column(JSON_TYPE)

    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": row_version}


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id", "timestamp"),)

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
        Index("idx_notification_outbox_status_next", "status", "next_attempt_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    recipient_id = Column(String(64), nullable=False)

    channel = Column(String(32), nullable=False)  # email / sms / in_app
    template_key = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)

    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
