"""service requests core schema

Revision ID: 20261018_000001
Revises: 
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        nullable=False,
        server_default=sa.text("gen_random_uuid()"),
    )


def _now_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200)),
        sa.Column("phone", sa.String(length=20)),
        sa.Column("role", sa.String(length=32), nullable=False, server_default=sa.text("'farmer'")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
        _now_column("created_at"),
        sa.CheckConstraint("role IN ('admin','agent','farmer','shop_manager')", name="chk_user_role"),
        sa.CheckConstraint("status IN ('active','inactive')", name="chk_user_status"),
    )
    op.create_index("idx_users_role_status", "users", ["role", "status"])

    op.create_table(
        "service_requests",
        _uuid_pk(),
        sa.Column("request_number", sa.String(length=32), nullable=False),
        sa.Column("farmer_id", sa.String(length=64), nullable=False),
        sa.Column("agent_id", sa.String(length=64)),
        sa.Column("service_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default=sa.text("'medium'")),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("location", json_type, nullable=False),
        sa.Column("province", sa.String(length=100)),
        sa.Column("district", sa.String(length=100)),
        sa.Column("requested_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.String(length=64)),
        sa.Column("rejected_by", sa.String(length=64)),
        sa.Column("completed_by", sa.String(length=64)),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("cost_estimate", sa.Numeric(12, 2)),
        sa.Column("final_cost", sa.Numeric(12, 2)),
        sa.Column("notes", sa.Text()),
        sa.Column("start_notes", sa.Text()),
        sa.Column("completion_notes", sa.Text()),
        sa.Column("harvest_details", json_type),
        sa.Column("pest_management_details", json_type),
        sa.Column("farmer_info", json_type),
        sa.Column("attachments", json_type),
        sa.Column("feedback", json_type),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _now_column("created_at"),
        _now_column("updated_at"),
        sa.UniqueConstraint("request_number", name="uniq_service_requests_number"),
        sa.CheckConstraint(
            "status IN ('pending','approved','rejected','assigned','in_progress','completed','cancelled','on_hold')",
            name="chk_service_request_status",
        ),
        sa.CheckConstraint("priority IN ('low','medium','high','urgent')", name="chk_service_request_priority"),
    )
    op.create_index("idx_service_requests_farmer_status", "service_requests", ["farmer_id", "status"])
    op.create_index("idx_service_requests_agent_status", "service_requests", ["agent_id", "status"])
    op.create_index("idx_service_requests_type_status", "service_requests", ["service_type", "status"])
    op.create_index("idx_service_requests_province_district", "service_requests", ["province", "district"])

    op.create_table(
        "audit_logs",
        _uuid_pk(),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", json_type),
        sa.Column("new_value", json_type),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=64)),
        sa.Column("ip_address", postgresql.INET()),
        sa.Column("user_agent", sa.Text()),
        sa.Column("metadata", json_type),
        _now_column("timestamp"),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id", "timestamp"])

    op.create_table(
        "notification_outbox",
        _uuid_pk(),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("payload_json", json_type, nullable=False),
        sa.Column("dedupe_key", sa.String(length=160), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _now_column("next_attempt_at"),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        _now_column("created_at"),
        sa.UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
    )
    op.create_index(
        "idx_notification_outbox_status_next",
        "notification_outbox",
        ["status", "next_attempt_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_notification_outbox_status_next", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_service_requests_province_district", table_name="service_requests")
    op.drop_index("idx_service_requests_type_status", table_name="service_requests")
    op.drop_index("idx_service_requests_agent_status", table_name="service_requests")
    op.drop_index("idx_service_requests_farmer_status", table_name="service_requests")
    op.drop_table("service_requests")
    op.drop_index("idx_users_role_status", table_name="users")
    op.drop_table("users")
