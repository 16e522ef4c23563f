from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from agriops.core.config import get_settings
from agriops.models.service_request import NotificationOutbox, ServiceRequest

logger = logging.getLogger(__name__)

# Lifecycle event -> which parties hear about it.
EVENT_RECIPIENTS = {
    "service_request.approved": ("farmer", "agent"),
    "service_request.rejected": ("farmer",),
    "service_request.assigned": ("farmer", "agent"),
    "service_request.started": ("farmer",),
    "service_request.completed": ("farmer",),
    "service_request.cancelled": ("agent",),
    "service_request.on_hold": ("farmer",),
}


def _now_utc() -> datetime:
    # SQLite stores timezone-aware datetimes as naive values.
    if get_settings().is_sqlite:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _dedupe_key(
    *,
    channel: str,
    template_key: str,
    entity_id: str,
    recipient_id: str,
    payload_json: Any,
) -> str:
    raw = _canonical_json(
        {
            "channel": channel,
            "template_key": template_key,
            "entity_id": entity_id,
            "recipient_id": recipient_id,
            "payload": payload_json,
        }
    )
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{channel}:{template_key}:{entity_id}:{digest[:24]}"


def enqueue_notification(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    recipient_id: str,
    channel: str,
    template_key: str,
    payload_json: dict[str, Any],
) -> bool:
    """
    Inserts a notification request into the outbox inside the caller's transaction.
    Identical requests collapse onto one row via dedupe_key.
    """
    row = dict(
        entity_type=entity_type,
        entity_id=entity_id,
        recipient_id=recipient_id,
        channel=channel,
        template_key=template_key,
        payload_json=payload_json,
        dedupe_key=_dedupe_key(
            channel=channel,
            template_key=template_key,
            entity_id=entity_id,
            recipient_id=recipient_id,
            payload_json=payload_json,
        ),
        status="PENDING",
        attempt_count=0,
        next_attempt_at=_now_utc(),
    )
    return _insert_unless_duplicate(db, row)


def _insert_unless_duplicate(db: Session, row: dict[str, Any]) -> bool:
    table = NotificationOutbox.__table__
    dialect_name = db.get_bind().dialect.name

    if dialect_name in ("postgresql", "sqlite"):
        dialect_insert = pg_insert if dialect_name == "postgresql" else sqlite_insert
        stmt = dialect_insert(table).values(**row).on_conflict_do_nothing(index_elements=["dedupe_key"])
        return bool(db.execute(stmt).rowcount)

    duplicate = db.execute(
        select(NotificationOutbox.id).where(NotificationOutbox.dedupe_key == row["dedupe_key"])
    ).first()
    if duplicate is not None:
        return False
    db.execute(insert(table).values(**row))
    return True


def notify_request_event(
    db: Session,
    request: ServiceRequest,
    event: str,
    *,
    extra: Optional[dict[str, Any]] = None,
) -> int:
    """Queue one notification per interested party; returns how many were queued."""
    settings = get_settings()
    if not settings.enable_notification_outbox:
        return 0

    recipients = {
        "farmer": request.farmer_id,
        "agent": request.agent_id,
    }
    payload = {
        "request_number": request.request_number,
        "title": request.title,
        "status": request.status,
        "service_type": request.service_type,
        # Each committed write bumps row_version, so a repeated event gets its own
        # row while a retried write of the same version still collapses.
        "revision": request.row_version,
        **(extra or {}),
    }
    queued = 0
    for party in EVENT_RECIPIENTS.get(event, ()):
        recipient_id = recipients.get(party)
        if not recipient_id:
            continue
        if enqueue_notification(
            db,
            entity_type="service_request",
            entity_id=str(request.id),
            recipient_id=str(recipient_id),
            channel=settings.notification_channel,
            template_key=event,
            payload_json={**payload, "recipient_role": party},
        ):
            queued += 1
    if queued:
        logger.debug("Queued %s notification(s) for %s event=%s", queued, request.request_number, event)
    return queued
