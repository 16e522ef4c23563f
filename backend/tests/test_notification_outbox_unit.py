"""
Tests for the notification outbox: enqueue, dedupe, lifecycle fan-out.

Covers:
  - Idempotent enqueue via dedupe_key
  - Different payloads / recipients create separate records
  - notify_request_event recipients per lifecycle event
  - Outbox disabled via settings
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

from agriops.core.config import get_settings
from agriops.models.service_request import NotificationOutbox, ServiceRequest
from agriops.services.notification_outbox import _dedupe_key, enqueue_notification, notify_request_event


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════


def _enqueue(db, **overrides):
    defaults = {
        "entity_type": "service_request",
        "entity_id": str(uuid.uuid4()),
        "recipient_id": "farmer-1",
        "channel": "email",
        "template_key": "service_request.approved",
        "payload_json": {"request_number": "SR-20261018-ABCDEF"},
    }
    defaults.update(overrides)
    return enqueue_notification(db, **defaults)


def _request(agent_id="agent-1"):
    return ServiceRequest(
        id=uuid.uuid4(),
        request_number="SR-20261018-ABCDEF",
        farmer_id="farmer-1",
        agent_id=agent_id,
        service_type="harvest",
        status="approved",
        priority="medium",
        title="Avocado harvest",
        description="Harvest of the upper block",
        location={"province": "Eastern"},
        requested_date=datetime.now(timezone.utc),
    )


def _rows(db, entity_id):
    return db.query(NotificationOutbox).filter(NotificationOutbox.entity_id == entity_id).all()


# ═══════════════════════════════════════════════════════════════
# Enqueue tests
# ═══════════════════════════════════════════════════════════════


def test_notification_outbox_dedupe_key_idempotent(db):
    """Enqueue with identical parameters should insert only once."""
    eid = str(uuid.uuid4())
    created1 = _enqueue(db, entity_id=eid)
    created2 = _enqueue(db, entity_id=eid)
    db.commit()

    assert created1 is True
    assert created2 is False
    assert len(_rows(db, eid)) == 1


def test_different_payloads_create_separate_records(db):
    eid = str(uuid.uuid4())
    assert _enqueue(db, entity_id=eid, payload_json={"status": "approved"}) is True
    assert _enqueue(db, entity_id=eid, payload_json={"status": "completed"}) is True
    db.commit()

    assert len(_rows(db, eid)) == 2


def test_different_recipients_create_separate_records(db):
    eid = str(uuid.uuid4())
    assert _enqueue(db, entity_id=eid, recipient_id="farmer-1") is True
    assert _enqueue(db, entity_id=eid, recipient_id="agent-1") is True
    db.commit()

    assert len(_rows(db, eid)) == 2


def test_enqueue_sets_pending_status(db):
    eid = str(uuid.uuid4())
    _enqueue(db, entity_id=eid)
    db.commit()

    row = _rows(db, eid)[0]
    assert row.status == "PENDING"
    assert row.attempt_count == 0
    assert row.next_attempt_at is not None


def test_dedupe_key_deterministic_and_formatted():
    kwargs = {
        "channel": "email",
        "template_key": "service_request.rejected",
        "entity_id": "abc-123",
        "recipient_id": "farmer-1",
        "payload_json": {"a": 1, "b": 2},
    }
    key = _dedupe_key(**kwargs)
    assert key == _dedupe_key(**{**kwargs, "payload_json": {"b": 2, "a": 1}})

    channel, template, entity, digest = key.split(":")
    assert (channel, template, entity) == ("email", "service_request.rejected", "abc-123")
    assert len(digest) == 24


# ═══════════════════════════════════════════════════════════════
# Lifecycle fan-out
# ═══════════════════════════════════════════════════════════════


def test_approved_notifies_farmer_and_agent(db):
    request = _request()
    assert notify_request_event(db, request, "service_request.approved") == 2
    db.commit()

    recipients = {row.recipient_id: row.payload_json["recipient_role"] for row in _rows(db, request.id)}
    assert recipients == {"farmer-1": "farmer", "agent-1": "agent"}


def test_missing_agent_is_skipped(db):
    request = _request(agent_id=None)
    assert notify_request_event(db, request, "service_request.approved") == 1
    assert notify_request_event(db, request, "service_request.cancelled") == 0


def test_unknown_event_queues_nothing(db):
    assert notify_request_event(db, _request(), "service_request.archived") == 0


def test_outbox_disabled_by_settings(db):
    with patch.dict(os.environ, {"ENABLE_NOTIFICATION_OUTBOX": "false"}):
        get_settings.cache_clear()
        assert notify_request_event(db, _request(), "service_request.approved") == 0
    get_settings.cache_clear()


def test_repeated_event_on_a_later_revision_is_queued_again(db):
    request = _request(agent_id=None)
    request.status = "on_hold"
    request.row_version = 4
    assert notify_request_event(db, request, "service_request.on_hold") == 1
    assert notify_request_event(db, request, "service_request.on_hold") == 0

    request.row_version = 6
    assert notify_request_event(db, request, "service_request.on_hold") == 1
    db.commit()

    assert [row.payload_json["revision"] for row in _rows(db, str(request.id))] in ([4, 6], [6, 4])
