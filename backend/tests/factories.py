"""Payload and principal builders shared by the test modules."""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Any, Optional

from agriops.core.auth import CurrentUser
from agriops.models.service_request import User
from agriops.services.request_rules import utc_today

FARMER_ID = "7d0f6c1e-4a57-4c1b-9b53-1f2f6c0a0001"
OTHER_FARMER_ID = "7d0f6c1e-4a57-4c1b-9b53-1f2f6c0a0002"
ADMIN_ID = "7d0f6c1e-4a57-4c1b-9b53-1f2f6c0a0003"


def principal(role: str, user_id: Optional[str] = None) -> CurrentUser:
    return CurrentUser(id=user_id or str(uuid.uuid4()), role=role)


def farmer(user_id: str = FARMER_ID) -> CurrentUser:
    return CurrentUser(id=user_id, role="farmer")


def admin() -> CurrentUser:
    return CurrentUser(id=ADMIN_ID, role="admin")


def location(**overrides: Any) -> dict[str, Any]:
    data = {"province": "Eastern", "district": "Rwamagana", "sector": "Muhazi"}
    data.update(overrides)
    return data


def harvest_details(today: Optional[date] = None, **overrides: Any) -> dict[str, Any]:
    today = today or utc_today()
    data = {
        "workers_needed": 5,
        "trees_to_harvest": 100,
        "harvest_date_from": (today + timedelta(days=3)).isoformat(),
        "harvest_date_to": (today + timedelta(days=10)).isoformat(),
        "equipment_needed": ["ladders", "crates"],
        "hass_breakdown": {"selected_sizes": ["c12c14", "c16c18"], "c12c14": 40, "c16c18": 60},
    }
    data.update(overrides)
    return data


def pest_details(**overrides: Any) -> dict[str, Any]:
    data = {
        "pests_diseases": [
            {"name": "Thrips", "first_spotted_date": utc_today().isoformat(), "order": 1, "is_primary": True},
        ],
        "first_noticed": "Two weeks ago",
        "damage_observed": "Scarred fruit skins",
        "damage_details": "About a third of the trees in the lower block",
        "control_methods_tried": "Neem spray",
        "severity_level": "high",
    }
    data.update(overrides)
    return data


def create_payload(**overrides: Any) -> dict[str, Any]:
    data = {
        "service_type": "crop_consultation",
        "title": "Maize leaf yellowing",
        "description": "Leaves on the lower terraces are turning yellow after the rains.",
        "location": location(),
    }
    data.update(overrides)
    return data


def harvest_payload(**overrides: Any) -> dict[str, Any]:
    data = create_payload(
        service_type="harvest",
        title="Avocado harvest",
        description="Hass avocado harvest for the upper orchard block.",
        harvest_details=harvest_details(),
    )
    data.update(overrides)
    return data


def add_agent(db, *, status: str = "active", role: str = "agent") -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{uuid.uuid4().hex[:10]}@agents.example.com",
        full_name="Field Agent",
        role=role,
        status=status,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
