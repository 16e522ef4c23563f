"""Lookups against the user directory.

``farmer_id`` and ``agent_id`` are plain strings on the request, so
referential integrity is checked here by the service, not by the store.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from agriops.core.auth import AGENT
from agriops.models.service_request import User


def _parse_user_id(user_id: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(user_id))
    except (TypeError, ValueError):
        return None


def find_active_agent(db: Session, agent_id: str) -> Optional[User]:
    user_uuid = _parse_user_id(agent_id)
    if user_uuid is None:
        return None
    return db.execute(
        select(User).where(
            User.id == user_uuid,
            User.role == AGENT,
            User.status == "active",
        )
    ).scalar_one_or_none()
