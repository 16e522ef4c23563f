"""Human-readable request numbers.

Format: ``{prefix}-{YYYYMMDD}-{6 random chars}``, e.g. ``SR-20261018-7K3QXH``.
The random part is drawn from an alphabet without look-alike characters; a
clash with an existing number is retried a few times before giving up.
"""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from agriops.core.config import get_settings
from agriops.core.errors import Conflict
from agriops.models.service_request import ServiceRequest

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SUFFIX_LENGTH = 6
MAX_ATTEMPTS = 5


def build_request_number(prefix: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{prefix}-{when:%Y%m%d}-{suffix}"


def generate_request_number(db: Session, when: Optional[datetime] = None) -> str:
    prefix = get_settings().request_number_prefix
    for _ in range(MAX_ATTEMPTS):
        candidate = build_request_number(prefix, when)
        taken = db.execute(
            select(ServiceRequest.id).where(ServiceRequest.request_number == candidate)
        ).first()
        if taken is None:
            return candidate
    raise Conflict("Could not allocate a unique request number")
