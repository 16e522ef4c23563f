"""Response envelope shared by every endpoint.

``{success, message, data?, errors?, meta: {timestamp, version}}``; list
endpoints add ``pagination: {page, limit, total, pages}``.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from agriops.core.config import get_settings
from agriops.core.errors import Violation


def build_meta() -> dict[str, str]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": get_settings().app_version,
    }


def success_response(data: Any = None, message: str = "OK") -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "message": message, "meta": build_meta()}
    if data is not None:
        body["data"] = data
    return body


def paginated_response(
    items: list[Any],
    *,
    page: int,
    limit: int,
    total: int,
    pages: int,
    message: str = "OK",
) -> dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": items,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": pages},
        "meta": build_meta(),
    }


def error_response(message: str, errors: Optional[Iterable[Violation]] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "message": message, "meta": build_meta()}
    rendered = [item.as_dict() for item in errors or []]
    if rendered:
        body["errors"] = rendered
    return body
