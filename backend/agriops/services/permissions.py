"""Capability table for service-request operations.

A decision depends on the principal's role, the action and the principal's
relationship to the request (owner farmer, assigned agent). Status rules
live in the transition service; the only status conditions checked here are
the farmer's edit/delete window, which is an ownership privilege rather than
a lifecycle step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from agriops.core.auth import ADMIN, AGENT, FARMER, CurrentUser
from agriops.core.errors import PermissionDenied
from agriops.models.service_request import ServiceRequest

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = "create"
    LIST = "list"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    ASSIGN = "assign"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    UPDATE_STATUS = "update_status"
    SUBMIT_FEEDBACK = "submit_feedback"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None


ALLOW = Decision(True)

Rule = Callable[[CurrentUser, Optional[ServiceRequest]], Optional[str]]


def is_owner(principal: CurrentUser, request: Optional[ServiceRequest]) -> bool:
    return request is not None and str(request.farmer_id) == principal.id


def is_assigned_agent(principal: CurrentUser, request: Optional[ServiceRequest]) -> bool:
    return request is not None and request.agent_id is not None and str(request.agent_id) == principal.id


def _always(_principal: CurrentUser, _request: Optional[ServiceRequest]) -> Optional[str]:
    return None


def _owner(principal: CurrentUser, request: Optional[ServiceRequest]) -> Optional[str]:
    if not is_owner(principal, request):
        return "principal does not own the request"
    return None


def _owner_while_pending(principal: CurrentUser, request: Optional[ServiceRequest]) -> Optional[str]:
    reason = _owner(principal, request)
    if reason:
        return reason
    if request.status != "pending":
        return "farmers may only change pending requests"
    return None


def _assigned_agent(principal: CurrentUser, request: Optional[ServiceRequest]) -> Optional[str]:
    if not is_assigned_agent(principal, request):
        return "principal is not the assigned agent"
    return None


# Admin bypasses ownership everywhere it holds the capability at all.
CAPABILITIES: dict[tuple[str, Action], Rule] = {
    (FARMER, Action.CREATE): _always,
    (FARMER, Action.LIST): _always,
    (FARMER, Action.READ): _owner,
    (FARMER, Action.UPDATE): _owner_while_pending,
    (FARMER, Action.DELETE): _owner_while_pending,
    (FARMER, Action.CANCEL): _owner,
    (FARMER, Action.UPDATE_STATUS): _owner,
    (FARMER, Action.SUBMIT_FEEDBACK): _owner,
    (AGENT, Action.LIST): _always,
    (AGENT, Action.READ): _assigned_agent,
    (AGENT, Action.START): _assigned_agent,
    (AGENT, Action.COMPLETE): _assigned_agent,
    (AGENT, Action.UPDATE_STATUS): _assigned_agent,
    (ADMIN, Action.LIST): _always,
    (ADMIN, Action.READ): _always,
    (ADMIN, Action.UPDATE): _always,
    (ADMIN, Action.DELETE): _always,
    (ADMIN, Action.APPROVE): _always,
    (ADMIN, Action.REJECT): _always,
    (ADMIN, Action.ASSIGN): _always,
    (ADMIN, Action.COMPLETE): _always,
    (ADMIN, Action.CANCEL): _always,
    (ADMIN, Action.UPDATE_STATUS): _always,
}


def can_perform(principal: CurrentUser, action: Action, request: Optional[ServiceRequest] = None) -> Decision:
    """Pure decision: no side effects, no database access."""
    rule = CAPABILITIES.get((principal.role, action))
    if rule is None:
        return Decision(False, f"role {principal.role} cannot {action.value}")
    reason = rule(principal, request)
    if reason:
        return Decision(False, reason)
    return ALLOW


def ensure_allowed(principal: CurrentUser, action: Action, request: Optional[ServiceRequest] = None) -> None:
    decision = can_perform(principal, action, request)
    if not decision.allowed:
        logger.warning(
            "Permission denied action=%s role=%s principal=%s request=%s reason=%s",
            action.value,
            principal.role,
            principal.id,
            getattr(request, "request_number", None),
            decision.reason,
        )
        raise PermissionDenied()
