from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from crmcore.core.rbac import Role, parse_role
from crmcore.crm.models import LeadStatus
from crmcore.errors import ValidationFailed
from crmcore.platform.security.context import Actor


COORDINATOR_TARGET_MESSAGE = "Coordinators can only assign leads to Sales Managers."
MANAGER_TARGET_MESSAGE = "Sales Managers can only assign leads to Sales Agents."
MANAGER_ORGANIZATION_MESSAGE = "You can only assign leads to agents within your own organization."


@dataclass(frozen=True, slots=True)
class Assignment:
    assigned_to_id: uuid.UUID
    assigned_by_id: uuid.UUID
    organization_id: uuid.UUID | None
    status: LeadStatus


def plan_assignment(lead: Any, assignee: Any, assigner: Actor) -> Assignment:
    """Validate an assignment by role pair and return the field changes to apply.

    Nothing is written to ``lead``; callers apply the result inside the store's
    transaction so a rejected assignment never leaves partial state behind.
    """

    assignee_role = parse_role(assignee.role)

    if assigner.has_role(Role.COORDINATOR):
        if assignee_role != Role.SALES_MANAGER:
            raise ValidationFailed("assigned_to", COORDINATOR_TARGET_MESSAGE)
        status = LeadStatus.ASSIGNED_TO_MANAGER
    elif assigner.has_role(Role.SALES_MANAGER):
        if assignee_role != Role.SALES_AGENT:
            raise ValidationFailed("assigned_to", MANAGER_TARGET_MESSAGE)
        if assigner.organization_id is None or assignee.organization_id != assigner.organization_id:
            raise ValidationFailed("assigned_to", MANAGER_ORGANIZATION_MESSAGE)
        status = LeadStatus.ASSIGNED_TO_AGENT
    else:
        raise ValidationFailed("assigned_to", f"No lead assignment is defined for the {assigner.role.value} role.")

    return Assignment(
        assigned_to_id=assignee.id,
        assigned_by_id=assigner.user_id,
        organization_id=assignee.organization_id,
        status=status,
    )


def apply_assignment(lead: Any, assignment: Assignment) -> Any:
    lead.assigned_to_id = assignment.assigned_to_id
    lead.assigned_by_id = assignment.assigned_by_id
    lead.organization_id = assignment.organization_id
    lead.status = assignment.status
    return lead


def assign(lead: Any, assignee: Any, assigner: Actor) -> Assignment:
    assignment = plan_assignment(lead, assignee, assigner)
    apply_assignment(lead, assignment)
    return assignment


def parse_status(value: LeadStatus | str) -> LeadStatus:
    try:
        return LeadStatus(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in LeadStatus)
        raise ValidationFailed("status", f"Status must be one of: {allowed}.") from exc


def update_status(lead: Any, status: LeadStatus | str) -> LeadStatus:
    # Any enumerated status is accepted; authorization is the only gate.
    resolved = parse_status(status)
    lead.status = resolved
    return resolved


def respond(lead: Any, actor: Actor, accept: bool) -> LeadStatus:
    """Record the assignee's answer to a pending assignment."""

    if lead.assigned_to_id != actor.user_id:
        raise ValidationFailed("status", "Only the assigned user can respond to this lead.")

    current = LeadStatus(lead.status)
    if current == LeadStatus.ASSIGNED_TO_MANAGER and actor.has_role(Role.SALES_MANAGER):
        if accept:
            raise ValidationFailed("status", "Sales Managers accept a lead by assigning it to a Sales Agent.")
        resolved = LeadStatus.DECLINED_BY_MANAGER
    elif current == LeadStatus.ASSIGNED_TO_AGENT and actor.has_role(Role.SALES_AGENT):
        resolved = LeadStatus.ACCEPTED if accept else LeadStatus.DECLINED_BY_AGENT
    else:
        raise ValidationFailed("status", f"A lead in status '{current.value}' cannot be answered by a {actor.role.value}.")

    lead.status = resolved
    return resolved
