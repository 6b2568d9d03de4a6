from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from crmcore.core.rbac import Role
from crmcore.platform.security.context import Actor


class EntityType(StrEnum):
    LEAD = "leads"
    APPOINTMENT = "appointments"
    TEAM = "teams"
    ORGANIZATION = "organizations"
    USER = "users"


class ScopeKind(StrEnum):
    ALL = "all"
    ORGANIZATION = "organization"
    OWN_OR_ASSIGNED = "own_or_assigned"


@dataclass(frozen=True, slots=True)
class Scope:
    """Subset of records of one entity type an actor may see or act on.

    ``include_own`` widens an organization scope with the records the actor is
    personally attached to. ``include_unassigned`` additionally admits leads
    that have not been routed to any organization yet.
    ``assignee_only`` narrows own leads to the ones assigned to the actor.
    """

    kind: ScopeKind
    entity_type: EntityType
    user_id: uuid.UUID
    organization_id: uuid.UUID | None = None
    team_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)
    include_own: bool = False
    include_unassigned: bool = False
    assignee_only: bool = False

    def matches(self, record: Any) -> bool:
        if self.kind == ScopeKind.ALL:
            return True
        if self.assignee_only and self.entity_type == EntityType.LEAD:
            return getattr(record, "assigned_to_id", None) == self.user_id
        if self.kind == ScopeKind.OWN_OR_ASSIGNED or self.include_own:
            if is_own_record(self.entity_type, record, self.user_id, self.team_ids):
                return True
        if self.kind == ScopeKind.ORGANIZATION:
            if self.organization_id is not None and self.organization_id in record_organization_ids(
                self.entity_type, record
            ):
                return True
            if self.include_unassigned and self.entity_type == EntityType.LEAD:
                return getattr(record, "organization_id", None) is None
        return False


def resolve_scope(actor: Actor, entity_type: EntityType | str) -> Scope:
    """Compute the visibility scope of ``actor`` over ``entity_type``. First matching rule wins."""

    entity = EntityType(entity_type)
    base = {"entity_type": entity, "user_id": actor.user_id, "team_ids": actor.team_ids}

    if actor.has_role(Role.ADMIN, Role.GROUP_DIRECTOR):
        return Scope(kind=ScopeKind.ALL, **base)
    if actor.has_role(Role.PARTNER_DIRECTOR):
        return Scope(kind=ScopeKind.ORGANIZATION, organization_id=actor.organization_id, **base)
    if actor.has_role(Role.SALES_MANAGER):
        return Scope(kind=ScopeKind.ORGANIZATION, organization_id=actor.organization_id, include_own=True, **base)
    if actor.has_role(Role.COORDINATOR):
        return Scope(
            kind=ScopeKind.ORGANIZATION,
            organization_id=actor.organization_id,
            include_unassigned=entity == EntityType.LEAD,
            **base,
        )
    if actor.has_role(Role.SALES_AGENT) and entity == EntityType.LEAD:
        return Scope(kind=ScopeKind.OWN_OR_ASSIGNED, assignee_only=True, **base)
    return Scope(kind=ScopeKind.OWN_OR_ASSIGNED, **base)


def record_organization_ids(entity_type: EntityType, record: Any) -> set[uuid.UUID]:
    """Organization ids under which ``record`` counts as inside an organization scope."""

    if entity_type == EntityType.APPOINTMENT:
        lead = getattr(record, "lead", None)
        candidates = [getattr(lead, "organization_id", None)]
    elif entity_type == EntityType.ORGANIZATION:
        # A director's organization scope covers its direct children.
        candidates = [getattr(record, "id", None), getattr(record, "parent_id", None)]
    else:
        candidates = [getattr(record, "organization_id", None)]
    return {value for value in candidates if value is not None}


def participant_ids(entity_type: EntityType, record: Any) -> set[uuid.UUID]:
    """Users directly referenced by ``record`` for own-or-assigned visibility."""

    if entity_type == EntityType.LEAD:
        candidates = [
            getattr(record, "assigned_to_id", None),
            getattr(record, "assigned_by_id", None),
            getattr(record, "referral_id", None),
        ]
    elif entity_type == EntityType.APPOINTMENT:
        lead = getattr(record, "lead", None)
        candidates = [
            getattr(record, "scheduled_by_id", None),
            getattr(record, "scheduled_with_id", None),
            getattr(lead, "assigned_to_id", None),
        ]
    elif entity_type == EntityType.TEAM:
        candidates = [getattr(record, "creator_id", None)]
    elif entity_type == EntityType.ORGANIZATION:
        candidates = [getattr(record, "director_id", None)]
    else:
        candidates = [getattr(record, "id", None), getattr(record, "created_by_id", None)]
    return {value for value in candidates if value is not None}


def is_own_record(
    entity_type: EntityType,
    record: Any,
    user_id: uuid.UUID,
    team_ids: frozenset[uuid.UUID] = frozenset(),
) -> bool:
    if user_id in participant_ids(entity_type, record):
        return True
    if entity_type == EntityType.TEAM:
        return getattr(record, "id", None) in team_ids
    return False
