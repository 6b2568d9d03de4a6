from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, NoReturn

from crmcore import audit
from crmcore.core.rbac import CREATABLE_ROLES, Capability, Role
from crmcore.crm.models import Appointment, Lead, Organization, Team, User
from crmcore.errors import AccessDenied
from crmcore.metrics import observe_authz_decision
from crmcore.platform.security.context import Actor
from crmcore.platform.security.scope import EntityType, participant_ids, resolve_scope


logger = logging.getLogger("crmcore.authz")


class Action(StrEnum):
    VIEW_ANY = "view_any"
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    UPDATE_STATUS = "update_status"
    RESPOND = "respond"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    MARK_COMPLETED = "mark_completed"
    MANAGE_MEMBERS = "manage_members"


_RECORDLESS_ACTIONS = frozenset({Action.VIEW_ANY, Action.CREATE})


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: str | None = None


class BasePolicy:
    """Capability + scope + participant checks shared by every entity type."""

    entity_type: EntityType
    view_capability: Capability
    create_capability: Capability
    update_capability: Capability
    delete_capability: Capability

    def before(self, actor: Actor) -> bool | None:
        if actor.is_global:
            return True
        return None

    def can_view_any(self, actor: Actor) -> bool:
        if self.before(actor):
            return True
        return actor.can(self.view_capability)

    def can_view(self, actor: Actor, record: Any) -> bool:
        if self.before(actor):
            return True
        if not actor.can(self.view_capability):
            return False
        if actor.user_id in self.view_participants(record):
            return True
        return self.in_scope(actor, record)

    def can_create(self, actor: Actor) -> bool:
        if self.before(actor):
            return True
        return actor.can(self.create_capability)

    def can_update(self, actor: Actor, record: Any) -> bool:
        return self._mutation_allowed(actor, record, self.update_capability)

    def can_delete(self, actor: Actor, record: Any) -> bool:
        return self._mutation_allowed(actor, record, self.delete_capability)

    def in_scope(self, actor: Actor, record: Any) -> bool:
        return resolve_scope(actor, self.entity_type).matches(record)

    def view_participants(self, record: Any) -> set[uuid.UUID]:
        return participant_ids(self.entity_type, record)

    def mutation_participants(self, record: Any) -> set[uuid.UUID]:
        return participant_ids(self.entity_type, record)

    def required_capability(self, action: Action) -> Capability | None:
        return {
            Action.VIEW_ANY: self.view_capability,
            Action.VIEW: self.view_capability,
            Action.CREATE: self.create_capability,
            Action.UPDATE: self.update_capability,
            Action.DELETE: self.delete_capability,
        }.get(action)

    def evaluate(self, actor: Actor, action: Action | str, record: Any = None) -> Decision:
        resolved = Action(action)
        check = getattr(self, f"can_{resolved.value}", None)
        if check is None:
            return Decision(False, f"action '{resolved.value}' is not defined for {self.entity_type.value}")

        allowed = check(actor) if resolved in _RECORDLESS_ACTIONS else check(actor, record)
        if allowed:
            return Decision(True)

        capability = self.required_capability(resolved)
        if capability is not None and not actor.can(capability):
            return Decision(False, f"missing capability {capability.value}")
        return Decision(False, "record is outside the actor's scope")

    def _mutation_allowed(self, actor: Actor, record: Any, capability: Capability) -> bool:
        if self.before(actor):
            return True
        if not actor.can(capability):
            return False
        if actor.user_id in self.mutation_participants(record):
            return True
        return self.in_scope(actor, record)


class LeadPolicy(BasePolicy):
    entity_type = EntityType.LEAD
    view_capability = Capability.LEADS_VIEW
    create_capability = Capability.LEADS_CREATE
    update_capability = Capability.LEADS_UPDATE_STATUS
    delete_capability = Capability.LEADS_DELETE

    def mutation_participants(self, record: Any) -> set[uuid.UUID]:
        assignee = getattr(record, "assigned_to_id", None)
        return {assignee} if assignee is not None else set()

    def can_view(self, actor: Actor, record: Any) -> bool:
        # Agents see a lead only while it is assigned to them.
        if actor.has_role(Role.SALES_AGENT):
            return actor.can(self.view_capability) and actor.user_id == getattr(record, "assigned_to_id", None)
        return super().can_view(actor, record)

    def can_assign(self, actor: Actor, lead: Any) -> bool:
        if self.before(actor):
            return True
        if not actor.can(Capability.LEADS_ASSIGN):
            return False
        if actor.has_role(Role.COORDINATOR):
            return lead.organization_id is None or lead.organization_id == actor.organization_id
        if actor.has_role(Role.SALES_MANAGER):
            return actor.user_id in {lead.assigned_to_id, lead.assigned_by_id}
        return False

    def can_update_status(self, actor: Actor, lead: Any) -> bool:
        if self.before(actor):
            return True
        if not actor.can(Capability.LEADS_UPDATE_STATUS):
            return False
        if actor.has_role(Role.SALES_MANAGER):
            return actor.user_id in {lead.assigned_to_id, lead.assigned_by_id}
        if actor.has_role(Role.SALES_AGENT):
            return actor.user_id == lead.assigned_to_id
        return False

    def can_respond(self, actor: Actor, lead: Any) -> bool:
        if self.before(actor):
            return True
        return actor.can(Capability.LEADS_ACCEPT_DECLINE) and actor.user_id == lead.assigned_to_id

    def required_capability(self, action: Action) -> Capability | None:
        extra = {
            Action.ASSIGN: Capability.LEADS_ASSIGN,
            Action.UPDATE_STATUS: Capability.LEADS_UPDATE_STATUS,
            Action.RESPOND: Capability.LEADS_ACCEPT_DECLINE,
        }
        return extra.get(action) or super().required_capability(action)


class AppointmentPolicy(BasePolicy):
    entity_type = EntityType.APPOINTMENT
    view_capability = Capability.APPOINTMENTS_VIEW
    create_capability = Capability.APPOINTMENTS_CREATE
    update_capability = Capability.APPOINTMENTS_UPDATE
    delete_capability = Capability.APPOINTMENTS_DELETE

    def mutation_participants(self, record: Any) -> set[uuid.UUID]:
        return {value for value in (record.scheduled_by_id, record.scheduled_with_id) if value is not None}

    def can_reschedule(self, actor: Actor, appointment: Any) -> bool:
        return self.can_update(actor, appointment)

    def can_cancel(self, actor: Actor, appointment: Any) -> bool:
        if actor.user_id in self.mutation_participants(appointment):
            return True
        return self.can_update(actor, appointment)

    def can_mark_completed(self, actor: Actor, appointment: Any) -> bool:
        if actor.user_id in self.mutation_participants(appointment):
            return True
        return self.can_update(actor, appointment)

    def required_capability(self, action: Action) -> Capability | None:
        if action in {Action.RESCHEDULE, Action.CANCEL, Action.MARK_COMPLETED}:
            return self.update_capability
        return super().required_capability(action)


class TeamPolicy(BasePolicy):
    entity_type = EntityType.TEAM
    view_capability = Capability.TEAMS_VIEW
    create_capability = Capability.TEAMS_CREATE
    update_capability = Capability.TEAMS_UPDATE
    delete_capability = Capability.TEAMS_DELETE

    def view_participants(self, record: Any) -> set[uuid.UUID]:
        members = {member.id for member in getattr(record, "members", None) or []}
        return members | {record.creator_id}

    def mutation_participants(self, record: Any) -> set[uuid.UUID]:
        return {record.creator_id}

    def can_manage_members(self, actor: Actor, team: Any) -> bool:
        if self.before(actor):
            return True
        if not actor.can(Capability.TEAMS_MANAGE_MEMBERS):
            return False
        if actor.user_id == team.creator_id:
            return True
        return actor.has_role(Role.PARTNER_DIRECTOR) and actor.organization_id == team.organization_id

    def required_capability(self, action: Action) -> Capability | None:
        if action == Action.MANAGE_MEMBERS:
            return Capability.TEAMS_MANAGE_MEMBERS
        return super().required_capability(action)


class OrganizationPolicy(BasePolicy):
    entity_type = EntityType.ORGANIZATION
    view_capability = Capability.ORGANIZATIONS_VIEW
    create_capability = Capability.ORGANIZATIONS_CREATE
    update_capability = Capability.ORGANIZATIONS_UPDATE
    delete_capability = Capability.ORGANIZATIONS_DELETE


class UserPolicy(BasePolicy):
    entity_type = EntityType.USER
    view_capability = Capability.USERS_VIEW
    create_capability = Capability.USERS_CREATE
    update_capability = Capability.USERS_UPDATE
    delete_capability = Capability.USERS_DELETE

    def can_view(self, actor: Actor, record: Any) -> bool:
        if actor.user_id == record.id:
            return True
        return super().can_view(actor, record)

    def mutation_participants(self, record: Any) -> set[uuid.UUID]:
        return {record.id}

    def _mutation_allowed(self, actor: Actor, record: Any, capability: Capability) -> bool:
        # Users may always manage their own account.
        if actor.user_id == record.id:
            return True
        return super()._mutation_allowed(actor, record, capability)

    def can_create_role(self, actor: Actor, role: Role | str, organization_id: uuid.UUID | None) -> bool:
        if self.before(actor):
            return True
        if not actor.can(Capability.USERS_CREATE):
            return False
        if Role(role) not in CREATABLE_ROLES.get(actor.role, frozenset()):
            return False
        return organization_id is not None and organization_id == actor.organization_id

    def can_change_role(self, actor: Actor, target: Any, role: Role | str) -> bool:
        if actor.user_id == target.id:
            return Role(role) == actor.role
        return bool(self.before(actor))


_POLICIES: dict[EntityType, BasePolicy] = {
    EntityType.LEAD: LeadPolicy(),
    EntityType.APPOINTMENT: AppointmentPolicy(),
    EntityType.TEAM: TeamPolicy(),
    EntityType.ORGANIZATION: OrganizationPolicy(),
    EntityType.USER: UserPolicy(),
}

_RECORD_TYPES: dict[type, EntityType] = {
    Lead: EntityType.LEAD,
    Appointment: EntityType.APPOINTMENT,
    Team: EntityType.TEAM,
    Organization: EntityType.ORGANIZATION,
    User: EntityType.USER,
}


def get_policy(entity_type: EntityType | str) -> BasePolicy:
    return _POLICIES[EntityType(entity_type)]


def entity_type_of(record: Any) -> EntityType:
    for record_type, entity_type in _RECORD_TYPES.items():
        if isinstance(record, record_type):
            return entity_type
    raise TypeError(f"no policy registered for {type(record).__name__}")


def can_view_any(actor: Actor, entity_type: EntityType | str) -> bool:
    return get_policy(entity_type).can_view_any(actor)


def can_view(actor: Actor, record: Any) -> bool:
    return get_policy(entity_type_of(record)).can_view(actor, record)


def can_create(actor: Actor, entity_type: EntityType | str) -> bool:
    return get_policy(entity_type).can_create(actor)


def can_update(actor: Actor, record: Any) -> bool:
    return get_policy(entity_type_of(record)).can_update(actor, record)


def can_delete(actor: Actor, record: Any) -> bool:
    return get_policy(entity_type_of(record)).can_delete(actor, record)


def authorize(
    actor: Actor,
    action: Action | str,
    entity_type: EntityType | str,
    record: Any = None,
) -> None:
    """Evaluate a decision and raise ``AccessDenied`` when it is negative."""

    resource = EntityType(entity_type)
    resolved_action = Action(action)
    decision = get_policy(resource).evaluate(actor, resolved_action, record)
    if decision.allowed:
        observe_authz_decision(resource=resource.value, action=resolved_action.value, allowed=True)
        return

    deny(actor, resolved_action, resource, decision.reason or "not permitted", record)


def deny(
    actor: Actor,
    action: Action | str,
    entity_type: EntityType | str,
    reason: str,
    record: Any = None,
) -> NoReturn:
    """Log, audit and raise a negative decision reached outside the per-type policies."""

    resource = EntityType(entity_type)
    resolved_action = Action(action)
    record_id = str(getattr(record, "id", None) or "collection")
    observe_authz_decision(resource=resource.value, action=resolved_action.value, allowed=False)
    logger.info(
        "authz.denied",
        extra={
            "actor_id": str(actor.user_id),
            "actor_role": actor.role.value,
            "resource": resource.value,
            "action": resolved_action.value,
            "decision": "deny",
            "reason": reason,
        },
    )
    audit.record(
        actor_user_id=str(actor.user_id),
        entity_type=f"security.{resource.value}",
        entity_id=record_id,
        action="authz.denied",
        before=None,
        after={"action": resolved_action.value, "role": actor.role.value, "reason": reason},
        correlation_id=actor.correlation_id,
    )
    raise AccessDenied(resolved_action.value, resource.value, reason)
