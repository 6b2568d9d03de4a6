from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from typing import Any, Protocol, TypeVar

from sqlalchemy import Select, false, or_, select
from sqlalchemy.orm import Session

from crmcore.crm.models import (
    TERMINAL_APPOINTMENT_STATUSES,
    Appointment,
    Lead,
    Organization,
    Team,
    User,
    team_member_table,
)
from crmcore.platform.security.scope import EntityType, Scope, ScopeKind


T = TypeVar("T")


class CRMStore(Protocol):
    """Persistence collaborator consumed by the service layer."""

    def find_user(self, user_id: uuid.UUID) -> User | None: ...

    def find_user_by_email(self, email: str) -> User | None: ...

    def find_users_by_role(self, role: str, organization_id: uuid.UUID | None = None) -> list[User]: ...

    def query_users(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[User]: ...

    def persist_user(self, user: User) -> User: ...

    def delete_user(self, user: User) -> None: ...

    def lock_users(self, user_ids: Iterable[uuid.UUID]) -> list[User]: ...

    def find_organization(self, organization_id: uuid.UUID) -> Organization | None: ...

    def find_child_organizations(self, organization_id: uuid.UUID) -> list[Organization]: ...

    def query_organizations(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Organization]: ...

    def persist_organization(self, organization: Organization) -> Organization: ...

    def delete_organization(self, organization: Organization) -> None: ...

    def find_team(self, team_id: uuid.UUID) -> Team | None: ...

    def find_team_by_slug(
        self,
        organization_id: uuid.UUID,
        slug: str,
        exclude_team_id: uuid.UUID | None = None,
    ) -> Team | None: ...

    def find_team_membership(self, user_id: uuid.UUID) -> list[uuid.UUID]: ...

    def query_teams(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Team]: ...

    def persist_team(self, team: Team) -> Team: ...

    def delete_team(self, team: Team) -> None: ...

    def find_lead(self, lead_id: uuid.UUID) -> Lead | None: ...

    def query_leads(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Lead]: ...

    def persist_lead(self, lead: Lead) -> Lead: ...

    def delete_lead(self, lead: Lead) -> None: ...

    def find_appointment(self, appointment_id: uuid.UUID) -> Appointment | None: ...

    def query_appointments(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Appointment]: ...

    def find_active_appointments_for_user(self, user_id: uuid.UUID, lock: bool = False) -> list[Appointment]: ...

    def persist_appointment(self, appointment: Appointment) -> Appointment: ...

    def delete_appointment(self, appointment: Appointment) -> None: ...

    def with_transaction(self, fn: Callable[[], T]) -> T: ...


def _own_conditions(scope: Scope) -> list[Any]:
    user_id = scope.user_id
    entity = scope.entity_type
    if entity == EntityType.LEAD:
        if scope.assignee_only:
            return [Lead.assigned_to_id == user_id]
        return [Lead.assigned_to_id == user_id, Lead.assigned_by_id == user_id, Lead.referral_id == user_id]
    if entity == EntityType.APPOINTMENT:
        return [
            Appointment.scheduled_by_id == user_id,
            Appointment.scheduled_with_id == user_id,
            Appointment.lead_id.in_(select(Lead.id).where(Lead.assigned_to_id == user_id)),
        ]
    if entity == EntityType.TEAM:
        conditions = [
            Team.creator_id == user_id,
            Team.id.in_(select(team_member_table.c.team_id).where(team_member_table.c.user_id == user_id)),
        ]
        if scope.team_ids:
            conditions.append(Team.id.in_(list(scope.team_ids)))
        return conditions
    if entity == EntityType.ORGANIZATION:
        return [Organization.director_id == user_id]
    return [User.id == user_id, User.created_by_id == user_id]


def _organization_conditions(scope: Scope) -> list[Any]:
    organization_id = scope.organization_id
    entity = scope.entity_type
    conditions: list[Any] = []
    if organization_id is not None:
        if entity == EntityType.LEAD:
            conditions.append(Lead.organization_id == organization_id)
        elif entity == EntityType.APPOINTMENT:
            conditions.append(Appointment.lead_id.in_(select(Lead.id).where(Lead.organization_id == organization_id)))
        elif entity == EntityType.TEAM:
            conditions.append(Team.organization_id == organization_id)
        elif entity == EntityType.ORGANIZATION:
            conditions.extend([Organization.id == organization_id, Organization.parent_id == organization_id])
        else:
            conditions.append(User.organization_id == organization_id)
    if scope.include_unassigned and entity == EntityType.LEAD:
        conditions.append(Lead.organization_id.is_(None))
    return conditions


def apply_scope_filter(query: Select[Any], scope: Scope) -> Select[Any]:
    """SQL rendition of ``Scope.matches`` for list queries."""

    if scope.kind == ScopeKind.ALL:
        return query

    conditions: list[Any] = []
    if scope.kind == ScopeKind.OWN_OR_ASSIGNED or scope.include_own:
        conditions.extend(_own_conditions(scope))
    if scope.kind == ScopeKind.ORGANIZATION:
        conditions.extend(_organization_conditions(scope))

    if not conditions:
        return query.where(false())
    return query.where(or_(*conditions))


class SqlAlchemyStore:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._depth = 0

    # users

    def find_user(self, user_id: uuid.UUID) -> User | None:
        return self.session.get(User, user_id)

    def find_user_by_email(self, email: str) -> User | None:
        return self.session.scalar(select(User).where(User.email == email))

    def find_users_by_role(self, role: str, organization_id: uuid.UUID | None = None) -> list[User]:
        stmt = select(User).where(User.role == str(role), User.is_active.is_(True))
        if organization_id is not None:
            stmt = stmt.where(User.organization_id == organization_id)
        return list(self.session.scalars(stmt.order_by(User.name)).all())

    def query_users(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[User]:
        filters = filters or {}
        stmt = apply_scope_filter(select(User), scope)
        if filters.get("role"):
            stmt = stmt.where(User.role == str(filters["role"]))
        if filters.get("organization_id"):
            stmt = stmt.where(User.organization_id == filters["organization_id"])
        if filters.get("is_active") is not None:
            stmt = stmt.where(User.is_active.is_(bool(filters["is_active"])))
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(or_(User.name.ilike(f"%{q}%"), User.email.ilike(f"%{q}%")))
        return self._paginate(stmt.order_by(User.name), filters)

    def persist_user(self, user: User) -> User:
        return self._persist(user)

    def delete_user(self, user: User) -> None:
        self._delete(user)

    def lock_users(self, user_ids: Iterable[uuid.UUID]) -> list[User]:
        ids = sorted({item for item in user_ids if item is not None}, key=str)
        if not ids:
            return []
        # Stable lock order keeps concurrent schedulers from deadlocking.
        stmt = select(User).where(User.id.in_(ids)).order_by(User.id).with_for_update()
        return list(self.session.scalars(stmt).all())

    # organizations

    def find_organization(self, organization_id: uuid.UUID) -> Organization | None:
        return self.session.get(Organization, organization_id)

    def find_child_organizations(self, organization_id: uuid.UUID) -> list[Organization]:
        stmt = select(Organization).where(Organization.parent_id == organization_id).order_by(Organization.name)
        return list(self.session.scalars(stmt).all())

    def query_organizations(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Organization]:
        filters = filters or {}
        stmt = apply_scope_filter(select(Organization), scope)
        if filters.get("parent_id"):
            stmt = stmt.where(Organization.parent_id == filters["parent_id"])
        if filters.get("is_active") is not None:
            stmt = stmt.where(Organization.is_active.is_(bool(filters["is_active"])))
        if filters.get("q"):
            stmt = stmt.where(Organization.name.ilike(f"%{filters['q']}%"))
        return self._paginate(stmt.order_by(Organization.name), filters)

    def persist_organization(self, organization: Organization) -> Organization:
        return self._persist(organization)

    def delete_organization(self, organization: Organization) -> None:
        self._delete(organization)

    # teams

    def find_team(self, team_id: uuid.UUID) -> Team | None:
        return self.session.get(Team, team_id)

    def find_team_by_slug(
        self,
        organization_id: uuid.UUID,
        slug: str,
        exclude_team_id: uuid.UUID | None = None,
    ) -> Team | None:
        stmt = select(Team).where(Team.organization_id == organization_id, Team.slug == slug)
        if exclude_team_id is not None:
            stmt = stmt.where(Team.id != exclude_team_id)
        return self.session.scalar(stmt)

    def find_team_membership(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        stmt = select(team_member_table.c.team_id).where(team_member_table.c.user_id == user_id)
        return list(self.session.scalars(stmt).all())

    def query_teams(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Team]:
        filters = filters or {}
        stmt = apply_scope_filter(select(Team), scope)
        if filters.get("organization_id"):
            stmt = stmt.where(Team.organization_id == filters["organization_id"])
        if filters.get("member_id"):
            stmt = stmt.where(
                Team.id.in_(
                    select(team_member_table.c.team_id).where(team_member_table.c.user_id == filters["member_id"])
                )
            )
        if filters.get("q"):
            stmt = stmt.where(Team.name.ilike(f"%{filters['q']}%"))
        return self._paginate(stmt.order_by(Team.name), filters)

    def persist_team(self, team: Team) -> Team:
        return self._persist(team)

    def delete_team(self, team: Team) -> None:
        self._delete(team)

    # leads

    def find_lead(self, lead_id: uuid.UUID) -> Lead | None:
        return self.session.get(Lead, lead_id)

    def query_leads(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Lead]:
        filters = filters or {}
        stmt = apply_scope_filter(select(Lead), scope)
        if filters.get("status"):
            stmt = stmt.where(Lead.status == str(filters["status"]))
        if filters.get("assigned_to_id"):
            stmt = stmt.where(Lead.assigned_to_id == filters["assigned_to_id"])
        if filters.get("organization_id"):
            stmt = stmt.where(Lead.organization_id == filters["organization_id"])
        if filters.get("source"):
            stmt = stmt.where(Lead.source == filters["source"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(
                or_(
                    Lead.client_first_name.ilike(f"%{q}%"),
                    Lead.client_last_name.ilike(f"%{q}%"),
                    Lead.client_email.ilike(f"%{q}%"),
                    Lead.client_company.ilike(f"%{q}%"),
                )
            )
        return self._paginate(stmt.order_by(Lead.created_at.desc()), filters)

    def persist_lead(self, lead: Lead) -> Lead:
        return self._persist(lead)

    def delete_lead(self, lead: Lead) -> None:
        self._delete(lead)

    # appointments

    def find_appointment(self, appointment_id: uuid.UUID) -> Appointment | None:
        return self.session.get(Appointment, appointment_id)

    def query_appointments(self, scope: Scope, filters: dict[str, Any] | None = None) -> list[Appointment]:
        filters = filters or {}
        stmt = apply_scope_filter(select(Appointment), scope)
        if filters.get("status"):
            stmt = stmt.where(Appointment.status == str(filters["status"]))
        if filters.get("lead_id"):
            stmt = stmt.where(Appointment.lead_id == filters["lead_id"])
        if filters.get("user_id"):
            user_id = filters["user_id"]
            stmt = stmt.where(or_(Appointment.scheduled_by_id == user_id, Appointment.scheduled_with_id == user_id))
        if filters.get("start"):
            stmt = stmt.where(Appointment.scheduled_at >= filters["start"])
        if filters.get("end"):
            stmt = stmt.where(Appointment.scheduled_at <= filters["end"])
        return self._paginate(stmt.order_by(Appointment.scheduled_at), filters)

    def find_active_appointments_for_user(self, user_id: uuid.UUID, lock: bool = False) -> list[Appointment]:
        stmt = select(Appointment).where(
            or_(Appointment.scheduled_by_id == user_id, Appointment.scheduled_with_id == user_id),
            Appointment.status.not_in([str(item) for item in TERMINAL_APPOINTMENT_STATUSES]),
        )
        if lock:
            stmt = stmt.with_for_update(of=Appointment)
        return list(self.session.scalars(stmt.order_by(Appointment.scheduled_at)).all())

    def persist_appointment(self, appointment: Appointment) -> Appointment:
        return self._persist(appointment)

    def delete_appointment(self, appointment: Appointment) -> None:
        self._delete(appointment)

    # transactions

    def with_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` atomically: commit on success, roll back and re-raise on failure."""

        if self._depth:
            with self.session.begin_nested():
                return fn()

        self._depth += 1
        try:
            result = fn()
            self.session.commit()
            return result
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth -= 1

    def _persist(self, record: T) -> T:
        self.session.add(record)
        self.session.flush()
        return record

    def _delete(self, record: Any) -> None:
        self.session.delete(record)
        self.session.flush()

    def _paginate(self, stmt: Select[Any], filters: dict[str, Any]) -> list[Any]:
        if filters.get("offset"):
            stmt = stmt.offset(int(filters["offset"]))
        if filters.get("limit"):
            stmt = stmt.limit(int(filters["limit"]))
        return list(self.session.scalars(stmt).all())
