from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from crmcore import audit
from crmcore.context import get_correlation_id
from crmcore.core.config import get_settings
from crmcore.core.rbac import DIRECTOR_ROLES, Role, parse_role
from crmcore.crm import scheduling, workflow
from crmcore.crm.models import (
    TERMINAL_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    Lead,
    LeadStatus,
    Organization,
    Team,
    User,
)
from crmcore.crm.repositories import CRMStore
from crmcore.crm.schemas import (
    AppointmentCreate,
    AppointmentRead,
    AppointmentStatistics,
    AppointmentUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from crmcore.errors import ConflictDetected, NotFound, ValidationFailed
from crmcore.metrics import observe_appointment_conflict, observe_lead_assignment, observe_lead_status_change
from crmcore.platform.security.context import Actor
from crmcore.platform.security.policies import Action, UserPolicy, authorize, deny, get_policy
from crmcore.platform.security.scope import EntityType, resolve_scope


logger = logging.getLogger("crmcore.crm")
tracer = trace.get_tracer("crmcore.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_actor(store: CRMStore, user_id: uuid.UUID, correlation_id: str | None = None) -> Actor:
    """Load the acting user once and freeze its role, capabilities and team ids."""

    user = store.find_user(user_id)
    if user is None or not user.is_active:
        raise NotFound("user", user_id)
    return Actor.for_user(
        user,
        team_ids=store.find_team_membership(user.id),
        correlation_id=correlation_id or get_correlation_id(),
    )


def _require(record: Any, resource: str, record_id: uuid.UUID) -> Any:
    if record is None:
        raise NotFound(resource, record_id)
    return record


def _update_payload(dto: Any) -> dict[str, Any]:
    payload = dto.model_dump(exclude_unset=True)
    for field_name in sorted(getattr(type(dto), "non_nullable_fields", frozenset())):
        if field_name in payload and payload[field_name] is None:
            raise ValidationFailed(field_name, f"The {field_name} field cannot be null.")
    return payload


def _record_audit(actor: Actor, entity_type: str, entity_id: uuid.UUID, action: str, before: Any, after: Any) -> None:
    audit.record(
        actor_user_id=str(actor.user_id),
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        before=before,
        after=after,
        correlation_id=actor.correlation_id,
    )


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, store: CRMStore, actor: Actor, dto: LeadCreate) -> LeadRead:
        authorize(actor, Action.CREATE, EntityType.LEAD)

        lead = Lead(
            referral_id=actor.user_id,
            organization_id=None,
            client_first_name=dto.client_first_name,
            client_last_name=dto.client_last_name,
            client_email=str(dto.client_email),
            client_phone=dto.client_phone,
            client_company=dto.client_company,
            source=dto.source,
            revenue=dto.revenue,
            status=LeadStatus.NEW,
        )

        def _create() -> LeadRead:
            store.persist_lead(lead)
            created = self._to_read(lead)
            _record_audit(actor, self.entity_type, lead.id, "create", None, created.model_dump(mode="json"))
            return created

        created = store.with_transaction(_create)
        logger.info("lead.created", extra={"lead_id": str(created.id), "actor_id": str(actor.user_id)})
        return created

    def get_lead(self, store: CRMStore, actor: Actor, lead_id: uuid.UUID) -> LeadRead:
        lead = _require(store.find_lead(lead_id), "lead", lead_id)
        authorize(actor, Action.VIEW, EntityType.LEAD, lead)
        return self._to_read(lead)

    def list_leads(self, store: CRMStore, actor: Actor, filters: dict[str, Any] | None = None) -> list[LeadRead]:
        authorize(actor, Action.VIEW_ANY, EntityType.LEAD)
        leads = store.query_leads(resolve_scope(actor, EntityType.LEAD), filters)
        return [self._to_read(item) for item in leads]

    def update_lead(self, store: CRMStore, actor: Actor, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = _require(store.find_lead(lead_id), "lead", lead_id)
        authorize(actor, Action.UPDATE, EntityType.LEAD, lead)

        payload = _update_payload(dto)
        if "client_email" in payload and payload["client_email"] is not None:
            payload["client_email"] = str(payload["client_email"])
        if not payload:
            return self._to_read(lead)

        before = self._to_read(lead).model_dump(mode="json")

        def _update() -> LeadRead:
            for field_name, value in payload.items():
                setattr(lead, field_name, value)
            store.persist_lead(lead)
            updated = self._to_read(lead)
            _record_audit(actor, self.entity_type, lead.id, "update", before, updated.model_dump(mode="json"))
            return updated

        return store.with_transaction(_update)

    def assign_lead(self, store: CRMStore, actor: Actor, lead_id: uuid.UUID, assignee_id: uuid.UUID) -> LeadRead:
        with tracer.start_as_current_span("crm.lead.assign") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("assignee_id", str(assignee_id))
            span.set_attribute("assigner_role", actor.role.value)
            span.set_attribute("correlation_id", actor.correlation_id or "")

            lead = _require(store.find_lead(lead_id), "lead", lead_id)
            authorize(actor, Action.ASSIGN, EntityType.LEAD, lead)

            assignee = store.find_user(assignee_id)
            if assignee is None:
                raise ValidationFailed("assigned_to", "The selected user does not exist.")
            if not assignee.is_active:
                raise ValidationFailed("assigned_to", "The selected user is not active.")

            try:
                assignment = workflow.plan_assignment(lead, assignee, actor)
            except ValidationFailed as exc:
                observe_lead_assignment(actor.role.value, "rejected")
                span.set_status(Status(StatusCode.ERROR, exc.reason))
                logger.info(
                    "lead.assignment_rejected",
                    extra={
                        "lead_id": str(lead_id),
                        "assignee_id": str(assignee_id),
                        "actor_id": str(actor.user_id),
                        "reason": exc.reason,
                    },
                )
                raise

            before = self._to_read(lead).model_dump(mode="json")

            def _assign() -> LeadRead:
                workflow.apply_assignment(lead, assignment)
                store.persist_lead(lead)
                updated = self._to_read(lead)
                _record_audit(actor, self.entity_type, lead.id, "assign", before, updated.model_dump(mode="json"))
                return updated

            updated = store.with_transaction(_assign)
            span.set_attribute("status", assignment.status.value)

        observe_lead_assignment(actor.role.value, "assigned")
        observe_lead_status_change(assignment.status.value)
        logger.info(
            "lead.assigned",
            extra={
                "lead_id": str(updated.id),
                "assignee_id": str(assignment.assigned_to_id),
                "actor_id": str(actor.user_id),
                "organization_id": str(assignment.organization_id) if assignment.organization_id else None,
                "status": assignment.status.value,
            },
        )
        return updated

    def update_status(
        self,
        store: CRMStore,
        actor: Actor,
        lead_id: uuid.UUID,
        status: LeadStatus | str,
    ) -> LeadRead:
        lead = _require(store.find_lead(lead_id), "lead", lead_id)
        authorize(actor, Action.UPDATE_STATUS, EntityType.LEAD, lead)
        resolved = workflow.parse_status(status)
        before = self._to_read(lead).model_dump(mode="json")

        def _update() -> LeadRead:
            workflow.update_status(lead, resolved)
            store.persist_lead(lead)
            updated = self._to_read(lead)
            _record_audit(actor, self.entity_type, lead.id, "update_status", before, updated.model_dump(mode="json"))
            return updated

        updated = store.with_transaction(_update)
        observe_lead_status_change(resolved.value)
        logger.info("lead.status_changed", extra={"lead_id": str(lead.id), "status": resolved.value})
        return updated

    def respond(self, store: CRMStore, actor: Actor, lead_id: uuid.UUID, accept: bool) -> LeadRead:
        lead = _require(store.find_lead(lead_id), "lead", lead_id)
        authorize(actor, Action.RESPOND, EntityType.LEAD, lead)
        before = self._to_read(lead).model_dump(mode="json")

        def _respond() -> LeadRead:
            workflow.respond(lead, actor, accept)
            store.persist_lead(lead)
            updated = self._to_read(lead)
            _record_audit(actor, self.entity_type, lead.id, "respond", before, updated.model_dump(mode="json"))
            return updated

        updated = store.with_transaction(_respond)
        observe_lead_status_change(updated.status.value)
        logger.info("lead.status_changed", extra={"lead_id": str(updated.id), "status": updated.status.value})
        return updated

    def delete_lead(self, store: CRMStore, actor: Actor, lead_id: uuid.UUID) -> None:
        lead = _require(store.find_lead(lead_id), "lead", lead_id)
        authorize(actor, Action.DELETE, EntityType.LEAD, lead)
        before = self._to_read(lead).model_dump(mode="json")

        def _delete() -> None:
            store.delete_lead(lead)
            _record_audit(actor, self.entity_type, lead_id, "delete", before, None)

        store.with_transaction(_delete)
        logger.info("lead.deleted", extra={"lead_id": str(lead_id), "actor_id": str(actor.user_id)})

    @staticmethod
    def _to_read(lead: Lead) -> LeadRead:
        return LeadRead.model_validate(lead)


class AppointmentService:
    entity_type = "crm.appointment"

    def find_conflicts(
        self,
        store: CRMStore,
        user_id: uuid.UUID,
        scheduled_at: datetime,
        duration: int,
        exclude_appointment_id: uuid.UUID | None = None,
        *,
        lock: bool = False,
    ) -> list[Appointment]:
        candidates = store.find_active_appointments_for_user(user_id, lock=lock)
        return scheduling.find_conflicts(candidates, user_id, scheduled_at, duration, exclude_appointment_id)

    def create_appointment(self, store: CRMStore, actor: Actor, dto: AppointmentCreate) -> AppointmentRead:
        with tracer.start_as_current_span("crm.appointment.create") as span:
            span.set_attribute("lead_id", str(dto.lead_id))
            span.set_attribute("correlation_id", actor.correlation_id or "")
            authorize(actor, Action.CREATE, EntityType.APPOINTMENT)
            lead = _require(store.find_lead(dto.lead_id), "lead", dto.lead_id)
            authorize(actor, Action.VIEW, EntityType.LEAD, lead)
            self._require_participant(store, dto.scheduled_with_id)

            duration = scheduling.validate_duration(dto.duration)
            scheduled_at = scheduling.validate_timing(dto.scheduled_at)

            def _create() -> AppointmentRead:
                self._ensure_no_conflicts(
                    store,
                    "create",
                    (actor.user_id, dto.scheduled_with_id),
                    scheduled_at,
                    duration,
                )
                appointment = Appointment(
                    lead_id=lead.id,
                    scheduled_by_id=actor.user_id,
                    scheduled_with_id=dto.scheduled_with_id,
                    scheduled_at=scheduled_at,
                    duration=duration,
                    location=dto.location,
                    notes=dto.notes,
                    status=dto.status,
                )
                store.persist_appointment(appointment)
                created = self._to_read(appointment)
                _record_audit(actor, self.entity_type, appointment.id, "create", None, created.model_dump(mode="json"))
                return created

            created = store.with_transaction(_create)
            span.set_attribute("appointment_id", str(created.id))

        logger.info(
            "appointment.created",
            extra={"appointment_id": str(created.id), "lead_id": str(created.lead_id), "actor_id": str(actor.user_id)},
        )
        return created

    def get_appointment(self, store: CRMStore, actor: Actor, appointment_id: uuid.UUID) -> AppointmentRead:
        appointment = _require(store.find_appointment(appointment_id), "appointment", appointment_id)
        authorize(actor, Action.VIEW, EntityType.APPOINTMENT, appointment)
        return self._to_read(appointment)

    def list_appointments(
        self,
        store: CRMStore,
        actor: Actor,
        filters: dict[str, Any] | None = None,
    ) -> list[AppointmentRead]:
        authorize(actor, Action.VIEW_ANY, EntityType.APPOINTMENT)
        appointments = store.query_appointments(resolve_scope(actor, EntityType.APPOINTMENT), filters)
        return [self._to_read(item) for item in appointments]

    def update_appointment(
        self,
        store: CRMStore,
        actor: Actor,
        appointment_id: uuid.UUID,
        dto: AppointmentUpdate,
    ) -> AppointmentRead:
        with tracer.start_as_current_span("crm.appointment.update") as span:
            span.set_attribute("appointment_id", str(appointment_id))
            appointment = _require(store.find_appointment(appointment_id), "appointment", appointment_id)
            authorize(actor, Action.UPDATE, EntityType.APPOINTMENT, appointment)

            payload = _update_payload(dto)
            if not payload:
                return self._to_read(appointment)

            if "scheduled_with_id" in payload:
                self._require_participant(store, payload["scheduled_with_id"])
            if payload.get("duration") is not None:
                payload["duration"] = scheduling.validate_duration(payload["duration"])
            if payload.get("scheduled_at") is not None:
                payload["scheduled_at"] = scheduling.validate_timing(payload["scheduled_at"])

            scheduled_at = payload.get("scheduled_at") or appointment.scheduled_at
            duration = payload.get("duration") or appointment.duration
            scheduled_with_id = payload.get("scheduled_with_id", appointment.scheduled_with_id)
            status = payload.get("status") or appointment.status
            slot_changed = bool({"scheduled_at", "duration", "scheduled_with_id"} & payload.keys())
            reactivated = appointment.status in TERMINAL_APPOINTMENT_STATUSES
            before = self._to_read(appointment).model_dump(mode="json")

            def _update() -> AppointmentRead:
                if (slot_changed or reactivated) and status not in TERMINAL_APPOINTMENT_STATUSES:
                    self._ensure_no_conflicts(
                        store,
                        "update",
                        (appointment.scheduled_by_id, scheduled_with_id),
                        scheduled_at,
                        duration,
                        exclude_appointment_id=appointment.id,
                    )
                for field_name, value in payload.items():
                    setattr(appointment, field_name, value)
                store.persist_appointment(appointment)
                updated = self._to_read(appointment)
                _record_audit(actor, self.entity_type, appointment.id, "update", before, updated.model_dump(mode="json"))
                return updated

            return store.with_transaction(_update)

    def reschedule(
        self,
        store: CRMStore,
        actor: Actor,
        appointment_id: uuid.UUID,
        scheduled_at: datetime,
        notes: str | None = None,
    ) -> AppointmentRead:
        with tracer.start_as_current_span("crm.appointment.reschedule") as span:
            span.set_attribute("appointment_id", str(appointment_id))
            appointment = _require(store.find_appointment(appointment_id), "appointment", appointment_id)
            authorize(actor, Action.RESCHEDULE, EntityType.APPOINTMENT, appointment)
            new_start = scheduling.validate_timing(scheduled_at)
            before = self._to_read(appointment).model_dump(mode="json")

            def _reschedule() -> AppointmentRead:
                self._ensure_no_conflicts(
                    store,
                    "reschedule",
                    (appointment.scheduled_by_id, appointment.scheduled_with_id),
                    new_start,
                    appointment.duration,
                    exclude_appointment_id=appointment.id,
                )
                appointment.scheduled_at = new_start
                appointment.status = AppointmentStatus.SCHEDULED
                if notes is not None:
                    appointment.notes = notes
                store.persist_appointment(appointment)
                updated = self._to_read(appointment)
                _record_audit(
                    actor, self.entity_type, appointment.id, "reschedule", before, updated.model_dump(mode="json")
                )
                return updated

            return store.with_transaction(_reschedule)

    def cancel(self, store: CRMStore, actor: Actor, appointment_id: uuid.UUID, notes: str | None = None) -> AppointmentRead:
        return self._set_status(store, actor, appointment_id, Action.CANCEL, AppointmentStatus.CANCELLED, notes)

    def confirm(self, store: CRMStore, actor: Actor, appointment_id: uuid.UUID) -> AppointmentRead:
        return self._set_status(store, actor, appointment_id, Action.UPDATE, AppointmentStatus.CONFIRMED, None)

    def mark_completed(
        self,
        store: CRMStore,
        actor: Actor,
        appointment_id: uuid.UUID,
        notes: str | None = None,
    ) -> AppointmentRead:
        return self._set_status(
            store, actor, appointment_id, Action.MARK_COMPLETED, AppointmentStatus.COMPLETED, notes
        )

    def mark_no_show(
        self,
        store: CRMStore,
        actor: Actor,
        appointment_id: uuid.UUID,
        notes: str | None = None,
    ) -> AppointmentRead:
        return self._set_status(store, actor, appointment_id, Action.UPDATE, AppointmentStatus.NO_SHOW, notes)

    def delete_appointment(self, store: CRMStore, actor: Actor, appointment_id: uuid.UUID) -> None:
        appointment = _require(store.find_appointment(appointment_id), "appointment", appointment_id)
        authorize(actor, Action.DELETE, EntityType.APPOINTMENT, appointment)
        before = self._to_read(appointment).model_dump(mode="json")

        def _delete() -> None:
            store.delete_appointment(appointment)
            _record_audit(actor, self.entity_type, appointment_id, "delete", before, None)

        store.with_transaction(_delete)
        logger.info("appointment.deleted", extra={"appointment_id": str(appointment_id)})

    def upcoming_appointments(
        self,
        store: CRMStore,
        actor: Actor,
        user_id: uuid.UUID | None = None,
        days: int | None = None,
        now: datetime | None = None,
    ) -> list[AppointmentRead]:
        target_id = user_id or actor.user_id
        if target_id != actor.user_id:
            target = _require(store.find_user(target_id), "user", target_id)
            authorize(actor, Action.VIEW, EntityType.USER, target)
        authorize(actor, Action.VIEW_ANY, EntityType.APPOINTMENT)

        window = days if days is not None else get_settings().upcoming_window_days
        start = scheduling.to_utc(now) if now is not None else utcnow()
        filters = {"user_id": target_id, "start": start, "end": start + timedelta(days=window)}
        appointments = store.query_appointments(resolve_scope(actor, EntityType.APPOINTMENT), filters)
        active = {AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED}
        return [self._to_read(item) for item in appointments if item.status in active]

    def statistics(
        self,
        store: CRMStore,
        actor: Actor,
        start: datetime | None = None,
        end: datetime | None = None,
        now: datetime | None = None,
    ) -> AppointmentStatistics:
        authorize(actor, Action.VIEW_ANY, EntityType.APPOINTMENT)
        filters: dict[str, Any] = {"start": start, "end": end}
        appointments = store.query_appointments(resolve_scope(actor, EntityType.APPOINTMENT), filters)

        current = scheduling.to_utc(now) if now is not None else utcnow()
        counts: dict[str, int] = {"total": len(appointments)}
        for item in appointments:
            counts[item.status] = counts.get(item.status, 0) + 1
            if item.status in {AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED}:
                key = "upcoming" if scheduling.to_utc(item.scheduled_at) > current else "overdue"
                counts[key] = counts.get(key, 0) + 1
        return AppointmentStatistics(**counts)

    def _set_status(
        self,
        store: CRMStore,
        actor: Actor,
        appointment_id: uuid.UUID,
        action: Action,
        status: AppointmentStatus,
        notes: str | None,
    ) -> AppointmentRead:
        appointment = _require(store.find_appointment(appointment_id), "appointment", appointment_id)
        authorize(actor, action, EntityType.APPOINTMENT, appointment)
        before = self._to_read(appointment).model_dump(mode="json")

        def _update() -> AppointmentRead:
            if appointment.status in TERMINAL_APPOINTMENT_STATUSES and status not in TERMINAL_APPOINTMENT_STATUSES:
                self._ensure_no_conflicts(
                    store,
                    "reactivate",
                    (appointment.scheduled_by_id, appointment.scheduled_with_id),
                    appointment.scheduled_at,
                    appointment.duration,
                    exclude_appointment_id=appointment.id,
                )
            appointment.status = status
            if notes is not None:
                appointment.notes = notes
            store.persist_appointment(appointment)
            updated = self._to_read(appointment)
            _record_audit(actor, self.entity_type, appointment.id, status.value, before, updated.model_dump(mode="json"))
            return updated

        updated = store.with_transaction(_update)
        logger.info("appointment.status_changed", extra={"appointment_id": str(appointment_id), "status": status.value})
        return updated

    def _ensure_no_conflicts(
        self,
        store: CRMStore,
        operation: str,
        user_ids: tuple[uuid.UUID | None, ...],
        scheduled_at: datetime,
        duration: int,
        exclude_appointment_id: uuid.UUID | None = None,
    ) -> None:
        participants = list(dict.fromkeys(item for item in user_ids if item is not None))
        store.lock_users(participants)

        conflicts: dict[uuid.UUID, Appointment] = {}
        conflicting_users: list[uuid.UUID] = []
        for user_id in participants:
            found = self.find_conflicts(store, user_id, scheduled_at, duration, exclude_appointment_id, lock=True)
            if found:
                conflicting_users.append(user_id)
            for appointment in found:
                conflicts[appointment.id] = appointment

        if not conflicts:
            return

        observe_appointment_conflict(operation)
        error = ConflictDetected(conflicts.keys(), conflicting_users)
        logger.warning(
            "appointment.conflict",
            extra={
                "appointment_id": str(exclude_appointment_id) if exclude_appointment_id else None,
                "conflicting_ids": error.conflicting_ids,
                "user_id": ",".join(error.user_ids),
            },
        )
        span = trace.get_current_span()
        span.set_status(Status(StatusCode.ERROR, "scheduling conflict"))
        raise error

    @staticmethod
    def _require_participant(store: CRMStore, user_id: uuid.UUID | None) -> None:
        if user_id is None:
            return
        user = store.find_user(user_id)
        if user is None or not user.is_active:
            raise ValidationFailed("scheduled_with", "The selected user does not exist.")

    @staticmethod
    def _to_read(appointment: Appointment) -> AppointmentRead:
        return AppointmentRead.model_validate(appointment)


_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    return _SLUG_STRIP_RE.sub("-", value.lower()).strip("-") or "team"


class TeamService:
    entity_type = "crm.team"

    def create_team(self, store: CRMStore, actor: Actor, dto: TeamCreate) -> TeamRead:
        authorize(actor, Action.CREATE, EntityType.TEAM)

        organization_id = dto.organization_id or actor.organization_id
        if organization_id is None:
            raise ValidationFailed("organization_id", "Teams must be associated with an organization.")
        organization = store.find_organization(organization_id)
        if organization is None:
            raise ValidationFailed("organization_id", "The selected organization does not exist.")
        if not self._can_use_organization(actor, organization):
            deny(actor, Action.CREATE, EntityType.TEAM, "You are not authorized to access teams in this organization.")

        if dto.slug:
            if store.find_team_by_slug(organization_id, dto.slug) is not None:
                raise ValidationFailed("slug", "The slug has already been taken.")
            slug = dto.slug
        else:
            slug = self._unique_slug(store, organization_id, dto.name)

        team = Team(
            name=dto.name,
            slug=slug,
            description=dto.description,
            creator_id=actor.user_id,
            organization_id=organization_id,
        )

        def _create() -> TeamRead:
            store.persist_team(team)
            created = self._to_read(team)
            _record_audit(actor, self.entity_type, team.id, "create", None, created.model_dump(mode="json"))
            return created

        created = store.with_transaction(_create)
        logger.info("team.created", extra={"team_id": str(created.id), "organization_id": str(organization_id)})
        return created

    def get_team(self, store: CRMStore, actor: Actor, team_id: uuid.UUID) -> TeamRead:
        team = _require(store.find_team(team_id), "team", team_id)
        authorize(actor, Action.VIEW, EntityType.TEAM, team)
        return self._to_read(team)

    def list_teams(self, store: CRMStore, actor: Actor, filters: dict[str, Any] | None = None) -> list[TeamRead]:
        authorize(actor, Action.VIEW_ANY, EntityType.TEAM)
        teams = store.query_teams(resolve_scope(actor, EntityType.TEAM), filters)
        return [self._to_read(item) for item in teams]

    def teams_for_user(self, store: CRMStore, actor: Actor, user_id: uuid.UUID) -> list[TeamRead]:
        if user_id != actor.user_id:
            target = _require(store.find_user(user_id), "user", user_id)
            if not get_policy(EntityType.USER).can_view(actor, target):
                deny(actor, Action.VIEW, EntityType.TEAM, "You are not authorized to view this user's teams.", target)
        teams = store.query_teams(resolve_scope(actor, EntityType.TEAM), {"member_id": user_id})
        return [self._to_read(item) for item in teams]

    def update_team(self, store: CRMStore, actor: Actor, team_id: uuid.UUID, dto: TeamUpdate) -> TeamRead:
        team = _require(store.find_team(team_id), "team", team_id)
        authorize(actor, Action.UPDATE, EntityType.TEAM, team)

        payload = _update_payload(dto)
        if payload.get("slug"):
            if store.find_team_by_slug(team.organization_id, payload["slug"], exclude_team_id=team.id) is not None:
                raise ValidationFailed("slug", "The slug has already been taken.")
        elif payload.get("name"):
            payload["slug"] = self._unique_slug(store, team.organization_id, payload["name"], exclude_team_id=team.id)
        else:
            payload.pop("slug", None)
        if not payload:
            return self._to_read(team)

        before = self._to_read(team).model_dump(mode="json")

        def _update() -> TeamRead:
            for field_name, value in payload.items():
                setattr(team, field_name, value)
            store.persist_team(team)
            updated = self._to_read(team)
            _record_audit(actor, self.entity_type, team.id, "update", before, updated.model_dump(mode="json"))
            return updated

        return store.with_transaction(_update)

    def delete_team(self, store: CRMStore, actor: Actor, team_id: uuid.UUID) -> None:
        team = _require(store.find_team(team_id), "team", team_id)
        authorize(actor, Action.DELETE, EntityType.TEAM, team)
        before = self._to_read(team).model_dump(mode="json")

        def _delete() -> None:
            store.delete_team(team)
            _record_audit(actor, self.entity_type, team_id, "delete", before, None)

        store.with_transaction(_delete)
        logger.info("team.deleted", extra={"team_id": str(team_id)})

    def add_member(self, store: CRMStore, actor: Actor, team_id: uuid.UUID, user_id: uuid.UUID) -> TeamRead:
        team = _require(store.find_team(team_id), "team", team_id)
        authorize(actor, Action.MANAGE_MEMBERS, EntityType.TEAM, team)
        user = _require(store.find_user(user_id), "user", user_id)

        if actor.role in DIRECTOR_ROLES and user.organization_id not in {actor.organization_id, team.organization_id}:
            raise ValidationFailed("user_id", "You can only add users from your organization or the team's organization.")
        if any(member.id == user.id for member in team.members):
            return self._to_read(team)

        def _add() -> TeamRead:
            team.members.append(user)
            store.persist_team(team)
            updated = self._to_read(team)
            _record_audit(actor, self.entity_type, team.id, "add_member", None, {"user_id": str(user.id)})
            return updated

        updated = store.with_transaction(_add)
        logger.info("team.member_added", extra={"team_id": str(team_id), "user_id": str(user_id)})
        return updated

    def remove_member(self, store: CRMStore, actor: Actor, team_id: uuid.UUID, user_id: uuid.UUID) -> TeamRead:
        team = _require(store.find_team(team_id), "team", team_id)
        authorize(actor, Action.MANAGE_MEMBERS, EntityType.TEAM, team)
        user = _require(store.find_user(user_id), "user", user_id)
        remaining = [member for member in team.members if member.id != user.id]
        if len(remaining) == len(team.members):
            return self._to_read(team)

        def _remove() -> TeamRead:
            team.members = remaining
            store.persist_team(team)
            updated = self._to_read(team)
            _record_audit(actor, self.entity_type, team.id, "remove_member", {"user_id": str(user.id)}, None)
            return updated

        updated = store.with_transaction(_remove)
        logger.info("team.member_removed", extra={"team_id": str(team_id), "user_id": str(user_id)})
        return updated

    @staticmethod
    def _can_use_organization(actor: Actor, organization: Organization) -> bool:
        if actor.is_global or organization.id == actor.organization_id:
            return True
        return (
            actor.has_role(Role.PARTNER_DIRECTOR)
            and actor.organization_id is not None
            and organization.parent_id == actor.organization_id
        )

    @staticmethod
    def _unique_slug(
        store: CRMStore,
        organization_id: uuid.UUID,
        name: str,
        exclude_team_id: uuid.UUID | None = None,
    ) -> str:
        base = slugify(name)
        candidate = base
        counter = 1
        while store.find_team_by_slug(organization_id, candidate, exclude_team_id=exclude_team_id) is not None:
            candidate = f"{base}-{counter}"
            counter += 1
        return candidate

    @staticmethod
    def _to_read(team: Team) -> TeamRead:
        return TeamRead(
            id=team.id,
            name=team.name,
            slug=team.slug,
            description=team.description,
            creator_id=team.creator_id,
            organization_id=team.organization_id,
            member_ids=sorted((member.id for member in team.members), key=str),
            created_at=team.created_at,
            updated_at=team.updated_at,
        )


class OrganizationService:
    entity_type = "crm.organization"

    def create_organization(self, store: CRMStore, actor: Actor, dto: OrganizationCreate) -> OrganizationRead:
        authorize(actor, Action.CREATE, EntityType.ORGANIZATION)
        if dto.parent_id is not None and store.find_organization(dto.parent_id) is None:
            raise ValidationFailed("parent_id", "The selected parent organization does not exist.")
        director = self._load_director(store, dto.director_id)

        organization = Organization(
            name=dto.name,
            parent_id=dto.parent_id,
            director_id=dto.director_id,
            is_active=dto.is_active,
        )

        def _create() -> OrganizationRead:
            store.persist_organization(organization)
            if director is not None:
                director.organization_id = organization.id
                store.persist_user(director)
            created = OrganizationRead.model_validate(organization)
            _record_audit(actor, self.entity_type, organization.id, "create", None, created.model_dump(mode="json"))
            return created

        created = store.with_transaction(_create)
        logger.info("organization.created", extra={"organization_id": str(created.id)})
        return created

    def get_organization(self, store: CRMStore, actor: Actor, organization_id: uuid.UUID) -> OrganizationRead:
        organization = _require(store.find_organization(organization_id), "organization", organization_id)
        authorize(actor, Action.VIEW, EntityType.ORGANIZATION, organization)
        return OrganizationRead.model_validate(organization)

    def list_organizations(
        self,
        store: CRMStore,
        actor: Actor,
        filters: dict[str, Any] | None = None,
    ) -> list[OrganizationRead]:
        authorize(actor, Action.VIEW_ANY, EntityType.ORGANIZATION)
        organizations = store.query_organizations(resolve_scope(actor, EntityType.ORGANIZATION), filters)
        return [OrganizationRead.model_validate(item) for item in organizations]

    def update_organization(
        self,
        store: CRMStore,
        actor: Actor,
        organization_id: uuid.UUID,
        dto: OrganizationUpdate,
    ) -> OrganizationRead:
        organization = _require(store.find_organization(organization_id), "organization", organization_id)
        authorize(actor, Action.UPDATE, EntityType.ORGANIZATION, organization)

        payload = _update_payload(dto)
        if payload.get("parent_id") is not None:
            self._ensure_acyclic(store, organization.id, payload["parent_id"])
        director = self._load_director(store, payload.get("director_id"))
        if not payload:
            return OrganizationRead.model_validate(organization)

        before = OrganizationRead.model_validate(organization).model_dump(mode="json")

        def _update() -> OrganizationRead:
            for field_name, value in payload.items():
                setattr(organization, field_name, value)
            store.persist_organization(organization)
            if director is not None:
                director.organization_id = organization.id
                store.persist_user(director)
            updated = OrganizationRead.model_validate(organization)
            _record_audit(actor, self.entity_type, organization.id, "update", before, updated.model_dump(mode="json"))
            return updated

        return store.with_transaction(_update)

    def delete_organization(self, store: CRMStore, actor: Actor, organization_id: uuid.UUID) -> None:
        organization = _require(store.find_organization(organization_id), "organization", organization_id)
        authorize(actor, Action.DELETE, EntityType.ORGANIZATION, organization)
        if store.find_child_organizations(organization.id):
            raise ValidationFailed("organization", "Cannot delete an organization that has child organizations.")
        before = OrganizationRead.model_validate(organization).model_dump(mode="json")

        def _delete() -> None:
            store.delete_organization(organization)
            _record_audit(actor, self.entity_type, organization_id, "delete", before, None)

        store.with_transaction(_delete)
        logger.info("organization.deleted", extra={"organization_id": str(organization_id)})

    @staticmethod
    def _ensure_acyclic(store: CRMStore, organization_id: uuid.UUID, parent_id: uuid.UUID) -> None:
        visited: set[uuid.UUID] = set()
        current: uuid.UUID | None = parent_id
        while current is not None:
            if current == organization_id:
                raise ValidationFailed("parent_id", "An organization cannot be placed under itself or its descendants.")
            if current in visited:
                break
            visited.add(current)
            parent = store.find_organization(current)
            if parent is None:
                if current == parent_id:
                    raise ValidationFailed("parent_id", "The selected parent organization does not exist.")
                break
            current = parent.parent_id

    @staticmethod
    def _load_director(store: CRMStore, director_id: uuid.UUID | None) -> User | None:
        if director_id is None:
            return None
        director = store.find_user(director_id)
        if director is None:
            raise ValidationFailed("director_id", "The selected director does not exist.")
        if parse_role(director.role) not in DIRECTOR_ROLES:
            raise ValidationFailed("director_id", "The selected user must be a Group Director or Partner Director.")
        return director


class UserService:
    entity_type = "crm.user"

    def __init__(self) -> None:
        self.policy = UserPolicy()

    def create_user(self, store: CRMStore, actor: Actor, dto: UserCreate) -> UserRead:
        authorize(actor, Action.CREATE, EntityType.USER)

        organization_id = dto.organization_id
        if organization_id is None and not actor.is_global:
            organization_id = actor.organization_id
        if not actor.is_global and organization_id != actor.organization_id:
            deny(
                actor,
                Action.CREATE,
                EntityType.USER,
                "You do not have permission to create users in the specified organization.",
            )
        if not self.policy.can_create_role(actor, dto.role, organization_id):
            deny(
                actor,
                Action.CREATE,
                EntityType.USER,
                f"You are not allowed to create users with the {dto.role.value} role.",
            )
        if organization_id is not None and store.find_organization(organization_id) is None:
            raise ValidationFailed("organization_id", "The selected organization does not exist.")
        if store.find_user_by_email(str(dto.email)) is not None:
            raise ValidationFailed("email", "The email has already been taken.")

        user = User(
            name=dto.name,
            email=str(dto.email),
            role=dto.role.value,
            organization_id=organization_id,
            created_by_id=actor.user_id,
            is_active=dto.is_active,
        )

        def _create() -> UserRead:
            store.persist_user(user)
            created = UserRead.model_validate(user)
            _record_audit(actor, self.entity_type, user.id, "create", None, created.model_dump(mode="json"))
            return created

        created = store.with_transaction(_create)
        logger.info("user.created", extra={"user_id": str(created.id), "actor_id": str(actor.user_id)})
        return created

    def get_user(self, store: CRMStore, actor: Actor, user_id: uuid.UUID) -> UserRead:
        user = _require(store.find_user(user_id), "user", user_id)
        authorize(actor, Action.VIEW, EntityType.USER, user)
        return UserRead.model_validate(user)

    def list_users(self, store: CRMStore, actor: Actor, filters: dict[str, Any] | None = None) -> list[UserRead]:
        authorize(actor, Action.VIEW_ANY, EntityType.USER)
        users = store.query_users(resolve_scope(actor, EntityType.USER), filters)
        return [UserRead.model_validate(item) for item in users]

    def update_user(self, store: CRMStore, actor: Actor, user_id: uuid.UUID, dto: UserUpdate) -> UserRead:
        user = _require(store.find_user(user_id), "user", user_id)
        authorize(actor, Action.UPDATE, EntityType.USER, user)

        payload = _update_payload(dto)
        role = payload.get("role")
        if role is not None and Role(role) != parse_role(user.role):
            if not self.policy.can_change_role(actor, user, role):
                deny(actor, Action.UPDATE, EntityType.USER, "You are not allowed to change this user's role.", user)
            payload["role"] = Role(role).value
        elif role is not None:
            payload["role"] = Role(role).value
        if payload.get("email") is not None:
            payload["email"] = str(payload["email"])
            existing = store.find_user_by_email(payload["email"])
            if existing is not None and existing.id != user.id:
                raise ValidationFailed("email", "The email has already been taken.")
        if "organization_id" in payload and payload["organization_id"] != user.organization_id:
            if not actor.is_global and payload["organization_id"] != actor.organization_id:
                raise ValidationFailed("organization_id", "You can only assign users to your own organization.")
        if not payload:
            return UserRead.model_validate(user)

        before = UserRead.model_validate(user).model_dump(mode="json")

        def _update() -> UserRead:
            for field_name, value in payload.items():
                setattr(user, field_name, value)
            store.persist_user(user)
            updated = UserRead.model_validate(user)
            _record_audit(actor, self.entity_type, user.id, "update", before, updated.model_dump(mode="json"))
            return updated

        return store.with_transaction(_update)

    def delete_user(self, store: CRMStore, actor: Actor, user_id: uuid.UUID) -> None:
        user = _require(store.find_user(user_id), "user", user_id)
        authorize(actor, Action.DELETE, EntityType.USER, user)
        before = UserRead.model_validate(user).model_dump(mode="json")

        def _delete() -> None:
            store.delete_user(user)
            _record_audit(actor, self.entity_type, user_id, "delete", before, None)

        store.with_transaction(_delete)
        logger.info("user.deleted", extra={"user_id": str(user_id), "actor_id": str(actor.user_id)})


lead_service = LeadService()
appointment_service = AppointmentService()
team_service = TeamService()
organization_service = OrganizationService()
user_service = UserService()
