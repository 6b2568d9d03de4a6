from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.core.config import get_settings
from crmcore.core.database import Base
from crmcore.core.rbac import Role
from crmcore.crm.models import Appointment, AppointmentStatus, Lead, LeadStatus, Organization, User
from crmcore.crm.repositories import SqlAlchemyStore
from crmcore.crm.schemas import AppointmentCreate, AppointmentUpdate
from crmcore.crm.service import appointment_service, resolve_actor
from crmcore.errors import AccessDenied, ConflictDetected, ValidationFailed


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("CRM_BUSINESS_TIMEZONE", "UTC")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def store(db_session: Session) -> SqlAlchemyStore:
    return SqlAlchemyStore(db_session)


def _business_day(hour: int, minute: int = 0, days_ahead: int = 3) -> datetime:
    day = datetime.now(timezone.utc) + timedelta(days=days_ahead)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


@pytest.fixture()
def world(db_session: Session) -> SimpleNamespace:
    org = Organization(name="Alpha Partners")
    other_org = Organization(name="Beta Partners")
    db_session.add_all([org, other_org])
    db_session.flush()

    manager = User(name="Manager", email="manager@example.com", role=Role.SALES_MANAGER.value, organization_id=org.id)
    agent = User(name="Agent", email="agent@example.com", role=Role.SALES_AGENT.value, organization_id=org.id)
    outsider = User(name="Outsider", email="outsider@example.com", role=Role.SALES_AGENT.value, organization_id=other_org.id)
    db_session.add_all([manager, agent, outsider])
    db_session.flush()

    lead = Lead(
        organization_id=org.id,
        client_first_name="Alan",
        client_last_name="Turing",
        client_email="alan@example.com",
        status=LeadStatus.ASSIGNED_TO_AGENT,
        assigned_to_id=agent.id,
        assigned_by_id=manager.id,
    )
    db_session.add(lead)
    db_session.commit()
    return SimpleNamespace(manager=manager.id, agent=agent.id, outsider=outsider.id, lead=lead.id)


def _count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(Appointment)) or 0


def _book(store: SqlAlchemyStore, user_id: uuid.UUID, lead_id: uuid.UUID, start: datetime, duration: int = 60, **extra):
    return appointment_service.create_appointment(
        store,
        resolve_actor(store, user_id),
        AppointmentCreate(lead_id=lead_id, scheduled_at=start, duration=duration, **extra),
    )


def test_agent_books_appointment_for_assigned_lead(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    start = _business_day(10)
    created = _book(store, world.agent, world.lead, start)

    assert created.scheduled_by_id == world.agent
    assert created.status == AppointmentStatus.SCHEDULED
    assert created.duration == 60
    assert created.scheduled_at == start


def test_overlap_is_rejected_and_nothing_is_written(
    store: SqlAlchemyStore,
    world: SimpleNamespace,
    db_session: Session,
) -> None:
    existing = _book(store, world.agent, world.lead, _business_day(10))

    with pytest.raises(ConflictDetected) as exc_info:
        _book(store, world.manager, world.lead, _business_day(10, 30), 30, scheduled_with_id=world.agent)

    assert exc_info.value.conflicting_ids == [str(existing.id)]
    assert exc_info.value.user_ids == [str(world.agent)]
    assert _count(db_session) == 1


def test_back_to_back_appointments_do_not_conflict(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    _book(store, world.agent, world.lead, _business_day(10))
    follow_up = _book(store, world.manager, world.lead, _business_day(11), 30, scheduled_with_id=world.agent)

    assert follow_up.scheduled_with_id == world.agent


def test_timing_rules_are_enforced_on_create(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        _book(store, world.agent, world.lead, _business_day(19))
    assert exc_info.value.field == "scheduled_at"

    with pytest.raises(ValidationFailed):
        _book(store, world.agent, world.lead, datetime.now(timezone.utc) - timedelta(days=1))


def test_outsider_cannot_book_or_view(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    created = _book(store, world.agent, world.lead, _business_day(10))
    outsider = resolve_actor(store, world.outsider)

    with pytest.raises(AccessDenied):
        _book(store, world.outsider, world.lead, _business_day(14))
    with pytest.raises(AccessDenied):
        appointment_service.get_appointment(store, outsider, created.id)
    assert appointment_service.list_appointments(store, outsider) == []


def test_update_to_overlapping_slot_keeps_original(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    first = _book(store, world.agent, world.lead, _business_day(10))
    second = _book(store, world.agent, world.lead, _business_day(13))
    agent = resolve_actor(store, world.agent)

    with pytest.raises(ConflictDetected):
        appointment_service.update_appointment(
            store,
            agent,
            second.id,
            AppointmentUpdate(scheduled_at=_business_day(10, 30)),
        )

    unchanged = appointment_service.get_appointment(store, agent, second.id)
    assert unchanged.scheduled_at == _business_day(13)

    moved = appointment_service.update_appointment(
        store,
        agent,
        first.id,
        AppointmentUpdate(duration=90, location="Head office"),
    )
    assert moved.duration == 90
    assert moved.location == "Head office"


def test_reschedule_resets_status(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    created = _book(store, world.agent, world.lead, _business_day(10))
    agent = resolve_actor(store, world.agent)
    appointment_service.confirm(store, agent, created.id)

    rescheduled = appointment_service.reschedule(store, agent, created.id, _business_day(15), notes="Moved")

    assert rescheduled.status == AppointmentStatus.SCHEDULED
    assert rescheduled.scheduled_at == _business_day(15)
    assert rescheduled.notes == "Moved"


def test_cancelled_appointment_frees_the_slot(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    created = _book(store, world.agent, world.lead, _business_day(10))
    cancelled = appointment_service.cancel(store, resolve_actor(store, world.agent), created.id, notes="Client ill")

    assert cancelled.status == AppointmentStatus.CANCELLED
    assert _book(store, world.agent, world.lead, _business_day(10)).id != created.id


def test_statistics_and_upcoming(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    agent = resolve_actor(store, world.agent)
    first = _book(store, world.agent, world.lead, _business_day(9))
    second = _book(store, world.agent, world.lead, _business_day(11))
    third = _book(store, world.agent, world.lead, _business_day(14))
    appointment_service.mark_completed(store, agent, first.id)
    appointment_service.mark_no_show(store, agent, second.id)

    stats = appointment_service.statistics(store, agent)
    assert stats.total == 3
    assert stats.completed == 1
    assert stats.no_show == 1
    assert stats.scheduled == 1
    assert stats.upcoming == 1
    assert stats.overdue == 0

    upcoming = appointment_service.upcoming_appointments(store, agent, days=14)
    assert [item.id for item in upcoming] == [third.id]


def test_manager_deletes_appointment_in_own_organization(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    created = _book(store, world.agent, world.lead, _business_day(10))

    appointment_service.delete_appointment(store, resolve_actor(store, world.manager), created.id)

    assert store.find_appointment(created.id) is None


def test_reactivating_cancelled_appointment_checks_conflicts(
    store: SqlAlchemyStore,
    world: SimpleNamespace,
    db_session: Session,
) -> None:
    agent = resolve_actor(store, world.agent)
    cancelled = _book(store, world.agent, world.lead, _business_day(10))
    appointment_service.cancel(store, agent, cancelled.id)
    replacement = _book(store, world.agent, world.lead, _business_day(10))

    with pytest.raises(ConflictDetected) as exc_info:
        appointment_service.confirm(store, agent, cancelled.id)
    assert exc_info.value.conflicting_ids == [str(replacement.id)]

    with pytest.raises(ConflictDetected):
        appointment_service.mark_no_show(store, agent, cancelled.id)

    with pytest.raises(ConflictDetected):
        appointment_service.update_appointment(
            store,
            agent,
            cancelled.id,
            AppointmentUpdate(status=AppointmentStatus.SCHEDULED),
        )

    active = db_session.scalar(
        select(func.count())
        .select_from(Appointment)
        .where(Appointment.status.in_([AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED]))
    )
    assert active == 1
    assert appointment_service.get_appointment(store, agent, cancelled.id).status == AppointmentStatus.CANCELLED


def test_reactivating_into_free_slot_succeeds(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    agent = resolve_actor(store, world.agent)
    created = _book(store, world.agent, world.lead, _business_day(10))
    appointment_service.cancel(store, agent, created.id)

    confirmed = appointment_service.confirm(store, agent, created.id)

    assert confirmed.status == AppointmentStatus.CONFIRMED


def test_null_for_required_appointment_field_is_rejected(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    created = _book(store, world.agent, world.lead, _business_day(10))
    agent = resolve_actor(store, world.agent)

    for payload in (AppointmentUpdate(scheduled_at=None), AppointmentUpdate(duration=None)):
        with pytest.raises(ValidationFailed) as exc_info:
            appointment_service.update_appointment(store, agent, created.id, payload)
        assert exc_info.value.field in {"scheduled_at", "duration"}

    unchanged = appointment_service.get_appointment(store, agent, created.id)
    assert unchanged.scheduled_at == _business_day(10)
    assert unchanged.duration == 60
