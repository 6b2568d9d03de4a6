from __future__ import annotations

from collections.abc import Generator
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore import audit
from crmcore.core.config import get_settings
from crmcore.core.database import Base
from crmcore.core.rbac import Role
from crmcore.crm.models import Organization, User
from crmcore.crm.repositories import SqlAlchemyStore
from crmcore.crm.schemas import UserCreate, UserUpdate
from crmcore.crm.service import resolve_actor, user_service
from crmcore.errors import AccessDenied, NotFound, ValidationFailed


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def store(db_session: Session) -> SqlAlchemyStore:
    return SqlAlchemyStore(db_session)


@pytest.fixture()
def world(db_session: Session) -> SimpleNamespace:
    org_a = Organization(name="Alpha Partners")
    org_b = Organization(name="Beta Partners")
    db_session.add_all([org_a, org_b])
    db_session.flush()

    admin = User(name="Admin", email="admin@example.com", role=Role.ADMIN.value)
    director = User(name="Director", email="director@example.com", role=Role.PARTNER_DIRECTOR.value, organization_id=org_a.id)
    manager = User(name="Manager", email="manager@example.com", role=Role.SALES_MANAGER.value, organization_id=org_a.id)
    other_manager = User(
        name="Other Manager",
        email="other.manager@example.com",
        role=Role.SALES_MANAGER.value,
        organization_id=org_b.id,
    )
    db_session.add_all([admin, director, manager, other_manager])
    db_session.commit()
    return SimpleNamespace(
        org_a=org_a.id,
        org_b=org_b.id,
        admin=admin.id,
        director=director.id,
        manager=manager.id,
        other_manager=other_manager.id,
    )


def test_manager_creates_agent_in_own_organization(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    manager = resolve_actor(store, world.manager)

    created = user_service.create_user(
        store,
        manager,
        UserCreate(name="New Agent", email="new.agent@example.com", role=Role.SALES_AGENT),
    )

    assert created.organization_id == world.org_a
    assert created.created_by_id == world.manager
    assert created.role == Role.SALES_AGENT
    assert audit.entries_for("crm.user", str(created.id))[-1]["action"] == "create"

    assert user_service.get_user(store, manager, created.id).id == created.id


def test_manager_cannot_create_other_roles(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    manager = resolve_actor(store, world.manager)

    with pytest.raises(AccessDenied) as exc_info:
        user_service.create_user(
            store,
            manager,
            UserCreate(name="Coordinator", email="coordinator@example.com", role=Role.COORDINATOR),
        )
    assert "Coordinator" in exc_info.value.reason


def test_director_cannot_create_users_in_other_organization(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    director = resolve_actor(store, world.director)

    with pytest.raises(AccessDenied):
        user_service.create_user(
            store,
            director,
            UserCreate(
                name="Stray",
                email="stray@example.com",
                role=Role.SALES_AGENT,
                organization_id=world.org_b,
            ),
        )

    created = user_service.create_user(
        store,
        director,
        UserCreate(name="Coordinator", email="coordinator@example.com", role=Role.COORDINATOR),
    )
    assert created.organization_id == world.org_a


def test_duplicate_email_is_rejected(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        user_service.create_user(
            store,
            resolve_actor(store, world.admin),
            UserCreate(name="Clash", email="manager@example.com", role=Role.SALES_AGENT, organization_id=world.org_a),
        )
    assert exc_info.value.errors == {"email": ["The email has already been taken."]}


def test_users_cannot_change_their_own_role(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    manager = resolve_actor(store, world.manager)

    renamed = user_service.update_user(store, manager, world.manager, UserUpdate(name="Manager Renamed"))
    assert renamed.name == "Manager Renamed"

    with pytest.raises(AccessDenied):
        user_service.update_user(store, manager, world.manager, UserUpdate(role=Role.PARTNER_DIRECTOR))

    promoted = user_service.update_user(
        store,
        resolve_actor(store, world.admin),
        world.manager,
        UserUpdate(role=Role.PARTNER_DIRECTOR),
    )
    assert promoted.role == Role.PARTNER_DIRECTOR


def test_user_list_is_scoped(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    director = resolve_actor(store, world.director)

    visible = {item.id for item in user_service.list_users(store, director)}

    assert visible == {world.director, world.manager}
    with pytest.raises(AccessDenied):
        user_service.get_user(store, director, world.other_manager)


def test_inactive_or_missing_actor_cannot_be_resolved(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    user = store.find_user(world.other_manager)
    assert user is not None
    user.is_active = False
    store.session.commit()

    with pytest.raises(NotFound):
        resolve_actor(store, world.other_manager)
