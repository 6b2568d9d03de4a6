from __future__ import annotations

from collections.abc import Generator
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore.core.config import get_settings
from crmcore.core.database import Base
from crmcore.core.rbac import Role
from crmcore.crm.models import Organization, User
from crmcore.crm.repositories import SqlAlchemyStore
from crmcore.crm.schemas import OrganizationCreate, OrganizationUpdate, TeamCreate, TeamUpdate
from crmcore.crm.service import organization_service, resolve_actor, slugify, team_service
from crmcore.errors import AccessDenied, ValidationFailed


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

    def user(name: str, role: Role, organization: Organization | None) -> User:
        record = User(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            role=role.value,
            organization_id=organization.id if organization else None,
        )
        db_session.add(record)
        db_session.flush()
        return record

    world = SimpleNamespace(
        org_a=org_a.id,
        org_b=org_b.id,
        admin=user("Admin", Role.ADMIN, None).id,
        director_a=user("Director A", Role.PARTNER_DIRECTOR, org_a).id,
        director_b=user("Director B", Role.PARTNER_DIRECTOR, org_b).id,
        spare_director=user("Spare Director", Role.PARTNER_DIRECTOR, None).id,
        manager_a=user("Manager A", Role.SALES_MANAGER, org_a).id,
        agent_a=user("Agent A", Role.SALES_AGENT, org_a).id,
        agent_a2=user("Agent A2", Role.SALES_AGENT, org_a).id,
        agent_b=user("Agent B", Role.SALES_AGENT, org_b).id,
    )
    db_session.commit()
    return world


def test_slugify() -> None:
    assert slugify("Sales  Team (North)") == "sales-team-north"
    assert slugify("***") == "team"


def test_slugs_are_unique_per_organization(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    director_a = resolve_actor(store, world.director_a)
    director_b = resolve_actor(store, world.director_b)

    first = team_service.create_team(store, director_a, TeamCreate(name="Sales Team"))
    second = team_service.create_team(store, director_a, TeamCreate(name="Sales Team"))
    other_org = team_service.create_team(store, director_b, TeamCreate(name="Sales Team"))

    assert first.slug == "sales-team"
    assert second.slug == "sales-team-1"
    assert other_org.slug == "sales-team"
    assert first.organization_id == world.org_a
    assert other_org.organization_id == world.org_b

    with pytest.raises(ValidationFailed) as exc_info:
        team_service.create_team(store, director_a, TeamCreate(name="Another", slug="sales-team"))
    assert exc_info.value.field == "slug"


def test_renaming_team_regenerates_slug(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    director = resolve_actor(store, world.director_a)
    team = team_service.create_team(store, director, TeamCreate(name="Closers"))

    renamed = team_service.update_team(store, director, team.id, TeamUpdate(name="Top Closers"))

    assert renamed.slug == "top-closers"


def test_manager_cannot_create_team_in_foreign_organization(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    manager = resolve_actor(store, world.manager_a)

    own = team_service.create_team(store, manager, TeamCreate(name="Manager Team"))
    assert own.creator_id == world.manager_a

    with pytest.raises(AccessDenied):
        team_service.create_team(store, manager, TeamCreate(name="Elsewhere", organization_id=world.org_b))


def test_membership_controls_team_visibility(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    director = resolve_actor(store, world.director_a)
    team = team_service.create_team(store, director, TeamCreate(name="Field"))

    updated = team_service.add_member(store, director, team.id, world.agent_a)
    assert updated.member_ids == [world.agent_a]

    member = resolve_actor(store, world.agent_a)
    assert team.id in member.team_ids
    assert team_service.get_team(store, member, team.id).id == team.id
    assert [item.id for item in team_service.teams_for_user(store, member, world.agent_a)] == [team.id]

    with pytest.raises(AccessDenied):
        team_service.get_team(store, resolve_actor(store, world.agent_a2), team.id)

    with pytest.raises(ValidationFailed) as exc_info:
        team_service.add_member(store, director, team.id, world.agent_b)
    assert exc_info.value.field == "user_id"

    emptied = team_service.remove_member(store, director, team.id, world.agent_a)
    assert emptied.member_ids == []


def test_agent_cannot_manage_members(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    team = team_service.create_team(store, resolve_actor(store, world.director_a), TeamCreate(name="Field"))

    with pytest.raises(AccessDenied):
        team_service.add_member(store, resolve_actor(store, world.agent_a), team.id, world.agent_a2)


def test_organization_tree_rejects_cycles(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    admin = resolve_actor(store, world.admin)
    root = organization_service.create_organization(store, admin, OrganizationCreate(name="Root"))
    child = organization_service.create_organization(store, admin, OrganizationCreate(name="Child", parent_id=root.id))
    grandchild = organization_service.create_organization(
        store, admin, OrganizationCreate(name="Grandchild", parent_id=child.id)
    )

    with pytest.raises(ValidationFailed) as exc_info:
        organization_service.update_organization(store, admin, root.id, OrganizationUpdate(parent_id=grandchild.id))
    assert exc_info.value.field == "parent_id"

    with pytest.raises(ValidationFailed):
        organization_service.update_organization(store, admin, root.id, OrganizationUpdate(parent_id=root.id))

    moved = organization_service.update_organization(store, admin, grandchild.id, OrganizationUpdate(parent_id=root.id))
    assert moved.parent_id == root.id


def test_organization_with_children_cannot_be_deleted(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    admin = resolve_actor(store, world.admin)
    root = organization_service.create_organization(store, admin, OrganizationCreate(name="Root"))
    child = organization_service.create_organization(store, admin, OrganizationCreate(name="Child", parent_id=root.id))

    with pytest.raises(ValidationFailed) as exc_info:
        organization_service.delete_organization(store, admin, root.id)
    assert exc_info.value.field == "organization"

    organization_service.delete_organization(store, admin, child.id)
    organization_service.delete_organization(store, admin, root.id)
    assert store.find_organization(root.id) is None


def test_director_assignment_rules(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    admin = resolve_actor(store, world.admin)

    with pytest.raises(ValidationFailed) as exc_info:
        organization_service.create_organization(
            store, admin, OrganizationCreate(name="Bad", director_id=world.agent_a)
        )
    assert exc_info.value.field == "director_id"

    created = organization_service.create_organization(
        store, admin, OrganizationCreate(name="Gamma", director_id=world.spare_director)
    )
    director = store.find_user(world.spare_director)
    assert director is not None
    assert director.organization_id == created.id


def test_partner_director_sees_own_organization_and_children(store: SqlAlchemyStore, world: SimpleNamespace) -> None:
    admin = resolve_actor(store, world.admin)
    child = organization_service.create_organization(
        store, admin, OrganizationCreate(name="Alpha East", parent_id=world.org_a)
    )
    director = resolve_actor(store, world.director_a)

    visible = {item.id for item in organization_service.list_organizations(store, director)}

    assert visible == {world.org_a, child.id}
    with pytest.raises(AccessDenied):
        organization_service.get_organization(store, director, world.org_b)
    with pytest.raises(AccessDenied):
        organization_service.create_organization(store, director, OrganizationCreate(name="Nope"))
