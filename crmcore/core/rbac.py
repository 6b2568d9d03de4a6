from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    ADMIN = "Admin"
    GROUP_DIRECTOR = "Group Director"
    PARTNER_DIRECTOR = "Partner Director"
    COORDINATOR = "Coordinator"
    SALES_MANAGER = "Sales Manager"
    SALES_AGENT = "Sales Agent"
    REFERRAL = "Referral"


class Capability(StrEnum):
    USERS_CREATE = "users.create"
    USERS_VIEW = "users.view"
    USERS_UPDATE = "users.update"
    USERS_DELETE = "users.delete"
    ORGANIZATIONS_CREATE = "organizations.create"
    ORGANIZATIONS_VIEW = "organizations.view"
    ORGANIZATIONS_UPDATE = "organizations.update"
    ORGANIZATIONS_DELETE = "organizations.delete"
    TEAMS_CREATE = "teams.create"
    TEAMS_VIEW = "teams.view"
    TEAMS_UPDATE = "teams.update"
    TEAMS_DELETE = "teams.delete"
    TEAMS_MANAGE_MEMBERS = "teams.manage_members"
    LEADS_CREATE = "leads.create"
    LEADS_VIEW = "leads.view"
    LEADS_UPDATE = "leads.update"
    LEADS_DELETE = "leads.delete"
    LEADS_ASSIGN = "leads.assign"
    LEADS_ACCEPT_DECLINE = "leads.accept-decline"
    LEADS_UPDATE_STATUS = "leads.update-status"
    APPOINTMENTS_CREATE = "appointments.create"
    APPOINTMENTS_VIEW = "appointments.view"
    APPOINTMENTS_UPDATE = "appointments.update"
    APPOINTMENTS_DELETE = "appointments.delete"
    REPORTS_VIEW = "reports.view"


# Roles whose checks short-circuit every per-type policy.
GLOBAL_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.GROUP_DIRECTOR})

DIRECTOR_ROLES: frozenset[Role] = frozenset({Role.GROUP_DIRECTOR, Role.PARTNER_DIRECTOR})

_ALL = frozenset(Capability)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: _ALL,
    Role.GROUP_DIRECTOR: _ALL,
    Role.PARTNER_DIRECTOR: frozenset(
        {
            Capability.ORGANIZATIONS_VIEW,
            Capability.ORGANIZATIONS_UPDATE,
            Capability.USERS_CREATE,
            Capability.USERS_VIEW,
            Capability.USERS_UPDATE,
            Capability.TEAMS_CREATE,
            Capability.TEAMS_VIEW,
            Capability.TEAMS_UPDATE,
            Capability.TEAMS_DELETE,
            Capability.TEAMS_MANAGE_MEMBERS,
            Capability.LEADS_VIEW,
            Capability.APPOINTMENTS_CREATE,
            Capability.APPOINTMENTS_VIEW,
            Capability.APPOINTMENTS_UPDATE,
            Capability.APPOINTMENTS_DELETE,
            Capability.REPORTS_VIEW,
        }
    ),
    Role.COORDINATOR: frozenset(
        {
            Capability.LEADS_VIEW,
            Capability.LEADS_ASSIGN,
            Capability.TEAMS_VIEW,
            Capability.USERS_VIEW,
            Capability.APPOINTMENTS_VIEW,
        }
    ),
    Role.SALES_MANAGER: frozenset(
        {
            Capability.USERS_CREATE,
            Capability.USERS_VIEW,
            Capability.TEAMS_CREATE,
            Capability.TEAMS_VIEW,
            Capability.TEAMS_UPDATE,
            Capability.TEAMS_MANAGE_MEMBERS,
            Capability.LEADS_VIEW,
            Capability.LEADS_ASSIGN,
            Capability.LEADS_ACCEPT_DECLINE,
            Capability.LEADS_UPDATE_STATUS,
            Capability.APPOINTMENTS_CREATE,
            Capability.APPOINTMENTS_VIEW,
            Capability.APPOINTMENTS_UPDATE,
            Capability.APPOINTMENTS_DELETE,
            Capability.REPORTS_VIEW,
        }
    ),
    Role.SALES_AGENT: frozenset(
        {
            Capability.TEAMS_VIEW,
            Capability.LEADS_VIEW,
            Capability.LEADS_ACCEPT_DECLINE,
            Capability.LEADS_UPDATE_STATUS,
            Capability.APPOINTMENTS_CREATE,
            Capability.APPOINTMENTS_VIEW,
            Capability.APPOINTMENTS_UPDATE,
            Capability.APPOINTMENTS_DELETE,
        }
    ),
    Role.REFERRAL: frozenset(
        {
            Capability.LEADS_CREATE,
            Capability.LEADS_VIEW,
        }
    ),
}

# Roles a non-global actor may provision, keyed by the provisioning role.
CREATABLE_ROLES: dict[Role, frozenset[Role]] = {
    Role.PARTNER_DIRECTOR: frozenset({Role.COORDINATOR, Role.SALES_MANAGER, Role.SALES_AGENT, Role.REFERRAL}),
    Role.SALES_MANAGER: frozenset({Role.SALES_AGENT}),
}


def capabilities_for(role: Role | str) -> frozenset[Capability]:
    return ROLE_CAPABILITIES.get(Role(role), frozenset())


def parse_role(value: Role | str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise ValueError(f"unknown role '{value}'") from exc
