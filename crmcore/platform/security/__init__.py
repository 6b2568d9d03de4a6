from crmcore.platform.security.context import Actor
from crmcore.platform.security.policies import (
    Action,
    AppointmentPolicy,
    BasePolicy,
    Decision,
    LeadPolicy,
    OrganizationPolicy,
    TeamPolicy,
    UserPolicy,
    authorize,
    can_create,
    can_delete,
    can_update,
    can_view,
    can_view_any,
    deny,
    get_policy,
)
from crmcore.platform.security.scope import EntityType, Scope, ScopeKind, resolve_scope

__all__ = [
    "Actor",
    "Action",
    "AppointmentPolicy",
    "BasePolicy",
    "Decision",
    "EntityType",
    "LeadPolicy",
    "OrganizationPolicy",
    "Scope",
    "ScopeKind",
    "TeamPolicy",
    "UserPolicy",
    "authorize",
    "can_create",
    "can_delete",
    "can_update",
    "can_view",
    "can_view_any",
    "deny",
    "get_policy",
    "resolve_scope",
]
