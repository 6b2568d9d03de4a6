from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from crmcore.core.rbac import GLOBAL_ROLES, Capability, Role, capabilities_for, parse_role


@dataclass(frozen=True, slots=True)
class Actor:
    """The user on whose behalf a decision is made, resolved once per request.

    Capabilities are looked up from the role table at construction time so
    policies never consult role names or string permissions again.
    """

    user_id: uuid.UUID
    role: Role
    organization_id: uuid.UUID | None = None
    team_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)
    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    correlation_id: str | None = None

    @classmethod
    def for_user(
        cls,
        user: object,
        *,
        team_ids: Iterable[uuid.UUID] = (),
        correlation_id: str | None = None,
    ) -> Actor:
        role = parse_role(getattr(user, "role"))
        return cls(
            user_id=getattr(user, "id"),
            role=role,
            organization_id=getattr(user, "organization_id", None),
            team_ids=frozenset(team_ids),
            capabilities=capabilities_for(role),
            correlation_id=correlation_id,
        )

    @property
    def is_global(self) -> bool:
        return self.role in GLOBAL_ROLES

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles
