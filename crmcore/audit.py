from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, TypedDict

from crmcore.context import get_correlation_id


class AuditEntry(TypedDict):
    id: str
    actor_user_id: str
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    changed_fields: list[str]
    correlation_id: str | None
    occurred_at: str


audit_entries: list[AuditEntry] = []


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize(item) for item in value]
        return sorted(items, key=str) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    return value


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    old = before or {}
    new = after or {}
    # Timestamps move on every write.
    ignored = {"updated_at"}
    return sorted(key for key in old.keys() | new.keys() if key not in ignored and old.get(key) != new.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> AuditEntry:
    before_snapshot = _normalize(before) if before is not None else None
    after_snapshot = _normalize(after) if after is not None else None
    entry: AuditEntry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before_snapshot,
        "after": after_snapshot,
        "changed_fields": _changed_fields(before_snapshot, after_snapshot),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str, action: str | None = None) -> list[AuditEntry]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type
        and entry["entity_id"] == entity_id
        and (action is None or entry["action"] == action)
    ]


def clear() -> None:
    audit_entries.clear()
