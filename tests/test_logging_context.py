from __future__ import annotations

import json
import logging

from crmcore.context import get_log_context, reset_correlation_id, set_correlation_id
from crmcore.logging import CorrelationIdFilter, JsonLogFormatter


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "crmcore.crm", "levelname": "INFO", "levelno": logging.INFO, "msg": message})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_correlation_id_is_attached_from_context() -> None:
    token = set_correlation_id("corr-123")
    try:
        record = _record("lead.assigned", lead_id="l-1")
        assert CorrelationIdFilter().filter(record)
        assert get_log_context() == {"correlation_id": "corr-123"}
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["correlation_id"] == "corr-123"
    assert payload["msg"] == "lead.assigned"
    assert payload["fields"] == {"lead_id": "l-1"}


def test_formatter_keeps_only_known_fields_and_truncates_errors() -> None:
    record = _record(
        "authz.denied",
        actor_id="u-1",
        decision="deny",
        secret_token="hidden",
        error="x" * 600,
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["fields"]["actor_id"] == "u-1"
    assert payload["fields"]["decision"] == "deny"
    assert "secret_token" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
    assert payload["correlation_id"] is None
