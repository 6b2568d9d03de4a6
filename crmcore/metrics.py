from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest


authz_decisions_total = Counter(
    "crm_authz_decisions_total",
    "Authorization decisions by resource, action and outcome",
    ["resource", "action", "decision"],
)

lead_assignments_total = Counter(
    "crm_lead_assignments_total",
    "Lead assignments by assigner role and outcome",
    ["assigner_role", "outcome"],
)

lead_status_changes_total = Counter(
    "crm_lead_status_changes_total",
    "Lead status changes by target status",
    ["status"],
)

appointment_conflicts_total = Counter(
    "crm_appointment_conflicts_total",
    "Appointment operations rejected because of a scheduling conflict",
    ["operation"],
)

appointment_timing_rejections_total = Counter(
    "crm_appointment_timing_rejections_total",
    "Appointment timing validation failures by rule",
    ["rule"],
)


def observe_authz_decision(resource: str, action: str, allowed: bool) -> None:
    authz_decisions_total.labels(resource=resource, action=action, decision="allow" if allowed else "deny").inc()


def observe_lead_assignment(assigner_role: str, outcome: str) -> None:
    lead_assignments_total.labels(assigner_role=assigner_role, outcome=outcome).inc()


def observe_lead_status_change(status: str) -> None:
    lead_status_changes_total.labels(status=status).inc()


def observe_appointment_conflict(operation: str) -> None:
    appointment_conflicts_total.labels(operation=operation).inc()


def observe_timing_rejection(rule: str) -> None:
    appointment_timing_rejections_total.labels(rule=rule).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
