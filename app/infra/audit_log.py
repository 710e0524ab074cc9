# app/infra/audit_log.py
"""
Audit logging for dispatch decisions.

Assignments, reassignments and SLA escalations are recorded to a
dedicated logger named "audit" (separate from the application log) so
they can be routed to their own sink via logging configuration. The
dispatch store also persists escalations to the ``audit_logs`` table;
this logger is the operational copy of the same trail.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    resource: str,
    resource_id: str,
    actor: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "SLA_BREACH", "REASSIGNED")
        resource: Resource kind (e.g., "JOB")
        resource_id: Identifier of the affected resource
        actor: Who triggered the action ("system" for the SLA sweep)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "resource": resource,
        "resource_id": resource_id,
        "actor": actor or "system",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} {resource}={resource_id} actor={actor or 'system'} {detail}".rstrip(),
        extra=record,
    )
