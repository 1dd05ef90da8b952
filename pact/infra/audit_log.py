# pact/infra/audit_log.py
"""
Audit logging for site-entry state transitions and wallet credits.

Records every claim-relevant transition (dispatch, claim, acknowledge,
send-back, start, complete, settle) to a dedicated audit logger,
separate from the application log, with structured context.

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    entry_id: str | None = None,
    actor_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "site.claim", "site.settle")
        entry_id: Site entry affected (if applicable)
        actor_id: Collector or dispatcher who triggered the action
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "entry_id": entry_id or "",
        "actor_id": actor_id or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} entry={entry_id or '-'} actor={actor_id or '-'} {detail}".rstrip(),
        extra=record,
    )
