"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog


def log_action(
    agency_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: str = "",
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit; the entry belongs to the caller's unit of
    work and disappears with it on rollback.
    """
    db.session.add(
        AuditLog(
            agency_id=agency_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )
