# Overview: Service-layer operations for the admin audit trail.

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..models import AuditAction, AuditLog


def log_admin_action(
    *,
    action: AuditAction,
    performed_by: str,
    target_type: str,
    target_id,
    details: str,
    status: str = "SUCCESS",
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Append an audit row to the current session.

    Written inside the same DB transaction as the change it records; the
    caller commits. No updates or deletes of existing rows.
    """
    entry = AuditLog(
        action=action,
        performed_by=performed_by,
        target_type=target_type,
        target_id=str(target_id),
        details=details[:255],
        status=status,
        metadata_json=metadata,
    )
    db.session.add(entry)
    return entry


def list_audit_logs(
    *,
    target_type: str | None = None,
    target_id=None,
    action: AuditAction | None = None,
    limit: int = 200,
) -> list[AuditLog]:
    q = db.session.query(AuditLog)
    if target_type:
        q = q.filter(AuditLog.target_type == target_type)
    if target_id is not None:
        q = q.filter(AuditLog.target_id == str(target_id))
    if action:
        q = q.filter(AuditLog.action == action)
    return q.order_by(AuditLog.id.desc()).limit(limit).all()
