# backend/stockledger/routes/audit.py
"""
Read-only audit trail routes.

Rows are written by the services alongside the change they record.
"""
from flask import Blueprint, request

from ..decorators import engine_errors
from ..exceptions import ValidationError
from ..models import AuditAction


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("")
@engine_errors
def list_route():
    """
    Query: target_type?, target_id?, action?, limit?
    """
    action = request.args.get("action")
    if action:
        try:
            action = AuditAction(action.strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown audit action: {action}")

    from ..services.audit_service import list_audit_logs

    rows = list_audit_logs(
        target_type=request.args.get("target_type"),
        target_id=request.args.get("target_id"),
        action=action or None,
        limit=min(request.args.get("limit", default=200, type=int), 1000),
    )
    return {"audit_logs": [row.to_dict() for row in rows]}, 200
