from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import AuditAction, enum_column


class AuditLog(db.Model):
    """Append-only record of who changed what. Never updated or deleted."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_target", "target_type", "target_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(enum_column(AuditAction), nullable=False, index=True)
    performed_by = db.Column(db.String(128), nullable=False, index=True)
    target_type = db.Column(db.String(32), nullable=False)
    target_id = db.Column(db.String(64), nullable=False)
    details = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="SUCCESS")
    metadata_json = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action.value,
            "performed_by": self.performed_by,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "details": self.details,
            "status": self.status,
            "metadata": self.metadata_json or {},
            "created_at": to_utc_z(self.created_at),
        }
