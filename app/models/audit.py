"""
Checklist Audit Platform
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for checklist lifecycle events.
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "checklist", "response", "template", "action_plan", "ai_call",
}

AUDIT_ACTIONS = {
    # Response lifecycle
    "response.submit",
    "response.approve",
    "response.revalidate",
    "response.reject",
    "response.internal_fill",
    "response.accept_ai_suggestion",
    # Checklist lifecycle
    "checklist.create",
    "checklist.scope_answers",
    "checklist.finalize",
    "checklist.partial_finalize",
    "checklist.child_synced",
    # Template
    "template.create",
    # AI execution
    "ai.classify",
    "ai.action_plan",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every checklist lifecycle event.

    One row per action.  ``diff_json`` carries the old→new snapshot for
    status changes; AI entries carry verdict metadata.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_checklist", "checklist_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.String(36),
        db.ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="checklist | response | template | ai_call",
    )
    entity_id = db.Column(
        db.String(120), nullable=False,
        comment="PK of the referenced entity, or item:field for responses",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="response.approve | checklist.finalize | ai.classify | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
    )

    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} for lifecycle, verdict payload for AI",
    )

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    checklist_id: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        checklist_id=checklist_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
