"""
Checklist Instances — one execution of a Template for one respondent.

Models:
    Checklist, ScopeAnswer, ChecklistResponse, ActionPlan, ChecklistReport.

Status machine (checklist level):
    PENDING_REVIEW ──partial_finalize──▶ PARTIALLY_FINALIZED ──finalize──▶ FINALIZED
    PENDING_REVIEW ──finalize──────────▶ FINALIZED

Response keys are (checklist_id, item_id, field_id).  field_id is
GLOBAL_FIELD_ID for non-iterated items, or a producer field id for items
inside an iterate-over-fields section.
"""

import uuid
from datetime import datetime, timezone

from app.models import db
from app.services.checklist_types import GLOBAL_FIELD_ID


__all__ = [
    "GLOBAL_FIELD_ID",
    "CHECKLIST_STATUSES",
    "FROZEN_CHECKLIST_STATUSES",
    "CHECKLIST_TYPES",
    "RESPONSE_STATUSES",
    "Checklist",
    "ScopeAnswer",
    "ChecklistResponse",
    "ActionPlan",
    "ChecklistReport",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

CHECKLIST_STATUSES = frozenset({
    "DRAFT",
    "SENT",
    "IN_PROGRESS",
    "PENDING_REVIEW",
    "APPROVED",
    "REJECTED",
    "PARTIALLY_FINALIZED",
    "FINALIZED",
})

# Responses of a checklist in one of these states are immutable.
FROZEN_CHECKLIST_STATUSES = frozenset({"PARTIALLY_FINALIZED", "FINALIZED"})

CHECKLIST_TYPES = frozenset({"ORIGINAL", "CORRECTION", "COMPLETION"})

RESPONSE_STATUSES = frozenset({"MISSING", "PENDING_VERIFICATION", "APPROVED", "REJECTED"})


# ═════════════════════════════════════════════════════════════════════════════
# Checklist
# ═════════════════════════════════════════════════════════════════════════════

class Checklist(db.Model):
    """
    Checklist instance.

    Business rules:
    - parent_id is set for CORRECTION / COMPLETION children spawned by
      partial finalize; children inherit the parent's scope answers.
    - A parent cannot be finalized while any child is not FINALIZED.
    """

    __tablename__ = "checklists"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    producer_id = db.Column(
        db.String(36), db.ForeignKey("producers.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    parent_id = db.Column(
        db.String(36), db.ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    target_level_id = db.Column(
        db.String(36), db.ForeignKey("template_levels.id", ondelete="SET NULL"),
        nullable=True,
    )

    status = db.Column(db.String(30), nullable=False, default="PENDING_REVIEW")
    type = db.Column(db.String(20), nullable=False, default="ORIGINAL")

    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    template = db.relationship("Template", lazy="joined")
    producer = db.relationship("Producer", lazy="select")
    children = db.relationship(
        "Checklist",
        backref=db.backref("parent", remote_side="Checklist.id"),
        lazy="select",
        order_by="Checklist.created_at",
    )
    scope_answers = db.relationship(
        "ScopeAnswer", backref="checklist", lazy="select", cascade="all, delete-orphan",
    )
    responses = db.relationship(
        "ChecklistResponse", backref="checklist", lazy="select",
        cascade="all, delete-orphan", order_by="ChecklistResponse.id",
    )
    action_plans = db.relationship(
        "ActionPlan", backref="checklist", lazy="select",
        cascade="all, delete-orphan", order_by="ActionPlan.id",
    )
    reports = db.relationship(
        "ChecklistReport", backref="checklist", lazy="select",
        cascade="all, delete-orphan", order_by="ChecklistReport.id",
    )

    @property
    def is_child(self) -> bool:
        return self.parent_id is not None

    def to_dict(self, include_responses: bool = False) -> dict:
        d = {
            "id": self.id,
            "template_id": self.template_id,
            "producer_id": self.producer_id,
            "parent_id": self.parent_id,
            "target_level_id": self.target_level_id,
            "status": self.status,
            "type": self.type,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "finalized_at": _iso(self.finalized_at),
            "children": [
                {"id": c.id, "type": c.type, "status": c.status} for c in self.children
            ],
        }
        if include_responses:
            d["responses"] = [r.to_dict() for r in self.responses]
            d["action_plans"] = [p.to_dict() for p in self.action_plans]
        return d

    def __repr__(self):
        return f"<Checklist {self.id} {self.type} {self.status}>"


class ScopeAnswer(db.Model):
    """Respondent value for a ScopeField.  Drives visibility, never audited."""

    __tablename__ = "scope_answers"
    __table_args__ = (
        db.UniqueConstraint("checklist_id", "scope_field_id", name="uq_scope_answer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.String(36), db.ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    scope_field_id = db.Column(db.String(36), nullable=False)
    value = db.Column(db.String(255), nullable=False, default="")

    def to_dict(self) -> dict:
        return {
            "checklist_id": self.checklist_id,
            "scope_field_id": self.scope_field_id,
            "value": self.value,
        }


class ChecklistResponse(db.Model):
    """
    Answer to one item (or one item clone, for iterated sections).

    Business rules:
    - At most one row per (checklist_id, item_id, field_id).
    - REJECTED requires rejection_reason.
    - ai_* columns hold the latest AI suggestion; they never drive status.
    """

    __tablename__ = "checklist_responses"
    __table_args__ = (
        db.UniqueConstraint("checklist_id", "item_id", "field_id", name="uq_response_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.String(36), db.ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    item_id = db.Column(db.String(36), nullable=False, index=True)
    field_id = db.Column(db.String(64), nullable=False, default=GLOBAL_FIELD_ID)

    status = db.Column(db.String(30), nullable=False, default="MISSING")
    answer = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.String(50), nullable=True)
    observation = db.Column(db.Text, nullable=True)
    file_url = db.Column(db.String(1024), nullable=True)
    validity = db.Column(db.Date, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    filled_by = db.Column(db.String(150), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    ai_status = db.Column(db.String(30), nullable=True)
    ai_reason = db.Column(db.Text, nullable=True)
    ai_confidence = db.Column(db.Float, nullable=True)

    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "item_id": self.item_id,
            "field_id": self.field_id,
            "status": self.status,
            "answer": self.answer,
            "quantity": self.quantity,
            "observation": self.observation,
            "file_url": self.file_url,
            "validity": _iso(self.validity),
            "rejection_reason": self.rejection_reason,
            "is_internal": self.is_internal,
            "filled_by": self.filled_by,
            "reviewed_at": _iso(self.reviewed_at),
            "ai_suggestion": (
                {
                    "status": self.ai_status,
                    "reason": self.ai_reason,
                    "confidence": self.ai_confidence,
                }
                if self.ai_status else None
            ),
        }

    def __repr__(self):
        return f"<ChecklistResponse {self.item_id}/{self.field_id} {self.status}>"


class ActionPlan(db.Model):
    """AI-drafted remediation plan for a (child) checklist."""

    __tablename__ = "action_plans"

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.String(36), db.ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    summary = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "title": self.title,
            "summary": self.summary,
            "description": self.description,
            "is_published": self.is_published,
            "created_at": _iso(self.created_at),
        }


class ChecklistReport(db.Model):
    """Immutable snapshot of a checklist's responses taken at partial finalize."""

    __tablename__ = "checklist_reports"

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.String(36), db.ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    content = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }
