"""
Checklist Templates — reusable checklist definitions.

Models:
    Template, TemplateLevel, TemplateClassification, ScopeField,
    TemplateSection, TemplateItem, ItemCondition.

A template owns its levels, classifications and scope fields; sections
reference levels, items reference classifications and levels, and item
conditions reference scope fields by stable id.  Index-based
addressing used by the template editor is resolved in template_service
before anything is persisted.
"""

import uuid
from datetime import datetime, timezone

from app.models import db


__all__ = [
    "ITEM_TYPES",
    "SCOPE_FIELD_TYPES",
    "CONDITION_OPERATORS",
    "CONDITION_ACTIONS",
    "Template",
    "TemplateLevel",
    "TemplateClassification",
    "ScopeField",
    "TemplateSection",
    "TemplateItem",
    "ItemCondition",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

ITEM_TYPES = frozenset({
    "TEXT",
    "LONG_TEXT",
    "FILE",
    "DATE",
    "SINGLE_CHOICE",
    "MULTIPLE_CHOICE",
    "DROPDOWN_SELECT",
    "PROPERTY_MAP",
    "FIELD_SELECTOR",
})

SCOPE_FIELD_TYPES = frozenset({"NUMBER", "YES_NO", "TEXT", "SELECT"})

CONDITION_OPERATORS = frozenset({"EQ", "NEQ", "GT", "LT", "GTE", "LTE"})

CONDITION_ACTIONS = frozenset({"REMOVE", "OPTIONAL"})


# ═════════════════════════════════════════════════════════════════════════════
# Template
# ═════════════════════════════════════════════════════════════════════════════

class Template(db.Model):
    """
    Reusable checklist definition.

    Business rules:
    - is_continuous templates support partial finalize (child spawning).
    - is_level_based templates filter sections by target level and items by
      scope conditions.
    - level_accumulative: a level N target includes every level <= N.
    - version is bumped on every structural change; it is part of the
      composition cache key.
    """

    __tablename__ = "templates"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    folder = db.Column(db.String(255), nullable=False, default="")

    is_continuous = db.Column(db.Boolean, nullable=False, default=False)
    is_level_based = db.Column(db.Boolean, nullable=False, default=False)
    level_accumulative = db.Column(db.Boolean, nullable=False, default=False)

    action_plan_prompt = db.Column(
        db.String(100), nullable=True,
        comment="Prompt registry name overriding the default action plan prompt",
    )
    version = db.Column(db.Integer, nullable=False, default=1)

    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    levels = db.relationship(
        "TemplateLevel", backref="template", lazy="select",
        cascade="all, delete-orphan", order_by="TemplateLevel.order",
    )
    classifications = db.relationship(
        "TemplateClassification", backref="template", lazy="select",
        cascade="all, delete-orphan", order_by="TemplateClassification.order",
    )
    scope_fields = db.relationship(
        "ScopeField", backref="template", lazy="select",
        cascade="all, delete-orphan", order_by="ScopeField.order",
    )
    sections = db.relationship(
        "TemplateSection", backref="template", lazy="select",
        cascade="all, delete-orphan", order_by="TemplateSection.order",
    )

    def to_dict(self, include_children: bool = False) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "folder": self.folder,
            "is_continuous": self.is_continuous,
            "is_level_based": self.is_level_based,
            "level_accumulative": self.level_accumulative,
            "action_plan_prompt": self.action_plan_prompt,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_children:
            d["levels"] = [lv.to_dict() for lv in self.levels]
            d["classifications"] = [c.to_dict() for c in self.classifications]
            d["scope_fields"] = [sf.to_dict() for sf in self.scope_fields]
            d["sections"] = [s.to_dict(include_items=True) for s in self.sections]
        return d

    def __repr__(self):
        return f"<Template {self.id}: {self.name} v{self.version}>"


class TemplateLevel(db.Model):
    """Ordered compliance tier.  Comparisons always use ``order``, never list position."""

    __tablename__ = "template_levels"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "order": self.order}


class TemplateClassification(db.Model):
    """Item grouping with a pass threshold (percentage 0..100 of approved items)."""

    __tablename__ = "template_classifications"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(30), nullable=False)
    order = db.Column(db.Integer, nullable=False, default=0)
    required_percentage = db.Column(db.Float, nullable=False, default=100.0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "order": self.order,
            "required_percentage": self.required_percentage,
        }


class ScopeField(db.Model):
    """Respondent-answered question that drives conditional item visibility."""

    __tablename__ = "scope_fields"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(20), nullable=False, comment="NUMBER | YES_NO | TEXT | SELECT")
    options = db.Column(db.JSON, nullable=False, default=list)
    order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "options": list(self.options or []),
            "order": self.order,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Sections & Items
# ═════════════════════════════════════════════════════════════════════════════

class TemplateSection(db.Model):
    """
    Ordered group of items.  level_id NULL means the section is global and
    applies regardless of target level.
    """

    __tablename__ = "template_sections"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36), db.ForeignKey("templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    order = db.Column(db.Integer, nullable=False, default=0)
    iterate_over_fields = db.Column(db.Boolean, nullable=False, default=False)
    level_id = db.Column(
        db.String(36), db.ForeignKey("template_levels.id", ondelete="SET NULL"),
        nullable=True,
    )

    items = db.relationship(
        "TemplateItem", backref="section", lazy="select",
        cascade="all, delete-orphan", order_by="TemplateItem.order",
    )

    def to_dict(self, include_items: bool = False) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "order": self.order,
            "iterate_over_fields": self.iterate_over_fields,
            "level_id": self.level_id,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d


class TemplateItem(db.Model):
    """Single auditable question inside a section."""

    __tablename__ = "template_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    section_id = db.Column(
        db.String(36), db.ForeignKey("template_sections.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(500), nullable=False)
    type = db.Column(db.String(30), nullable=False, default="TEXT")
    order = db.Column(db.Integer, nullable=False, default=0)

    options = db.Column(db.JSON, nullable=False, default=list)
    database_source = db.Column(
        db.String(100), nullable=True,
        comment="External lookup key for dropdown values; exclusive with options",
    )

    required = db.Column(db.Boolean, nullable=False, default=True)
    observation_enabled = db.Column(db.Boolean, nullable=False, default=False)
    request_artifact = db.Column(db.Boolean, nullable=False, default=False)
    artifact_required = db.Column(db.Boolean, nullable=False, default=False)
    ask_for_quantity = db.Column(db.Boolean, nullable=False, default=False)
    validity_control = db.Column(db.Boolean, nullable=False, default=False)
    allow_na = db.Column(db.Boolean, nullable=False, default=False)

    classification_id = db.Column(
        db.String(36), db.ForeignKey("template_classifications.id", ondelete="SET NULL"),
        nullable=True,
    )
    blocks_advancement_to_level_id = db.Column(
        db.String(36), db.ForeignKey("template_levels.id", ondelete="SET NULL"),
        nullable=True,
    )

    responsible = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(255), nullable=True)

    conditions = db.relationship(
        "ItemCondition", backref="item", lazy="select",
        cascade="all, delete-orphan", order_by="ItemCondition.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "section_id": self.section_id,
            "name": self.name,
            "type": self.type,
            "order": self.order,
            "options": list(self.options or []),
            "database_source": self.database_source,
            "required": self.required,
            "observation_enabled": self.observation_enabled,
            "request_artifact": self.request_artifact,
            "artifact_required": self.artifact_required,
            "ask_for_quantity": self.ask_for_quantity,
            "validity_control": self.validity_control,
            "allow_na": self.allow_na,
            "classification_id": self.classification_id,
            "blocks_advancement_to_level_id": self.blocks_advancement_to_level_id,
            "responsible": self.responsible,
            "reference": self.reference,
            "conditions": [c.to_dict() for c in self.conditions],
        }


class ItemCondition(db.Model):
    """
    Visibility rule: when the scope answer for scope_field_id matches
    (operator, value), apply action (REMOVE hides, OPTIONAL relaxes required).

    scope_field_id is deliberately not a hard FK: scope fields can be deleted
    while conditions persist; a dangling reference never fires.
    """

    __tablename__ = "item_conditions"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.String(36), db.ForeignKey("template_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    scope_field_id = db.Column(db.String(36), nullable=False)
    operator = db.Column(db.String(5), nullable=False, comment="EQ | NEQ | GT | LT | GTE | LTE")
    value = db.Column(db.String(255), nullable=False, default="")
    action = db.Column(db.String(10), nullable=False, comment="REMOVE | OPTIONAL")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope_field_id": self.scope_field_id,
            "operator": self.operator,
            "value": self.value,
            "action": self.action,
        }
