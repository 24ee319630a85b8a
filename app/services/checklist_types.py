"""
Checklist engine value types.

Immutable snapshots consumed and produced by the composition engine
(condition evaluator, composer, field iteration, level achievement,
response lifecycle, finalize planning).  Nothing here touches the database;
template_service and checklist_service convert ORM rows into these types.

Enumerated values (operators, actions, statuses) are kept as plain strings on
the snapshots so that a template carrying an unknown value still loads; the
engine compares against the enums below and treats anything else as
"no match".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

GLOBAL_FIELD_ID = "__global__"


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class ConditionOperator(str, Enum):
    EQ = "EQ"
    NEQ = "NEQ"
    GT = "GT"
    LT = "LT"
    GTE = "GTE"
    LTE = "LTE"


class ConditionAction(str, Enum):
    REMOVE = "REMOVE"
    OPTIONAL = "OPTIONAL"


class ResponseStatus(str, Enum):
    MISSING = "MISSING"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ChecklistType(str, Enum):
    ORIGINAL = "ORIGINAL"
    CORRECTION = "CORRECTION"
    COMPLETION = "COMPLETION"


# ═════════════════════════════════════════════════════════════════════════════
# Template snapshot
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LevelSnapshot:
    id: str
    name: str
    order: int


@dataclass(frozen=True)
class ClassificationSnapshot:
    id: str
    name: str
    code: str
    required_percentage: float = 100.0
    order: int = 0


@dataclass(frozen=True)
class ScopeFieldSnapshot:
    id: str
    name: str
    type: str
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConditionSnapshot:
    scope_field_id: str
    operator: str
    value: str
    action: str


@dataclass(frozen=True)
class ItemSnapshot:
    id: str
    name: str
    type: str = "TEXT"
    order: int = 0
    required: bool = True
    allow_na: bool = False
    classification_id: str | None = None
    blocks_advancement_to_level_id: str | None = None
    conditions: tuple[ConditionSnapshot, ...] = ()
    options: tuple[str, ...] = ()
    observation_enabled: bool = False
    request_artifact: bool = False
    artifact_required: bool = False
    ask_for_quantity: bool = False
    validity_control: bool = False
    responsible: str | None = None
    reference: str | None = None


@dataclass(frozen=True)
class SectionSnapshot:
    id: str
    name: str
    order: int = 0
    level_id: str | None = None
    iterate_over_fields: bool = False
    items: tuple[ItemSnapshot, ...] = ()


@dataclass(frozen=True)
class TemplateSnapshot:
    """Read-only view of a template as the engine sees it."""
    id: str
    name: str
    version: int = 1
    is_continuous: bool = False
    is_level_based: bool = False
    level_accumulative: bool = False
    levels: tuple[LevelSnapshot, ...] = ()
    classifications: tuple[ClassificationSnapshot, ...] = ()
    scope_fields: tuple[ScopeFieldSnapshot, ...] = ()
    sections: tuple[SectionSnapshot, ...] = ()
    action_plan_prompt: str | None = None

    def level(self, level_id: str | None) -> LevelSnapshot | None:
        if level_id is None:
            return None
        return next((lv for lv in self.levels if lv.id == level_id), None)

    def classification(self, classification_id: str | None) -> ClassificationSnapshot | None:
        if classification_id is None:
            return None
        return next((c for c in self.classifications if c.id == classification_id), None)

    def item(self, item_id: str) -> ItemSnapshot | None:
        for section in self.sections:
            for item in section.items:
                if item.id == item_id:
                    return item
        return None

    @property
    def scope_field_ids(self) -> frozenset[str]:
        return frozenset(sf.id for sf in self.scope_fields)


# ═════════════════════════════════════════════════════════════════════════════
# Composition output
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ItemKey:
    """Structured identity of a composed item: source item plus dynamic entity."""
    item_id: str
    entity_id: str = GLOBAL_FIELD_ID

    @property
    def display_id(self) -> str:
        if self.entity_id == GLOBAL_FIELD_ID:
            return self.item_id
        return f"{self.item_id}::{self.entity_id}"


@dataclass(frozen=True)
class SectionKey:
    section_id: str
    entity_id: str | None = None

    @property
    def display_id(self) -> str:
        if self.entity_id is None:
            return self.section_id
        return f"{self.section_id}::{self.entity_id}"


@dataclass(frozen=True)
class ComposedItem:
    key: ItemKey
    item: ItemSnapshot
    optional: bool = False

    @property
    def original_id(self) -> str:
        return self.item.id

    @property
    def field_id(self) -> str:
        return self.key.entity_id

    @property
    def effective_required(self) -> bool:
        return self.item.required and not self.optional

    def to_dict(self) -> dict:
        return {
            "id": self.key.display_id,
            "original_id": self.original_id,
            "field_id": self.field_id,
            "name": self.item.name,
            "type": self.item.type,
            "required": self.item.required,
            "optional_by_condition": self.optional,
            "effective_required": self.effective_required,
            "allow_na": self.item.allow_na,
            "classification_id": self.item.classification_id,
            "blocks_advancement_to_level_id": self.item.blocks_advancement_to_level_id,
        }


@dataclass(frozen=True)
class ComposedSection:
    key: SectionKey
    section: SectionSnapshot
    name: str
    items: tuple[ComposedItem, ...] = ()

    @property
    def entity_id(self) -> str | None:
        return self.key.entity_id

    def to_dict(self) -> dict:
        return {
            "id": self.key.display_id,
            "original_id": self.section.id,
            "entity_id": self.entity_id,
            "name": self.name,
            "level_id": self.section.level_id,
            "items": [i.to_dict() for i in self.items],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Responses & collaborators
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AISuggestion:
    """Classifier verdict attached to a response.  Never changes status by itself."""
    status: str
    reason: str = ""
    confidence: float | None = None

    def to_dict(self) -> dict:
        return {"status": self.status, "reason": self.reason, "confidence": self.confidence}


@dataclass(frozen=True)
class ResponseSnapshot:
    item_id: str
    field_id: str = GLOBAL_FIELD_ID
    status: str = ResponseStatus.MISSING.value
    answer: str | None = None
    observation: str | None = None
    rejection_reason: str | None = None
    quantity: str | None = None
    file_url: str | None = None
    validity: str | None = None
    is_internal: bool = False
    filled_by: str | None = None
    ai_suggestion: AISuggestion | None = None

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.item_id, self.field_id)

    @property
    def has_answer(self) -> bool:
        return bool(self.answer and str(self.answer).strip())


@dataclass(frozen=True)
class DynamicEntity:
    """Entity a section can be iterated over (e.g. a producer's farm plot)."""
    id: str
    name: str | None = None


@dataclass
class ClassificationProgress:
    classification_id: str | None
    code: str
    approved: int
    applicable: int
    required_percentage: float
    passed: bool

    @property
    def percentage(self) -> float:
        if self.applicable == 0:
            return 100.0
        return round(self.approved / self.applicable * 100, 2)

    def to_dict(self) -> dict:
        return {
            "classification_id": self.classification_id,
            "code": self.code,
            "approved": self.approved,
            "applicable": self.applicable,
            "percentage": self.percentage,
            "required_percentage": self.required_percentage,
            "passed": self.passed,
        }


@dataclass
class LevelProgress:
    level: LevelSnapshot
    achieved: bool
    blocked: bool
    classifications: list[ClassificationProgress] = field(default_factory=list)
    blocking_item_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "level_id": self.level.id,
            "name": self.level.name,
            "order": self.level.order,
            "achieved": self.achieved,
            "blocked": self.blocked,
            "blocking_item_ids": list(self.blocking_item_ids),
            "classifications": [c.to_dict() for c in self.classifications],
        }
