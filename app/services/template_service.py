"""
Template Service — create, read and snapshot checklist templates.

The template editor addresses levels, classifications and scope fields by
their position in the submitted arrays (``level_index``,
``classification_index``, ``blocks_advancement_to_level_index``,
``scope_field_index``).  create_template resolves those positions to stable
ids before anything is persisted; the engine only ever sees ids.

Usage:
    from app.services.template_service import create_template, to_snapshot

    template = create_template(payload, created_by="auditor@example.com")
    snapshot = to_snapshot(template)
"""

import logging
import uuid

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.template import (
    CONDITION_ACTIONS,
    CONDITION_OPERATORS,
    ITEM_TYPES,
    SCOPE_FIELD_TYPES,
    ItemCondition,
    ScopeField,
    Template,
    TemplateClassification,
    TemplateItem,
    TemplateLevel,
    TemplateSection,
)
from app.services.checklist_types import (
    ClassificationSnapshot,
    ConditionSnapshot,
    ItemSnapshot,
    LevelSnapshot,
    ScopeFieldSnapshot,
    SectionSnapshot,
    TemplateSnapshot,
)

logger = logging.getLogger(__name__)

# Attributes whose change alters composition results.
_STRUCTURAL_FLAGS = ("is_level_based", "level_accumulative")
_UPDATABLE = ("name", "folder", "is_continuous", "action_plan_prompt") + _STRUCTURAL_FLAGS


def _new_id() -> str:
    return str(uuid.uuid4())


# ═════════════════════════════════════════════════════════════════════════════
# Validation helpers
# ═════════════════════════════════════════════════════════════════════════════

def _resolve_index(ids: list[str], index, label: str, path: str) -> str | None:
    if index is None:
        return None
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(ids):
        raise ValidationError(
            f"{label} index {index!r} is out of range",
            details={path: f"expected 0..{len(ids) - 1}" if ids else f"no {label}s defined"},
        )
    return ids[index]


def _required_str(data: dict, key: str, path: str) -> str:
    value = (data.get(key) or "").strip() if isinstance(data.get(key), str) else ""
    if not value:
        raise ValidationError(f"{key} is required", details={path: "required"})
    return value


def _validate_percentage(value, path: str) -> float:
    try:
        pct = float(value)
    except (TypeError, ValueError):
        raise ValidationError("required_percentage must be a number", details={path: value})
    if not 0 <= pct <= 100:
        raise ValidationError("required_percentage must be between 0 and 100", details={path: pct})
    return pct


# ═════════════════════════════════════════════════════════════════════════════
# Create / read / update
# ═════════════════════════════════════════════════════════════════════════════

def create_template(data: dict, created_by: str | None = None) -> Template:
    """Create a template with its levels, classifications, scope fields,
    sections, items and conditions in one transaction.

    Raises:
        ValidationError: missing names, unknown enum values, out-of-range
            index references, or an item with both database_source and
            manual options.
    """
    template = Template(
        id=_new_id(),
        name=_required_str(data, "name", "name"),
        folder=(data.get("folder") or "").strip(),
        is_continuous=bool(data.get("is_continuous", False)),
        is_level_based=bool(data.get("is_level_based", False)),
        level_accumulative=bool(data.get("level_accumulative", False)),
        action_plan_prompt=data.get("action_plan_prompt"),
        created_by=created_by,
    )

    # Ids are assigned up front so index references resolve before anything
    # touches the session; a ValidationError leaves the session clean.
    for idx, lv in enumerate(data.get("levels") or []):
        template.levels.append(TemplateLevel(
            id=_new_id(),
            name=_required_str(lv, "name", f"levels[{idx}].name"),
            order=int(lv.get("order", idx)),
        ))

    for idx, cls in enumerate(data.get("classifications") or []):
        template.classifications.append(TemplateClassification(
            id=_new_id(),
            name=_required_str(cls, "name", f"classifications[{idx}].name"),
            code=_required_str(cls, "code", f"classifications[{idx}].code"),
            order=int(cls.get("order", idx)),
            required_percentage=_validate_percentage(
                cls.get("required_percentage", 100), f"classifications[{idx}].required_percentage",
            ),
        ))

    for idx, sf in enumerate(data.get("scope_fields") or []):
        if sf.get("type") not in SCOPE_FIELD_TYPES:
            raise ValidationError(
                f"Invalid scope field type: {sf.get('type')}",
                details={f"scope_fields[{idx}].type": sorted(SCOPE_FIELD_TYPES)},
            )
        template.scope_fields.append(ScopeField(
            id=_new_id(),
            name=_required_str(sf, "name", f"scope_fields[{idx}].name"),
            type=sf["type"],
            options=list(sf.get("options") or []),
            order=int(sf.get("order", idx)),
        ))

    level_ids = [lv.id for lv in template.levels]
    classification_ids = [c.id for c in template.classifications]
    scope_field_ids = [sf.id for sf in template.scope_fields]

    for s_idx, sec in enumerate(data.get("sections") or []):
        s_path = f"sections[{s_idx}]"
        section = TemplateSection(
            id=_new_id(),
            name=_required_str(sec, "name", f"{s_path}.name"),
            order=s_idx,
            iterate_over_fields=bool(sec.get("iterate_over_fields", False)),
            level_id=_resolve_index(level_ids, sec.get("level_index"), "level", f"{s_path}.level_index"),
        )
        template.sections.append(section)

        for i_idx, it in enumerate(sec.get("items") or []):
            section.items.append(_build_item(
                it, i_idx, f"{s_path}.items[{i_idx}]",
                level_ids, classification_ids, scope_field_ids,
            ))

    db.session.add(template)
    db.session.flush()
    write_audit(
        entity_type="template",
        entity_id=template.id,
        action="template.create",
        actor=created_by or "system",
        diff={"name": template.name, "sections": len(template.sections)},
    )
    db.session.commit()
    logger.info(
        "Template created: %s (%d sections)", template.name, len(template.sections),
        extra={"template_id": template.id, "event_type": "template.create"},
    )
    return template


def _build_item(it: dict, i_idx: int, path: str, level_ids, classification_ids, scope_field_ids) -> TemplateItem:
    item_type = it.get("type", "TEXT")
    if item_type not in ITEM_TYPES:
        raise ValidationError(f"Invalid item type: {item_type}", details={f"{path}.type": sorted(ITEM_TYPES)})

    options = list(it.get("options") or [])
    database_source = it.get("database_source") or None
    if database_source and options:
        raise ValidationError(
            "An item cannot have both database_source and manual options",
            details={f"{path}.database_source": database_source},
        )

    item = TemplateItem(
        id=_new_id(),
        name=_required_str(it, "name", f"{path}.name"),
        type=item_type,
        order=i_idx,
        options=options,
        database_source=database_source,
        required=bool(it.get("required", True)),
        observation_enabled=bool(it.get("observation_enabled", False)),
        request_artifact=bool(it.get("request_artifact", False)),
        artifact_required=bool(it.get("artifact_required", False)),
        ask_for_quantity=bool(it.get("ask_for_quantity", False)),
        validity_control=bool(it.get("validity_control", False)),
        allow_na=bool(it.get("allow_na", False)),
        classification_id=_resolve_index(
            classification_ids, it.get("classification_index"), "classification",
            f"{path}.classification_index",
        ),
        blocks_advancement_to_level_id=_resolve_index(
            level_ids, it.get("blocks_advancement_to_level_index"), "level",
            f"{path}.blocks_advancement_to_level_index",
        ),
        responsible=it.get("responsible"),
        reference=it.get("reference"),
    )

    for c_idx, cond in enumerate(it.get("conditions") or []):
        c_path = f"{path}.conditions[{c_idx}]"
        if cond.get("operator") not in CONDITION_OPERATORS:
            raise ValidationError(
                f"Invalid condition operator: {cond.get('operator')}",
                details={f"{c_path}.operator": sorted(CONDITION_OPERATORS)},
            )
        if cond.get("action") not in CONDITION_ACTIONS:
            raise ValidationError(
                f"Invalid condition action: {cond.get('action')}",
                details={f"{c_path}.action": sorted(CONDITION_ACTIONS)},
            )
        if cond.get("value") is None:
            raise ValidationError("Condition value is required", details={f"{c_path}.value": "required"})

        scope_field_id = _resolve_index(
            scope_field_ids, cond.get("scope_field_index"), "scope field", f"{c_path}.scope_field_index",
        ) or cond.get("scope_field_id")
        if not scope_field_id:
            raise ValidationError(
                "Condition requires scope_field_index or scope_field_id",
                details={c_path: "scope field reference required"},
            )
        item.conditions.append(ItemCondition(
            scope_field_id=scope_field_id,
            operator=cond["operator"],
            value=str(cond["value"]),
            action=cond["action"],
        ))
    return item


def get_template(template_id: str) -> Template:
    template = db.session.get(Template, template_id)
    if not template:
        raise NotFoundError(resource="Template", resource_id=template_id)
    return template


def templates_query(folder: str | None = None):
    q = Template.query
    if folder is not None:
        q = q.filter_by(folder=folder)
    return q.order_by(Template.folder, Template.name)


def list_templates(folder: str | None = None) -> list[Template]:
    return templates_query(folder).all()


def update_template(template_id: str, data: dict) -> Template:
    """Update top-level attributes.  Changing a structural flag bumps the version."""
    template = get_template(template_id)
    changed = {}
    for key in _UPDATABLE:
        if key not in data:
            continue
        value = data[key]
        if key in ("name",):
            value = _required_str(data, key, key)
        elif key in ("is_continuous",) + _STRUCTURAL_FLAGS:
            value = bool(value)
        if getattr(template, key) != value:
            changed[key] = {"old": getattr(template, key), "new": value}
            setattr(template, key, value)

    if any(k in changed for k in _STRUCTURAL_FLAGS):
        template.version = (template.version or 1) + 1
    db.session.commit()
    if changed:
        logger.info(
            "Template %s updated: %s", template.id, ", ".join(sorted(changed)),
            extra={"template_id": template.id, "event_type": "template.update"},
        )
    return template


# ═════════════════════════════════════════════════════════════════════════════
# Engine snapshot
# ═════════════════════════════════════════════════════════════════════════════

def to_snapshot(template: Template) -> TemplateSnapshot:
    """Convert an ORM template into the immutable engine view."""
    return TemplateSnapshot(
        id=template.id,
        name=template.name,
        version=template.version or 1,
        is_continuous=bool(template.is_continuous),
        is_level_based=bool(template.is_level_based),
        level_accumulative=bool(template.level_accumulative),
        action_plan_prompt=template.action_plan_prompt,
        levels=tuple(LevelSnapshot(id=lv.id, name=lv.name, order=lv.order) for lv in template.levels),
        classifications=tuple(
            ClassificationSnapshot(
                id=c.id, name=c.name, code=c.code,
                required_percentage=c.required_percentage, order=c.order,
            )
            for c in template.classifications
        ),
        scope_fields=tuple(
            ScopeFieldSnapshot(id=sf.id, name=sf.name, type=sf.type, options=tuple(sf.options or ()))
            for sf in template.scope_fields
        ),
        sections=tuple(
            SectionSnapshot(
                id=s.id,
                name=s.name,
                order=s.order,
                level_id=s.level_id,
                iterate_over_fields=bool(s.iterate_over_fields),
                items=tuple(_item_snapshot(i) for i in s.items),
            )
            for s in template.sections
        ),
    )


def _item_snapshot(item: TemplateItem) -> ItemSnapshot:
    return ItemSnapshot(
        id=item.id,
        name=item.name,
        type=item.type,
        order=item.order,
        required=bool(item.required),
        allow_na=bool(item.allow_na),
        classification_id=item.classification_id,
        blocks_advancement_to_level_id=item.blocks_advancement_to_level_id,
        conditions=tuple(
            ConditionSnapshot(
                scope_field_id=c.scope_field_id, operator=c.operator, value=c.value, action=c.action,
            )
            for c in item.conditions
        ),
        options=tuple(item.options or ()),
        observation_enabled=bool(item.observation_enabled),
        request_artifact=bool(item.request_artifact),
        artifact_required=bool(item.artifact_required),
        ask_for_quantity=bool(item.ask_for_quantity),
        validity_control=bool(item.validity_control),
        responsible=item.responsible,
        reference=item.reference,
    )
