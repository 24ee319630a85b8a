"""
Section/Item Composer — decides which sections and items apply to a
checklist instance.

Steps, always in this order:
    1. Level filter       (level-based templates only)
    2. Condition filter   (level-based templates only)
    3. Child filter       (CORRECTION / COMPLETION checklists only)
    4. Field iteration

The composer is total: dangling level ids, a missing target level and
conditions on deleted scope fields all resolve to "not kept" / "never
fires".  Output order is template section order, then item order, with
iterated clones placed where their source section was.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

from app.services import condition_evaluator, field_iteration
from app.services.checklist_types import (
    ComposedItem,
    ComposedSection,
    ItemKey,
    SectionKey,
    SectionSnapshot,
    TemplateSnapshot,
)

logger = logging.getLogger(__name__)


def _section_in_level(
    template: TemplateSnapshot, section: SectionSnapshot, target_level_id: str | None,
) -> bool:
    if section.level_id is None:
        return True
    if target_level_id is None:
        return False

    if not template.level_accumulative:
        return section.level_id == target_level_id

    section_level = template.level(section.level_id)
    target_level = template.level(target_level_id)
    if section_level is None or target_level is None:
        return False
    return section_level.order <= target_level.order


def filter_sections_by_level(
    template: TemplateSnapshot, target_level_id: str | None,
) -> list[SectionSnapshot]:
    """Sections kept for ``target_level_id``; every section when the template is not level-based."""
    sections = sorted(template.sections, key=lambda s: s.order)
    if not template.is_level_based:
        return sections
    return [s for s in sections if _section_in_level(template, s, target_level_id)]


def _compose_section(
    template: TemplateSnapshot,
    section: SectionSnapshot,
    scope_answers: Mapping[str, str],
    allowed_item_ids: frozenset[str] | None,
) -> ComposedSection | None:
    known_fields = template.scope_field_ids
    items: list[ComposedItem] = []
    for item in sorted(section.items, key=lambda i: i.order):
        optional = False
        if template.is_level_based:
            outcome = condition_evaluator.evaluate(item.conditions, scope_answers, known_fields)
            if not outcome.visible:
                continue
            optional = outcome.optional
        if allowed_item_ids is not None and item.id not in allowed_item_ids:
            continue
        items.append(ComposedItem(key=ItemKey(item.id), item=item, optional=optional))

    # authored-empty sections stay; sections the filters emptied go
    if not items and (section.items or allowed_item_ids is not None):
        return None
    return ComposedSection(
        key=SectionKey(section.id), section=section, name=section.name, items=tuple(items),
    )


def compose(
    template: TemplateSnapshot,
    target_level_id: str | None,
    scope_answers: Mapping[str, str] | None = None,
    *,
    parent_response_item_ids: Iterable[str] | None = None,
    is_child: bool = False,
    entity_ids: Sequence[str] = (),
    entity_names: Mapping[str, str] | None = None,
    generic_field_label: str = "Field",
) -> list[ComposedSection]:
    """Compose the visible sections of a checklist.

    Args:
        template: Template snapshot; ``is_level_based`` and
            ``level_accumulative`` are read from it.
        target_level_id: Checklist target level (ignored for templates that
            are not level-based).
        scope_answers: scope_field_id -> value.
        parent_response_item_ids: For child checklists, the item ids the child
            was seeded with.  Ignored unless ``is_child``.
        is_child: Apply the child-checklist filter.
        entity_ids: Dynamic entities iterated sections are cloned for.
        entity_names: Display names per entity id.
        generic_field_label: Clone-name prefix when an entity has no name.

    Returns:
        Composed sections in display order.  Sections emptied by the
        condition or child filter are dropped; a section authored without
        items is kept on original checklists.
    """
    scope_answers = scope_answers or {}
    allowed: frozenset[str] | None = None
    if is_child:
        allowed = frozenset(parent_response_item_ids or ())

    composed: list[ComposedSection] = []
    for section in filter_sections_by_level(template, target_level_id):
        result = _compose_section(template, section, scope_answers, allowed)
        if result is not None:
            composed.append(result)

    return field_iteration.expand(
        composed,
        entity_ids,
        entity_names,
        generic_field_label,
        allowed_item_ids=allowed,
    )


def composed_items(sections: Iterable[ComposedSection]) -> list[ComposedItem]:
    """Flatten composed sections into their items, preserving order."""
    return [item for section in sections for item in section.items]
