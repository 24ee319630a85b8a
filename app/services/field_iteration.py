"""
Field-Iteration Expander — clones iterate-over-fields sections once per
dynamic entity (e.g. one copy of "Plot inspection" per farm plot).

Clones replace their source section at its position; entities keep the
order they were given in.  Clone identity is structured (SectionKey /
ItemKey); the "{id}::{entity}" string is only a display id.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from app.services.checklist_types import ComposedItem, ComposedSection, ItemKey, SectionKey


def clone_name(section_name: str, entity_id: str, entity_names: Mapping[str, str] | None,
               generic_field_label: str = "Field") -> str:
    name = (entity_names or {}).get(entity_id)
    if not name:
        name = f"{generic_field_label} {entity_id}"
    return f"{section_name} - {name}"


def expand(
    sections: Iterable[ComposedSection],
    entity_ids: Sequence[str],
    entity_names: Mapping[str, str] | None = None,
    generic_field_label: str = "Field",
    allowed_item_ids: frozenset[str] | None = None,
) -> list[ComposedSection]:
    """Expand iterated sections over ``entity_ids``.

    Non-iterated sections, and every section when there are no entities,
    pass through unchanged.  When ``allowed_item_ids`` is given (child
    checklists) each clone keeps only items whose original id is in it, and
    clones it empties are dropped.
    """
    # Duplicate entity ids would produce colliding keys.
    entities = list(dict.fromkeys(entity_ids))

    expanded: list[ComposedSection] = []
    for composed in sections:
        if not composed.section.iterate_over_fields or not entities:
            expanded.append(composed)
            continue

        for entity_id in entities:
            items = tuple(
                ComposedItem(
                    key=ItemKey(ci.original_id, entity_id),
                    item=ci.item,
                    optional=ci.optional,
                )
                for ci in composed.items
                if allowed_item_ids is None or ci.original_id in allowed_item_ids
            )
            if composed.items and not items:
                continue
            expanded.append(ComposedSection(
                key=SectionKey(composed.section.id, entity_id),
                section=composed.section,
                name=clone_name(composed.section.name, entity_id, entity_names, generic_field_label),
                items=items,
            ))
    return expanded
