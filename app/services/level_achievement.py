"""
Level Achievement Calculator — derives the highest compliance level a
checklist has reached from its responses.

For every template level (swept lowest to highest by ``order``):
    - recompose the checklist with that level as target;
    - applicable items = composed items that are effectively required,
      minus allow_na items answered "N/A";
    - each classification passes when approved / applicable * 100 reaches its
      required_percentage (no applicable items counts as 100%);
    - items without a classification must all be APPROVED;
    - a REJECTED item that blocks advancement to the candidate level (or, on
      accumulative templates, to any level at or below it) blocks the level.

The achieved level is the highest-order level that passes.  A checklist with
no non-empty answer has no achieved level at all.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterable, Mapping, Sequence

from app.services import checklist_composer
from app.services.answer_types import is_not_applicable
from app.services.checklist_types import (
    ClassificationProgress,
    ComposedItem,
    ItemKey,
    LevelProgress,
    LevelSnapshot,
    ResponseSnapshot,
    ResponseStatus,
    TemplateSnapshot,
)

logger = logging.getLogger(__name__)

UNCATEGORIZED_CODE = "UNCATEGORIZED"


def _index(responses: Iterable[ResponseSnapshot]) -> dict[ItemKey, ResponseSnapshot]:
    return {r.key: r for r in responses}


def _status(ci: ComposedItem, by_key: Mapping[ItemKey, ResponseSnapshot]) -> str:
    resp = by_key.get(ci.key)
    return resp.status if resp else ResponseStatus.MISSING.value


def _is_applicable(ci: ComposedItem, by_key: Mapping[ItemKey, ResponseSnapshot]) -> bool:
    if not ci.effective_required:
        return False
    resp = by_key.get(ci.key)
    return not (resp and is_not_applicable(ci.item, resp.answer))


def _blocks(template: TemplateSnapshot, blocking_level_id: str, candidate: LevelSnapshot) -> bool:
    if not template.level_accumulative:
        return blocking_level_id == candidate.id
    blocking = template.level(blocking_level_id)
    if blocking is None:
        return False
    return blocking.order <= candidate.order


def evaluate_level(
    template: TemplateSnapshot,
    level: LevelSnapshot,
    responses: Iterable[ResponseSnapshot],
    scope_answers: Mapping[str, str] | None = None,
    *,
    entity_ids: Sequence[str] = (),
) -> LevelProgress:
    """Progress of one candidate level."""
    by_key = _index(responses)
    items = checklist_composer.composed_items(
        checklist_composer.compose(template, level.id, scope_answers, entity_ids=entity_ids)
    )

    groups: "OrderedDict[str | None, list[ComposedItem]]" = OrderedDict()
    for ci in items:
        if not _is_applicable(ci, by_key):
            continue
        classification = template.classification(ci.item.classification_id)
        groups.setdefault(classification.id if classification else None, []).append(ci)

    progress: list[ClassificationProgress] = []
    for classification_id, group in groups.items():
        approved = sum(1 for ci in group if _status(ci, by_key) == ResponseStatus.APPROVED.value)
        classification = template.classification(classification_id)
        if classification is None:
            required, code = 100.0, UNCATEGORIZED_CODE
        else:
            required, code = float(classification.required_percentage), classification.code
        cp = ClassificationProgress(
            classification_id=classification_id,
            code=code,
            approved=approved,
            applicable=len(group),
            required_percentage=required,
            passed=False,
        )
        # exact ratio; percentage is rounded for display only
        cp.passed = approved * 100 >= required * len(group)
        progress.append(cp)

    blocking_item_ids = [
        ci.key.display_id
        for ci in items
        if ci.item.blocks_advancement_to_level_id
        and _status(ci, by_key) == ResponseStatus.REJECTED.value
        and _blocks(template, ci.item.blocks_advancement_to_level_id, level)
    ]
    blocked = bool(blocking_item_ids)

    return LevelProgress(
        level=level,
        achieved=not blocked and all(cp.passed for cp in progress),
        blocked=blocked,
        classifications=progress,
        blocking_item_ids=blocking_item_ids,
    )


def level_progress(
    template: TemplateSnapshot,
    responses: Iterable[ResponseSnapshot],
    scope_answers: Mapping[str, str] | None = None,
    *,
    entity_ids: Sequence[str] = (),
) -> list[LevelProgress]:
    """Per-level breakdown, lowest level first."""
    responses = list(responses)
    return [
        evaluate_level(template, level, responses, scope_answers, entity_ids=entity_ids)
        for level in sorted(template.levels, key=lambda lv: lv.order)
    ]


def achieved_level(
    template: TemplateSnapshot,
    responses: Iterable[ResponseSnapshot],
    scope_answers: Mapping[str, str] | None = None,
    *,
    entity_ids: Sequence[str] = (),
) -> LevelSnapshot | None:
    """Highest achieved level, or None when nothing has been answered yet."""
    responses = list(responses)
    if not any(r.has_answer for r in responses):
        return None

    achieved = [
        p.level
        for p in level_progress(template, responses, scope_answers, entity_ids=entity_ids)
        if p.achieved
    ]
    if not achieved:
        return None
    best = max(achieved, key=lambda lv: lv.order)
    logger.debug(
        "Achieved level %s for template %s", best.name, template.id,
        extra={"template_id": template.id, "event_type": "level.achieved"},
    )
    return best
