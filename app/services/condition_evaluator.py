"""
Condition Evaluator — decides whether an item is visible and/or optional
given the checklist's scope answers.

Rules:
    - Default outcome: visible=True, optional=False.
    - A condition whose scope field has no (non-empty) answer is skipped; so
      is a condition pointing at a scope field that no longer exists.
    - EQ / NEQ compare strings; GT / LT / GTE / LTE only match when both
      sides parse as numbers.  A failed parse is NO-MATCH, never an error.
    - MATCH + REMOVE hides the item and stops evaluation.
    - MATCH + OPTIONAL relaxes the item and evaluation continues, so a later
      REMOVE still wins.
    - Unknown operators or actions never match.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from app.services.checklist_types import ConditionAction, ConditionOperator, ConditionSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConditionOutcome:
    visible: bool = True
    optional: bool = False


VISIBLE = ConditionOutcome()


def _to_number(raw) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(value):
        return None
    return value


def condition_matches(operator: str, answer: str, expected: str) -> bool:
    """Return True when ``answer`` satisfies ``operator expected``."""
    if operator == ConditionOperator.EQ.value:
        return str(answer) == str(expected)
    if operator == ConditionOperator.NEQ.value:
        return str(answer) != str(expected)

    left, right = _to_number(answer), _to_number(expected)
    if left is None or right is None:
        return False
    if operator == ConditionOperator.GT.value:
        return left > right
    if operator == ConditionOperator.LT.value:
        return left < right
    if operator == ConditionOperator.GTE.value:
        return left >= right
    if operator == ConditionOperator.LTE.value:
        return left <= right
    return False


def evaluate(
    conditions: Iterable[ConditionSnapshot],
    scope_answers: Mapping[str, str],
    known_scope_field_ids: frozenset[str] | None = None,
) -> ConditionOutcome:
    """Evaluate an item's conditions against the scope answers.

    Args:
        conditions: The item's conditions, in template order.
        scope_answers: scope_field_id -> answer value.
        known_scope_field_ids: When given, conditions referencing any other
            scope field are treated as dangling and skipped.
    """
    optional = False
    for cond in conditions:
        if known_scope_field_ids is not None and cond.scope_field_id not in known_scope_field_ids:
            continue
        answer = scope_answers.get(cond.scope_field_id)
        if answer is None or str(answer).strip() == "":
            continue
        if not condition_matches(cond.operator, answer, cond.value):
            continue

        if cond.action == ConditionAction.REMOVE.value:
            return ConditionOutcome(visible=False, optional=optional)
        if cond.action == ConditionAction.OPTIONAL.value:
            optional = True
        else:
            logger.debug(
                "Ignoring condition with unknown action %r", cond.action,
                extra={"event_type": "condition.unknown_action"},
            )

    if not optional:
        return VISIBLE
    return ConditionOutcome(visible=True, optional=True)
