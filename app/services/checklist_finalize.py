"""
Finalize Orchestrator — closes a checklist, or splits it into follow-up
child checklists.

    finalize          PENDING_REVIEW / PARTIALLY_FINALIZED ──▶ FINALIZED
    partial_finalize  non-final status ──▶ PARTIALLY_FINALIZED
                      + CORRECTION child (rejected responses)
                      + COMPLETION child (unanswered / unverified items)

Seeding rules live in ``plan_partial_finalize`` and need no database.
Everything ``partial_finalize`` writes before the commit happens in one
transaction: a failure rolls back the report, the parent status and any
child created so far.  Action plans are drafted after the commit and never
undo it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from app.core.exceptions import ConflictError, OpenChildrenError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.checklist import Checklist, ChecklistReport
from app.services import checklist_composer, checklist_service, response_lifecycle
from app.services.checklist_types import (
    GLOBAL_FIELD_ID,
    ChecklistType,
    ComposedItem,
    ResponseSnapshot,
)

logger = logging.getLogger(__name__)

FINALIZED = "FINALIZED"
PARTIALLY_FINALIZED = "PARTIALLY_FINALIZED"
CHILD_INITIAL_STATUS = "SENT"

# Responses copied into the parent when a child is (partially) finalized.
SYNCED_STATUSES = frozenset({response_lifecycle.APPROVED, response_lifecycle.REJECTED})

# Parent responses that still need work in a COMPLETION child.
_OPEN_STATUSES = frozenset({response_lifecycle.MISSING, response_lifecycle.PENDING})


def _audit(**kwargs) -> None:
    try:
        write_audit(**kwargs)
    except Exception:
        logger.warning("Audit write failed for %s", kwargs.get("action"), exc_info=True)


@dataclass(frozen=True)
class PartialFinalizePlan:
    correction_seed: tuple[dict, ...] = ()
    completion_seed: tuple[dict, ...] = ()

    @property
    def creates_correction(self) -> bool:
        return bool(self.correction_seed)

    @property
    def creates_completion(self) -> bool:
        return bool(self.completion_seed)


def plan_partial_finalize(
    responses: Sequence[ResponseSnapshot],
    completion_items: Iterable[ComposedItem] = (),
    *,
    create_correction: bool,
    create_completion: bool,
) -> PartialFinalizePlan:
    """Work out the seed responses of the child checklists.

    Args:
        responses: The parent's responses.
        completion_items: Items composed at the completion target level.
        create_correction: Seed a CORRECTION child.
        create_completion: Seed a COMPLETION child.

    Returns:
        Seeds as ``create_checklist`` accepts them.  An empty seed means the
        child is not created.
    """
    correction: list[dict] = []
    if create_correction:
        for resp in responses:
            if resp.status != response_lifecycle.REJECTED:
                continue
            correction.append({
                "item_id": resp.item_id,
                "field_id": resp.field_id or GLOBAL_FIELD_ID,
                "status": response_lifecycle.MISSING,
                "answer": resp.answer,
                "observation": resp.observation,
                "rejection_reason": resp.rejection_reason,
            })

    completion: list[dict] = []
    if create_completion:
        by_key = {(r.item_id, r.field_id or GLOBAL_FIELD_ID): r for r in responses}
        seen = set()
        for composed in completion_items:
            key = (composed.original_id, composed.field_id)
            if key in seen:
                continue
            seen.add(key)
            resp = by_key.get(key)
            if resp is not None and resp.status not in _OPEN_STATUSES:
                continue
            completion.append({
                "item_id": key[0],
                "field_id": key[1],
                "status": response_lifecycle.MISSING,
                "answer": resp.answer if resp else None,
                "observation": resp.observation if resp else None,
            })

    return PartialFinalizePlan(tuple(correction), tuple(completion))


# ═════════════════════════════════════════════════════════════════════════════
# Persistence
# ═════════════════════════════════════════════════════════════════════════════

def sync_to_parent(checklist: Checklist) -> int:
    """Copy the child's reviewed responses into its parent, as they are.

    Does not commit.  Returns the number of responses copied.
    """
    if not checklist.parent_id:
        return 0
    synced = 0
    for row in checklist.responses:
        if row.status not in SYNCED_STATUSES:
            continue
        target = checklist_service.save_response(
            checklist.parent_id,
            row.item_id,
            row.field_id,
            {
                "status": row.status,
                "answer": row.answer,
                "observation": row.observation,
                "file_url": row.file_url,
                "quantity": row.quantity,
                "validity": row.validity,
                "rejection_reason": row.rejection_reason,
            },
            commit=False,
        )
        target.reviewed_at = row.reviewed_at or datetime.now(timezone.utc)
        synced += 1

    _audit(
        entity_type="checklist",
        entity_id=checklist.parent_id,
        checklist_id=checklist.parent_id,
        action="checklist.child_synced",
        actor="system",
        diff={"child_id": checklist.id, "responses": synced},
    )
    return synced


def _open_children(checklist: Checklist) -> list[str]:
    return [c.id for c in checklist.children if c.status != FINALIZED]


def finalize(checklist_id: str, actor: str = "system") -> Checklist:
    """Mark a checklist FINALIZED.

    Raises:
        OpenChildrenError: a child checklist is not FINALIZED yet.
        ConflictError: the checklist is already FINALIZED.
    """
    checklist = checklist_service.load_checklist(checklist_id)
    if checklist.status == FINALIZED:
        raise ConflictError(
            "Checklist", "status", checklist.status,
            message=f"Checklist id={checklist.id} is already finalized",
        )
    open_ids = _open_children(checklist)
    if open_ids:
        raise OpenChildrenError(checklist.id, open_ids)

    try:
        synced = sync_to_parent(checklist)
        checklist.status = FINALIZED
        checklist.finalized_at = datetime.now(timezone.utc)
        _audit(
            entity_type="checklist",
            entity_id=checklist.id,
            checklist_id=checklist.id,
            action="checklist.finalize",
            actor=actor,
            diff={"parent_id": checklist.parent_id, "synced": synced},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    checklist_service.invalidate(checklist)
    if checklist.parent is not None:
        checklist_service.invalidate(checklist.parent)
    logger.info(
        "Checklist finalized: %s", checklist.id,
        extra={"checklist_id": checklist.id, "event_type": "checklist.finalize"},
    )
    return checklist


def _report_content(checklist: Checklist) -> list[dict]:
    return [r.to_dict() for r in checklist.responses]


def _completion_items(checklist: Checklist, target_level_id: str | None) -> list[ComposedItem]:
    sections = checklist_service.compose_checklist(checklist, target_level_id)
    return checklist_composer.composed_items(sections)


def _default_generator():
    from app.ai.assistants.action_plan_generator import ActionPlanGenerator
    from app.ai.gateway import LLMGateway
    from app.ai.prompt_registry import PromptRegistry

    return ActionPlanGenerator(LLMGateway(), PromptRegistry())


def partial_finalize(
    checklist_id: str,
    *,
    create_correction: bool = True,
    create_completion: bool = True,
    generate_action_plan: bool = False,
    completion_target_level_id: str | None = None,
    actor: str = "system",
    action_plan_generator=None,
) -> dict:
    """Close the current round of a continuous checklist and spawn children.

    Raises:
        ValidationError: template is not continuous, or the completion target
            level does not belong to it.
        ConflictError: checklist already PARTIALLY_FINALIZED or FINALIZED.

    Returns:
        dict with: checklist_id, status, child_ids, correction_id,
                   completion_id, action_plans, action_plan_errors
    """
    checklist = checklist_service.load_checklist(checklist_id)
    template = checklist.template
    if not template.is_continuous:
        raise ValidationError(
            "Partial finalize requires a continuous template",
            details={"template_id": template.id},
        )
    if checklist.status in (FINALIZED, PARTIALLY_FINALIZED):
        raise ConflictError(
            "Checklist", "status", checklist.status,
            message=f"Checklist id={checklist.id} is already {checklist.status}",
        )

    target_level_id = completion_target_level_id or checklist.target_level_id
    if completion_target_level_id and completion_target_level_id not in {lv.id for lv in template.levels}:
        raise ValidationError(
            "completion_target_level_id does not belong to the template",
            details={"completion_target_level_id": completion_target_level_id},
        )

    responses = checklist_service.response_snapshots(checklist)
    plan = plan_partial_finalize(
        responses,
        _completion_items(checklist, target_level_id) if create_completion else (),
        create_correction=create_correction,
        create_completion=create_completion,
    )

    children: list[Checklist] = []
    try:
        db.session.add(ChecklistReport(checklist_id=checklist.id, content=_report_content(checklist)))
        sync_to_parent(checklist)

        for child_type, seed, child_target in (
            (ChecklistType.CORRECTION.value, plan.correction_seed, checklist.target_level_id),
            (ChecklistType.COMPLETION.value, plan.completion_seed, target_level_id),
        ):
            if not seed:
                continue
            child = checklist_service.create_checklist(
                template.id,
                checklist.producer_id,
                parent_id=checklist.id,
                type=child_type,
                target_level_id=child_target,
                seed=seed,
                created_by=actor,
                commit=False,
            )
            child.status = CHILD_INITIAL_STATUS
            children.append(child)

        checklist.status = PARTIALLY_FINALIZED
        child_ids = {c.type: c.id for c in children}
        _audit(
            entity_type="checklist",
            entity_id=checklist.id,
            checklist_id=checklist.id,
            action="checklist.partial_finalize",
            actor=actor,
            diff={
                "correction_id": child_ids.get(ChecklistType.CORRECTION.value),
                "completion_id": child_ids.get(ChecklistType.COMPLETION.value),
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(
            "Partial finalize rolled back for %s", checklist_id,
            extra={"checklist_id": checklist_id, "event_type": "checklist.partial_finalize"},
        )
        raise

    checklist_service.invalidate(checklist)
    if checklist.parent is not None:
        checklist_service.invalidate(checklist.parent)
    logger.info(
        "Checklist partially finalized: %s (%d children)", checklist.id, len(children),
        extra={"checklist_id": checklist.id, "event_type": "checklist.partial_finalize"},
    )

    result = {
        "checklist_id": checklist.id,
        "status": checklist.status,
        "child_ids": [c.id for c in children],
        "correction_id": child_ids.get(ChecklistType.CORRECTION.value),
        "completion_id": child_ids.get(ChecklistType.COMPLETION.value),
        "action_plans": [],
        "action_plan_errors": [],
    }
    if not generate_action_plan or not children:
        return result

    generator = action_plan_generator or _default_generator()
    for child_id in result["child_ids"]:
        try:
            plan_row = generator.generate(child_id, actor=actor)
        except Exception as e:
            db.session.rollback()
            logger.warning(
                "Action plan generation failed for %s: %s", child_id, e,
                extra={"checklist_id": child_id, "event_type": "ai.action_plan"},
            )
            result["action_plan_errors"].append({"checklist_id": child_id, "error": str(e)})
            continue
        result["action_plans"].append(plan_row.to_dict())
    return result
