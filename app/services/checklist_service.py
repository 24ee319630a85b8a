"""
Checklist Service — persistence around the composition engine.

Loads checklists, converts rows into engine snapshots, runs response
transitions and keeps derived views (composed sections, level achievement)
cached per checklist.

Business rules enforced here:
    - Child checklists read scope answers from their root parent and refuse
      scope writes.
    - Responses of PARTIALLY_FINALIZED / FINALIZED checklists are frozen.
    - One response per (checklist_id, item_id, field_id); a concurrent
      duplicate insert surfaces as ConflictError.
    - Every response or scope write drops the checklist's cached views.

Usage:
    from app.services import checklist_service

    checklist = checklist_service.create_checklist(template_id, producer_id)
    checklist_service.apply_response_action(
        checklist.id, item_id, "__global__", "submit", actor="producer", answer="Yes",
    )
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.checklist import (
    CHECKLIST_STATUSES,
    FROZEN_CHECKLIST_STATUSES,
    Checklist,
    ChecklistResponse,
    ScopeAnswer,
)
from app.models.producer import Producer
from app.models.template import Template
from app.services import (
    checklist_composer,
    composition_cache,
    entity_source,
    level_achievement,
    response_lifecycle,
    template_service,
)
from app.services.answer_types import parse_answer, serialize_answer
from app.services.checklist_types import (
    GLOBAL_FIELD_ID,
    AISuggestion,
    ChecklistType,
    ComposedSection,
    ResponseSnapshot,
    TemplateSnapshot,
)

logger = logging.getLogger(__name__)

_UNSET = object()

# Response columns a raw patch may touch.
_PATCHABLE = (
    "status", "answer", "quantity", "observation", "file_url", "validity",
    "rejection_reason", "is_internal", "filled_by",
)


def _audit(**kwargs) -> None:
    try:
        write_audit(**kwargs)
    except Exception:
        logger.warning("Audit write failed for %s", kwargs.get("action"), exc_info=True)


# ═════════════════════════════════════════════════════════════════════════════
# Loading
# ═════════════════════════════════════════════════════════════════════════════

def load_template(template_id: str) -> Template:
    return template_service.get_template(template_id)


def load_checklist(checklist_id: str) -> Checklist:
    checklist = db.session.get(Checklist, checklist_id)
    if not checklist:
        raise NotFoundError(resource="Checklist", resource_id=checklist_id)
    return checklist


def checklists_query(
    template_id: str | None = None,
    producer_id: str | None = None,
    parent_id: str | None = None,
    status: str | None = None,
):
    q = Checklist.query
    if template_id:
        q = q.filter_by(template_id=template_id)
    if producer_id:
        q = q.filter_by(producer_id=producer_id)
    if parent_id:
        q = q.filter_by(parent_id=parent_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Checklist.created_at.desc())


def root_checklist(checklist: Checklist) -> Checklist:
    """Walk up the parent chain to the ORIGINAL checklist."""
    seen = set()
    current = checklist
    while current.parent is not None and current.id not in seen:
        seen.add(current.id)
        current = current.parent
    return current


def descendants(checklist: Checklist) -> list[Checklist]:
    out, stack = [], list(checklist.children)
    while stack:
        child = stack.pop()
        out.append(child)
        stack.extend(child.children)
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════════

def to_response_snapshot(row: ChecklistResponse) -> ResponseSnapshot:
    suggestion = None
    if row.ai_status:
        suggestion = AISuggestion(
            status=row.ai_status, reason=row.ai_reason or "", confidence=row.ai_confidence,
        )
    return ResponseSnapshot(
        item_id=row.item_id,
        field_id=row.field_id or GLOBAL_FIELD_ID,
        status=row.status,
        answer=row.answer,
        observation=row.observation,
        rejection_reason=row.rejection_reason,
        quantity=row.quantity,
        file_url=row.file_url,
        validity=row.validity.isoformat() if row.validity else None,
        is_internal=bool(row.is_internal),
        filled_by=row.filled_by,
        ai_suggestion=suggestion,
    )


def _parse_validity(value) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError("validity must be an ISO date (YYYY-MM-DD)", details={"validity": value})


def _write_snapshot(row: ChecklistResponse, snap: ResponseSnapshot) -> None:
    row.status = snap.status
    row.answer = snap.answer
    row.observation = snap.observation
    row.rejection_reason = snap.rejection_reason
    row.quantity = snap.quantity
    row.file_url = snap.file_url
    row.validity = _parse_validity(snap.validity)
    row.is_internal = snap.is_internal
    row.filled_by = snap.filled_by
    if snap.ai_suggestion is not None:
        row.ai_status = snap.ai_suggestion.status
        row.ai_reason = snap.ai_suggestion.reason
        row.ai_confidence = snap.ai_suggestion.confidence


def response_snapshots(checklist: Checklist) -> list[ResponseSnapshot]:
    return [to_response_snapshot(r) for r in checklist.responses]


def template_snapshot(checklist: Checklist) -> TemplateSnapshot:
    return template_service.to_snapshot(checklist.template)


def get_scope_answers(checklist: Checklist) -> dict[str, str]:
    """Scope answers in effect for ``checklist`` (the root's, for children)."""
    root = root_checklist(checklist)
    return {a.scope_field_id: a.value for a in root.scope_answers if a.value not in (None, "")}


def entity_ids_for(checklist: Checklist) -> list[str]:
    """Entities iterated sections are cloned for.

    A child keeps exactly the entities its seeded responses carry.  Other
    checklists use the producer's current property fields, followed by any
    entity that only survives on recorded responses.
    """
    recorded = list(dict.fromkeys(
        r.field_id for r in checklist.responses if r.field_id and r.field_id != GLOBAL_FIELD_ID
    ))
    if checklist.is_child and recorded:
        return recorded
    current = [e.id for e in entity_source.list_entities(checklist.producer_id)]
    return current + [fid for fid in recorded if fid not in current]


def _generic_field_label() -> str:
    return current_app.config.get("GENERIC_FIELD_LABEL", "Field")


def compose_checklist(checklist: Checklist, target_level_id=_UNSET) -> list[ComposedSection]:
    """Run the composer for ``checklist`` (uncached engine objects)."""
    if target_level_id is _UNSET:
        target_level_id = checklist.target_level_id
    return checklist_composer.compose(
        template_snapshot(checklist),
        target_level_id,
        get_scope_answers(checklist),
        parent_response_item_ids={r.item_id for r in checklist.responses},
        is_child=checklist.is_child,
        entity_ids=entity_ids_for(checklist),
        entity_names=entity_source.entity_names(checklist.producer_id),
        generic_field_label=_generic_field_label(),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Derived views (cached)
# ═════════════════════════════════════════════════════════════════════════════

def composed_view(checklist_id: str) -> list[dict]:
    checklist = load_checklist(checklist_id)
    responses = response_snapshots(checklist)
    key = composition_cache.cache_key(
        "compose", checklist.id, checklist.template.version,
        get_scope_answers(checklist), responses, checklist.target_level_id,
    )
    return composition_cache.get_or_compute(
        key, lambda: [s.to_dict() for s in compose_checklist(checklist)],
    )


def level_achievement_view(checklist_id: str) -> dict:
    """Achieved level plus a per-level breakdown."""
    checklist = load_checklist(checklist_id)
    responses = response_snapshots(checklist)
    scope_answers = get_scope_answers(checklist)
    key = composition_cache.cache_key(
        "achievement", checklist.id, checklist.template.version,
        scope_answers, responses, checklist.target_level_id,
    )

    def _compute():
        template = template_snapshot(checklist)
        entity_ids = entity_ids_for(checklist)
        best = level_achievement.achieved_level(
            template, responses, scope_answers, entity_ids=entity_ids,
        )
        progress = level_achievement.level_progress(
            template, responses, scope_answers, entity_ids=entity_ids,
        )
        return {
            "checklist_id": checklist.id,
            "achieved_level": (
                {"id": best.id, "name": best.name, "order": best.order} if best else None
            ),
            "target_level_id": checklist.target_level_id,
            "levels": [p.to_dict() for p in progress],
        }

    return composition_cache.get_or_compute(key, _compute)


def invalidate(checklist: Checklist, *, include_descendants: bool = False) -> None:
    composition_cache.invalidate_checklist(checklist.id)
    if include_descendants:
        for child in descendants(checklist):
            composition_cache.invalidate_checklist(child.id)


# ═════════════════════════════════════════════════════════════════════════════
# Checklist lifecycle
# ═════════════════════════════════════════════════════════════════════════════

def _validate_target_level(template: Template, target_level_id: str | None) -> None:
    if target_level_id is None:
        return
    if target_level_id not in {lv.id for lv in template.levels}:
        raise ValidationError(
            "target_level_id does not belong to the template",
            details={"target_level_id": target_level_id},
        )


def create_checklist(
    template_id: str,
    producer_id: str | None = None,
    *,
    parent_id: str | None = None,
    type: str = ChecklistType.ORIGINAL.value,
    target_level_id: str | None = None,
    seed: list[dict] | tuple = (),
    created_by: str | None = None,
    commit: bool = True,
) -> Checklist:
    """Create a checklist, optionally seeded with responses.

    ``seed`` entries are dicts with item_id, field_id and any response
    columns (status defaults to MISSING).  With ``commit=False`` the caller
    owns the transaction (partial finalize).
    """
    template = load_template(template_id)
    if type not in {t.value for t in ChecklistType}:
        raise ValidationError(f"Invalid checklist type: {type}", details={"type": type})
    _validate_target_level(template, target_level_id)
    if producer_id and not db.session.get(Producer, producer_id):
        raise NotFoundError(resource="Producer", resource_id=producer_id)
    if parent_id:
        load_checklist(parent_id)

    checklist = Checklist(
        template_id=template.id,
        producer_id=producer_id,
        parent_id=parent_id,
        type=type,
        target_level_id=target_level_id,
        created_by=created_by,
    )
    db.session.add(checklist)
    db.session.flush()

    for entry in seed:
        row = ChecklistResponse(
            checklist_id=checklist.id,
            item_id=entry["item_id"],
            field_id=entry.get("field_id") or GLOBAL_FIELD_ID,
            status=entry.get("status", response_lifecycle.MISSING),
        )
        for key in _PATCHABLE:
            if key in entry and key != "status":
                setattr(row, key, _parse_validity(entry[key]) if key == "validity" else entry[key])
        checklist.responses.append(row)

    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("ChecklistResponse", "item_id/field_id", message="Duplicate response key in seed")

    _audit(
        entity_type="checklist",
        entity_id=checklist.id,
        checklist_id=checklist.id,
        action="checklist.create",
        actor=created_by or "system",
        diff={"type": type, "parent_id": parent_id, "seeded": len(seed)},
    )
    if commit:
        db.session.commit()
    logger.info(
        "Checklist created: %s (%s, %d seeded responses)", checklist.id, type, len(seed),
        extra={"checklist_id": checklist.id, "template_id": template.id, "event_type": "checklist.create"},
    )
    return checklist


def set_checklist_status(checklist_id: str, status: str, *, commit: bool = True) -> Checklist:
    if status not in CHECKLIST_STATUSES:
        raise ValidationError(f"Invalid checklist status: {status}", details={"status": status})
    checklist = load_checklist(checklist_id)
    checklist.status = status
    if commit:
        db.session.commit()
    return checklist


def set_scope_answers(checklist_id: str, answers: dict, actor: str = "system") -> dict[str, str]:
    """Upsert scope answers.  Empty values delete the answer.

    Raises:
        ValidationError: child checklist, or an unknown scope field id.
        ConflictError: checklist already (partially) finalized.
    """
    checklist = load_checklist(checklist_id)
    if checklist.is_child:
        raise ValidationError(
            "Child checklists inherit scope answers from their parent",
            details={"parent_id": checklist.parent_id},
        )
    if checklist.status in FROZEN_CHECKLIST_STATUSES:
        raise ConflictError(
            "Checklist", "status", checklist.status,
            message=f"Scope answers of a {checklist.status} checklist cannot change",
        )

    known = {sf.id for sf in checklist.template.scope_fields}
    unknown = sorted(k for k in answers if k not in known)
    if unknown:
        raise ValidationError("Unknown scope field(s)", details={"scope_field_ids": unknown})

    existing = {a.scope_field_id: a for a in checklist.scope_answers}
    for field_id, raw in answers.items():
        value = "" if raw is None else str(raw).strip()
        row = existing.get(field_id)
        if not value:
            if row is not None:
                checklist.scope_answers.remove(row)
            continue
        if row is None:
            checklist.scope_answers.append(ScopeAnswer(scope_field_id=field_id, value=value))
        else:
            row.value = value

    db.session.flush()
    _audit(
        entity_type="checklist",
        entity_id=checklist.id,
        checklist_id=checklist.id,
        action="checklist.scope_answers",
        actor=actor,
        diff={"fields": sorted(answers)},
    )
    db.session.commit()
    invalidate(checklist, include_descendants=True)
    return get_scope_answers(checklist)


# ═════════════════════════════════════════════════════════════════════════════
# Responses
# ═════════════════════════════════════════════════════════════════════════════

def _find_response(checklist_id: str, item_id: str, field_id: str) -> ChecklistResponse | None:
    return ChecklistResponse.query.filter_by(
        checklist_id=checklist_id, item_id=item_id, field_id=field_id,
    ).first()


def _flush_or_conflict(item_id: str, field_id: str) -> None:
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("ChecklistResponse", "item_id/field_id", f"{item_id}/{field_id}")


def save_response(
    checklist_id: str,
    item_id: str,
    field_id: str | None,
    patch: dict,
    *,
    commit: bool = True,
) -> ChecklistResponse:
    """Upsert raw response columns without running transition rules.

    Used for seeding and child-to-parent sync.  Unknown patch keys are a
    ValidationError.
    """
    unknown = sorted(k for k in patch if k not in _PATCHABLE)
    if unknown:
        raise ValidationError("Unknown response attribute(s)", details={"fields": unknown})
    field_id = field_id or GLOBAL_FIELD_ID

    row = _find_response(checklist_id, item_id, field_id)
    if row is None:
        row = ChecklistResponse(checklist_id=checklist_id, item_id=item_id, field_id=field_id)
        db.session.add(row)
    for key, value in patch.items():
        setattr(row, key, _parse_validity(value) if key == "validity" else value)
    _flush_or_conflict(item_id, field_id)

    if commit:
        db.session.commit()
    composition_cache.invalidate_checklist(checklist_id)
    return row


def _item_snapshot(checklist: Checklist, item_id: str):
    item = template_snapshot(checklist).item(item_id)
    if item is None:
        raise NotFoundError(resource="TemplateItem", resource_id=item_id)
    return item


def _audit_action(action: str, before: ResponseSnapshot, after: ResponseSnapshot) -> str:
    if action == "approve" and before.status == response_lifecycle.APPROVED:
        return "response.revalidate"
    return f"response.{action}"


def ensure_responses_writable(checklist: Checklist) -> None:
    if checklist.status in FROZEN_CHECKLIST_STATUSES:
        raise ConflictError(
            "Checklist", "status", checklist.status,
            message=f"Responses of a {checklist.status} checklist are frozen",
        )


def apply_response_action(
    checklist_id: str,
    item_id: str,
    field_id: str | None,
    action: str,
    *,
    actor: str = "system",
    **kwargs,
) -> ChecklistResponse:
    """Run one response transition and persist the result.

    kwargs are forwarded to the transition (answer, rejection_reason,
    observation, status, ...).  Raw answers are validated against the item
    type before the transition runs.
    """
    checklist = load_checklist(checklist_id)
    ensure_responses_writable(checklist)
    field_id = field_id or GLOBAL_FIELD_ID
    item = _item_snapshot(checklist, item_id)

    if action in ("submit", "internal_fill"):
        kwargs["answer"] = serialize_answer(parse_answer(item, kwargs.get("answer")))
        kwargs.setdefault("filled_by", actor)
        if action == "submit" and "validity" in kwargs:
            kwargs["validity"] = (
                _parse_validity(kwargs["validity"]).isoformat() if kwargs["validity"] else None
            )

    row = _find_response(checklist.id, item_id, field_id)
    before = to_response_snapshot(row) if row else ResponseSnapshot(item_id=item_id, field_id=field_id)
    after = response_lifecycle.apply_action(before, action, **kwargs)

    if row is None:
        row = ChecklistResponse(checklist_id=checklist.id, item_id=item_id, field_id=field_id)
        db.session.add(row)
    _write_snapshot(row, after)
    if action in ("approve", "reject", "accept_ai_suggestion") or (
        action == "internal_fill" and after.status != response_lifecycle.PENDING
    ):
        row.reviewed_at = datetime.now(timezone.utc)
    _flush_or_conflict(item_id, field_id)

    _audit(
        entity_type="response",
        entity_id=after.key.display_id,
        checklist_id=checklist.id,
        action=_audit_action(action, before, after),
        actor=actor,
        diff={"status": {"old": before.status, "new": after.status}},
    )
    db.session.commit()
    composition_cache.invalidate_checklist(checklist.id)
    logger.info(
        "Response %s: %s -> %s", action, before.status, after.status,
        extra={"checklist_id": checklist.id, "item_id": item_id, "event_type": f"response.{action}"},
    )
    return row


def attach_ai_suggestion(
    checklist_id: str,
    item_id: str,
    field_id: str | None,
    suggestion: AISuggestion,
    *,
    actor: str = "ai",
) -> ChecklistResponse:
    """Store an AI verdict on the response; status is untouched."""
    checklist = load_checklist(checklist_id)
    ensure_responses_writable(checklist)
    field_id = field_id or GLOBAL_FIELD_ID
    _item_snapshot(checklist, item_id)

    row = _find_response(checklist.id, item_id, field_id)
    if row is None:
        row = ChecklistResponse(checklist_id=checklist.id, item_id=item_id, field_id=field_id)
        db.session.add(row)
    before = to_response_snapshot(row) if row.id else ResponseSnapshot(item_id=item_id, field_id=field_id)
    after = response_lifecycle.attach_ai_suggestion(before, suggestion)
    _write_snapshot(row, after)
    _flush_or_conflict(item_id, field_id)

    _audit(
        entity_type="response",
        entity_id=after.key.display_id,
        checklist_id=checklist.id,
        action="ai.classify",
        actor=actor,
        diff=suggestion.to_dict(),
    )
    db.session.commit()
    return row
