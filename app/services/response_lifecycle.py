"""
Response Lifecycle — status transitions of a single checklist response.

    MISSING ──submit──▶ PENDING_VERIFICATION ──approve──▶ APPROVED
                               │    ▲                       │
                            reject  └──approve (revalidate)─┘
                               ▼
                            REJECTED ──submit / approve──▶ ...

Transitions are pure: each function takes a ResponseSnapshot and returns a
new one; the input is never mutated, so callers can keep the previous
snapshot to revert an optimistic update.  Persistence, audit rows and cache
invalidation are the caller's job (checklist_service).

Usage:
    from app.services.response_lifecycle import apply_action

    updated = apply_action(snapshot, "reject", rejection_reason="Photo is blurred")
"""

from __future__ import annotations

from dataclasses import replace

from app.core.exceptions import TransitionError, ValidationError
from app.services.checklist_types import AISuggestion, ResponseSnapshot, ResponseStatus

MISSING = ResponseStatus.MISSING.value
PENDING = ResponseStatus.PENDING_VERIFICATION.value
APPROVED = ResponseStatus.APPROVED.value
REJECTED = ResponseStatus.REJECTED.value

# action -> allowed source states and target.  "approve" on an APPROVED
# response is the revalidate toggle back to PENDING_VERIFICATION.
RESPONSE_TRANSITIONS: dict[str, dict] = {
    "submit": {"from": [MISSING, PENDING, REJECTED], "to": PENDING},
    "approve": {"from": [PENDING, REJECTED, APPROVED], "to": APPROVED},
    "reject": {"from": [PENDING, APPROVED, REJECTED], "to": REJECTED},
    "internal_fill": {"from": [MISSING, PENDING, APPROVED, REJECTED], "to": PENDING},
}

AI_VERDICTS = frozenset({APPROVED, REJECTED, PENDING})


def validate_transition(response: ResponseSnapshot, action: str) -> dict:
    """
    Validate whether an action is valid for the response's current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = RESPONSE_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": response.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if response.status not in rule["from"]:
        return {"valid": False, "from": response.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{response.status}'"}

    target = rule["to"]
    if action == "approve" and response.status == APPROVED:
        target = PENDING
    return {"valid": True, "from": response.status, "to": target, "reason": None}


def _require(response: ResponseSnapshot, action: str) -> str:
    result = validate_transition(response, action)
    if not result["valid"]:
        rule = RESPONSE_TRANSITIONS.get(action) or {}
        raise TransitionError(action, response.status, rule.get("from"))
    return result["to"]


def _non_empty(value: str | None) -> bool:
    return bool(value and str(value).strip())


def submit(
    response: ResponseSnapshot,
    answer: str,
    *,
    observation: str | None = None,
    quantity: str | None = None,
    file_url: str | None = None,
    validity: str | None = None,
    filled_by: str | None = None,
) -> ResponseSnapshot:
    """Respondent answer.  Always lands in PENDING_VERIFICATION."""
    if not _non_empty(answer):
        raise ValidationError("answer is required", details={"answer": "required"})
    target = _require(response, "submit")
    return replace(
        response,
        status=target,
        answer=answer,
        observation=observation if observation is not None else response.observation,
        quantity=quantity if quantity is not None else response.quantity,
        file_url=file_url if file_url is not None else response.file_url,
        validity=validity if validity is not None else response.validity,
        rejection_reason=None,
        is_internal=False,
        filled_by=filled_by or response.filled_by,
    )


def approve(response: ResponseSnapshot) -> ResponseSnapshot:
    """Approve, or revert an APPROVED response to PENDING_VERIFICATION."""
    target = _require(response, "approve")
    return replace(response, status=target, rejection_reason=None)


def reject(response: ResponseSnapshot, rejection_reason: str | None) -> ResponseSnapshot:
    if not _non_empty(rejection_reason):
        raise ValidationError(
            "rejection_reason is required", details={"rejection_reason": "required"},
        )
    target = _require(response, "reject")
    return replace(response, status=target, rejection_reason=rejection_reason.strip())


def internal_fill(
    response: ResponseSnapshot,
    answer: str,
    *,
    status: str | None = None,
    rejection_reason: str | None = None,
    observation: str | None = None,
    filled_by: str | None = None,
) -> ResponseSnapshot:
    """Auditor fills the answer on the respondent's behalf.

    Without ``status`` the response goes to PENDING_VERIFICATION.  With
    APPROVED or REJECTED it lands there directly, from any state including
    MISSING.
    """
    if not _non_empty(answer):
        raise ValidationError("answer is required", details={"answer": "required"})
    target = _require(response, "internal_fill")

    if status is not None:
        if status not in (APPROVED, REJECTED, PENDING):
            raise ValidationError(
                f"Invalid status for internal fill: {status}", details={"status": status},
            )
        target = status
    if target == REJECTED and not _non_empty(rejection_reason):
        raise ValidationError(
            "rejection_reason is required", details={"rejection_reason": "required"},
        )

    return replace(
        response,
        status=target,
        answer=answer,
        observation=observation if observation is not None else response.observation,
        rejection_reason=rejection_reason.strip() if target == REJECTED else None,
        is_internal=True,
        filled_by=filled_by or response.filled_by,
    )


def attach_ai_suggestion(response: ResponseSnapshot, suggestion: AISuggestion) -> ResponseSnapshot:
    """Store an AI verdict.  Status is left untouched."""
    if suggestion.status not in AI_VERDICTS:
        raise ValidationError(
            f"Invalid AI suggestion status: {suggestion.status}",
            details={"status": suggestion.status},
        )
    return replace(response, ai_suggestion=suggestion)


def accept_ai_suggestion(response: ResponseSnapshot) -> ResponseSnapshot:
    """Apply the attached suggestion through the approve / reject rules."""
    suggestion = response.ai_suggestion
    if suggestion is None:
        raise ValidationError("Response has no AI suggestion to accept")

    if suggestion.status == APPROVED:
        # Accepting an approval must not trigger the revalidate toggle.
        if response.status == APPROVED:
            return response
        return approve(response)
    if suggestion.status == REJECTED:
        return reject(response, suggestion.reason or "Rejected by AI analysis")
    raise ValidationError(
        "AI suggestion is inconclusive and cannot be accepted",
        details={"status": suggestion.status},
    )


def apply_action(response: ResponseSnapshot, action: str, **kwargs) -> ResponseSnapshot:
    """Dispatch ``action`` to its transition function."""
    match action:
        case "submit":
            return submit(response, kwargs.pop("answer", None), **kwargs)
        case "approve":
            return approve(response)
        case "reject":
            return reject(response, kwargs.get("rejection_reason"))
        case "internal_fill":
            return internal_fill(response, kwargs.pop("answer", None), **kwargs)
        case "accept_ai_suggestion":
            return accept_ai_suggestion(response)
        case _:
            raise ValidationError(f"Unknown action: {action}", details={"action": action})
