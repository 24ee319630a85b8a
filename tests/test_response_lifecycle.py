"""
Tests — Response Lifecycle transitions (pure, no database).
"""

import pytest

from app.core.exceptions import TransitionError, ValidationError
from app.services import response_lifecycle as rl
from app.services.checklist_types import AISuggestion, ResponseSnapshot


def _resp(status=rl.MISSING, **kw):
    return ResponseSnapshot(item_id="item-1", status=status, **kw)


class TestSubmit:

    def test_missing_to_pending(self):
        out = rl.submit(_resp(), "Yes", observation="see photo")
        assert out.status == rl.PENDING
        assert out.answer == "Yes"
        assert out.observation == "see photo"

    def test_resubmit_after_rejection_clears_reason(self):
        out = rl.submit(_resp(rl.REJECTED, rejection_reason="Blurred"), "New photo")
        assert out.status == rl.PENDING
        assert out.rejection_reason is None

    def test_submit_on_approved_not_allowed(self):
        with pytest.raises(TransitionError) as exc:
            rl.submit(_resp(rl.APPROVED, answer="Yes"), "No")
        assert exc.value.details["status"] == rl.APPROVED

    def test_empty_answer_rejected(self):
        with pytest.raises(ValidationError):
            rl.submit(_resp(), "   ")

    def test_input_snapshot_is_not_mutated(self):
        before = _resp()
        rl.submit(before, "Yes")
        assert before.status == rl.MISSING
        assert before.answer is None


class TestReview:

    def test_approve_pending(self):
        assert rl.approve(_resp(rl.PENDING, answer="Yes")).status == rl.APPROVED

    def test_approve_approved_reverts_to_pending(self):
        assert rl.approve(_resp(rl.APPROVED, answer="Yes")).status == rl.PENDING

    def test_approve_missing_not_allowed(self):
        with pytest.raises(TransitionError):
            rl.approve(_resp())

    def test_reject_requires_reason(self):
        with pytest.raises(ValidationError):
            rl.reject(_resp(rl.PENDING, answer="Yes"), "  ")

    def test_reject_keeps_stripped_reason(self):
        out = rl.reject(_resp(rl.APPROVED, answer="Yes"), " Expired licence ")
        assert out.status == rl.REJECTED
        assert out.rejection_reason == "Expired licence"

    def test_approve_clears_reason(self):
        out = rl.approve(_resp(rl.REJECTED, answer="Yes", rejection_reason="Old"))
        assert out.rejection_reason is None


class TestInternalFill:

    def test_defaults_to_pending(self):
        out = rl.internal_fill(_resp(), "Filled by auditor")
        assert out.status == rl.PENDING
        assert out.is_internal is True

    def test_direct_approval_from_missing(self):
        assert rl.internal_fill(_resp(), "Ok", status=rl.APPROVED).status == rl.APPROVED

    def test_direct_rejection_requires_reason(self):
        with pytest.raises(ValidationError):
            rl.internal_fill(_resp(), "Ok", status=rl.REJECTED)
        out = rl.internal_fill(_resp(), "Ok", status=rl.REJECTED, rejection_reason="Incomplete")
        assert out.rejection_reason == "Incomplete"

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            rl.internal_fill(_resp(), "Ok", status=rl.MISSING)


class TestAISuggestion:

    def test_attach_never_changes_status(self):
        out = rl.attach_ai_suggestion(_resp(rl.PENDING, answer="Yes"), AISuggestion(rl.REJECTED, "Expired"))
        assert out.status == rl.PENDING
        assert out.ai_suggestion.status == rl.REJECTED

    def test_attach_rejects_unknown_verdict(self):
        with pytest.raises(ValidationError):
            rl.attach_ai_suggestion(_resp(), AISuggestion("MAYBE"))

    def test_accept_rejection_uses_ai_reason(self):
        resp = _resp(rl.PENDING, answer="Yes", ai_suggestion=AISuggestion(rl.REJECTED, "Photo is blurred"))
        out = rl.accept_ai_suggestion(resp)
        assert out.status == rl.REJECTED
        assert out.rejection_reason == "Photo is blurred"

    def test_accept_rejection_without_reason_uses_default(self):
        resp = _resp(rl.PENDING, answer="Yes", ai_suggestion=AISuggestion(rl.REJECTED, ""))
        assert rl.accept_ai_suggestion(resp).rejection_reason == "Rejected by AI analysis"

    def test_accept_approval_on_approved_keeps_status(self):
        resp = _resp(rl.APPROVED, answer="Yes", ai_suggestion=AISuggestion(rl.APPROVED))
        assert rl.accept_ai_suggestion(resp).status == rl.APPROVED

    def test_accept_without_suggestion_fails(self):
        with pytest.raises(ValidationError):
            rl.accept_ai_suggestion(_resp(rl.PENDING, answer="Yes"))

    def test_accept_inconclusive_fails(self):
        resp = _resp(rl.PENDING, answer="Yes", ai_suggestion=AISuggestion(rl.PENDING))
        with pytest.raises(ValidationError):
            rl.accept_ai_suggestion(resp)


class TestDispatch:

    def test_apply_action_routes(self):
        out = rl.apply_action(_resp(), "submit", answer="Yes", filled_by="producer")
        assert out.status == rl.PENDING
        assert out.filled_by == "producer"

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            rl.apply_action(_resp(), "archive")

    def test_validate_transition_reports_reason(self):
        result = rl.validate_transition(_resp(), "approve")
        assert result["valid"] is False
        assert "MISSING" in result["reason"]
