"""
Tests — Finalize Orchestrator.

Covers:
    - Seeding rules of partial finalize (pure)
    - finalize: open-children guard, child-to-parent sync, double finalize
    - partial_finalize: children, report, status, guards
    - Atomicity: a failure while spawning children leaves nothing behind
    - Action plan generation failures never undo the partial finalize
"""

from unittest.mock import MagicMock

import pytest

from app.core.exceptions import (
    ConflictError,
    ExternalServiceError,
    OpenChildrenError,
    ValidationError,
)
from app.models.checklist import ActionPlan, Checklist, ChecklistReport
from app.services import checklist_finalize, checklist_service, template_service
from app.services.checklist_types import ComposedItem, ItemKey, ItemSnapshot, ResponseSnapshot


def _composed(item_id, entity="__global__"):
    return ComposedItem(key=ItemKey(item_id, entity), item=ItemSnapshot(id=item_id, name=item_id))


@pytest.fixture()
def checklist(farm_template, producer, levels):
    return checklist_service.create_checklist(
        farm_template.id, producer.id, target_level_id=levels["Basic"],
    )


def _fill(checklist, item_id, status, field_id=None, reason=None):
    kwargs = {"answer": "ok", "status": status}
    if reason:
        kwargs["rejection_reason"] = reason
    return checklist_service.apply_response_action(
        checklist.id, item_id, field_id, "internal_fill", actor="auditor", **kwargs,
    )


# ═════════════════════════════════════════════════════════════════════════════
# plan_partial_finalize (pure)
# ═════════════════════════════════════════════════════════════════════════════

class TestPlanPartialFinalize:

    RESPONSES = [
        ResponseSnapshot(item_id="a", status="APPROVED", answer="ok"),
        ResponseSnapshot(item_id="b", status="REJECTED", answer="old", rejection_reason="Expired"),
        ResponseSnapshot(item_id="c", status="PENDING_VERIFICATION", answer="maybe"),
        ResponseSnapshot(item_id="d", field_id="plot-a", status="REJECTED", answer="x",
                         rejection_reason="Blurred"),
    ]

    def test_correction_seeds_rejected_responses(self):
        plan = checklist_finalize.plan_partial_finalize(
            self.RESPONSES, create_correction=True, create_completion=False,
        )
        assert [(s["item_id"], s["field_id"]) for s in plan.correction_seed] == [
            ("b", "__global__"), ("d", "plot-a"),
        ]
        assert plan.correction_seed[0]["status"] == "MISSING"
        assert plan.correction_seed[0]["rejection_reason"] == "Expired"
        assert plan.creates_completion is False

    def test_completion_seeds_unanswered_and_unverified(self):
        items = [_composed("a"), _composed("c"), _composed("e"), _composed("e"), _composed("f", "plot-b")]
        plan = checklist_finalize.plan_partial_finalize(
            self.RESPONSES, items, create_correction=False, create_completion=True,
        )
        seeded = [(s["item_id"], s["field_id"]) for s in plan.completion_seed]
        assert seeded == [("c", "__global__"), ("e", "__global__"), ("f", "plot-b")]
        assert plan.completion_seed[0]["answer"] == "maybe"
        assert plan.creates_correction is False

    def test_rejected_items_are_not_completion_items(self):
        plan = checklist_finalize.plan_partial_finalize(
            self.RESPONSES, [_composed("b")], create_correction=True, create_completion=True,
        )
        assert plan.completion_seed == ()
        assert len(plan.correction_seed) == 2

    def test_nothing_requested(self):
        plan = checklist_finalize.plan_partial_finalize(
            self.RESPONSES, [_composed("e")], create_correction=False, create_completion=False,
        )
        assert plan == checklist_finalize.PartialFinalizePlan()


# ═════════════════════════════════════════════════════════════════════════════
# partial_finalize
# ═════════════════════════════════════════════════════════════════════════════

class TestPartialFinalize:

    def test_spawns_correction_and_completion(self, checklist, item_ids):
        _fill(checklist, item_ids["Company registration"], "APPROVED")
        _fill(checklist, item_ids["Training records"], "REJECTED", reason="Unsigned")

        result = checklist_finalize.partial_finalize(checklist.id, actor="auditor")

        assert result["status"] == "PARTIALLY_FINALIZED"
        assert len(result["child_ids"]) == 2
        correction = checklist_service.load_checklist(result["correction_id"])
        completion = checklist_service.load_checklist(result["completion_id"])

        assert correction.type == "CORRECTION"
        assert correction.status == "SENT"
        assert [(r.item_id, r.rejection_reason) for r in correction.responses] == [
            (item_ids["Training records"], "Unsigned"),
        ]

        seeded = {(r.item_id, r.field_id) for r in completion.responses}
        assert (item_ids["Company registration"], "__global__") not in seeded
        assert (item_ids["Training records"], "__global__") not in seeded
        assert (item_ids["Pesticide record"], "plot-a") in seeded
        assert (item_ids["Pesticide record"], "plot-b") in seeded
        assert all(r.status == "MISSING" for r in completion.responses)

        assert ChecklistReport.query.filter_by(checklist_id=checklist.id).count() == 1
        assert checklist_service.load_checklist(checklist.id).status == "PARTIALLY_FINALIZED"

    def test_children_compose_only_seeded_items(self, checklist, item_ids):
        _fill(checklist, item_ids["Training records"], "REJECTED", reason="Unsigned")
        result = checklist_finalize.partial_finalize(checklist.id, create_completion=False)
        sections = checklist_service.composed_view(result["correction_id"])
        assert [i["original_id"] for s in sections for i in s["items"]] == [item_ids["Training records"]]
        assert result["completion_id"] is None

    def test_empty_seed_creates_no_child(self, checklist, item_ids):
        result = checklist_finalize.partial_finalize(checklist.id, create_completion=False)
        assert result["child_ids"] == []
        assert result["status"] == "PARTIALLY_FINALIZED"

    def test_completion_at_higher_target(self, checklist, item_ids, levels):
        result = checklist_finalize.partial_finalize(
            checklist.id, create_correction=False, completion_target_level_id=levels["Advanced"],
        )
        completion = checklist_service.load_checklist(result["completion_id"])
        assert completion.target_level_id == levels["Advanced"]
        assert item_ids["Carbon footprint report"] in {r.item_id for r in completion.responses}

    def test_foreign_completion_target(self, checklist, template_payload):
        other = template_service.create_template(template_payload)
        with pytest.raises(ValidationError):
            checklist_finalize.partial_finalize(
                checklist.id, completion_target_level_id=other.levels[1].id,
            )

    def test_requires_continuous_template(self, template_payload):
        template_payload["is_continuous"] = False
        template = template_service.create_template(template_payload)
        checklist = checklist_service.create_checklist(template.id)
        with pytest.raises(ValidationError):
            checklist_finalize.partial_finalize(checklist.id)

    def test_cannot_partially_finalize_twice(self, checklist):
        checklist_finalize.partial_finalize(checklist.id)
        with pytest.raises(ConflictError):
            checklist_finalize.partial_finalize(checklist.id)

    def test_parent_responses_frozen_afterwards(self, checklist, item_ids):
        checklist_finalize.partial_finalize(checklist.id)
        with pytest.raises(ConflictError):
            _fill(checklist, item_ids["Company registration"], "APPROVED")

    def test_failure_while_spawning_rolls_everything_back(self, checklist, item_ids, monkeypatch):
        _fill(checklist, item_ids["Training records"], "REJECTED", reason="Unsigned")
        real_create = checklist_service.create_checklist
        calls = []

        def flaky_create(*args, **kwargs):
            calls.append(kwargs.get("type"))
            if len(calls) == 2:
                raise RuntimeError("database went away")
            return real_create(*args, **kwargs)

        monkeypatch.setattr(checklist_service, "create_checklist", flaky_create)
        with pytest.raises(RuntimeError):
            checklist_finalize.partial_finalize(checklist.id)

        assert calls == ["CORRECTION", "COMPLETION"]
        assert Checklist.query.filter_by(parent_id=checklist.id).count() == 0
        assert ChecklistReport.query.count() == 0
        assert checklist_service.load_checklist(checklist.id).status == "PENDING_REVIEW"


class TestPartialFinalizeActionPlans:

    def test_plans_drafted_for_each_child(self, checklist, item_ids):
        _fill(checklist, item_ids["Training records"], "REJECTED", reason="Unsigned")
        result = checklist_finalize.partial_finalize(checklist.id, generate_action_plan=True)
        assert len(result["action_plans"]) == 2
        assert result["action_plan_errors"] == []
        titles = {p["title"] for p in result["action_plans"]}
        assert titles == {"Correction plan for rejected items", "Completion plan for outstanding items"}

    def test_generator_failure_is_reported_not_raised(self, checklist, item_ids):
        _fill(checklist, item_ids["Training records"], "REJECTED", reason="Unsigned")
        generator = MagicMock()
        generator.generate.side_effect = ExternalServiceError("gemini", "quota exceeded")

        result = checklist_finalize.partial_finalize(
            checklist.id, generate_action_plan=True, action_plan_generator=generator,
        )

        assert generator.generate.call_count == 2
        assert result["status"] == "PARTIALLY_FINALIZED"
        assert len(result["action_plan_errors"]) == 2
        assert "quota exceeded" in result["action_plan_errors"][0]["error"]
        assert Checklist.query.filter_by(parent_id=checklist.id).count() == 2
        assert ActionPlan.query.count() == 0

    def test_no_children_no_generator_call(self, checklist):
        generator = MagicMock()
        checklist_finalize.partial_finalize(
            checklist.id, create_completion=False, generate_action_plan=True,
            action_plan_generator=generator,
        )
        generator.generate.assert_not_called()


# ═════════════════════════════════════════════════════════════════════════════
# finalize
# ═════════════════════════════════════════════════════════════════════════════

class TestFinalize:

    def test_finalize_without_children(self, checklist):
        finalized = checklist_finalize.finalize(checklist.id, actor="auditor")
        assert finalized.status == "FINALIZED"
        assert finalized.finalized_at is not None

    def test_open_children_block_parent(self, checklist, item_ids):
        _fill(checklist, item_ids["Training records"], "REJECTED", reason="Unsigned")
        result = checklist_finalize.partial_finalize(checklist.id)

        with pytest.raises(OpenChildrenError) as exc:
            checklist_finalize.finalize(checklist.id)
        assert sorted(exc.value.open_child_ids) == sorted(result["child_ids"])

    def test_child_finalize_syncs_reviewed_responses(self, checklist, item_ids):
        training = item_ids["Training records"]
        _fill(checklist, training, "REJECTED", reason="Unsigned")
        result = checklist_finalize.partial_finalize(checklist.id, create_completion=False)
        correction = checklist_service.load_checklist(result["correction_id"])

        checklist_service.apply_response_action(
            correction.id, training, None, "submit", actor="producer", answer="Signed copy",
        )
        checklist_service.apply_response_action(correction.id, training, None, "approve", actor="auditor")
        checklist_finalize.finalize(correction.id)

        parent = checklist_service.load_checklist(checklist.id)
        synced = next(r for r in parent.responses if r.item_id == training)
        assert synced.status == "APPROVED"
        assert synced.answer == "Signed copy"
        assert synced.rejection_reason is None

        assert checklist_finalize.finalize(checklist.id).status == "FINALIZED"

    def test_pending_child_responses_not_synced(self, checklist, item_ids):
        training = item_ids["Training records"]
        _fill(checklist, training, "REJECTED", reason="Unsigned")
        result = checklist_finalize.partial_finalize(checklist.id, create_completion=False)
        checklist_service.apply_response_action(
            result["correction_id"], training, None, "submit", answer="Still looking",
        )
        checklist_finalize.finalize(result["correction_id"])

        parent = checklist_service.load_checklist(checklist.id)
        row = next(r for r in parent.responses if r.item_id == training)
        assert row.status == "REJECTED"

    def test_double_finalize_conflicts(self, checklist):
        checklist_finalize.finalize(checklist.id)
        with pytest.raises(ConflictError):
            checklist_finalize.finalize(checklist.id)
