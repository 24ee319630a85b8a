"""
Checklist Audit Platform
Tests — AI Assistants.

Covers:
    - LLM gateway routing to the local stub and retry exhaustion
    - Prompt registry defaults and checklist-type variants
    - Item Analyst: verdict parsing, suggestion attachment, graceful failure
    - Action Plan Generator: open-item selection, prompt variants, persistence
"""

import json
from unittest.mock import MagicMock

import pytest

from app.ai.assistants import ActionPlanGenerator, ItemAnalyst
from app.ai.gateway import LLMGateway, LocalStubProvider
from app.ai.prompt_registry import PromptRegistry
from app.core.exceptions import ConflictError, ExternalServiceError, ValidationError
from app.models.audit import AuditLog
from app.models.checklist import ActionPlan
from app.services import checklist_finalize, checklist_service


@pytest.fixture(autouse=True)
def _no_real_provider(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)


@pytest.fixture()
def registry():
    return PromptRegistry()


@pytest.fixture()
def checklist(farm_template, producer, levels):
    return checklist_service.create_checklist(
        farm_template.id, producer.id, target_level_id=levels["Basic"],
    )


def _fake_gateway(content):
    gw = MagicMock()
    gw.chat.return_value = {
        "content": content if isinstance(content, str) else json.dumps(content),
        "prompt_tokens": 10,
        "completion_tokens": 10,
        "model": "fake",
    }
    return gw


# ═════════════════════════════════════════════════════════════════════════════
# Gateway & prompts
# ═════════════════════════════════════════════════════════════════════════════

class TestGateway:

    def test_routes_to_local_stub_without_key(self):
        result = LLMGateway().chat(
            [{"role": "user", "content": "Evaluate the answer: licence expired"}],
            purpose="item_analyst",
        )
        assert result["provider"] == "local"
        assert json.loads(result["content"])["status"] == "REJECTED"

    def test_providers_come_from_environment_only(self):
        gw = LLMGateway()
        assert set(gw._providers) == {"local"}
        provider, name = gw._get_provider("gemini-2.5-pro")
        assert name == "local"
        assert isinstance(provider, LocalStubProvider)

    def test_retries_then_raises(self, monkeypatch):
        monkeypatch.setattr("app.ai.gateway.time.sleep", lambda s: None)
        gw = LLMGateway()
        broken = MagicMock()
        broken.chat.side_effect = RuntimeError("boom")
        gw._providers["local"] = broken

        with pytest.raises(ExternalServiceError):
            gw.chat([{"role": "user", "content": "hi"}], "local-stub", max_retries=3)
        assert broken.chat.call_count == 3

    def test_stub_action_plan_titles(self):
        content = LocalStubProvider._generate_stub_response("Draft a correction action plan")
        assert json.loads(content)["title"] == "Correction plan for rejected items"


class TestPromptRegistry:

    def test_defaults_registered(self, registry):
        names = {t["name"] for t in registry.list_templates()}
        assert {"analyze_checklist_item", "action_plan", "action_plan_correction",
                "action_plan_completion"} <= names

    def test_variant_resolution(self, registry):
        assert registry.resolve_variant("action_plan", "CORRECTION").name == "action_plan_correction"
        assert registry.resolve_variant("action_plan", "COMPLETION").name == "action_plan_completion"
        assert registry.resolve_variant("action_plan", "ORIGINAL").name == "action_plan"

    def test_render_substitutes_variables(self, registry):
        messages = registry.render("analyze_checklist_item", item_name="Fire extinguisher")
        assert "Fire extinguisher" in messages[-1]["content"]
        assert "{{user_answer}}" in messages[-1]["content"]

    def test_render_unknown_prompt(self, registry):
        with pytest.raises(KeyError):
            registry.render("missing")

    def test_yaml_override(self, tmp_path):
        (tmp_path / "custom.yaml").write_text(
            "name: action_plan_export\nversion: v1\nuser: 'Export plan for {{producer_name}}'\n",
            encoding="utf-8",
        )
        registry = PromptRegistry(prompts_dir=str(tmp_path))
        assert registry.resolve_variant("action_plan_export", "ORIGINAL") is not None


# ═════════════════════════════════════════════════════════════════════════════
# Item Analyst
# ═════════════════════════════════════════════════════════════════════════════

class TestItemAnalyst:

    def test_classify_with_stub(self, registry):
        analyst = ItemAnalyst(LLMGateway(), registry)
        suggestion = analyst.classify("Fire extinguisher inspection", "Inspected on 2025-05-01")
        assert suggestion.status == "APPROVED"
        assert suggestion.confidence == pytest.approx(0.81)

    def test_unknown_verdict_becomes_pending(self, registry):
        analyst = ItemAnalyst(_fake_gateway({"status": "unsure", "reason": "Ambiguous"}), registry)
        suggestion = analyst.classify("Item", "Answer")
        assert suggestion.status == "PENDING_VERIFICATION"
        assert suggestion.reason == "Ambiguous"
        assert suggestion.confidence is None

    def test_fenced_reply_is_parsed(self, registry):
        content = "```json\n{\"status\": \"REJECTED\", \"reasoning\": \"Blurred\", \"confidence\": \"0.4\"}\n```"
        suggestion = ItemAnalyst(_fake_gateway(content), registry).classify("Item", "photo.jpg")
        assert suggestion.status == "REJECTED"
        assert suggestion.confidence == pytest.approx(0.4)

    def test_structured_answer_is_labelled(self, registry):
        gw = _fake_gateway({"status": "APPROVED"})
        ItemAnalyst(gw, registry).classify("Plot map", '{"lat": -23.5}')
        user_msg = gw.chat.call_args[0][0][-1]["content"]
        assert "(structured data)" in user_msg

    def test_classify_sends_item_context(self, registry):
        gw = _fake_gateway({"status": "APPROVED"})
        ItemAnalyst(gw, registry).classify(
            "Waste disposal plan", "Plan v2", item_type="FILE",
            file_url="/api/v1/attachments/k_plan.pdf", quantity="3",
        )
        user_msg = gw.chat.call_args[0][0][-1]["content"]
        assert "**Item type:** FILE" in user_msg
        assert "**Quantity:** 3" in user_msg
        assert "**Attached file:** /api/v1/attachments/k_plan.pdf" in user_msg

    def test_image_answer_is_attached_file(self, registry):
        gw = _fake_gateway({"status": "APPROVED"})
        ItemAnalyst(gw, registry).classify("Storage photo", "https://cdn.example.com/shed.JPG")
        user_msg = gw.chat.call_args[0][0][-1]["content"]
        assert "**Attached file:** https://cdn.example.com/shed.JPG" in user_msg

    def test_analyze_forwards_stored_quantity_and_file(self, checklist, item_ids, registry):
        item = item_ids["Training records"]
        checklist_service.apply_response_action(
            checklist.id, item, None, "submit", answer="Attendance sheets",
            quantity="12", file_url="/api/v1/attachments/k_sheets.jpg",
        )
        gw = _fake_gateway({"status": "APPROVED", "reasoning": "Complete"})
        ItemAnalyst(gw, registry).analyze_response(checklist.id, item)

        user_msg = gw.chat.call_args[0][0][-1]["content"]
        assert "**Item type:** TEXT" in user_msg
        assert "**Quantity:** 12" in user_msg
        assert "/api/v1/attachments/k_sheets.jpg" in user_msg

    def test_analyze_refused_on_finalized_checklist(self, checklist, item_ids, registry):
        item = item_ids["Company registration"]
        checklist_service.apply_response_action(
            checklist.id, item, None, "internal_fill", answer="Licence expired", status="APPROVED",
        )
        checklist_finalize.finalize(checklist.id)
        gw = _fake_gateway({"status": "REJECTED"})

        with pytest.raises(ConflictError):
            ItemAnalyst(gw, registry).analyze_response(checklist.id, item)

        gw.chat.assert_not_called()
        row = next(r for r in checklist_service.load_checklist(checklist.id).responses if r.item_id == item)
        assert row.ai_status is None

    def test_analyze_attaches_without_changing_status(self, checklist, item_ids, registry):
        item = item_ids["Company registration"]
        checklist_service.apply_response_action(
            checklist.id, item, None, "submit", answer="Licence expired in 2020",
        )
        result = ItemAnalyst(LLMGateway(), registry).analyze_response(checklist.id, item)

        assert result["status"] == "REJECTED"
        assert result["error"] is None
        row = next(r for r in checklist_service.load_checklist(checklist.id).responses if r.item_id == item)
        assert row.status == "PENDING_VERIFICATION"
        assert row.ai_status == "REJECTED"
        assert AuditLog.query.filter_by(action="ai.classify").count() == 1

    def test_analyze_failure_degrades(self, checklist, item_ids, registry):
        gw = MagicMock()
        gw.chat.side_effect = ExternalServiceError("gemini", "timeout")
        item = item_ids["Company registration"]

        result = ItemAnalyst(gw, registry).analyze_response(checklist.id, item, answer="Registered")

        assert result["status"] is None
        assert result["error"].startswith("AI analysis failed")
        assert checklist_service.load_checklist(checklist.id).responses == []

    def test_analyze_without_answer(self, checklist, item_ids, registry):
        with pytest.raises(ValidationError):
            ItemAnalyst(LLMGateway(), registry).analyze_response(checklist.id, item_ids["Training records"])

    def test_analyze_unknown_item(self, checklist, registry):
        result = ItemAnalyst(LLMGateway(), registry).analyze_response(checklist.id, "missing", answer="x")
        assert "not found" in result["error"]


# ═════════════════════════════════════════════════════════════════════════════
# Action Plan Generator
# ═════════════════════════════════════════════════════════════════════════════

class TestActionPlanGenerator:

    def test_open_items_for_original(self, checklist, item_ids):
        checklist_service.apply_response_action(
            checklist.id, item_ids["Company registration"], None, "internal_fill",
            answer="ok", status="APPROVED",
        )
        names = [i["name"] for i in ActionPlanGenerator.open_items(checklist)]
        assert "Company registration" not in names
        assert names.count("Pesticide record") == 2

    def test_generate_persists_plan(self, checklist, registry):
        plan = ActionPlanGenerator(LLMGateway(), registry).generate(checklist.id, actor="auditor")
        assert plan.id is not None
        assert plan.title == "Compliance action plan"
        assert ActionPlan.query.filter_by(checklist_id=checklist.id).count() == 1
        assert AuditLog.query.filter_by(action="ai.action_plan").one().actor == "auditor"

    def test_unknown_template_prompt_falls_back_to_default(self, checklist, registry):
        checklist.template.action_plan_prompt = "retired_prompt"
        gw = _fake_gateway({"title": "T", "summary": "S"})
        ActionPlanGenerator(gw, registry).generate(checklist.id)
        assert "Draft an action plan" in gw.chat.call_args[0][0][-1]["content"]

    def test_missing_fields_fall_back(self, checklist, registry):
        plan = ActionPlanGenerator(_fake_gateway({"summary": "Fix it"}), registry).generate(checklist.id)
        assert plan.title == "Action plan - Farm Compliance"
        assert plan.description == "Fix it"

    def test_unusable_reply(self, checklist, registry):
        with pytest.raises(ExternalServiceError):
            ActionPlanGenerator(_fake_gateway("I cannot help"), registry).generate(checklist.id)

    def test_format_items_caps_list(self):
        items = [{"name": f"Item {i}", "status": "MISSING"} for i in range(65)]
        text = ActionPlanGenerator._format_items(items)
        assert text.splitlines()[-1] == "... and 5 more"
        assert ActionPlanGenerator._format_items([]) == "(no open items)"
