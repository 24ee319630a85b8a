"""
Checklist Audit Platform
Action Plan Generator — AI-drafted remediation plan for a checklist.

Pipeline:
    1. Collect the open items of the checklist
         CORRECTION → rejected responses (with the auditor's reason)
         otherwise  → composed items not yet APPROVED
    2. Resolve the prompt variant for the checklist type
    3. Call LLM → title, summary, description
    4. Persist an ActionPlan and an audit row
"""

import json
import logging
import re

from app.core.exceptions import ExternalServiceError
from app.models import db
from app.models.audit import write_audit
from app.models.checklist import ActionPlan
from app.services import checklist_composer, checklist_service
from app.services.checklist_types import ChecklistType, ResponseStatus

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "action_plan"
MAX_ITEMS_IN_PROMPT = 60


class ActionPlanGenerator:
    """Drafts and stores action plans through the LLM gateway."""

    def __init__(self, gateway=None, prompt_registry=None):
        self.gateway = gateway
        self.prompt_registry = prompt_registry

    def generate(self, checklist_id: str, actor: str = "ai") -> ActionPlan:
        """
        Draft an action plan for ``checklist_id`` and persist it.

        Raises:
            NotFoundError: checklist does not exist.
            ExternalServiceError: LLM unavailable or reply unusable.
        """
        checklist = checklist_service.load_checklist(checklist_id)
        template = checklist.template
        items = self.open_items(checklist)

        tpl = self.prompt_registry.resolve_variant(
            template.action_plan_prompt or DEFAULT_PROMPT, checklist.type,
        )
        if tpl is None:
            tpl = self.prompt_registry.resolve_variant(DEFAULT_PROMPT, checklist.type)

        messages = tpl.render(
            producer_name=checklist.producer.name if checklist.producer else "-",
            checklist_name=template.name,
            checklist_type=checklist.type,
            items=self._format_items(items),
        )
        kwargs = {}
        if tpl.temperature is not None:
            kwargs["temperature"] = tpl.temperature

        llm_response = self.gateway.chat(messages, tpl.model, purpose="action_plan", **kwargs)
        parsed = self._parse_response(llm_response.get("content") or "")
        if parsed is None:
            raise ExternalServiceError("action_plan", "LLM reply is not valid JSON")

        summary = parsed.get("summary") or ""
        plan = ActionPlan(
            checklist_id=checklist.id,
            title=(parsed.get("title") or f"Action plan - {template.name}")[:255],
            summary=summary,
            description=parsed.get("description") or summary,
        )
        db.session.add(plan)
        db.session.flush()

        try:
            write_audit(
                entity_type="action_plan",
                entity_id=str(plan.id),
                checklist_id=checklist.id,
                action="ai.action_plan",
                actor=actor,
                diff={"items": len(items), "prompt": tpl.name},
            )
        except Exception:
            logger.warning("Audit write failed for ai.action_plan", exc_info=True)

        db.session.commit()
        logger.info(
            "Action plan drafted for %s (%d items, prompt=%s)", checklist.id, len(items), tpl.name,
            extra={"checklist_id": checklist.id, "event_type": "ai.action_plan"},
        )
        return plan

    # ── Item selection ────────────────────────────────────────────────────

    @staticmethod
    def open_items(checklist) -> list[dict]:
        """Items the plan has to cover, as prompt-ready dicts."""
        template = checklist_service.template_snapshot(checklist)
        by_key = {(r.item_id, r.field_id): r for r in checklist_service.response_snapshots(checklist)}

        if checklist.type == ChecklistType.CORRECTION.value:
            out = []
            for resp in by_key.values():
                if resp.status != ResponseStatus.REJECTED.value and not resp.rejection_reason:
                    continue
                item = template.item(resp.item_id)
                out.append({
                    "name": item.name if item else resp.item_id,
                    "field_id": resp.field_id,
                    "answer": resp.answer,
                    "rejection_reason": resp.rejection_reason,
                })
            return out

        out = []
        sections = checklist_service.compose_checklist(checklist)
        for composed in checklist_composer.composed_items(sections):
            resp = by_key.get((composed.original_id, composed.field_id))
            if resp is not None and resp.status == ResponseStatus.APPROVED.value:
                continue
            out.append({
                "name": composed.item.name,
                "field_id": composed.field_id,
                "answer": resp.answer if resp else None,
                "status": resp.status if resp else ResponseStatus.MISSING.value,
            })
        return out

    @staticmethod
    def _format_items(items: list[dict]) -> str:
        if not items:
            return "(no open items)"
        lines = []
        for i, it in enumerate(items[:MAX_ITEMS_IN_PROMPT], 1):
            line = f"{i}. {it['name']}"
            if it.get("rejection_reason"):
                line += f" (rejected: {it['rejection_reason']})"
            elif it.get("status"):
                line += f" [{it['status']}]"
            lines.append(line)
        if len(items) > MAX_ITEMS_IN_PROMPT:
            lines.append(f"... and {len(items) - MAX_ITEMS_IN_PROMPT} more")
        return "\n".join(lines)

    @staticmethod
    def _parse_response(content: str) -> dict | None:
        cleaned = content.strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r'^```\w*\n?', '', cleaned)
            cleaned = re.sub(r'\n?```$', '', cleaned)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            match = re.search(r'\{[\s\S]*\}', cleaned)
            if not match:
                return None
            try:
                parsed = json.loads(match.group(0))
            except json.JSONDecodeError:
                return None
        return parsed if isinstance(parsed, dict) else None
