"""
Checklist Audit Platform
Item Analyst — AI verdict on a respondent answer.

Pipeline:
    1. Load the item and the stored (or supplied) answer
    2. Build prompt from the registry (analyze_checklist_item)
    3. Call LLM → status, reasoning, confidence
    4. Normalise: anything but APPROVED / REJECTED becomes PENDING_VERIFICATION
    5. Attach the suggestion to the response (status is never changed)

A failed LLM call degrades to "no suggestion": the error is logged and
reported in the result, the response is left untouched.
"""

import json
import logging
import re

from app.core.exceptions import ExternalServiceError, ValidationError
from app.services import checklist_service
from app.services.checklist_types import GLOBAL_FIELD_ID, AISuggestion, ResponseStatus

logger = logging.getLogger(__name__)

PROMPT_NAME = "analyze_checklist_item"

_VERDICTS = (ResponseStatus.APPROVED.value, ResponseStatus.REJECTED.value)

_IMAGE_LINK = re.compile(r"\.(jpe?g|png|webp)$", re.IGNORECASE)


class ItemAnalyst:
    """AI classifier for checklist answers."""

    def __init__(self, gateway=None, prompt_registry=None):
        self.gateway = gateway
        self.prompt_registry = prompt_registry

    # ── Classification ────────────────────────────────────────────────────

    def classify(
        self,
        item_name: str,
        answer: str,
        observation: str | None = None,
        reference: str | None = None,
        *,
        item_type: str = "TEXT",
        file_url: str | None = None,
        quantity: str | None = None,
    ) -> AISuggestion:
        """
        Ask the LLM for a verdict on one answer.

        An answer that is itself an image link doubles as the attached
        file when no separate ``file_url`` is stored.

        Raises:
            ExternalServiceError: the gateway gave up or the reply is unusable.
        """
        tpl = self.prompt_registry.get(PROMPT_NAME)
        messages = tpl.render(
            item_name=item_name,
            item_type=item_type,
            item_reference=reference or "-",
            user_answer=self._describe_answer(answer),
            quantity=quantity or "-",
            user_observation=observation or "None",
            file_url=file_url or self._image_link(answer) or "None",
        )
        kwargs = {}
        if tpl.temperature is not None:
            kwargs["temperature"] = tpl.temperature

        llm_response = self.gateway.chat(messages, tpl.model, purpose="item_analyst", **kwargs)
        parsed = self._parse_response(llm_response.get("content") or "")
        if parsed is None:
            raise ExternalServiceError("item_analyst", "LLM reply is not valid JSON")

        status = str(parsed.get("status") or "").upper()
        if status not in _VERDICTS:
            status = ResponseStatus.PENDING_VERIFICATION.value
        reason = parsed.get("reasoning") or parsed.get("reason") or ""
        try:
            confidence = float(parsed.get("confidence"))
        except (TypeError, ValueError):
            confidence = None
        return AISuggestion(status=status, reason=str(reason), confidence=confidence)

    def analyze_response(
        self,
        checklist_id: str,
        item_id: str,
        field_id: str | None = None,
        *,
        answer: str | None = None,
        observation: str | None = None,
        actor: str = "ai",
    ) -> dict:
        """
        Classify a response and attach the verdict to it.

        Returns:
            dict with: checklist_id, item_id, field_id, status, reason,
                       confidence, error
        """
        field_id = field_id or GLOBAL_FIELD_ID
        result = {
            "checklist_id": checklist_id,
            "item_id": item_id,
            "field_id": field_id,
            "status": None,
            "reason": "",
            "confidence": None,
            "error": None,
        }

        checklist = checklist_service.load_checklist(checklist_id)
        checklist_service.ensure_responses_writable(checklist)
        item = checklist_service.template_snapshot(checklist).item(item_id)
        if item is None:
            result["error"] = f"Item {item_id} not found"
            return result

        stored = next(
            (r for r in checklist.responses if r.item_id == item_id and r.field_id == field_id), None,
        )
        answer = answer if answer is not None else (stored.answer if stored else None)
        if observation is None and stored is not None:
            observation = stored.observation
        if not answer or not str(answer).strip():
            raise ValidationError("There is no answer to analyze", details={"answer": "required"})

        try:
            suggestion = self.classify(
                item.name, answer, observation, item.reference,
                item_type=item.type,
                file_url=stored.file_url if stored else None,
                quantity=stored.quantity if stored else None,
            )
        except ExternalServiceError as e:
            logger.error(
                "ItemAnalyst classification failed: %s", e,
                extra={"checklist_id": checklist_id, "item_id": item_id, "event_type": "ai.classify"},
            )
            result["error"] = f"AI analysis failed: {e}"
            return result

        checklist_service.attach_ai_suggestion(checklist_id, item_id, field_id, suggestion, actor=actor)
        result.update(suggestion.to_dict())
        return result

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _describe_answer(answer: str) -> str:
        text = str(answer).strip()
        if text.startswith("[") or text.startswith("{"):
            return f"(structured data) {text}"
        return text

    @staticmethod
    def _image_link(answer: str) -> str | None:
        text = str(answer).strip()
        if text.startswith(("http", "/")) and _IMAGE_LINK.search(text):
            return text
        return None

    @staticmethod
    def _parse_response(content: str) -> dict | None:
        """Parse LLM JSON response; tolerate code fences and surrounding prose."""
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
