"""
Checklist Audit Platform
Prompt Registry.

YAML-based prompt template management with:
    - Built-in defaults for item analysis and action plan drafting
    - Template loading from a prompts directory (PROMPTS_DIR)
    - {{variable}} rendering
    - Version tracking
    - Checklist-type variants (``<name>_correction`` / ``<name>_completion``)

Usage:
    from app.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    messages = registry.render("analyze_checklist_item",
                               item_name="Fire extinguisher inspection",
                               user_answer="Inspected 2024-05-01")
"""

import logging
import os
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

# Default prompts directory
_PROMPTS_DIR = os.getenv(
    "PROMPTS_DIR",
    os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "prompts"),
)


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", model: str | None = None,
                 temperature: float | None = None, metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.model = model
        self.temperature = temperature
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Variables are replaced using {{variable_name}} syntax.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r'\{\{(\s*\w+\s*)\}\}', replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "model": self.model,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are registered first; YAML files in the prompts
    directory override them by (name, version).
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir or _PROMPTS_DIR
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_defaults()
        self._load_from_dir()

    def _load_defaults(self):
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)

    def _load_from_dir(self):
        """Load prompt templates from YAML files."""
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.debug("Prompts directory not found: %s. Using defaults only.", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
                continue
            if not data or not isinstance(data, dict):
                continue

            tpl = PromptTemplate(
                name=data.get("name", yaml_file.stem),
                version=str(data.get("version", "v1")),
                system=data.get("system", ""),
                user=data.get("user", ""),
                description=data.get("description", ""),
                model=data.get("model"),
                temperature=data.get("temperature"),
                metadata=data.get("metadata", {}),
            )
            self._register(tpl)
            logger.info("Loaded prompt template: %s (%s) from %s",
                        tpl.name, tpl.version, yaml_file.name)

    def _register(self, template: PromptTemplate):
        self._templates.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        """Get a prompt template by name and version."""
        return self._templates.get(name, {}).get(version)

    def resolve_variant(self, name: str, checklist_type: str, version: str = "v1") -> PromptTemplate | None:
        """
        Pick the checklist-type variant of a prompt.

        CORRECTION looks for ``<name>_correction``, COMPLETION for
        ``<name>_completion``; both fall back to ``<name>`` itself.
        """
        suffix = {"CORRECTION": "_correction", "COMPLETION": "_completion"}.get(checklist_type, "")
        if suffix:
            variant = self.get(f"{name}{suffix}", version)
            if variant is not None:
                return variant
        return self.get(name, version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def list_templates(self) -> list[dict]:
        return [tpl.to_dict() for versions in self._templates.values() for tpl in versions.values()]

    def get_versions(self, name: str) -> list[str]:
        return list(self._templates.get(name, {}).keys())


# ── Built-in Default Templates ────────────────────────────────────────────────

_ACTION_PLAN_SYSTEM = (
    "You are a compliance consultant helping a producer close the gaps found "
    "in an audit checklist. Write practical, ordered steps the producer can "
    "follow without further guidance.\n\n"
    "Return valid JSON with keys: title, summary, description."
)

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="analyze_checklist_item",
        version="v1",
        description="Evaluate a respondent answer and suggest APPROVED or REJECTED",
        model="gemini-2.5-flash",
        temperature=0.2,
        system=(
            "You are an audit assistant verifying answers to compliance checklist items. "
            "Judge only whether the answer satisfies the item; do not invent evidence.\n\n"
            "Rules:\n"
            "- Structured data (JSON lists or objects such as map coordinates) is a valid "
            "answer when it is not empty.\n"
            "- A file reference counts as evidence only for what its name states.\n"
            "- When the answer is insufficient, explain what is missing.\n\n"
            "Return valid JSON with keys: status (APPROVED | REJECTED), reasoning, "
            "confidence (0.0 - 1.0)."
        ),
        user=(
            "Evaluate the answer to this checklist item and give your verdict.\n\n"
            "**Item:** {{item_name}}\n"
            "**Item type:** {{item_type}}\n"
            "**Reference:** {{item_reference}}\n"
            "**Answer:** {{user_answer}}\n"
            "**Quantity:** {{quantity}}\n"
            "**Observation:** {{user_observation}}\n"
            "**Attached file:** {{file_url}}"
        ),
    ),
    PromptTemplate(
        name="action_plan",
        version="v1",
        description="Action plan for unanswered and non-approved items",
        model="gemini-2.5-flash",
        temperature=0.4,
        system=_ACTION_PLAN_SYSTEM,
        user=(
            "Draft an action plan for producer {{producer_name}} on checklist "
            "\"{{checklist_name}}\" ({{checklist_type}}).\n\n"
            "Items still open:\n{{items}}"
        ),
    ),
    PromptTemplate(
        name="action_plan_correction",
        version="v1",
        description="Action plan for a CORRECTION checklist (rejected items)",
        model="gemini-2.5-flash",
        temperature=0.4,
        system=_ACTION_PLAN_SYSTEM,
        user=(
            "Draft a correction action plan for producer {{producer_name}} on checklist "
            "\"{{checklist_name}}\".  Each item below was rejected by the auditor; "
            "address the rejection reason of every item.\n\n{{items}}"
        ),
    ),
    PromptTemplate(
        name="action_plan_completion",
        version="v1",
        description="Action plan for a COMPLETION checklist (items not yet answered or verified)",
        model="gemini-2.5-flash",
        temperature=0.4,
        system=_ACTION_PLAN_SYSTEM,
        user=(
            "Draft a completion action plan for producer {{producer_name}} on checklist "
            "\"{{checklist_name}}\".  The items below are still unanswered or awaiting "
            "verification.\n\n{{items}}"
        ),
    ),
]
