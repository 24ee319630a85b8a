"""
Checklist Audit Platform
AI Assistants package.

Assistants:
    - item_analyst: APPROVED / REJECTED suggestion for a respondent answer
    - action_plan_generator: remediation plan for a (child) checklist
"""

from app.ai.assistants.action_plan_generator import ActionPlanGenerator
from app.ai.assistants.item_analyst import ItemAnalyst

__all__ = [
    "ActionPlanGenerator",
    "ItemAnalyst",
]
