"""
Checklist Audit Platform
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, retry)
    - prompt_registry: YAML prompt template loading
    - assistants: item analyst, action plan generator
"""
