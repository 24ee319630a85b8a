"""
Checklist Audit Platform
LLM Gateway.

Provider-agnostic LLM router with:
    - Gemini (google-genai) when GEMINI_API_KEY is set
    - Deterministic local stub otherwise (dev/test, no API key)
    - Auto-retry with exponential backoff
    - Token and latency logging

Usage:
    from app.ai.gateway import LLMGateway
    gw = LLMGateway()
    result = gw.chat(messages, purpose="item_analyst")
"""

import json
import logging
import os
import time
from abc import ABC, abstractmethod

from app.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── Google Gemini Provider ────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Models:
        - gemini-2.5-flash  (item classification)
        - gemini-2.5-pro    (action plan drafting)

    Environment:
        GEMINI_API_KEY
    """

    def __init__(self):
        self.api_key = os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        # Separate system instruction from conversation messages
        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                # Gemini uses "user" and "model" roles
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(
                    types.Content(role=role, parts=[types.Part(text=m["content"])])
                )

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.2),
            max_output_tokens=kwargs.get("max_tokens", 2048),
            response_mime_type="application/json",
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(model=model, contents=contents, config=config)

        usage = response.usage_metadata
        return {
            "content": response.text or "",
            "prompt_tokens": getattr(usage, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(usage, "candidates_token_count", 0) or 0,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic JSON for dev/testing.
    No API key required.
    """

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break

        content = self._generate_stub_response(user_msg)
        return {
            "content": content,
            "prompt_tokens": len(user_msg.split()) * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }

    @staticmethod
    def _generate_stub_response(user_msg: str) -> str:
        lower = user_msg.lower()

        if "action plan" in lower:
            if "correction" in lower:
                title = "Correction plan for rejected items"
            elif "completion" in lower:
                title = "Completion plan for outstanding items"
            else:
                title = "Compliance action plan"
            return json.dumps({
                "title": title,
                "summary": "Address every listed item before the next audit cycle.",
                "description": "1. Review each item and its auditor note.\n"
                               "2. Collect the missing evidence.\n"
                               "3. Resubmit the answers for verification.",
            })

        if "verdict" in lower or "evaluate the answer" in lower:
            rejected = any(w in lower for w in ("expired", "missing", "blurred", "illegible"))
            return json.dumps({
                "status": "REJECTED" if rejected else "APPROVED",
                "reasoning": (
                    "The evidence provided does not satisfy the item."
                    if rejected else
                    "The answer is consistent with the item requirement."
                ),
                "confidence": 0.62 if rejected else 0.81,
            })

        return json.dumps({"response": "Analysis complete.", "confidence": 0.5})


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Features:
        - Provider routing based on model name
        - Auto-retry with exponential backoff
        - Falls back to the local stub when a provider has no API key

    Usage:
        gw = LLMGateway()
        result = gw.chat(
            messages=[{"role": "user", "content": "Evaluate the answer..."}],
            purpose="item_analyst",
        )
    """

    # Model → provider mapping
    PROVIDER_MAP = {
        "gemini-2.5-flash": "gemini",
        "gemini-2.5-pro": "gemini",
        "gemini-2.0-flash": "gemini",
        "local-stub": "local",
    }

    DEFAULT_CHAT_MODEL = os.getenv("LLM_DEFAULT_CHAT_MODEL", "gemini-2.5-flash")
    MAX_BACKOFF_SECONDS = 4

    def __init__(self):
        self._providers: dict[str, LLMProvider] = {}
        self._init_providers()

    def _init_providers(self):
        """Initialize available providers based on environment."""
        self._providers["local"] = LocalStubProvider()
        if os.getenv("GEMINI_API_KEY"):
            self._providers["gemini"] = GeminiProvider()

    def _get_provider(self, model: str) -> tuple[LLMProvider, str]:
        """
        Resolve model to provider.  Falls back to local stub if the real
        provider is unavailable.  Returns (provider, provider_name).
        """
        provider_name = self.PROVIDER_MAP.get(model, "local")
        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        logger.info(
            "Provider '%s' not available (no API key?). Using local stub for model '%s'.",
            provider_name, model,
        )
        return self._providers["local"], "local"

    def chat(
        self,
        messages: list,
        model: str | None = None,
        *,
        purpose: str = "",
        user: str = "system",
        max_retries: int = 3,
        **kwargs,
    ) -> dict:
        """
        Send a chat completion request with retry.

        Args:
            messages: Chat messages.
            model: Model identifier (defaults to DEFAULT_CHAT_MODEL).
            purpose: What the call is for (e.g. "item_analyst").
            user: Who triggered the call.
            max_retries: Number of attempts before giving up.
            **kwargs: temperature, max_tokens passed to provider.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, latency_ms, provider}

        Raises:
            ExternalServiceError: every attempt failed.
        """
        model = model or self.DEFAULT_CHAT_MODEL
        provider, provider_name = self._get_provider(model)

        last_error = None
        for attempt in range(1, max_retries + 1):
            start_time = time.time()
            try:
                result = provider.chat(messages, model, **kwargs)
            except Exception as e:
                last_error = e
                logger.warning(
                    "LLM call attempt %d/%d failed: %s", attempt, max_retries, e,
                    extra={"event_type": "llm.retry"},
                )
                if attempt < max_retries:
                    time.sleep(min(2 ** (attempt - 1), self.MAX_BACKOFF_SECONDS))
                continue

            result["latency_ms"] = int((time.time() - start_time) * 1000)
            result["provider"] = provider_name
            logger.info(
                "LLM call ok: purpose=%s provider=%s tokens=%d latency=%dms",
                purpose, provider_name,
                result["prompt_tokens"] + result["completion_tokens"], result["latency_ms"],
                extra={"event_type": "llm.call"},
            )
            return result

        raise ExternalServiceError(
            provider_name, f"LLM call failed after {max_retries} attempts: {last_error}",
        )
