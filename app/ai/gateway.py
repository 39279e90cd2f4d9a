"""
Lead SLA Platform
LLM Gateway.

Thin chat-completion router used by the autopilot planner:
    - OpenAI provider (``OPENAI_API_KEY``, ``OPENAI_MODEL``)
    - Local stub provider for dev without API keys (``LLM_LOCAL_STUB=true``)
    - Bounded retry with backoff, latency measurement

Any failure surfaces as an exception; the planner treats every exception as
"call failed" and falls back to rule templates.

Usage:
    from app.ai.gateway import LLMGateway
    gw = LLMGateway(timeout=10)
    result = gw.chat([{"role": "user", "content": "..."}])
    result["content"], result["model"], result["latency_ms"]
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"


class LLMUnavailableError(RuntimeError):
    """No chat-completion provider is configured."""


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
            **kwargs: temperature, max_tokens, timeout.

        Returns:
            dict with keys: content, model
        """
        ...


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI chat-completions provider."""

    def __init__(self):
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai
                self._client = openai.OpenAI(api_key=self.api_key)
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
        return self._client

    def chat(self, messages: list, model: str = DEFAULT_OPENAI_MODEL, **kwargs) -> dict:
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", 800),
            temperature=kwargs.get("temperature", 0.4),
            timeout=kwargs.get("timeout"),
        )
        choice = response.choices[0]
        return {
            "content": choice.message.content or "",
            "model": getattr(response, "model", None) or model,
        }


# ── Local Stub Provider (for dev without API keys) ───────────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns a deterministic, schema-valid autopilot plan.
    No API key required.
    """

    PRICING_WORDS = ("pret", "preț", "cost", "price", "tarif")
    BOOKING_WORDS = ("program", "booking", "calendar", "intalnire")

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break
        return {"content": self._generate_stub_response(user_msg), "model": "local-stub"}

    @classmethod
    def _generate_stub_response(cls, user_msg: str) -> str:
        marker = "Lead just replied:"
        reply = user_msg.split(marker, 1)[1] if marker in user_msg else user_msg
        lower = reply.lower()

        if any(w in lower for w in cls.PRICING_WORDS):
            intent, text = "pricing", "Multumim! Pentru ce serviciu doresti oferta de pret?"
        elif any(w in lower for w in cls.BOOKING_WORDS):
            intent, text = "booking", "Perfect! Ce zi si interval orar ti se potrivesc?"
        else:
            intent, text = "other", "Multumim! Ne poti spune mai multe detalii?"

        return json.dumps({
            "nextText": text,
            "intent": intent,
            "answers": {},
            "shouldHandover": False,
            "handoverReason": None,
        })


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for chat-completion calls.

    Provider selection: OpenAI when ``OPENAI_API_KEY`` is set, else the local
    stub when ``LLM_LOCAL_STUB`` is truthy, else none (``chat`` raises
    ``LLMUnavailableError``).
    """

    def __init__(self, model: str | None = None, timeout: float = 10.0):
        self._providers: dict[str, LLMProvider] = {}
        self.timeout = timeout
        self.model = model or os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL)
        self._init_providers()

    def _init_providers(self):
        """Initialize available providers based on environment."""
        if os.getenv("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider()
        if os.getenv("LLM_LOCAL_STUB", "").strip().lower() in ("1", "true", "yes"):
            self._providers["local"] = LocalStubProvider()

    @property
    def available(self) -> bool:
        return bool(self._providers)

    def _get_provider(self) -> tuple[LLMProvider, str, str]:
        if "openai" in self._providers:
            return self._providers["openai"], "openai", self.model
        if "local" in self._providers:
            return self._providers["local"], "local", "local-stub"
        raise LLMUnavailableError("No LLM provider configured (set OPENAI_API_KEY or LLM_LOCAL_STUB)")

    def chat(self, messages: list, *, max_retries: int = 1, **kwargs) -> dict:
        """
        Send a chat completion request with bounded retry.

        Args:
            messages: Chat messages.
            max_retries: Attempts before giving up (the planner uses 1).
            **kwargs: temperature, max_tokens passed to the provider.

        Returns:
            dict: {content, model, latency_ms, provider}

        Raises:
            LLMUnavailableError: no provider configured.
            RuntimeError: every attempt failed or returned empty content.
        """
        provider, provider_name, model = self._get_provider()
        kwargs.setdefault("timeout", self.timeout)

        last_error = None
        for attempt in range(1, max_retries + 1):
            start_time = time.time()
            try:
                result = provider.chat(messages, model, **kwargs)
                latency_ms = int((time.time() - start_time) * 1000)
                if not (result.get("content") or "").strip():
                    raise RuntimeError("LLM returned empty content")
                result["latency_ms"] = latency_ms
                result["provider"] = provider_name
                logger.info(
                    "LLM call succeeded",
                    extra={"provider": provider_name, "model": result["model"], "latency_ms": latency_ms},
                )
                return result
            except Exception as e:
                last_error = e
                logger.warning("LLM call attempt %d/%d failed: %s", attempt, max_retries, e)
                if attempt < max_retries:
                    backoff = min(2 ** (attempt - 1), 4)
                    threading.Event().wait(backoff)

        raise RuntimeError(f"LLM call failed after {max_retries} attempts: {last_error}")
