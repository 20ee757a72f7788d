"""OpenRouter chat-completion client.

Uses raw ``requests`` against the OpenAI-compatible ``/chat/completions``
endpoint, the same way :mod:`memory_graph.embeddings` talks to
``/embeddings``:

* Async-friendly (``asyncio.to_thread`` around the blocking POST)
* Bounded per-request timeout plus retry with exponential back-off
* Every failure surfaces as :class:`CompletionError`, so callers can degrade
  to rule-based behaviour with a single ``except``
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

import requests

from .config import load_config

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class CompletionError(Exception):
    """Raised when the completion API fails or returns an unusable payload."""


class OpenRouterCompletions:
    """Lightweight async wrapper around the OpenRouter chat endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        cfg = load_config()
        self.api_key: str = api_key or cfg.openrouter_api_key
        self.model: str = model or cfg.completion_model
        self.base_url: str = (base_url or cfg.openrouter_base_url).rstrip("/")
        self.timeout: float = timeout if timeout is not None else cfg.llm_timeout_seconds
        self.max_retries: int = max_retries if max_retries is not None else cfg.llm_max_retries

        self._url = f"{self.base_url}/chat/completions"
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Low-level HTTP call with retries
    # ------------------------------------------------------------------

    def _call_api(
        self, messages: List[Message], temperature: float, max_tokens: int
    ) -> str:
        """Blocking HTTP POST with exponential back-off on 429/5xx."""
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.post(
                    self._url,
                    headers=self._headers,
                    json=payload,
                    timeout=self.timeout,
                )
                if resp.status_code == 200:
                    data = resp.json()
                    try:
                        content = data["choices"][0]["message"]["content"]
                    except (KeyError, IndexError, TypeError) as exc:
                        raise CompletionError(f"Malformed completion payload: {exc}") from exc
                    return content or ""

                if resp.status_code in (429, 500, 502, 503, 504):
                    wait = 2 ** attempt
                    logger.warning(
                        "Completion API %s (attempt %d/%d), retrying in %ds",
                        resp.status_code, attempt + 1, self.max_retries, wait,
                    )
                    last_exc = CompletionError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                    time.sleep(wait)
                    continue

                raise CompletionError(f"HTTP {resp.status_code}: {resp.text[:500]}")

            except requests.RequestException as exc:
                wait = 2 ** attempt
                logger.warning(
                    "Completion request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.max_retries, exc, wait,
                )
                last_exc = exc
                time.sleep(wait)

        raise CompletionError(f"Failed after {self.max_retries} retries: {last_exc}")

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def complete(
        self,
        messages: List[Message],
        temperature: float = 0.2,
        max_tokens: int = 1000,
    ) -> str:
        """Return the assistant message text for *messages*."""
        if not self.api_key:
            raise CompletionError("No OpenRouter API key configured")
        return await asyncio.to_thread(self._call_api, messages, temperature, max_tokens)
