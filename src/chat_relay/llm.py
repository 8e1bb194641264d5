"""Client for a locally hosted, OpenAI-compatible chat-completions endpoint."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import httpx

from .config import LLMSettings
from .errors import LLMError

logger = logging.getLogger(__name__)

UA = "ChatRelay/1.0"
MAX_CONTENT_CHARS = 2000
BASE_DELAY = 1.0
MAX_DELAY = 10.0


def retry_delay(attempt: int) -> float:
    """Exponential backoff: 1s, 2s, 4s, ... capped at 10s."""
    return min(BASE_DELAY * 2 ** (attempt - 1), MAX_DELAY)


def _extract_content(data: Any) -> str:
    if not data:
        raise LLMError("Empty response from API")
    if isinstance(data, dict) and data.get("error"):
        err = data["error"]
        msg = err.get("message") if isinstance(err, dict) else err
        raise LLMError(f"API error: {msg}")
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices:
        raise LLMError("Invalid response format: no choices")
    first = choices[0]
    if not isinstance(first, dict):
        raise LLMError("Invalid response format: choice is not an object")
    message = first.get("message")
    if not isinstance(message, dict):
        raise LLMError("Invalid response format: no message")
    content = message.get("content")
    if not content:
        raise LLMError("Invalid response format: no content")
    return str(content).strip()


@dataclass
class Sampling:
    max_tokens: int = 800
    temperature: float = 0.75
    top_p: float = 0.9


class LLMClient:
    """
    Thin, resilient wrapper around an OpenAI-style ``/chat/completions`` API
    (LM Studio, llama.cpp server, Ollama's OpenAI shim, ...).

    Usage:
        client = LLMClient("http://localhost:1234/v1/chat/completions", "my-model")
        text = client.complete([{"role": "user", "content": "hi"}])

    Notes:
        - Network errors, timeouts and 5xx answers are retried with
          exponential backoff; other 4xx answers fail immediately.
        - ``transport`` and ``sleep`` exist so tests can run offline.
    """

    def __init__(
        self,
        endpoint: str,
        model: str,
        *,
        max_tokens: int = 800,
        temperature: float = 0.75,
        top_p: float = 0.9,
        timeout: float = 120.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.sampling = Sampling(max_tokens=max_tokens, temperature=temperature, top_p=top_p)
        self.timeout = float(timeout)
        self.max_retries = max(1, int(max_retries))
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            headers={"User-Agent": UA, "Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, s: LLMSettings, **kwargs: Any) -> "LLMClient":
        return cls(
            s.endpoint,
            s.model,
            max_tokens=s.max_tokens,
            temperature=s.temperature,
            top_p=s.top_p,
            timeout=s.timeout,
            max_retries=s.max_retries,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    # ----------------------------
    # Public API
    # ----------------------------
    def complete(self, messages: Sequence[Dict[str, str]]) -> str:
        """Send ``[{role, content}, ...]`` and return the assistant text."""
        if not messages:
            raise LLMError("Messages cannot be empty")

        body = {
            "model": self.model,
            "messages": [
                {"role": m["role"], "content": str(m["content"])[:MAX_CONTENT_CHARS]} for m in messages
            ],
            "max_tokens": self.sampling.max_tokens,
            "temperature": self.sampling.temperature,
            "top_p": self.sampling.top_p,
            "stream": False,
        }

        last: Optional[LLMError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info("Sending %d message(s) to LLM (attempt %d/%d)", len(body["messages"]), attempt, self.max_retries)
                return self._post(body)
            except LLMError as e:
                logger.warning("LLM attempt %d failed: %s", attempt, e)
                if not e.retryable:
                    raise
                last = e
            if attempt < self.max_retries:
                delay = retry_delay(attempt)
                logger.debug("Waiting %.1fs before retrying", delay)
                self._sleep(delay)

        logger.error("All %d LLM attempts failed", self.max_retries)
        raise LLMError(f"LLM request failed: {last}", status=last.status if last else None)

    def test_connection(self) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": "You are a connectivity test."},
            {"role": "user", "content": 'Reply with just "OK" if you are working.'},
        ]
        try:
            reply = self.complete(messages)
        except LLMError as e:
            logger.error("LLM connection test failed: %s", e)
            return {"success": False, "error": str(e), "working": False}
        working = "ok" in reply.lower()
        logger.info("LLM connection test: %s", "OK" if working else "unexpected reply")
        return {"success": True, "response": reply, "working": working}

    def info(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "model": self.model,
            "max_tokens": self.sampling.max_tokens,
            "temperature": self.sampling.temperature,
            "top_p": self.sampling.top_p,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
        }

    # ----------------------------
    # Internals
    # ----------------------------
    def _post(self, body: Dict[str, Any]) -> str:
        try:
            resp = self._client.post(self.endpoint, json=body)
        except httpx.TimeoutException as e:
            raise LLMError(f"Timeout after {self.timeout:.0f}s: model may be overloaded", retryable=True) from e
        except httpx.RequestError as e:
            raise LLMError(f"Connection error: {e}", retryable=True) from e

        if resp.status_code >= 400:
            raise LLMError(
                f"HTTP {resp.status_code}: {resp.text[:500]}",
                status=resp.status_code,
                retryable=resp.status_code >= 500,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError(f"Malformed JSON from API: {e}") from e

        content = _extract_content(data)
        usage = data.get("usage") or {}
        if usage:
            logger.debug(
                "Tokens: %s prompt + %s completion = %s total",
                usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0), usage.get("total_tokens", 0),
            )
        return content
