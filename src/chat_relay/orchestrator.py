"""Wires the store, the context cleaner and the LLM client together."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from .context import DEFAULT_CAP, auto_clean
from .messages import Clock, estimate_tokens
from .monitor import PerformanceMonitor
from .store import ConversationStore

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Hmm, I ran out of words there... could you ask again?"


class ChatBackend(Protocol):
    def complete(self, messages: Sequence[Dict[str, str]]) -> str: ...


class ChatOrchestrator:
    """Builds the prompt for one chat turn and records both sides of it.

    Retries and backoff belong to the backend; a backend error propagates
    unchanged after the user message has been recorded. With a
    ``monitor`` every backend call is timed, failed calls included.
    """

    def __init__(
        self,
        store: ConversationStore,
        llm: ChatBackend,
        *,
        system_prompt: str,
        history_cap: int = DEFAULT_CAP,
        monitor: Optional[PerformanceMonitor] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.monitor = monitor
        self.system_prompt = system_prompt.strip()
        self.history_cap = int(history_cap)
        self._clock = clock or time.time

    def system_message(self) -> Dict[str, str]:
        today = datetime.fromtimestamp(self._clock()).strftime("%A, %d %B %Y")
        return {"role": "system", "content": f"{self.system_prompt}\n\nCurrent date: {today}"}

    def build_prompt(self, chat_key: str) -> List[Dict[str, str]]:
        history = auto_clean(self.store.thread(chat_key), self.history_cap)
        return [self.system_message()] + [m.to_chat() for m in history]

    def handle(self, chat_key: str, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValueError("Message cannot be empty.")

        self.store.append(chat_key, "user", text)
        prompt = self.build_prompt(chat_key)
        logger.debug("Prompt for %s has %d message(s)", chat_key, len(prompt))

        reply = (self._complete(prompt) or "").strip()
        if not reply:
            logger.warning("Empty reply from LLM for %s", chat_key)
            return FALLBACK_REPLY

        self.store.append(chat_key, "assistant", reply)
        return reply

    def _complete(self, prompt: List[Dict[str, str]]) -> str:
        if self.monitor is None:
            return self.llm.complete(prompt)
        started = self._clock()
        try:
            reply = self.llm.complete(prompt)
        except Exception:
            self.monitor.record(self._clock() - started, kind="llm", success=False)
            raise
        self.monitor.record(self._clock() - started, kind="llm", success=bool(reply), tokens=estimate_tokens(reply or ""))
        return reply
