"""Transport-agnostic message handling: who gets an answer, and how."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .activity import ActivityLog
from .auth import AuthManager
from .commands import CommandHandler
from .diagnostics import ErrorLog
from .errors import AuthError, LLMError
from .messages import Clock
from .orchestrator import ChatOrchestrator
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

ERROR_REPLY = "Oops, something went wrong on my side. Could you try again?"


@dataclass
class IncomingMessage:
    """One inbound chat message, as any transport would hand it over."""
    chat_key: str
    sender: str
    body: str
    is_group: bool = False
    mentioned: bool = False


class Relay:
    """
    Decides whether and how to answer an incoming message.

    Order of checks: duplicate suppression, rate limiting, pending login,
    slash commands, group-chat reply policy, then the LLM round-trip.
    Returns the reply text, or ``None`` to stay silent. Backend failures
    go to ``errors`` and every accepted message, command, mention and
    reply goes to ``activity`` when those are given.
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        commands: CommandHandler,
        rate_limiter: RateLimiter,
        auth: AuthManager,
        *,
        duplicate_window: float = 5.0,
        group_reply_chance: float = 0.25,
        errors: Optional[ErrorLog] = None,
        activity: Optional[ActivityLog] = None,
        clock: Optional[Clock] = None,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.commands = commands
        self.rate_limiter = rate_limiter
        self.auth = auth
        self.duplicate_window = float(duplicate_window)
        self.group_reply_chance = float(group_reply_chance)
        self.errors = errors
        self.activity = activity
        self._clock = clock or time.time
        self._rng = rng or random.random
        self._seen: Dict[Tuple[str, str, str], float] = {}
        self._seen_lock = threading.Lock()

    def _is_duplicate(self, msg: IncomingMessage) -> bool:
        now = self._clock()
        key = (msg.chat_key, msg.sender, msg.body)
        with self._seen_lock:
            last = self._seen.get(key)
            self._seen[key] = now
        return last is not None and now - last < self.duplicate_window

    def forget_seen(self) -> int:
        """Drop duplicate-tracking entries older than the window."""
        now = self._clock()
        with self._seen_lock:
            stale = [k for k, t in self._seen.items() if now - t > self.duplicate_window]
            for k in stale:
                del self._seen[k]
        return len(stale)

    def on_message(self, msg: IncomingMessage) -> Optional[str]:
        body = (msg.body or "").strip()
        if not body:
            return None
        if self._is_duplicate(msg):
            logger.debug("Duplicate message from %s ignored", msg.sender[-4:])
            return None
        if self.rate_limiter.is_limited(msg.sender):
            logger.warning("Rate limit reached for %s", msg.sender[-4:])
            return None

        if self.auth.is_awaiting_login(msg.sender) and not body.startswith("/"):
            try:
                return self.auth.process_login(msg.sender, body)
            except AuthError as e:
                return str(e)

        if body.startswith("/"):
            self._log("command", msg, command=body.split()[0].lower())
            return self.commands.handle(msg.sender, msg.chat_key, body)

        self._log("message", msg, body=body[:100], group=msg.is_group)
        if msg.is_group and msg.mentioned:
            self._log("mention", msg)
        if msg.is_group and not msg.mentioned and self._rng() >= self.group_reply_chance:
            return None

        self.rate_limiter.hit(msg.sender)
        logger.info("New message from %s in %s", msg.sender[-4:], msg.chat_key)
        try:
            reply = self.orchestrator.handle(msg.chat_key, body)
        except LLMError as e:
            logger.error("LLM failed for %s: %s", msg.chat_key, e)
            if self.errors is not None:
                self.errors.record(e, {
                    "stage": "message_processing",
                    "chat_key": msg.chat_key,
                    "sender": msg.sender[-4:],
                    "body": body[:100],
                })
            return ERROR_REPLY
        self._log("reply", msg, length=len(reply))
        return reply

    def _log(self, kind: str, msg: IncomingMessage, **details: object) -> None:
        if self.activity is not None:
            self.activity.record(kind, chat_key=msg.chat_key, sender=msg.sender, **details)
