"""Slash commands typed into the chat (``/help``, ``/status``, ...)."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .auth import AuthManager
from .backup import BackupManager
from .diagnostics import ErrorLog
from .errors import AuthError, BackupError
from .monitor import PerformanceMonitor
from .rate_limit import RateLimiter
from .store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class CommandContext:
    sender: str
    chat_key: str
    args: List[str]
    is_admin: bool


@dataclass
class Command:
    name: str
    description: str
    handler: Callable[[CommandContext], str]
    admin: bool = False
    usage: str = ""


class CommandHandler:
    """
    Parses ``/name arg ...`` and dispatches to a registered command.

    Admins are the configured sender ids plus anyone with a live login
    session. Non-admins only see user commands.
    """

    def __init__(
        self,
        store: ConversationStore,
        rate_limiter: RateLimiter,
        auth: AuthManager,
        backups: BackupManager,
        *,
        admins: Iterable[str] = (),
        llm_info: Optional[Callable[[], Dict]] = None,
        errors: Optional[ErrorLog] = None,
        monitor: Optional[PerformanceMonitor] = None,
        started_at: Optional[float] = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.auth = auth
        self.backups = backups
        self.admins = {a.strip() for a in admins if a and a.strip()}
        self._llm_info = llm_info or (lambda: {})
        self.errors = errors
        self.monitor = monitor
        self._started = started_at or time.time()
        self.commands: Dict[str, Command] = {}
        self._register_defaults()

    # ----------------- registry -----------------
    def register(self, name: str, description: str, handler: Callable[[CommandContext], str], *, admin: bool = False, usage: str = "") -> None:
        self.commands[name] = Command(name, description, handler, admin=admin, usage=usage)

    def _register_defaults(self) -> None:
        r = self.register
        r("/help", "List available commands", self._help)
        r("/ping", "Check the bot is alive", lambda ctx: "pong")
        r("/limits", "Show your rate limits", self._limits)
        r("/login", "Start an admin login", self._login)
        r("/logout", "End your admin session", self._logout)
        r("/clear", "Forget this chat's history", self._clear)
        r("/status", "System status", self._status, admin=True)
        r("/memory", "Memory statistics", self._memory, admin=True)
        r("/clearall", "Forget every chat", self._clearall, admin=True)
        r("/cleanup", "Remove chats inactive for N days", self._cleanup, admin=True, usage="[days]")
        r("/resetrate", "Reset rate limits", self._resetrate, admin=True, usage="<sender|all>")
        r("/backup", "Create a backup now", self._backup, admin=True)
        r("/backups", "List backups", self._backups, admin=True)
        r("/restore", "Restore a backup", self._restore, admin=True, usage="<id>")
        r("/users", "List admin users and sessions", self._users, admin=True)
        r("/adduser", "Create an admin user", self._adduser, admin=True, usage="<username> <password>")
        r("/deluser", "Remove an admin user", self._deluser, admin=True, usage="<username>")
        if self.errors is not None:
            r("/errors", "Show recent errors", self._errors, admin=True, usage="[n]")
            r("/errorstats", "Error statistics", self._errorstats, admin=True)
        if self.monitor is not None:
            r("/performance", "LLM response times", self._performance, admin=True)

    def is_admin(self, sender: str) -> bool:
        return sender in self.admins or self.auth.is_logged_in(sender)

    # ----------------- dispatch -----------------
    def handle(self, sender: str, chat_key: str, text: str) -> str:
        parts = text.strip().split()
        if not parts:
            return "Empty command. Send /help."
        name, args = parts[0].lower(), parts[1:]
        cmd = self.commands.get(name)
        if cmd is None:
            return f"Unknown command {name}. Send /help."

        admin = self.is_admin(sender)
        if cmd.admin and not admin:
            return f"{name} requires admin access. Send /login first."

        logger.info("Command %s from %s", name, sender[-4:])
        try:
            return cmd.handler(CommandContext(sender=sender, chat_key=chat_key, args=args, is_admin=admin))
        except (AuthError, BackupError) as e:
            return f"Error: {e}"

    # ----------------- user commands -----------------
    def _help(self, ctx: CommandContext) -> str:
        lines = ["Commands:"]
        for cmd in self.commands.values():
            if cmd.admin and not ctx.is_admin:
                continue
            usage = f" {cmd.usage}" if cmd.usage else ""
            lines.append(f"{cmd.name}{usage} - {cmd.description}")
        return "\n".join(lines)

    def _limits(self, ctx: CommandContext) -> str:
        s = self.rate_limiter.user_stats(ctx.sender)
        return (
            f"This minute: {s['requests_this_minute']}/{s['limit_per_minute']}\n"
            f"This hour: {s['requests_this_hour']}/{s['limit_per_hour']}"
        )

    def _login(self, ctx: CommandContext) -> str:
        if self.auth.is_logged_in(ctx.sender):
            return "You are already logged in."
        self.auth.start_login(ctx.sender)
        return "Send your username:"

    def _logout(self, ctx: CommandContext) -> str:
        username = self.auth.logout(ctx.sender)
        return f"Logged out ({username})." if username else "You are not logged in."

    def _clear(self, ctx: CommandContext) -> str:
        n = self.store.clear(ctx.chat_key)
        return f"Conversation cleared ({n} messages)."

    # ----------------- admin commands -----------------
    def _status(self, ctx: CommandContext) -> str:
        mem = self.store.stats()
        rate = self.rate_limiter.stats()
        llm = self._llm_info()
        uptime = int(time.time() - self._started)
        return (
            f"Uptime: {uptime // 3600}h {uptime % 3600 // 60}m\n"
            f"Chats: {mem['conversations']} / messages: {mem['messages']}\n"
            f"Active senders (1h): {rate['active_users_hour']}\n"
            f"Model: {llm.get('model', '?')} at {llm.get('endpoint', '?')}"
        )

    def _memory(self, ctx: CommandContext) -> str:
        s = self.store.stats()
        return (
            f"Chats: {s['conversations']}\n"
            f"Messages: {s['messages']} (~{s['tokens']} tokens)\n"
            f"Size: {s['bytes'] / 1024:.1f} KB\n"
            f"Largest chat: {s['largest'] or '-'}"
        )

    def _clearall(self, ctx: CommandContext) -> str:
        removed = self.store.clear_all()
        return f"Memory cleared: {removed['conversations']} chats, {removed['messages']} messages."

    def _cleanup(self, ctx: CommandContext) -> str:
        try:
            days = float(ctx.args[0]) if ctx.args else 7.0
        except ValueError:
            return "Usage: /cleanup [days]"
        removed = self.store.prune_inactive(days)
        return f"Removed {removed['conversations']} inactive chats ({removed['messages']} messages)."

    def _resetrate(self, ctx: CommandContext) -> str:
        if not ctx.args:
            return "Usage: /resetrate <sender|all>"
        target = ctx.args[0]
        if target == "all":
            return f"Rate limits reset for {self.rate_limiter.reset_all()} senders."
        return "Rate limit reset." if self.rate_limiter.reset(target) else "No rate limit data for that sender."

    def _backup(self, ctx: CommandContext) -> str:
        return f"Backup created: {self.backups.create('Manual backup')}"

    def _backups(self, ctx: CommandContext) -> str:
        items = self.backups.list()
        if not items:
            return "No backups yet."
        lines = [f"{b['id']} - {b['chats']} chats, {b['messages']} msgs, {b['size']}" for b in items[:10]]
        return "Backups:\n" + "\n".join(lines)

    def _restore(self, ctx: CommandContext) -> str:
        if not ctx.args:
            return "Usage: /restore <id>"
        result = self.backups.restore(ctx.args[0])
        after = result["after"]
        return f"Restored {ctx.args[0]}: {after['conversations']} chats, {after['messages']} messages."

    def _users(self, ctx: CommandContext) -> str:
        users = self.auth.list_users()
        sessions = self.auth.list_sessions()
        lines = [f"Users ({len(users)}):"] + [f"- {u['username']}" for u in users]
        lines.append(f"Active sessions: {len(sessions)}")
        return "\n".join(lines)

    def _adduser(self, ctx: CommandContext) -> str:
        if len(ctx.args) < 2:
            return "Usage: /adduser <username> <password>"
        self.auth.create_user(ctx.args[0], ctx.args[1], created_by=ctx.sender)
        return f"User {ctx.args[0].lower()} created."

    def _deluser(self, ctx: CommandContext) -> str:
        if not ctx.args:
            return "Usage: /deluser <username>"
        self.auth.remove_user(ctx.args[0])
        return f"User {ctx.args[0].lower()} removed."

    def _errors(self, ctx: CommandContext) -> str:
        try:
            n = int(ctx.args[0]) if ctx.args else 5
        except ValueError:
            return "Usage: /errors [n]"
        items = self.errors.recent(max(1, min(n, 20)))
        if not items:
            return "No errors recorded."
        lines = [f"Last {len(items)} error(s):"]
        for e in items:
            lines.append(f"- {e['timestamp'][11:19]} [{e['category']}/{e['severity']}] {e['message'][:80]}")
            if e["suggested_fixes"]:
                lines.append(f"  fix: {e['suggested_fixes'][0]}")
        return "\n".join(lines)

    def _errorstats(self, ctx: CommandContext) -> str:
        s = self.errors.stats()
        top = s["most_common"]
        lines = [
            f"Total errors: {s['total_errors']}",
            f"Recent: {s['recent_count']} (high severity: {s['critical_count']})",
            f"Most common: {top['error']} x{top['count']}" if top else "Most common: -",
        ]
        for category, count in sorted(s["by_category"].items(), key=lambda kv: -kv[1]):
            lines.append(f"  {category}: {count}")
        return "\n".join(lines)

    def _performance(self, ctx: CommandContext) -> str:
        s = self.monitor.stats()
        if not s["total_requests"]:
            return "No LLM requests timed yet."
        lines = [
            f"Requests: {s['total_requests']} (success {s['success_rate']:.0f}%)",
            f"Average: {s['avg_time']:.1f}s / median {s['median_time']:.1f}s",
            f"Fastest: {s['min_time']:.1f}s / slowest {s['max_time']:.1f}s",
            f"Throughput: {s['throughput']:.2f} req/min",
        ]
        if s["trends"]:
            lines.append(f"Trend: {s['trends']['direction']} ({s['trends']['change_percent']:+.0f}%)")
        for tip in self.monitor.suggestions():
            lines.append(f"[{tip['priority']}] {tip['issue']}: {tip['suggestion']}")
        return "\n".join(lines)
