"""FastAPI application: chat endpoint plus the dashboard's REST API."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .activity import KINDS, ActivityLog
from .auth import AuthManager
from .backup import BackupManager
from .commands import CommandHandler
from .config import (
    LIVE_KEYS,
    Settings,
    apply_updates,
    load_settings,
    resolve_path,
    save_config,
    settings_to_dict,
    validate_updates,
)
from .diagnostics import SEVERITIES, ErrorLog
from .errors import AuthError, BackupError, ConfigError
from .llm import LLMClient
from .messages import ROLES
from .monitor import TIMEFRAMES, PerformanceMonitor, health_score
from .orchestrator import ChatBackend, ChatOrchestrator
from .rate_limit import RateLimiter
from .relay import IncomingMessage, Relay
from .scheduler import Scheduler
from .store import ConversationStore

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    chat_key: str = Field(default="default", min_length=1, description="Conversation namespace/key.")
    message: str = Field(..., min_length=1)
    sender: Optional[str] = Field(default=None, description="Sender id; defaults to the chat key.")
    is_group: bool = False
    mentioned: bool = False


class ChatResponse(BaseModel):
    reply: Optional[str]


class BackupRequest(BaseModel):
    description: str = Field(default="Manual backup", max_length=200)


class UserRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=200)
    created_by: str = Field(default="api", max_length=100)


# -----------------------------
# Service wiring
# -----------------------------
@dataclass
class Services:
    settings: Settings
    store: ConversationStore
    llm: Any
    rate_limiter: RateLimiter
    auth: AuthManager
    backups: BackupManager
    commands: CommandHandler
    orchestrator: ChatOrchestrator
    relay: Relay
    scheduler: Scheduler
    errors: ErrorLog
    monitor: PerformanceMonitor
    activity: ActivityLog
    started_at: float
    config_path: Optional[Path] = None


def build_services(
    settings: Settings,
    *,
    llm: Optional[ChatBackend] = None,
    store: Optional[ConversationStore] = None,
) -> Services:
    mem = settings.memory
    store = store or ConversationStore(
        mem.path,
        max_messages=mem.max_messages,
        max_bytes=mem.max_bytes,
        autosave_every=mem.autosave_every,
    )
    llm = llm or LLMClient.from_settings(settings.llm)
    rate_limiter = RateLimiter(settings.rate_limit.per_minute, settings.rate_limit.per_hour)
    auth = AuthManager(
        settings.auth.path,
        session_hours=settings.auth.session_hours,
        hash_iterations=settings.auth.hash_iterations,
    )
    logs = settings.logs
    errors = ErrorLog(logs.errors_dir, max_per_day=logs.max_errors_per_day)
    monitor = PerformanceMonitor(slow_request=logs.slow_request)
    activity = ActivityLog(logs.activity_path, max_entries=logs.max_activity)
    backups = BackupManager(store, settings.backup.directory, max_backups=settings.backup.max_backups)
    started_at = time.time()
    commands = CommandHandler(
        store,
        rate_limiter,
        auth,
        backups,
        admins=settings.bot.admins,
        llm_info=getattr(llm, "info", None),
        errors=errors,
        monitor=monitor,
        started_at=started_at,
    )
    orchestrator = ChatOrchestrator(
        store,
        llm,
        system_prompt=settings.bot.system_prompt,
        history_cap=mem.history_cap,
        monitor=monitor,
    )
    relay = Relay(
        orchestrator,
        commands,
        rate_limiter,
        auth,
        duplicate_window=settings.bot.duplicate_window,
        group_reply_chance=settings.bot.group_reply_chance,
        errors=errors,
        activity=activity,
    )

    scheduler = Scheduler()
    scheduler.add("save-memory", mem.save_interval, store.save)
    scheduler.add("backup", settings.backup.interval, lambda: backups.create("Automatic backup"))
    scheduler.add("prune-inactive", 24 * 3600, lambda: store.prune_inactive(mem.inactive_days))
    scheduler.add("auth-cleanup", 3600, auth.cleanup)
    scheduler.add("rate-limit-cleanup", 3600, rate_limiter.cleanup)
    scheduler.add("duplicate-cleanup", 60, relay.forget_seen)
    scheduler.add("activity-flush", mem.save_interval, activity.flush)
    scheduler.add("monitor-cleanup", 3600, monitor.cleanup)
    scheduler.add("error-log-cleanup", 24 * 3600, lambda: errors.cleanup_old(logs.error_retention_days))

    return Services(
        settings=settings,
        store=store,
        llm=llm,
        rate_limiter=rate_limiter,
        auth=auth,
        backups=backups,
        commands=commands,
        orchestrator=orchestrator,
        relay=relay,
        scheduler=scheduler,
        errors=errors,
        monitor=monitor,
        activity=activity,
        started_at=started_at,
    )


def shutdown(svc: Services) -> None:
    """Flush everything that lives in memory; called on process exit."""
    logger.info("Shutting down: flushing memory and taking a backup")
    svc.store.save()
    svc.auth.save()
    svc.activity.flush()
    try:
        svc.backups.create("Shutdown backup")
    except OSError as e:
        logger.error("Shutdown backup failed: %s", e)


def apply_live_settings(svc: Services) -> None:
    """Push runtime-tunable settings into the running services."""
    s = svc.settings
    sampling = getattr(svc.llm, "sampling", None)
    if sampling is not None:
        sampling.max_tokens = s.llm.max_tokens
        sampling.temperature = s.llm.temperature
        sampling.top_p = s.llm.top_p
    svc.rate_limiter.per_minute = s.rate_limit.per_minute
    svc.rate_limiter.per_hour = s.rate_limit.per_hour
    svc.orchestrator.history_cap = s.memory.history_cap
    svc.orchestrator.system_prompt = s.bot.system_prompt.strip()
    svc.relay.duplicate_window = s.bot.duplicate_window
    svc.relay.group_reply_chance = s.bot.group_reply_chance


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    llm: Optional[ChatBackend] = None,
    store: Optional[ConversationStore] = None,
) -> FastAPI:
    explicit = settings is not None
    settings = settings or load_settings(config_path)
    svc = build_services(settings, llm=llm, store=store)
    # an injected Settings object is only persisted to an explicit path
    if config_path is not None or not explicit:
        svc.config_path = resolve_path(config_path)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        result = svc.store.load()
        if not result.ok:
            logger.warning("Memory reset on load (%s): %s", result.error, result.detail)
        svc.auth.load()
        svc.activity.load()
        task = asyncio.create_task(svc.scheduler.run_forever())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            shutdown(svc)

    app = FastAPI(title="Chat Relay", version="1.0.0", lifespan=lifespan)
    app.state.services = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BackupError)
    async def _backup_error(request: Request, exc: BackupError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(ConfigError)
    async def _config_error(request: Request, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "errors": exc.problems})

    # ---------------- chat ----------------
    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "memory_file": str(svc.store.path)}

    @app.post("/chat", response_model=ChatResponse)
    def chat(req: ChatRequest) -> ChatResponse:
        msg = req.message.strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        reply = svc.relay.on_message(
            IncomingMessage(
                chat_key=req.chat_key,
                sender=req.sender or req.chat_key,
                body=msg,
                is_group=req.is_group,
                mentioned=req.mentioned,
            )
        )
        return ChatResponse(reply=reply)

    # ---------------- status ----------------
    @app.get("/api/status")
    def status() -> Dict[str, Any]:
        info = getattr(svc.llm, "info", None)
        return {
            "success": True,
            "data": {
                "uptime": int(time.time() - svc.started_at),
                "memory": svc.store.stats(),
                "rate_limit": svc.rate_limiter.stats(),
                "model": info() if callable(info) else {},
                "sessions": len(svc.auth.list_sessions()),
                "scheduler": [
                    {"name": t.name, "interval": t.interval, "runs": t.runs, "failures": t.failures}
                    for t in svc.scheduler.tasks
                ],
                "system": {"platform": platform.platform(), "python": platform.python_version(), "pid": os.getpid()},
            },
        }

    @app.post("/api/test-llm")
    def test_llm() -> Dict[str, Any]:
        check = getattr(svc.llm, "test_connection", None)
        if not callable(check):
            raise HTTPException(status_code=501, detail="Backend has no connection test.")
        return check()

    # ---------------- memory ----------------
    @app.get("/api/memory")
    def memory_stats() -> Dict[str, Any]:
        return {"success": True, "data": svc.store.stats(), "chats": svc.store.chat_keys()}

    @app.get("/api/memory/{chat_key}")
    def memory_read(
        chat_key: str,
        limit: int = Query(20),
        role: Optional[str] = Query(None),
        since: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        if role is not None and role not in ROLES:
            raise HTTPException(status_code=400, detail=f"Unknown role: {role}")
        msgs = svc.store.read(chat_key, limit, role=role, since=since)
        return {"success": True, "data": [m.to_dict() for m in msgs]}

    @app.delete("/api/memory/{chat_key}")
    def memory_clear(chat_key: str) -> Dict[str, Any]:
        return {"success": True, "removed": svc.store.clear(chat_key)}

    @app.delete("/api/memory")
    def memory_clear_all() -> Dict[str, Any]:
        return {"success": True, "removed": svc.store.clear_all()}

    @app.post("/api/memory/cleanup")
    def memory_cleanup(days: float = Query(7.0, gt=0)) -> Dict[str, Any]:
        return {"success": True, "removed": svc.store.prune_inactive(days)}

    # ---------------- backups ----------------
    @app.get("/api/backups")
    def backups_list() -> Dict[str, Any]:
        return {"success": True, "data": svc.backups.list()}

    @app.post("/api/backups")
    def backups_create(req: BackupRequest) -> Dict[str, Any]:
        return {"success": True, "id": svc.backups.create(req.description)}

    @app.post("/api/backups/{backup_id}/restore")
    def backups_restore(backup_id: str) -> Dict[str, Any]:
        return {"success": True, "data": svc.backups.restore(backup_id)}

    @app.delete("/api/backups/{backup_id}")
    def backups_delete(backup_id: str) -> Dict[str, Any]:
        return {"success": svc.backups.delete(backup_id)}

    # ---------------- users ----------------
    @app.get("/api/users")
    def users_list() -> Dict[str, Any]:
        return {"success": True, "data": svc.auth.list_users(), "sessions": svc.auth.list_sessions()}

    @app.post("/api/users", status_code=201)
    def users_create(req: UserRequest) -> Dict[str, Any]:
        svc.auth.create_user(req.username, req.password, created_by=req.created_by)
        return {"success": True, "username": req.username.strip().lower()}

    @app.delete("/api/users/{username}")
    def users_delete(username: str) -> Dict[str, Any]:
        svc.auth.remove_user(username)
        return {"success": True}

    # ---------------- rate limits ----------------
    @app.get("/api/ratelimit")
    def ratelimit_stats() -> Dict[str, Any]:
        return {"success": True, "data": svc.rate_limiter.stats()}

    @app.delete("/api/ratelimit/{user}")
    def ratelimit_reset(user: str) -> Dict[str, Any]:
        if user == "all":
            return {"success": True, "reset": svc.rate_limiter.reset_all()}
        return {"success": svc.rate_limiter.reset(user)}

    # ---------------- monitoring ----------------
    @app.get("/api/stats")
    def stats(timeframe: str = Query("all")) -> Dict[str, Any]:
        if timeframe not in TIMEFRAMES:
            raise HTTPException(status_code=400, detail=f"Unknown timeframe: {timeframe}")
        perf = svc.monitor.stats(timeframe)
        errors = svc.errors.stats()
        return {
            "success": True,
            "data": {
                "overview": {
                    "health_score": health_score(perf, errors),
                    "uptime": int(time.time() - svc.started_at),
                    "total_requests": perf["total_requests"],
                    "success_rate": perf["success_rate"],
                    "avg_time": perf["avg_time"],
                },
                "memory": svc.store.stats(),
                "performance": perf,
                "suggestions": svc.monitor.suggestions(),
                "rate_limit": svc.rate_limiter.stats(),
                "errors": errors,
                "system": {"platform": platform.platform(), "python": platform.python_version(), "pid": os.getpid()},
            },
        }

    @app.get("/api/activity")
    def activity(
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=100),
        kind: Optional[str] = Query(None, alias="type"),
        since: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        if kind is not None and kind not in KINDS:
            raise HTTPException(status_code=400, detail=f"Unknown activity type: {kind}")
        return {"success": True, "data": svc.activity.entries(page=page, limit=limit, kind=kind, since=since)}

    @app.get("/api/logs")
    def logs(
        limit: int = Query(100, ge=1, le=500),
        severity: Optional[str] = Query(None),
        category: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        if severity is not None and severity not in SEVERITIES:
            raise HTTPException(status_code=400, detail=f"Unknown severity: {severity}")
        return {
            "success": True,
            "data": svc.errors.recent(limit, severity=severity, category=category),
            "stats": svc.errors.stats(),
        }

    @app.delete("/api/logs")
    def logs_clear() -> Dict[str, Any]:
        return {"success": True, "cleared": svc.errors.clear()}

    # ---------------- config ----------------
    @app.get("/api/config")
    def config_read(secure: bool = Query(True)) -> Dict[str, Any]:
        return {
            "success": True,
            "data": settings_to_dict(svc.settings, secure=secure),
            "path": str(svc.config_path) if svc.config_path else None,
        }

    @app.post("/api/config")
    def config_update(updates: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        clean = validate_updates(svc.settings, updates)
        changed = apply_updates(svc.settings, clean)
        apply_live_settings(svc)
        backup = None
        if svc.config_path is not None and clean:
            try:
                backup = save_config(svc.config_path, clean)
            except (OSError, RuntimeError) as e:
                logger.error("Could not persist config to %s: %s", svc.config_path, e)
                raise HTTPException(status_code=500, detail=f"Config applied but not saved: {e}")
        restart = sorted(k for k in changed if tuple(k.split(".", 1)) not in LIVE_KEYS)
        logger.info("Config updated: %s", ", ".join(changed) or "no changes")
        return {
            "success": True,
            "updated": changed,
            "restart_required": restart,
            "persisted": svc.config_path is not None,
            "backup": str(backup) if backup else None,
        }

    return app
