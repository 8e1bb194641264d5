"""Username/password admin accounts with per-sender sessions."""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import AuthError
from .fileio import atomic_write_json, read_json
from .messages import Clock, utc_iso

logger = logging.getLogger(__name__)

LOGIN_TIMEOUT = 5 * 60.0
MIN_USERNAME = 3
MIN_PASSWORD = 6
PBKDF2_ITERATIONS = 600_000


def hash_password(password: str, salt: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    """PBKDF2-HMAC-SHA256 of ``password`` with a hex-encoded salt."""
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), iterations)
    return digest.hex()


@dataclass
class User:
    password_hash: str
    salt: str
    created_at: float
    created_by: str = ""
    last_login: Optional[float] = None
    iterations: int = PBKDF2_ITERATIONS


@dataclass
class Session:
    username: str
    login_at: float
    expires_at: float


@dataclass
class _PendingLogin:
    step: str                      # "username" | "password"
    started: float
    username: Optional[str] = None


class AuthManager:
    """
    Admin accounts persisted to a JSON file.

    Login is a two-step conversation driven by :meth:`process_login`: the
    sender first sends a username, then a password. Sessions are keyed by
    sender id and expire after ``session_hours``.
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        session_hours: float = 24.0,
        hash_iterations: int = PBKDF2_ITERATIONS,
        clock: Optional[Clock] = None,
    ) -> None:
        self.path = Path(path)
        self.session_seconds = float(session_hours) * 3600.0
        self.hash_iterations = int(hash_iterations)
        self._clock = clock or time.time
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._pending: Dict[str, _PendingLogin] = {}
        self._lock = threading.RLock()

    # ----------------- persistence -----------------
    def load(self) -> None:
        with self._lock:
            if not self.path.exists():
                logger.info("No auth file at %s; creating one.", self.path)
                self.save()
                return
            try:
                data = read_json(self.path)
                users = {name: User(**u) for name, u in (data.get("users") or {}).items()}
                sessions = {sid: Session(**s) for sid, s in (data.get("sessions") or {}).items()}
            except (OSError, ValueError, TypeError, AttributeError) as e:
                logger.error("Auth file %s is unusable (%s); starting empty.", self.path, e)
                users, sessions = {}, {}
            now = self._clock()
            self.users = users
            self.sessions = {sid: s for sid, s in sessions.items() if s.expires_at > now}
            logger.info("Auth loaded: %d user(s), %d active session(s)", len(self.users), len(self.sessions))

    def save(self) -> None:
        with self._lock:
            try:
                atomic_write_json(self.path, {
                    "users": {n: asdict(u) for n, u in self.users.items()},
                    "sessions": {sid: asdict(s) for sid, s in self.sessions.items()},
                    "last_saved": utc_iso(self._clock()),
                })
            except OSError as e:
                logger.error("Failed to save auth data: %s", e)

    # ----------------- users -----------------
    def create_user(self, username: str, password: str, created_by: str = "") -> None:
        username = (username or "").strip().lower()
        # logins strip the typed password, so the stored one must match that
        password = (password or "").strip()
        if len(username) < MIN_USERNAME:
            raise AuthError(f"Username must have at least {MIN_USERNAME} characters")
        if len(password) < MIN_PASSWORD:
            raise AuthError(f"Password must have at least {MIN_PASSWORD} characters")
        with self._lock:
            if username in self.users:
                raise AuthError("User already exists")
            salt = secrets.token_hex(16)
            self.users[username] = User(
                password_hash=hash_password(password, salt, self.hash_iterations),
                salt=salt,
                created_at=self._clock(),
                created_by=created_by,
                iterations=self.hash_iterations,
            )
            self.save()
        logger.info("Admin user created: %s (by %s)", username, created_by or "-")

    def remove_user(self, username: str) -> None:
        username = (username or "").strip().lower()
        with self._lock:
            if username not in self.users:
                raise AuthError("User not found")
            del self.users[username]
            for sid in [sid for sid, s in self.sessions.items() if s.username == username]:
                del self.sessions[sid]
            self.save()
        logger.info("Admin user removed: %s", username)

    def list_users(self) -> List[Dict[str, Any]]:
        return [
            {
                "username": name,
                "created_at": utc_iso(u.created_at),
                "created_by": u.created_by,
                "last_login": utc_iso(u.last_login) if u.last_login else None,
            }
            for name, u in sorted(self.users.items())
        ]

    # ----------------- login flow -----------------
    def start_login(self, sender: str) -> None:
        self._pending[sender] = _PendingLogin(step="username", started=self._clock())

    def is_awaiting_login(self, sender: str) -> bool:
        pending = self._pending.get(sender)
        if pending is None:
            return False
        if self._clock() - pending.started > LOGIN_TIMEOUT:
            del self._pending[sender]
            return False
        return True

    def cancel_login(self, sender: str) -> bool:
        return self._pending.pop(sender, None) is not None

    def process_login(self, sender: str, text: str) -> str:
        """Consume one step of the login conversation and return the reply."""
        pending = self._pending.get(sender)
        if pending is None:
            raise AuthError("No login in progress. Send /login to start.")
        now = self._clock()
        if now - pending.started > LOGIN_TIMEOUT:
            del self._pending[sender]
            raise AuthError("Login expired. Send /login to try again.")

        if pending.step == "username":
            username = text.strip().lower()
            if username not in self.users:
                del self._pending[sender]
                raise AuthError("User not found.")
            self._pending[sender] = _PendingLogin(step="password", started=now, username=username)
            return "Now send the password:"

        username = pending.username or ""
        user = self.users.get(username)
        del self._pending[sender]
        if user is None or not hmac.compare_digest(
            user.password_hash, hash_password(text.strip(), user.salt, user.iterations)
        ):
            raise AuthError("Wrong password.")

        with self._lock:
            self.sessions[sender] = Session(username=username, login_at=now, expires_at=now + self.session_seconds)
            user.last_login = now
            self.save()
        logger.info("Login succeeded: %s (%s)", username, sender[-4:])
        hours = round(self.session_seconds / 3600)
        return f"Logged in as {username}. Session valid for {hours}h; admin commands are now available."

    def is_logged_in(self, sender: str) -> bool:
        session = self.sessions.get(sender)
        if session is None:
            return False
        if self._clock() > session.expires_at:
            with self._lock:
                self.sessions.pop(sender, None)
                self.save()
            return False
        return True

    def logout(self, sender: str) -> Optional[str]:
        with self._lock:
            session = self.sessions.pop(sender, None)
            if session is None:
                return None
            self.save()
        logger.info("Logout: %s (%s)", session.username, sender[-4:])
        return session.username

    def list_sessions(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            {
                "sender": sid,
                "username": s.username,
                "login_at": utc_iso(s.login_at),
                "expires_at": utc_iso(s.expires_at),
                "minutes_left": int((s.expires_at - now) // 60),
            }
            for sid, s in self.sessions.items()
            if s.expires_at > now
        ]

    def cleanup(self) -> int:
        """Drop expired sessions and stale login attempts."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in expired:
                del self.sessions[sid]
            for sender in [k for k, p in self._pending.items() if now - p.started > LOGIN_TIMEOUT]:
                del self._pending[sender]
            if expired:
                self.save()
        if expired:
            logger.info("Removed %d expired session(s)", len(expired))
        return len(expired)
