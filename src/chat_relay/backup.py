"""Point-in-time JSON backups of the conversation store."""
from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import BackupError, StoreError
from .fileio import atomic_write_json, ensure_dir, read_json
from .messages import Clock, utc_iso
from .store import ConversationStore

logger = logging.getLogger(__name__)

VERSION = "1.0"
PREFIX = "backup-"
_VALID_ID = re.compile(r"^backup-[\w.\-]+$")


def format_bytes(n: int, decimals: int = 2) -> str:
    if n <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    i = 0
    size = float(n)
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{round(size, decimals):g} {units[i]}"


class BackupManager:
    """
    Writes ``backup-<timestamp>.json`` files holding a store export.

    File layout::

        {"id", "description", "created_at", "version", "memory": <store export>}

    Only the newest ``max_backups`` files are kept.
    """

    def __init__(
        self,
        store: ConversationStore,
        directory: Union[str, Path],
        *,
        max_backups: int = 10,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.dir = Path(directory)
        self.max_backups = max(1, int(max_backups))
        self._clock = clock or time.time

    def _path(self, backup_id: str) -> Path:
        if not _VALID_ID.match(backup_id or ""):
            raise BackupError(f"Invalid backup id: {backup_id!r}")
        return self.dir / f"{backup_id}.json"

    def _new_id(self) -> str:
        stamp = re.sub(r"[:.+]", "-", utc_iso(self._clock()))
        backup_id = f"{PREFIX}{stamp}"
        n = 1
        while (self.dir / f"{backup_id}.json").exists():
            n += 1
            backup_id = f"{PREFIX}{stamp}-{n}"
        return backup_id

    # ----------------- public API -----------------
    def create(self, description: str = "Automatic backup") -> str:
        ensure_dir(self.dir)
        backup_id = self._new_id()
        export = self.store.export()
        atomic_write_json(
            self._path(backup_id),
            {
                "id": backup_id,
                "description": description,
                "created_at": utc_iso(self._clock()),
                "version": VERSION,
                "memory": export,
            },
        )
        logger.info(
            "Backup created: %s (%d chats, %d messages)",
            backup_id, export["stats"]["conversations"], export["stats"]["messages"],
        )
        self._prune()
        return backup_id

    def list(self) -> List[Dict[str, Any]]:
        """Backups newest first; unreadable files are skipped."""
        if not self.dir.exists():
            return []
        out: List[Dict[str, Any]] = []
        for p in self.dir.glob(f"{PREFIX}*.json"):
            try:
                data = read_json(p)
                stats = (data.get("memory") or {}).get("stats") or {}
                out.append({
                    "id": data.get("id") or p.stem,
                    "description": data.get("description") or "",
                    "created_at": data.get("created_at") or "",
                    "size": format_bytes(p.stat().st_size),
                    "chats": stats.get("conversations", 0),
                    "messages": stats.get("messages", 0),
                    "path": str(p),
                })
            except (OSError, ValueError, AttributeError) as e:
                logger.warning("Skipping corrupt backup %s: %s", p.name, e)
        out.sort(key=lambda b: (b["created_at"], b["id"]), reverse=True)
        return out

    def info(self, backup_id: str) -> Dict[str, Any]:
        path = self._path(backup_id)
        if not path.exists():
            raise BackupError(f"Backup '{backup_id}' not found")
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            raise BackupError(f"Backup '{backup_id}' is unreadable: {e}") from e
        if not isinstance(data, dict):
            raise BackupError(f"Backup '{backup_id}' is not a JSON object")
        return data

    def restore(self, backup_id: str) -> Dict[str, Any]:
        """Import a backup, saving the current state as a new backup first."""
        data = self.info(backup_id)
        memory = data.get("memory")
        if not memory:
            raise BackupError(f"Backup '{backup_id}' holds no memory data")

        safety = self.create("Before restore")
        logger.info("Current state saved as %s", safety)
        try:
            result = self.store.import_data(memory)
        except StoreError as e:
            raise BackupError(str(e)) from e
        result["safety_backup"] = safety
        logger.info("Backup restored: %s", backup_id)
        return result

    def delete(self, backup_id: str) -> bool:
        path = self._path(backup_id)
        if not path.exists():
            raise BackupError(f"Backup '{backup_id}' not found")
        path.unlink()
        logger.info("Backup removed: %s", backup_id)
        return True

    def validate(self, backup_id: str) -> Dict[str, Any]:
        try:
            data = self.info(backup_id)
        except BackupError as e:
            return {"is_valid": False, "error": str(e)}
        memory = data.get("memory")
        memory = memory if isinstance(memory, dict) else {}
        stats = memory.get("stats")
        stats = stats if isinstance(stats, dict) else {}
        checks = {
            "has_memory": bool(memory),
            "has_stats": bool(stats),
            "has_data": "data" in memory,
            "valid_structure": isinstance(memory.get("data"), dict),
            "chat_count": stats.get("conversations", 0),
            "message_count": stats.get("messages", 0),
        }
        valid = checks["has_memory"] and checks["has_stats"] and checks["has_data"] and checks["valid_structure"]
        return {
            "is_valid": valid,
            "checks": checks,
            "summary": f"{checks['chat_count']} chats, {checks['message_count']} messages",
        }

    def _prune(self) -> int:
        removed = 0
        for b in self.list()[self.max_backups:]:
            try:
                Path(b["path"]).unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove old backup %s: %s", b["id"], e)
        if removed:
            logger.info("Backup cleanup: %d old file(s) removed", removed)
        return removed
