"""Restore a memory backup. Stop the server first: it would overwrite the file on shutdown."""

from __future__ import annotations

import argparse
import logging
import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_relay.backup import BackupManager  # noqa: E402
from chat_relay.config import load_settings  # noqa: E402
from chat_relay.errors import BackupError  # noqa: E402
from chat_relay.store import ConversationStore  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Restore a chat relay backup.")
    parser.add_argument("backup_id", help="Backup id, e.g. backup-2024-05-01T10-00-00-000-00-00")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config")
    parser.add_argument("--check", action="store_true", help="Only validate the backup")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    settings = load_settings(args.config)
    store = ConversationStore(settings.memory.path, max_bytes=settings.memory.max_bytes)
    manager = BackupManager(store, settings.backup.directory, max_backups=settings.backup.max_backups)

    report = manager.validate(args.backup_id)
    if not report["is_valid"]:
        sys.exit(f"Backup {args.backup_id} is not valid: {report.get('error') or report.get('checks')}")
    print(f"{args.backup_id}: {report['summary']}")
    if args.check:
        return

    store.load()
    try:
        result = manager.restore(args.backup_id)
    except BackupError as e:
        sys.exit(str(e))
    after = result["after"]
    print(f"Restored: {after['conversations']} chats, {after['messages']} messages "
          f"(previous state saved as {result['safety_backup']})")


if __name__ == "__main__":
    main()
