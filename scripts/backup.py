"""Create or list memory backups without starting the server."""

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
from chat_relay.store import ConversationStore  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or list chat relay backups.")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config")
    parser.add_argument("--list", action="store_true", help="List existing backups and exit")
    parser.add_argument("--description", type=str, default="Manual backup (CLI)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    settings = load_settings(args.config)
    store = ConversationStore(settings.memory.path, max_bytes=settings.memory.max_bytes)
    manager = BackupManager(store, settings.backup.directory, max_backups=settings.backup.max_backups)

    if args.list:
        backups = manager.list()
        if not backups:
            print("No backups found.")
        for b in backups:
            print(f"{b['id']}  {b['created_at']}  {b['chats']} chats  {b['messages']} msgs  {b['size']}  {b['description']}")
        return

    result = store.load()
    if not result.ok:
        sys.exit(f"Memory file is unusable ({result.error}): {result.detail}")
    print(manager.create(args.description))


if __name__ == "__main__":
    main()
