from __future__ import annotations

import json
from pathlib import Path

import pytest

from chat_relay.backup import BackupManager, format_bytes
from chat_relay.errors import BackupError
from chat_relay.store import ConversationStore

from conftest import FakeClock


@pytest.fixture()
def env(tmp_path: Path):
    clock = FakeClock()
    store = ConversationStore(tmp_path / "memory.json", clock=clock)
    manager = BackupManager(store, tmp_path / "backups", max_backups=3, clock=clock)
    return store, manager, clock


def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(2048) == "2 KB"
    assert format_bytes(1536) == "1.5 KB"


def test_create_and_list(env):
    store, manager, clock = env
    store.append("a", "user", "hello")
    first = manager.create("first")
    clock.advance(10)
    second = manager.create("second")

    assert first.startswith("backup-2024-05-01T12-00-00-000")
    items = manager.list()
    assert [b["id"] for b in items] == [second, first]
    assert items[0]["description"] == "second"
    assert items[0]["chats"] == 1
    assert items[0]["messages"] == 1

    data = json.loads(Path(items[0]["path"]).read_text(encoding="utf-8"))
    assert data["memory"]["data"]["a"][0]["content"] == "hello"


def test_same_instant_ids_do_not_collide(env):
    _, manager, _ = env
    a = manager.create()
    b = manager.create()
    assert a != b
    assert len(manager.list()) == 2


def test_prunes_to_max_backups(env):
    _, manager, clock = env
    ids = []
    for _ in range(5):
        ids.append(manager.create())
        clock.advance(60)
    assert [b["id"] for b in manager.list()] == list(reversed(ids[-3:]))


def test_restore_takes_safety_backup(env):
    store, manager, clock = env
    store.append("a", "user", "before")
    backup_id = manager.create()
    clock.advance(60)
    store.clear_all()
    store.append("b", "user", "after")

    result = manager.restore(backup_id)
    assert result["after"]["conversations"] == 1
    assert store.chat_keys() == ["a"]
    safety = manager.info(result["safety_backup"])
    assert "b" in safety["memory"]["data"]


def test_missing_and_invalid_ids(env):
    _, manager, _ = env
    with pytest.raises(BackupError):
        manager.info("backup-nope")
    with pytest.raises(BackupError):
        manager.restore("../memory")
    with pytest.raises(BackupError):
        manager.delete("backup-nope")


def test_delete_and_validate(env):
    _, manager, _ = env
    backup_id = manager.create()
    report = manager.validate(backup_id)
    assert report["is_valid"] is True
    assert report["summary"] == "0 chats, 0 messages"

    assert manager.delete(backup_id)
    assert manager.list() == []
    assert manager.validate(backup_id)["is_valid"] is False


def test_corrupt_backup_files_are_skipped(env):
    _, manager, _ = env
    manager.create()
    (manager.dir / "backup-broken.json").write_text("{", encoding="utf-8")
    assert len(manager.list()) == 1


def test_undecodable_backup_raises_backup_error(env):
    _, manager, _ = env
    (manager.dir).mkdir(parents=True, exist_ok=True)
    (manager.dir / "backup-binary.json").write_bytes(b"\xff\xfe\x00\x01garbage")

    with pytest.raises(BackupError, match="unreadable"):
        manager.info("backup-binary")
    with pytest.raises(BackupError):
        manager.restore("backup-binary")
    assert manager.validate("backup-binary")["is_valid"] is False
    assert manager.list() == []


@pytest.mark.parametrize(
    "payload",
    [
        [1, 2, 3],
        {"memory": ["not", "a", "dict"]},
        {"memory": {"stats": "nope", "data": {}}},
    ],
)
def test_validate_tolerates_odd_payload_shapes(env, payload):
    _, manager, _ = env
    manager.dir.mkdir(parents=True, exist_ok=True)
    (manager.dir / "backup-odd.json").write_text(json.dumps(payload), encoding="utf-8")
    assert manager.validate("backup-odd")["is_valid"] is False
