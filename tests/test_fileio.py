from __future__ import annotations

from pathlib import Path

from chat_relay.fileio import atomic_write_json, ensure_dir, read_json


def test_ensure_dir_creates_nested_and_is_idempotent(tmp_path: Path):
    target = tmp_path / "a" / "b" / "c"
    assert ensure_dir(str(target)) == target
    assert target.is_dir()
    assert ensure_dir(target) == target


def test_atomic_write_leaves_no_temp_files(tmp_path: Path):
    path = tmp_path / "data" / "memory.json"
    atomic_write_json(path, {"café": [1, 2]})
    atomic_write_json(path, {"café": [3]})
    assert read_json(path) == {"café": [3]}
    assert "café" in path.read_text(encoding="utf-8")
    assert [p.name for p in path.parent.iterdir()] == ["memory.json"]
