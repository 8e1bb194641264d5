from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

PathLike = Union[str, Path]


def ensure_dir(path: PathLike) -> Path:
    """Create ``path`` and its parents if needed."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def dumps(data: Any) -> str:
    """Serialize to the on-disk JSON form used by every persisted file."""
    return json.dumps(data, ensure_ascii=False, indent=2)


def read_json(path: PathLike) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def atomic_write_text(path: PathLike, text: str) -> None:
    """Write text to a sibling temp file, fsync it, then replace ``path``."""
    p = Path(path)
    ensure_dir(p.parent)
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", delete=False, dir=str(p.parent), suffix=".tmp"
        ) as tmp:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_name = tmp.name
        os.replace(tmp_name, p)
    except OSError as e:
        raise OSError(f"Atomic write failed for {p}: {e}") from e


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Safely write a JSON file atomically to avoid corruption."""
    atomic_write_text(path, dumps(data))
