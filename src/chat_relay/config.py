"""Configuration loading utilities for the chat relay.

Sources, highest precedence first:
1. Explicit path argument
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

Single keys can then be overridden from the environment with the
``CHAT_RELAY__`` prefix, one ``__`` per nesting level
(e.g. CHAT_RELAY__MEMORY__MAX_MESSAGES=30).
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError
from .fileio import atomic_write_text

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_RELAY__"
ENV_CONFIG = "CHAT_RELAY_CONFIG"
DEFAULT_PATH = "config/default.yaml"


def _parse_env_value(raw: str) -> Any:
    """Read an environment value as a YAML scalar or flow list; fall back to the raw text."""
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    if isinstance(value, dict):
        return raw
    return value


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect ``CHAT_RELAY__SECTION__KEY`` variables into a nested dict."""
    environ = os.environ if environ is None else environ
    nested: Dict[str, Any] = {}
    for name in sorted(environ):
        if not name.startswith(ENV_PREFIX):
            continue
        *sections, leaf = name[len(ENV_PREFIX):].lower().split("__")
        node = nested
        for section in sections:
            if not isinstance(node.get(section), dict):
                node[section] = {}
            node = node[section]
        node[leaf] = _parse_env_value(environ[name])
    return nested


def _merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        elif isinstance(value, Mapping):
            base[key] = _merge({}, value)
        else:
            base[key] = value
    return base


def resolve_path(path: Optional[str] = None) -> Path:
    return Path(path or os.environ.get(ENV_CONFIG) or DEFAULT_PATH)


def read_yaml(path: Path) -> Dict[str, Any]:
    """Parse one YAML config file; a missing file reads as empty."""
    if not path.is_file():
        logger.warning("Config file not found at %s; using defaults.", path)
        return {}
    try:
        cfg = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to parse config file {path}: {e}") from e
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path}, expected a mapping.")
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the YAML config and layer environment overrides on top."""
    return _merge(read_yaml(resolve_path(path)), env_overrides())


# -----------------------------
# Typed settings
# -----------------------------
@dataclass
class MemorySettings:
    path: str = "data/memory.json"
    max_messages: int = 50
    history_cap: int = 100
    max_bytes: int = 10 * 1024 * 1024
    autosave_every: int = 10
    save_interval: float = 30.0
    inactive_days: int = 7


@dataclass
class LLMSettings:
    endpoint: str = "http://localhost:1234/v1/chat/completions"
    model: str = "local-model"
    max_tokens: int = 800
    temperature: float = 0.75
    top_p: float = 0.9
    timeout: float = 120.0
    max_retries: int = 3


@dataclass
class RateLimitSettings:
    per_minute: int = 10
    per_hour: int = 50


@dataclass
class BackupSettings:
    directory: str = "backups"
    max_backups: int = 10
    interval: float = 6 * 60 * 60


@dataclass
class AuthSettings:
    path: str = "data/auth.json"
    session_hours: float = 24.0
    hash_iterations: int = 600_000


@dataclass
class LogSettings:
    errors_dir: str = "logs/errors"
    activity_path: str = "logs/activity.json"
    error_retention_days: int = 7
    max_errors_per_day: int = 100
    max_activity: int = 1000
    slow_request: float = 60.0


@dataclass
class BotSettings:
    name: str = "Relay"
    admins: List[str] = field(default_factory=list)
    system_prompt: str = (
        "You are a helpful, precise assistant chatting over instant messages. "
        "Keep answers consistent with the conversation so far, be concise, "
        "and say so when you do not know something."
    )
    duplicate_window: float = 5.0
    group_reply_chance: float = 0.25


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 3001
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class Settings:
    memory: MemorySettings = field(default_factory=MemorySettings)
    llm: LLMSettings = field(default_factory=LLMSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    backup: BackupSettings = field(default_factory=BackupSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    logs: LogSettings = field(default_factory=LogSettings)
    bot: BotSettings = field(default_factory=BotSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "Settings":
        out = cls()
        for f in fields(cls):
            section = cfg.get(f.name)
            if not isinstance(section, dict):
                continue
            target = getattr(out, f.name)
            known = {sf.name: sf for sf in fields(target)}
            for key, value in section.items():
                if key not in known:
                    logger.warning("Ignoring unknown config key %s.%s", f.name, key)
                    continue
                setattr(target, key, _coerce(getattr(target, key), value))
        return out


def _coerce(default: Any, value: Any) -> Any:
    """Coerce ``value`` to the type of the section default."""
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if not isinstance(value, (list, tuple)):
            return [str(value)]
        return [str(v) for v in value]
    return str(value)


def load_settings(path: Optional[str] = None) -> Settings:
    return Settings.from_dict(load_config(path))


# -----------------------------
# Runtime view / updates
# -----------------------------
SENSITIVE_MARKERS = ("password", "secret", "api_key", "access_token", "admins")

# (section, key) -> inclusive bounds for updates made at runtime
LIMITS: Dict[Tuple[str, str], Tuple[float, float]] = {
    ("llm", "max_tokens"): (50, 8192),
    ("llm", "temperature"): (0.0, 2.0),
    ("llm", "top_p"): (0.0, 1.0),
    ("llm", "timeout"): (1.0, 3600.0),
    ("llm", "max_retries"): (1, 10),
    ("memory", "history_cap"): (1, 200),
    ("memory", "max_messages"): (1, 1000),
    ("rate_limit", "per_minute"): (1, 1000),
    ("rate_limit", "per_hour"): (1, 100_000),
    ("bot", "duplicate_window"): (0.0, 3600.0),
    ("bot", "group_reply_chance"): (0.0, 1.0),
}

# keys the running services pick up without a restart
LIVE_KEYS = {
    ("llm", "max_tokens"),
    ("llm", "temperature"),
    ("llm", "top_p"),
    ("memory", "history_cap"),
    ("rate_limit", "per_minute"),
    ("rate_limit", "per_hour"),
    ("bot", "system_prompt"),
    ("bot", "duplicate_window"),
    ("bot", "group_reply_chance"),
}


def _mask(value: Any) -> Any:
    if isinstance(value, list):
        return [_mask(v) for v in value]
    text = str(value)
    return "*" * min(len(text), 8)


def settings_to_dict(settings: Settings, *, secure: bool = True) -> Dict[str, Dict[str, Any]]:
    """Plain nested dict of ``settings``; sensitive values are masked when ``secure``."""
    out = asdict(settings)
    if secure:
        for section in out.values():
            for key, value in section.items():
                if any(marker in key for marker in SENSITIVE_MARKERS):
                    section[key] = _mask(value)
    return out


def validate_updates(settings: Settings, updates: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Coerce and range-check a nested ``{section: {key: value}}`` update.

    Raises :class:`ConfigError` listing every rejected entry; nothing is
    applied here.
    """
    problems: List[str] = []
    clean: Dict[str, Dict[str, Any]] = {}
    sections = {f.name for f in fields(settings)}
    for section, values in updates.items():
        if section.startswith("_") or section not in sections:
            problems.append(f"unknown section: {section}")
            continue
        if not isinstance(values, Mapping):
            problems.append(f"{section}: expected a mapping")
            continue
        target = getattr(settings, section)
        known = {f.name for f in fields(target)}
        for key, value in values.items():
            name = f"{section}.{key}"
            if key.startswith("_") or key not in known:
                problems.append(f"unknown key: {name}")
                continue
            try:
                coerced = _coerce(getattr(target, key), value)
            except (TypeError, ValueError):
                problems.append(f"{name}: invalid value {value!r}")
                continue
            bounds = LIMITS.get((section, key))
            if bounds is not None and not bounds[0] <= coerced <= bounds[1]:
                problems.append(f"{name} must be between {bounds[0]} and {bounds[1]}")
                continue
            clean.setdefault(section, {})[key] = coerced
    if problems:
        raise ConfigError(problems)
    return clean


def apply_updates(settings: Settings, updates: Mapping[str, Mapping[str, Any]]) -> List[str]:
    """Write validated updates into ``settings``; returns the dotted keys changed."""
    changed: List[str] = []
    for section, values in updates.items():
        target = getattr(settings, section)
        for key, value in values.items():
            if getattr(target, key) != value:
                setattr(target, key, value)
                changed.append(f"{section}.{key}")
    return changed


def save_config(path: Path, updates: Mapping[str, Mapping[str, Any]]) -> Optional[Path]:
    """Merge ``updates`` into the YAML file at ``path``.

    The previous file is copied to ``<name>.bak`` first; its path is
    returned, or None when there was no file yet.
    """
    current = read_yaml(path)
    backup: Optional[Path] = None
    if path.is_file():
        backup = path.with_name(path.name + ".bak")
        shutil.copy2(path, backup)
    _merge(current, {s: dict(v) for s, v in updates.items()})
    atomic_write_text(path, yaml.safe_dump(current, sort_keys=False, allow_unicode=True))
    logger.info("Config written to %s", path)
    return backup
