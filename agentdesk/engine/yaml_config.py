"""YAML configuration loader.

Loads a single YAML file whose ``engine`` section overrides the
EngineConfig fields. Env vars still apply when no YAML is provided.

Example YAML:
    engine:
      default_backend: sdk
      default_permission_mode: acceptEdits
      kill_grace_seconds: 3
      permission_timeout_seconds: 0
      store_root: ~/.claude/projects

    defaults:
      cwd: /path/to/project
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ConfigError
from .models import BackendKind, PermissionMode

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".agentdesk"
CONFIG_FILENAME = "agentdesk.yaml"

_PATH_FIELDS = {"store_root", "app_dir"}


@dataclass
class DefaultsConfig:
    """Default settings for new sessions."""
    cwd: str | None = None


@dataclass
class AgentdeskConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    defaults: DefaultsConfig


def discover_config_path(cwd: str | Path | None = None) -> Path | None:
    """Return the first existing config file, project level before global."""
    base = Path(cwd) if cwd else Path.cwd()
    candidates = [
        base / CONFIG_DIRNAME / CONFIG_FILENAME,
        Path.home() / CONFIG_DIRNAME / CONFIG_FILENAME,
    ]
    for candidate in candidates:
        if candidate.is_file():
            logger.debug("discover_config_path: using %s", candidate)
            return candidate
    return None


def _coerce(name: str, value: Any, current: Any) -> Any:
    if name in _PATH_FIELDS:
        return Path(str(value)).expanduser()
    if name == "default_backend":
        return BackendKind(str(value).lower()).value
    if name == "default_permission_mode":
        return PermissionMode.parse(str(value)).value
    if name == "log_level":
        return str(value).upper()
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def apply_engine_section(
    engine_raw: dict[str, Any],
    base: EngineConfig | None = None,
    source: str = "<yaml>",
) -> EngineConfig:
    """Overlay an ``engine`` mapping onto *base* (or the defaults)."""
    engine = dataclasses.replace(base) if base else EngineConfig()
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    for key, value in engine_raw.items():
        if key not in known:
            logger.warning(
                "apply_engine_section: ignoring unknown engine key %r in %s",
                key, source,
            )
            continue
        if value is None:
            continue
        try:
            setattr(engine, key, _coerce(key, value, getattr(engine, key)))
        except (TypeError, ValueError) as exc:
            raise ConfigError(source, f"engine.{key}: {exc}") from exc
    return engine


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> AgentdeskConfig:
    """Load and parse a YAML config file.

    Values in the ``engine`` section override *base*, which defaults to
    the plain EngineConfig defaults. Raises ConfigError when the file
    is not a mapping or a value has the wrong type.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(str(path), f"YAML parse error: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    engine_raw = raw.get("engine") or {}
    if not isinstance(engine_raw, dict):
        raise ConfigError(str(path), "'engine' must be a mapping")
    engine = apply_engine_section(engine_raw, base, source=str(path))

    defaults_raw = raw.get("defaults") or {}
    defaults = DefaultsConfig(cwd=defaults_raw.get("cwd"))

    logger.info(
        "Config loaded from %s: backend=%s mode=%s kill_grace=%.1fs "
        "permission_timeout=%.1fs store=%s",
        path.name,
        engine.default_backend,
        engine.default_permission_mode,
        engine.kill_grace_seconds,
        engine.permission_timeout_seconds,
        engine.store_root,
    )
    return AgentdeskConfig(engine=engine, defaults=defaults)
