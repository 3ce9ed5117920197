"""Run configuration: workspace/manifest resolution and sync tuning."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError, ErrorKind
from .manifest import DEFAULT_MANIFEST_NAME, FALLBACK_MANIFEST_NAME

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ON = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.NOT_FOUND,
        ErrorKind.AUTHENTICATION,
        ErrorKind.UNKNOWN,
    }
)


@dataclass(frozen=True)
class SyncSettings:
    """Tuning for one run. Every field can come from the config file or the CLI."""

    concurrency: int = 8
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    timeout: float | None = None
    retry_on: frozenset[ErrorKind] = field(default=DEFAULT_RETRY_ON)

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_max < 0 or self.backoff_factor < 1:
            raise ConfigError("backoff values must be non-negative with a factor of at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")

    def with_overrides(self, **overrides: Any) -> SyncSettings:
        """Return a copy with the non-None overrides applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


def resolve_config_file() -> Path | None:
    """Auto-resolve the user config file.

    Priority order:
    1. $FLOTILLA_CONFIG environment variable
    2. ~/.config/git-flotilla/config.toml (XDG-compliant)
    """
    env_config = os.environ.get("FLOTILLA_CONFIG")
    if env_config:
        env_path = Path(env_config).expanduser()
        if env_path.is_file():
            return env_path

    xdg_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_home).expanduser() if xdg_home else Path.home() / ".config"
    xdg_path = base / "git-flotilla" / "config.toml"
    if xdg_path.is_file():
        return xdg_path

    return None


def load_settings(config_file: Path | None = None) -> SyncSettings:
    """Load settings from the ``[sync]`` table of the user config file."""
    if config_file is None:
        config_file = resolve_config_file()
    if config_file is None:
        return SyncSettings()

    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config file {config_file}: {e}") from e

    section = data.get("sync", {})
    if not isinstance(section, dict):
        raise ConfigError(f"{config_file}: 'sync' must be a table")

    known = {f.name for f in fields(SyncSettings)}
    values: dict[str, Any] = {}
    for key, value in section.items():
        name = key.replace("-", "_")
        if name not in known:
            logger.warning("Ignoring unknown setting %r in %s", key, config_file)
            continue
        if name == "retry_on":
            try:
                value = frozenset(ErrorKind(v) for v in value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{config_file}: invalid retry-on value: {e}") from e
        values[name] = value

    logger.debug("Loaded settings from %s: %s", config_file, values)
    try:
        return SyncSettings(**values)
    except TypeError as e:
        raise ConfigError(f"{config_file}: {e}") from e


def resolve_workspace(path: Path | None = None) -> Path:
    """Workspace root: explicit path, then $FLOTILLA_WORKSPACE, then the cwd."""
    if path is not None:
        return path.expanduser().resolve()
    env_root = os.environ.get("FLOTILLA_WORKSPACE")
    if env_root:
        return Path(os.path.expandvars(env_root)).expanduser().resolve()
    return Path.cwd().resolve()


def resolve_manifest_path(workspace: Path, manifest: Path | None = None) -> Path:
    """Manifest file: explicit path, $FLOTILLA_MANIFEST, then the workspace defaults.

    Raises ``ConfigError`` when nothing is found.
    """
    if manifest is not None:
        candidate = manifest.expanduser()
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        if not candidate.is_file():
            raise ConfigError(f"Manifest not found: {candidate}")
        return candidate.resolve()

    env_manifest = os.environ.get("FLOTILLA_MANIFEST")
    if env_manifest:
        candidate = Path(os.path.expandvars(env_manifest)).expanduser()
        if not candidate.is_absolute():
            candidate = workspace / candidate
        if candidate.is_file():
            return candidate.resolve()
        raise ConfigError(f"Manifest from $FLOTILLA_MANIFEST not found: {candidate}")

    for name in (DEFAULT_MANIFEST_NAME, FALLBACK_MANIFEST_NAME):
        candidate = workspace / name
        if candidate.is_file():
            return candidate

    raise ConfigError(
        f"No manifest found in {workspace} "
        f"(looked for {DEFAULT_MANIFEST_NAME} and {FALLBACK_MANIFEST_NAME})"
    )
