"""Configuration models for sandpit workbenches."""

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_NAME = "sandpit.yaml"

# Primary name first; the fallback covers projects installed with npm.
DEFAULT_LOCKFILE_NAMES = ("pnpm-lock.yaml", "package-lock.json")


def _default_cache_dir() -> str:
    return str(Path.home() / ".cache" / "sandpit")


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


@dataclass
class CommandConfig:
    """A command plus its argument list."""
    command: str
    args: list[str] = field(default_factory=list)

    @classmethod
    def from_value(cls, data: "str | list | dict | CommandConfig") -> "CommandConfig":
        if isinstance(data, CommandConfig):
            return data
        if isinstance(data, str):
            parts = shlex.split(data)
        elif isinstance(data, (list, tuple)):
            parts = [str(p) for p in data]
        elif isinstance(data, dict):
            parts = [str(data.get("command", ""))] + [str(a) for a in data.get("args", [])]
        else:
            raise ConfigError(f"Unsupported command value: {data!r}")
        if not parts or not parts[0]:
            raise ConfigError("Command must not be empty")
        return cls(command=parts[0], args=parts[1:])

    def display(self) -> str:
        return shlex.join([self.command, *self.args])


@dataclass
class WorkbenchConfig:
    """Configuration for one workbench context."""
    manifest_path: str = "package.json"
    install: CommandConfig = field(default_factory=lambda: CommandConfig("pnpm", ["install"]))
    start: CommandConfig = field(default_factory=lambda: CommandConfig("pnpm", ["run", "dev"]))
    install_timeout_ms: int = 300_000
    artifacts_dir: str = "node_modules"
    lockfile_names: tuple[str, ...] = DEFAULT_LOCKFILE_NAMES
    cache_key: str = "sandpit:install-cache"
    cache_dir: str = field(default_factory=_default_cache_dir)
    shell: CommandConfig = field(default_factory=lambda: CommandConfig(_default_shell()))
    shell_cols: int = 80
    shell_rows: int = 24
    extra_allowlist: list[str] = field(default_factory=list)
    npm_registry_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.lockfile_names:
            raise ConfigError("At least one lockfile name is required")
        if self.shell_cols <= 0 or self.shell_rows <= 0:
            raise ConfigError("Terminal size must be positive")

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "WorkbenchConfig":
        """Create configuration from a dictionary, ignoring unknown keys."""
        return cls().merged(data or {})

    @classmethod
    def from_yaml(cls, path: Path) -> "WorkbenchConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)

    def merged(self, data: Mapping[str, Any]) -> "WorkbenchConfig":
        """Return a copy with the values in *data* applied on top."""
        changes: dict[str, Any] = {}
        try:
            for key, value in data.items():
                if value is None:
                    continue
                if key in {"install", "start", "shell"}:
                    changes[key] = CommandConfig.from_value(value)
                elif key in {"install_timeout_ms", "shell_cols", "shell_rows"}:
                    changes[key] = int(value)
                elif key == "lockfile_names":
                    names = value.split(",") if isinstance(value, str) else value
                    changes[key] = tuple(str(n).strip() for n in names if str(n).strip())
                elif key == "extra_allowlist":
                    names = value.split(",") if isinstance(value, str) else value
                    changes[key] = [str(n).strip() for n in names if str(n).strip()]
                elif key in {"manifest_path", "artifacts_dir", "cache_key", "cache_dir", "npm_registry_url"}:
                    changes[key] = str(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e
        return replace(self, **changes)

    def with_env(self, env: Optional[Mapping[str, str]] = None) -> "WorkbenchConfig":
        """Overlay ``SANDPIT_*`` environment variables."""
        src = os.environ if env is None else env

        def clean(value: Optional[str]) -> Optional[str]:
            if value is None:
                return None
            v = str(value).strip()
            return v or None

        return self.merged({
            "manifest_path": clean(src.get("SANDPIT_MANIFEST_PATH")),
            "install": clean(src.get("SANDPIT_INSTALL_COMMAND")),
            "start": clean(src.get("SANDPIT_START_COMMAND")),
            "install_timeout_ms": clean(src.get("SANDPIT_INSTALL_TIMEOUT_MS")),
            "artifacts_dir": clean(src.get("SANDPIT_ARTIFACTS_DIR")),
            "lockfile_names": clean(src.get("SANDPIT_LOCKFILE_NAMES")),
            "cache_key": clean(src.get("SANDPIT_CACHE_KEY")),
            "cache_dir": clean(src.get("SANDPIT_CACHE_DIR")),
            "shell": clean(src.get("SANDPIT_SHELL")),
            "extra_allowlist": clean(src.get("SANDPIT_EXTRA_ALLOWLIST")),
            "npm_registry_url": clean(src.get("SANDPIT_NPM_REGISTRY_URL") or src.get("NPM_CONFIG_REGISTRY")),
        })

    def to_env(self) -> dict[str, str]:
        """Environment passed to install and start commands."""
        env: dict[str, str] = {}
        if self.npm_registry_url:
            env["NPM_CONFIG_REGISTRY"] = self.npm_registry_url
        return env

    def to_dict(self) -> dict:
        return {
            "manifest_path": self.manifest_path,
            "install": self.install.display(),
            "start": self.start.display(),
            "install_timeout_ms": self.install_timeout_ms,
            "artifacts_dir": self.artifacts_dir,
            "lockfile_names": list(self.lockfile_names),
            "cache_key": self.cache_key,
            "cache_dir": self.cache_dir,
            "shell": self.shell.display(),
            "shell_cols": self.shell_cols,
            "shell_rows": self.shell_rows,
            "extra_allowlist": list(self.extra_allowlist),
            "npm_registry_url": self.npm_registry_url,
        }


def load_config(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> WorkbenchConfig:
    """Build configuration: explicit overrides > environment > YAML > defaults.

    When *path* is a directory, ``sandpit.yaml`` inside it is used if present.
    """
    config = WorkbenchConfig()
    if path is not None:
        p = Path(path)
        if p.is_dir():
            p = p / DEFAULT_CONFIG_NAME
            if p.exists():
                config = WorkbenchConfig.from_yaml(p)
        elif p.exists():
            config = WorkbenchConfig.from_yaml(p)
        else:
            raise FileNotFoundError(f"Config file not found: {p}")
    config = config.with_env(env)
    return config.merged(overrides)
