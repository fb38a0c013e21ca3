"""Runtime configuration (toolexec.yaml).

Two layers sit over :data:`DEFAULT_CONFIG`:

- the user file, ``<user config dir>/toolexec.yaml``
- the project file, ``<project>/toolexec.yaml``

A project file travels with the repository, so it cannot weaken the
safety gates: keys in :data:`USER_ONLY_KEYS` are honoured from the user
file only and ignored, with a warning, when a project file sets them.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from knack.util import CLIError

from toolexec.approval import ApprovalMode

logger = logging.getLogger(__name__)

USER_CONFIG_DIR_ENV = "TOOLEXEC_CONFIG_DIR"

DEFAULT_CONFIG = {
    "approval": {
        "mode": "normal",
        "non_interactive": False,
    },
    "mcp": {
        "timeout": 30,
        "call_timeout": 60,
        "allow_project_servers": False,
        "trusted_projects": [],
    },
    "tools": {
        "bash_timeout": 120,
        "max_read_bytes": 262144,
    },
}

USER_ONLY_KEYS = frozenset({
    "approval.mode",
    "approval.non_interactive",
    "mcp.allow_project_servers",
    "mcp.trusted_projects",
})

_POSITIVE_NUMBER_KEYS = frozenset({
    "mcp.timeout",
    "mcp.call_timeout",
    "tools.bash_timeout",
    "tools.max_read_bytes",
})

_BOOLEAN_KEYS = frozenset({
    "approval.non_interactive",
    "mcp.allow_project_servers",
})


def user_config_dir() -> Path:
    override = os.environ.get(USER_CONFIG_DIR_ENV)
    return Path(override) if override else Path.home() / ".toolexec"


class RuntimeConfig:
    """Manages the user and project toolexec.yaml files.

    Provides dot-notation get/set for nested values.  A missing file is
    not an error: the defaults apply until something is saved.
    """

    CONFIG_FILENAME = "toolexec.yaml"

    def __init__(self, project_dir: str | Path, user_dir: str | Path | None = None):
        self.project_dir = Path(project_dir)
        self.config_path = self.project_dir / self.CONFIG_FILENAME
        self.user_dir = Path(user_dir) if user_dir else user_config_dir()
        self.user_config_path = self.user_dir / self.CONFIG_FILENAME
        self._user: dict = {}
        self._project: dict = {}
        self._config: dict = copy.deepcopy(DEFAULT_CONFIG)

    # ------------------------------------------------------------------ #
    #  Persistence                                                        #
    # ------------------------------------------------------------------ #

    def load(self) -> dict:
        """Load the user file, then the project file, over the defaults.

        Raises:
            CLIError if a file exists but is not a valid YAML mapping,
            or holds an invalid value.
        """
        self._user = self._read(self.user_config_path)
        self._project = self._read(self.config_path)

        for key, _ in list(_flatten(self._project)):
            if key in USER_ONLY_KEYS:
                logger.warning(
                    "Ignoring '%s' in %s: it can only be set in %s",
                    key, self.config_path, self.user_config_path,
                )
                _delete(self._project, key)

        self._config = copy.deepcopy(DEFAULT_CONFIG)
        _merge(self._config, copy.deepcopy(self._user))
        _merge(self._config, copy.deepcopy(self._project))
        return self._config

    def save(self):
        """Persist the project layer to the project toolexec.yaml."""
        _write(self.config_path, self._project)

    def save_user(self):
        """Persist the user layer to the user toolexec.yaml."""
        _write(self.user_config_path, self._user)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by dot-separated key.

        Examples:
            config.get("approval.mode")
            config.get("mcp.timeout")
        """
        current = self._config
        for part in key.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def set(self, key: str, value: Any, persist: bool = True):
        """Set a config value by dot-separated key, validating it first.

        Keys in :data:`USER_ONLY_KEYS` are written to the user file,
        everything else to the project file.
        """
        self._validate_config_value(key, value)
        user_level = key in USER_ONLY_KEYS
        _assign(self._user if user_level else self._project, key, value)
        _assign(self._config, key, value)
        if persist:
            if user_level:
                self.save_user()
            else:
                self.save()

    def to_dict(self) -> dict:
        return copy.deepcopy(self._config)

    # ------------------------------------------------------------------ #
    #  Derived settings                                                   #
    # ------------------------------------------------------------------ #

    def approval_mode(self) -> ApprovalMode:
        """Startup approval mode.  Non-interactive runs always auto-accept."""
        if self.get("approval.non_interactive"):
            return ApprovalMode.AUTO_ACCEPT
        return ApprovalMode.parse(self.get("approval.mode", "normal"))

    def is_project_trusted(self) -> bool:
        """True when the user listed this project in ``mcp.trusted_projects``."""
        project = self.project_dir.expanduser().resolve()
        return any(
            Path(entry).expanduser().resolve() == project
            for entry in self.get("mcp.trusted_projects") or []
        )

    def trust_project(self, persist: bool = True):
        """Add this project to the user's trusted projects."""
        if self.is_project_trusted():
            return
        trusted = list(self.get("mcp.trusted_projects") or [])
        trusted.append(str(self.project_dir.expanduser().resolve()))
        self.set("mcp.trusted_projects", trusted, persist=persist)
        logger.info("Trusted project directory %s", self.project_dir)

    def allows_project_servers(self) -> bool:
        """Whether stdio MCP servers defined in project files may start."""
        return bool(self.get("mcp.allow_project_servers")) or self.is_project_trusted()

    # ------------------------------------------------------------------ #
    #  Validation                                                         #
    # ------------------------------------------------------------------ #

    def _read(self, path: Path) -> dict:
        if not path.exists():
            logger.debug("No %s; using defaults", path)
            return {}

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise CLIError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CLIError(f"{path} must contain a mapping at the top level.")

        for key, value in _flatten(data):
            self._validate_config_value(key, value)
        return data

    @staticmethod
    def _validate_config_value(key: str, value: Any):
        if key == "approval.mode":
            ApprovalMode.parse(value)

        if key in _POSITIVE_NUMBER_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise CLIError(f"'{key}' must be a positive number, got: {value!r}")

        if key in _BOOLEAN_KEYS and not isinstance(value, bool):
            raise CLIError(f"'{key}' must be true or false, got: {value!r}")

        if key == "mcp.trusted_projects":
            if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
                raise CLIError(f"'{key}' must be a list of directory paths, got: {value!r}")


def _write(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    logger.debug("Configuration saved to %s", path)


def _flatten(data: dict, prefix: str = ""):
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            yield from _flatten(value, f"{dotted}.")
        else:
            yield dotted, value


def _assign(data: dict, key: str, value: Any):
    parts = key.split(".")
    current = data
    for part in parts[:-1]:
        if part not in current or not isinstance(current[part], dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _delete(data: dict, key: str):
    parts = key.split(".")
    current = data
    for part in parts[:-1]:
        current = current[part]
    del current[parts[-1]]


def _merge(base: dict, overlay: dict):
    """Recursively merge *overlay* into *base*."""
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
