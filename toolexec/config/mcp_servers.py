"""MCP server config discovery and environment substitution.

Project files are checked in priority order and the first one that
defines servers wins:

1. ``.toolexec/mcp.local.json``
2. ``.mcp.json``
3. ``mcp.json``
4. ``.toolexec/mcp.json``

The user file (``~/.toolexec/mcp.json``, or ``$TOOLEXEC_CONFIG_DIR``)
is merged underneath by server name.  Every entry that came from the
project directory is tagged ``source="project"``.

Both list form and the Claude-style object form are accepted::

    {"mcpServers": [{"name": "fs", "command": "npx", ...}]}
    {"mcpServers": {"fs": {"command": "npx", ...}}}
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping

from knack.util import CLIError

from toolexec.config import USER_CONFIG_DIR_ENV, user_config_dir  # noqa: F401
from toolexec.mcp.base import MCPServerConfig

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILES = (
    ".toolexec/mcp.local.json",
    ".mcp.json",
    "mcp.json",
    ".toolexec/mcp.json",
)
USER_CONFIG_FILE = "mcp.json"

_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def substitute_env_vars(value: Any, env: Mapping[str, str] | None = None) -> Any:
    """Expand ``${VAR}``, ``${VAR:-default}`` and ``$VAR`` in every string.

    Containers are walked recursively.  An unset variable without a
    default expands to the empty string.
    """
    env = os.environ if env is None else env

    if isinstance(value, str):
        def _replace(match: re.Match) -> str:
            name = match.group(1) or match.group(3)
            default = match.group(2)
            if name in env:
                return env[name]
            if default is not None:
                return default
            logger.warning("Environment variable '%s' is not set", name)
            return ""

        return _ENV_VAR_RE.sub(_replace, value)
    if isinstance(value, dict):
        return {k: substitute_env_vars(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_env_vars(v, env) for v in value]
    return value


_CREDENTIAL_ENV_HINTS = ("token", "key", "secret", "password", "auth")
_CREDENTIAL_HEADER_HINTS = ("authorization", "auth", "token")
_AUTH_FIELDS = {"token": "token", "username": "username", "password": "password", "apiKey": "API key"}


def find_hardcoded_credentials(entry: Mapping[str, Any]) -> list[str]:
    """Describe credential-looking values that are not ``$VAR`` references.

    Runs on the raw entry, before environment substitution, so a
    ``${TOKEN}`` reference is not mistaken for a literal secret.
    """

    def _literal(value: Any) -> bool:
        return isinstance(value, str) and bool(value) and not value.startswith("$")

    findings: list[str] = []
    for key, value in (entry.get("env") or {}).items():
        if _literal(value) and any(hint in str(key).lower() for hint in _CREDENTIAL_ENV_HINTS):
            findings.append(f"environment variable '{key}'")
    for key, value in (entry.get("headers") or {}).items():
        if _literal(value) and any(hint in str(key).lower() for hint in _CREDENTIAL_HEADER_HINTS):
            findings.append(f"header '{key}'")
    auth = entry.get("auth")
    if isinstance(auth, dict):
        for key, label in _AUTH_FIELDS.items():
            if _literal(auth.get(key)):
                findings.append(f"auth {label}")
    return findings


def warn_hardcoded_credentials(entry: Mapping[str, Any], path: Path) -> list[str]:
    findings = find_hardcoded_credentials(entry)
    for finding in findings:
        logger.warning(
            "Security warning: hardcoded credential in MCP server '%s' (%s) in %s. "
            "Use an environment variable reference such as \"$API_KEY\" instead.",
            entry.get("name"), finding, path,
        )
    return findings


def parse_server_entries(data: Any) -> list[dict]:
    """Normalise the supported file shapes to a list of entry dicts."""
    if isinstance(data, list):
        servers = data
    elif isinstance(data, dict):
        servers = data.get("mcpServers", [])
    else:
        servers = []

    if isinstance(servers, dict):
        servers = [{"name": name, **(entry or {})} for name, entry in servers.items()]
    if not isinstance(servers, list):
        raise CLIError("'mcpServers' must be a list or an object keyed by server name.")
    return [s for s in servers if isinstance(s, dict)]


def load_server_file(path: str | Path, source: str, env: Mapping[str, str] | None = None) -> list[MCPServerConfig]:
    """Read one JSON config file.

    Raises:
        CLIError if the file is not valid JSON or an entry has no name.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise CLIError(f"Invalid JSON in MCP config {path}: {exc}") from exc

    configs = []
    for entry in parse_server_entries(data):
        if source == "project":
            warn_hardcoded_credentials(entry, path)
            if "trusted" in entry:
                logger.warning(
                    "Ignoring 'trusted' on MCP server '%s' in %s: trust is granted in the user config only",
                    entry.get("name"), path,
                )
        entry = substitute_env_vars(entry, env)
        if not entry.get("name"):
            raise CLIError(f"MCP server entry in {path} is missing 'name'.")
        configs.append(MCPServerConfig.from_dict(entry, source=source))
    return configs


def load_project_servers(project_dir: str | Path, env: Mapping[str, str] | None = None) -> list[MCPServerConfig]:
    """Servers from the highest-priority project file that defines any."""
    project_dir = Path(project_dir)
    for relative in PROJECT_CONFIG_FILES:
        path = project_dir / relative
        if not path.is_file():
            continue
        configs = load_server_file(path, "project", env)
        if configs:
            logger.debug("Loaded %d MCP server(s) from %s", len(configs), path)
            return configs
    return []


def load_mcp_configs(
    project_dir: str | Path,
    user_dir: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> list[MCPServerConfig]:
    """User servers overlaid by project servers, keyed by name."""
    merged: dict[str, MCPServerConfig] = {}

    user_file = Path(user_dir or user_config_dir()) / USER_CONFIG_FILE
    if user_file.is_file():
        for config in load_server_file(user_file, "user", env):
            merged[config.name] = config

    for config in load_project_servers(project_dir, env):
        if config.name in merged:
            logger.debug("Project MCP server '%s' overrides the user entry", config.name)
        merged[config.name] = config

    return list(merged.values())
