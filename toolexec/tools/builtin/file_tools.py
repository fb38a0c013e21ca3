"""Built-in file tools: read_file, write_file, list_directory, find_files.

All paths are relative to the project root and validated by
:func:`resolve_project_path` before the handler runs.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from pathlib import Path

from toolexec.approval import mutating_approval, read_only_approval
from toolexec.errors import ToolValidationError
from toolexec.tools.base import LocalHandler, ToolEntry, ValidationResult
from toolexec.tools.path_validation import resolve_project_path

logger = logging.getLogger(__name__)

# Directories never descended into by find_files / list_directory.
_SKIP_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"})

_MAX_FIND_RESULTS = 200


def _file_text(content) -> str:
    """Text to write for a content argument.

    Tag-format calls JSON-decode parameter values, so a JSON document
    arrives as a dict or list; it is written back as JSON, not as a
    Python repr.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


class FileTools:
    """File-system tools bound to one project directory."""

    def __init__(self, root: str | Path, max_read_bytes: int = 256 * 1024):
        self.root = Path(root).resolve()
        self.max_read_bytes = max_read_bytes

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    def read_file(self, arguments: dict, token=None) -> str:
        path = resolve_project_path(arguments.get("path", ""), self.root)
        data = path.read_bytes()
        truncated = len(data) > self.max_read_bytes
        text = data[: self.max_read_bytes].decode("utf-8", errors="replace")
        if truncated:
            text += f"\n...(truncated, {len(data)} bytes total)"
        return text

    def write_file(self, arguments: dict, token=None) -> str:
        path = resolve_project_path(arguments.get("path", ""), self.root)
        content = _file_text(arguments.get("content"))
        path.write_text(content, encoding="utf-8")
        logger.debug("Wrote %d characters to %s", len(content), path)
        return f"Wrote {len(content.encode('utf-8'))} bytes to {arguments['path']}"

    def list_directory(self, arguments: dict, token=None) -> str:
        path = resolve_project_path(arguments.get("path") or ".", self.root)
        names = []
        for child in sorted(path.iterdir(), key=lambda p: p.name):
            if child.name in _SKIP_DIRS:
                continue
            names.append(f"{child.name}/" if child.is_dir() else child.name)
        return "\n".join(names) if names else "(empty directory)"

    def find_files(self, arguments: dict, token=None) -> str:
        pattern = arguments.get("pattern") or "*"
        base = resolve_project_path(arguments.get("path") or ".", self.root)
        matches: list[str] = []

        for candidate in base.rglob("*"):
            if token is not None:
                token.raise_if_cancelled()
            rel = candidate.relative_to(self.root)
            if any(part in _SKIP_DIRS for part in rel.parts):
                continue
            if not candidate.is_file():
                continue
            if fnmatch.fnmatch(rel.as_posix(), pattern) or fnmatch.fnmatch(candidate.name, pattern):
                matches.append(rel.as_posix())
                if len(matches) >= _MAX_FIND_RESULTS:
                    break

        if not matches:
            return f"No files matching '{pattern}'"
        matches.sort()
        result = "\n".join(matches)
        if len(matches) >= _MAX_FIND_RESULTS:
            result += f"\n...(showing first {_MAX_FIND_RESULTS} matches)"
        return result

    # ------------------------------------------------------------------ #
    # Validators
    # ------------------------------------------------------------------ #

    def validate_read(self, arguments: dict) -> ValidationResult:
        try:
            path = resolve_project_path(arguments.get("path", ""), self.root)
        except ToolValidationError as exc:
            return ValidationResult.fail(str(exc))
        if not path.is_file():
            return ValidationResult.fail(f"File not found: {arguments.get('path')}")
        return ValidationResult.ok()

    def validate_write(self, arguments: dict) -> ValidationResult:
        try:
            path = resolve_project_path(arguments.get("path", ""), self.root)
        except ToolValidationError as exc:
            return ValidationResult.fail(str(exc))
        if "content" not in arguments:
            return ValidationResult.fail("Missing required argument: content")
        if path.is_dir():
            return ValidationResult.fail(f"Path is a directory: {arguments.get('path')}")
        if not path.parent.is_dir():
            return ValidationResult.fail(
                f"Parent directory does not exist: {Path(arguments['path']).parent.as_posix()}"
            )
        return ValidationResult.ok()

    def validate_directory(self, arguments: dict) -> ValidationResult:
        try:
            path = resolve_project_path(arguments.get("path") or ".", self.root)
        except ToolValidationError as exc:
            return ValidationResult.fail(str(exc))
        if not path.is_dir():
            return ValidationResult.fail(f"Directory not found: {arguments.get('path')}")
        return ValidationResult.ok()

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def entries(self) -> list[ToolEntry]:
        return [
            ToolEntry(
                name="read_file",
                handler=LocalHandler(self.read_file),
                description="Read a text file from the project.",
                input_schema=_schema({"path": "File path relative to the project root"}, ["path"]),
                needs_approval=read_only_approval,
                validator=self.validate_read,
                read_only=True,
            ),
            ToolEntry(
                name="write_file",
                handler=LocalHandler(self.write_file),
                description="Create or overwrite a text file in the project.",
                input_schema=_schema(
                    {
                        "path": "File path relative to the project root",
                        "content": "Full file content to write",
                    },
                    ["path", "content"],
                ),
                needs_approval=mutating_approval,
                formatter=_format_write,
                validator=self.validate_write,
            ),
            ToolEntry(
                name="list_directory",
                handler=LocalHandler(self.list_directory),
                description="List the entries of a project directory.",
                input_schema=_schema({"path": "Directory relative to the project root (default '.')"}, []),
                needs_approval=read_only_approval,
                validator=self.validate_directory,
                read_only=True,
            ),
            ToolEntry(
                name="find_files",
                handler=LocalHandler(self.find_files),
                description="Find project files whose path or name matches a glob pattern.",
                input_schema=_schema(
                    {
                        "pattern": "Glob pattern, e.g. '*.py' or 'src/**/test_*.py'",
                        "path": "Directory to search (default '.')",
                    },
                    ["pattern"],
                ),
                needs_approval=read_only_approval,
                validator=self.validate_directory,
                read_only=True,
            ),
        ]


def _schema(properties: dict[str, str], required: list[str]) -> dict:
    return {
        "type": "object",
        "properties": {
            name: {"type": "string", "description": description}
            for name, description in properties.items()
        },
        "required": required,
    }


def _format_write(arguments: dict, result: str | None) -> str:
    content = _file_text(arguments.get("content"))
    lines = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
    return f"write_file {arguments.get('path')} ({lines} lines)"
