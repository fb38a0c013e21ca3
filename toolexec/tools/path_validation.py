"""Keep file tools inside the project root."""

from __future__ import annotations

import re
from pathlib import Path

from toolexec.errors import ToolValidationError

_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def resolve_project_path(path: str, root: str | Path) -> Path:
    """Resolve *path* relative to *root*, rejecting anything that escapes it.

    Raises:
        ToolValidationError: for empty paths, null bytes, ``..`` segments,
            absolute or drive-qualified paths, or a resolved path outside
            *root* (e.g. through a symlink).
    """
    if not isinstance(path, str) or not path.strip():
        raise ToolValidationError("Path must be a non-empty string")
    if "\x00" in path:
        raise ToolValidationError("Path contains a null byte")
    if path.startswith(("/", "\\")) or _WINDOWS_DRIVE_RE.match(path):
        raise ToolValidationError(f"Absolute paths are not allowed: {path}")
    if ".." in re.split(r"[\\/]", path):
        raise ToolValidationError(f"Path traversal is not allowed: {path}")

    base = Path(root).resolve()
    resolved = (base / path).resolve()
    if resolved != base and base not in resolved.parents:
        raise ToolValidationError(f"Path is outside the project directory: {path}")
    return resolved


def is_valid_project_path(path: str, root: str | Path) -> bool:
    try:
        resolve_project_path(path, root)
    except ToolValidationError:
        return False
    return True
