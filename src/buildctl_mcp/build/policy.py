"""Project root validation.

A project root must be:
- non-empty, and not a device (\\\\.\\, \\\\?\\) or UNC (\\\\server\\share) path
- an existing directory

The validated root is returned as an absolute, normalized ``Path``.
"""

from __future__ import annotations

import os
from pathlib import Path


def validate_project_root(
    root: str | Path,
    allow_unc_paths: bool = False,
) -> Path:
    """Validate and canonicalize a project root.

    Args:
        root: Candidate project root
        allow_unc_paths: Whether to accept UNC network paths

    Returns:
        Absolute, normalized path

    Raises:
        ValueError: If the path is invalid or not a directory
    """
    path = str(root)
    if not path:
        raise ValueError("Empty project root")

    # Device paths start with \\ too, so check them before UNC
    if path.startswith(("\\\\.\\", "\\\\?\\")):
        raise ValueError(f"Device paths not allowed as project root: {path}")

    if path.startswith("\\\\") and not allow_unc_paths:
        raise ValueError(f"UNC paths not allowed as project root: {path}")

    abs_path = os.path.normpath(os.path.abspath(path))

    if not os.path.exists(abs_path):
        raise ValueError(f"Project root does not exist: {path}")
    if not os.path.isdir(abs_path):
        raise ValueError(f"Project root is not a directory: {path}")

    return Path(abs_path)
