"""Project root discovery.

Used by ``--project-from-cwd``: walk up from a start directory looking for
build markers, most specific first:
1. Cargo.toml / xylux.toml (tool manifests)
2. scripts/ directory or main.aux (script projects)
3. .git (repository root as fallback)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

logger = logging.getLogger(__name__)

MANIFEST_MARKERS: tuple[str, ...] = ("Cargo.toml", "xylux.toml")


def _ancestors(start: Path, boundary: Path | None) -> Iterator[Path]:
    """Yield start and its parents, stopping at boundary if given."""
    yield start
    if boundary is not None and start == boundary:
        return
    for parent in start.parents:
        yield parent
        if boundary is not None and parent == boundary:
            return


def find_project_root(
    start_dir: str | Path | None = None,
    boundary: str | Path | None = None,
) -> Path:
    """Find the project root by walking up from a directory.

    Falls back to the start directory if no marker is found.

    Args:
        start_dir: Directory to start search from. Defaults to CWD.
        boundary: If provided, the search does not go above this directory.

    Returns:
        Path to project root
    """
    current = Path(start_dir or Path.cwd()).resolve()
    stop = Path(boundary).resolve() if boundary is not None else None

    # First pass: tool manifests
    for directory in _ancestors(current, stop):
        if any((directory / marker).is_file() for marker in MANIFEST_MARKERS):
            return directory

    # Second pass: script projects
    for directory in _ancestors(current, stop):
        if (directory / "scripts").is_dir() or (directory / "main.aux").is_file():
            return directory

    # Third pass: .git (can be a file for worktrees)
    for directory in _ancestors(current, stop):
        if (directory / ".git").exists():
            return directory

    logger.debug(f"No project markers above {current}, using it as root")
    return current
