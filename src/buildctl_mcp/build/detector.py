"""Project type detection from marker files.

Detection walks ``MARKER_RULES`` in order and the first matching rule wins.
A root can legitimately satisfy several rules at once (a Cargo crate that
also ships a ``scripts/`` directory), so the order here is the contract:

1. native: ``Cargo.toml``
2. engine: ``xylux.toml``
3. script: ``scripts/`` directory or top-level ``main.aux``
4. unknown
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class ProjectType(str, Enum):
    """Kinds of project the build manager can drive."""

    NATIVE = "native"  # Native toolchain (cargo)
    ENGINE = "engine"  # Engine project (xylux CLI)
    SCRIPT = "script"  # Script project (alux compiler/VM)
    UNKNOWN = "unknown"


class MarkerKind(str, Enum):
    """What kind of filesystem entry a marker must be."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class Marker:
    """A file or directory whose presence identifies a project type."""

    name: str
    kind: MarkerKind = MarkerKind.FILE

    def present_in(self, root: Path) -> bool:
        path = root / self.name
        if self.kind == MarkerKind.DIRECTORY:
            return path.is_dir()
        return path.is_file()


@dataclass(frozen=True)
class MarkerRule:
    """Any one of ``markers`` being present selects ``project_type``."""

    project_type: ProjectType
    markers: tuple[Marker, ...]

    def matches(self, root: Path) -> bool:
        return any(marker.present_in(root) for marker in self.markers)


NATIVE_MANIFEST = "Cargo.toml"
ENGINE_MANIFEST = "xylux.toml"
SCRIPTS_DIR = "scripts"
SCRIPT_ENTRY = "main.aux"

# Highest precedence first.
MARKER_RULES: tuple[MarkerRule, ...] = (
    MarkerRule(ProjectType.NATIVE, (Marker(NATIVE_MANIFEST),)),
    MarkerRule(ProjectType.ENGINE, (Marker(ENGINE_MANIFEST),)),
    MarkerRule(
        ProjectType.SCRIPT,
        (Marker(SCRIPTS_DIR, MarkerKind.DIRECTORY), Marker(SCRIPT_ENTRY)),
    ),
)


def detect_project_type(root: str | Path) -> ProjectType:
    """Classify a project root.

    Reads the filesystem only: nothing is cached and nothing is written.

    Args:
        root: Project root directory

    Returns:
        The first matching type in precedence order, or UNKNOWN
    """
    path = Path(root)
    if not path.is_dir():
        return ProjectType.UNKNOWN
    for rule in MARKER_RULES:
        if rule.matches(path):
            return rule.project_type
    return ProjectType.UNKNOWN


def matching_project_types(root: str | Path) -> list[ProjectType]:
    """All project types whose markers are present, in precedence order."""
    path = Path(root)
    if not path.is_dir():
        return []
    return [rule.project_type for rule in MARKER_RULES if rule.matches(path)]
