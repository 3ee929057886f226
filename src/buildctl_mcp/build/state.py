"""Build state guard and operation results.

State machine (one guard per build manager):
IDLE → BUILDING → IDLE

Entering BUILDING is a single compare-and-swap. A second attempt while a
build is in flight fails immediately; nothing queues or blocks.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import BuildAlreadyInProgressError

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    """Build guard states."""

    IDLE = "idle"
    BUILDING = "building"


class BuildStateGuard:
    """Single-flight guard for builds.

    ``try_acquire`` never awaits, so it cannot interleave with another
    coroutine, and the internal lock makes it safe across threads as well.
    """

    def __init__(self) -> None:
        self._state = BuildState.IDLE
        self._mutex = threading.Lock()
        self._listeners: list[Callable[[BuildState], None]] = []

    @property
    def state(self) -> BuildState:
        """Current build state."""
        return self._state

    @property
    def is_building(self) -> bool:
        """Whether a build is currently running."""
        return self._state == BuildState.BUILDING

    def on_state_change(self, listener: Callable[[BuildState], None]) -> None:
        """Register state change listener."""
        self._listeners.append(listener)

    def try_acquire(self) -> bool:
        """Atomically move IDLE → BUILDING.

        Returns:
            True if this caller now owns the build, False if one is running
        """
        with self._mutex:
            if self._state != BuildState.IDLE:
                return False
            self._state = BuildState.BUILDING
        self._notify(BuildState.IDLE, BuildState.BUILDING)
        return True

    def release(self) -> None:
        """Move BUILDING → IDLE. Releasing an idle guard is a no-op."""
        with self._mutex:
            if self._state == BuildState.IDLE:
                return
            self._state = BuildState.IDLE
        self._notify(BuildState.BUILDING, BuildState.IDLE)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Own the build for the duration of the block.

        Raises:
            BuildAlreadyInProgressError: If a build is already running
        """
        if not self.try_acquire():
            raise BuildAlreadyInProgressError()
        try:
            yield
        finally:
            self.release()

    def _notify(self, old_state: BuildState, new_state: BuildState) -> None:
        logger.info(f"Build state: {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            try:
                listener(new_state)
            except Exception:
                logger.exception("State listener error")


@dataclass
class OperationResult:
    """Outcome of one orchestrated operation."""

    operation: str
    success: bool
    project_root: str
    project_type: str
    target: str | None = None
    duration_ms: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "operation": self.operation,
            "success": self.success,
            "projectRoot": self.project_root,
            "projectType": self.project_type,
            "durationMs": round(self.duration_ms, 2),
        }
        if self.target is not None:
            result["target"] = self.target
        if self.error is not None:
            result["error"] = self.error
        return result

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        status = "[OK]" if self.success else "[FAILED]"
        parts = [
            f"{status} {self.operation}",
            f"  Project: {self.project_root} ({self.project_type})",
            f"  Duration: {self.duration_ms:.0f}ms",
        ]
        if self.target:
            parts.append(f"  Target: {self.target}")
        if self.error:
            parts.append(f"  Error: {self.error}")
        return "\n".join(parts)
