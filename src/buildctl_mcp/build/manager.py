"""Build manager - orchestrates builds for the current project.

Provides:
- Project root and configuration management
- Project type detection and dispatch to the matching builder
- Single-flight build guard
- Lifecycle event publication around build and test runs
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from ..config import BuildConfig
from ..errors import (
    BuildIOError,
    EventPublicationError,
    NoProjectRootError,
    ShutdownTimeoutError,
    ToolExecutionError,
    UnknownProjectTypeError,
)
from ..events import (
    DEFAULT_SOURCE,
    BuildCompleted,
    BuildFailed,
    BuildStarted,
    EventBus,
    EventMessage,
    LifecycleEvent,
    TestsCompleted,
    TestsStarted,
    new_correlation_id,
)
from ..utils.locks import ReadWriteLock
from .builders import create_builder
from .detector import ProjectType, detect_project_type, matching_project_types
from .policy import validate_project_root
from .runner import SubprocessToolRunner, ToolInvocation, ToolRunner
from .state import BuildState, BuildStateGuard, OperationResult

logger = logging.getLogger(__name__)

AUTO_BUILD_TARGET = "auto-build"
MANUAL_BUILD_TARGET = "manual-build"

SHUTDOWN_POLL_INTERVAL: float = 0.1


def _detect(root: Path) -> ProjectType:
    try:
        return detect_project_type(root)
    except OSError as e:
        raise BuildIOError(f"Failed to read project markers in {root}: {e}") from e


class BuildManager:
    """Build orchestration for one open project.

    Usage:
        manager = BuildManager(BuildConfig.from_env())
        await manager.set_project_root("/path/to/project")
        await manager.build()
    """

    def __init__(
        self,
        config: BuildConfig | None = None,
        event_bus: EventBus | None = None,
        runner: ToolRunner | None = None,
        source: str = DEFAULT_SOURCE,
    ) -> None:
        self._config = config or BuildConfig()
        self._config_lock = ReadWriteLock()
        self._project_root: Path | None = None
        self._root_lock = ReadWriteLock()
        self._guard = BuildStateGuard()
        self._event_bus = event_bus or EventBus()
        self._runner = runner or SubprocessToolRunner()
        self._source = source
        self._last_results: dict[str, OperationResult] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def state(self) -> BuildState:
        """Current build state."""
        return self._guard.state

    def on_build_state_change(self, listener: Callable[[BuildState], None]) -> None:
        """Register build state change listener."""
        self._guard.on_state_change(listener)

    def get_last_result(self, operation: str = "build") -> OperationResult | None:
        """Last result of an operation ("build", "run", "test" or "clean")."""
        return self._last_results.get(operation)

    # ============== Project root ==============

    async def set_project_root(self, root: str | Path) -> Path:
        """Set the project root directory.

        Raises:
            ValueError: If root is not an existing directory
        """
        validated = validate_project_root(root)
        async with self._root_lock.write():
            self._project_root = validated
        logger.info(f"Setting build project root: {validated}")
        return validated

    async def clear_project(self) -> None:
        """Clear the current project. Clearing twice is a no-op."""
        logger.debug("Clearing build project")
        async with self._root_lock.write():
            self._project_root = None

    async def get_project_root(self) -> Path | None:
        """Get the current project root."""
        async with self._root_lock.read():
            return self._project_root

    async def _require_root(self) -> Path:
        root = await self.get_project_root()
        if root is None:
            raise NoProjectRootError()
        return root

    async def detect_project_type(self) -> ProjectType:
        """Detect the type of the current project."""
        root = await self._require_root()
        return _detect(root)

    # ============== Configuration ==============

    async def get_build_config(self) -> BuildConfig:
        """Get a snapshot of the current build configuration."""
        async with self._config_lock.read():
            return self._config.snapshot()

    async def update_config(self, config: BuildConfig) -> None:
        """Replace the build configuration.

        Operations already dispatched keep the snapshot they started with.
        """
        async with self._config_lock.write():
            self._config = config.snapshot()
        logger.debug("Updated build manager configuration")

    async def is_auto_build_enabled(self) -> bool:
        async with self._config_lock.read():
            return self._config.auto_build_on_save

    async def should_show_build_output(self) -> bool:
        async with self._config_lock.read():
            return self._config.show_build_output

    async def get_build_env_vars(self) -> dict[str, str]:
        async with self._config_lock.read():
            return dict(self._config.env_vars)

    # ============== Build state ==============

    async def is_building(self) -> bool:
        """Whether a build is currently in progress."""
        return self._guard.is_building

    # ============== Operations ==============

    async def build(self) -> None:
        """Build the current project.

        Raises:
            NoProjectRootError: If no project root is set
            BuildAlreadyInProgressError: If another build is running
            UnknownProjectTypeError: If the root matches no project type
            EventPublicationError: If a lifecycle event could not be delivered
            BuildError: Whatever the builder raised, unchanged
        """
        root = await self._require_root()
        async with self._guard.hold():
            await self._perform_build(root)

    async def _perform_build(self, root: Path) -> None:
        logger.info(f"Building project at: {root}")
        config = await self.get_build_config()
        target = AUTO_BUILD_TARGET if config.auto_build_on_save else MANUAL_BUILD_TARGET
        correlation_id = new_correlation_id()

        await self._publish(BuildStarted(target=target), correlation_id)

        start_time = time.perf_counter()
        project_type = ProjectType.UNKNOWN
        error: Exception | None = None
        try:
            project_type = _detect(root)
            builder = create_builder(project_type, config, self._runner)
            await builder.build(root, config.env_vars)
        except Exception as e:
            error = e
        duration = time.perf_counter() - start_time

        self._record("build", root, project_type, duration, error, target)

        event: LifecycleEvent
        if error is None:
            logger.info(f"Build completed successfully in {duration:.3f}s")
            event = BuildCompleted(target=target, duration=duration)
        else:
            logger.error(f"Build failed: {error}")
            event = BuildFailed(target=target, error=str(error))

        await self._publish(event, correlation_id, build_error=error)

        if error is not None:
            raise error

    async def run(self) -> None:
        """Build, then run the current project.

        A failed build stops here and its error is raised unchanged.
        """
        root = await self._require_root()
        logger.info(f"Running project at: {root}")

        await self.build()

        config = await self.get_build_config()
        project_type = _detect(root)
        await self._dispatch("run", root, project_type, config)

    async def test(self) -> None:
        """Test the current project.

        Does not take the build guard. Publishes TestsStarted, then exactly one
        TestsCompleted counting the whole run as a single pass or failure.
        """
        root = await self._require_root()
        logger.info(f"Testing project at: {root}")

        config = await self.get_build_config()
        correlation_id = new_correlation_id()
        await self._publish(TestsStarted(), correlation_id)

        error: Exception | None = None
        try:
            project_type = _detect(root)
            # Script projects are checked by their compiler; only unknown roots
            # have nothing to test with.
            if project_type == ProjectType.UNKNOWN:
                raise UnknownProjectTypeError(
                    "Testing not supported for this project type"
                )
            await self._dispatch("test", root, project_type, config)
        except Exception as e:
            error = e

        passed, failed = (1, 0) if error is None else (0, 1)
        await self._publish(
            TestsCompleted(passed=passed, failed=failed),
            correlation_id,
            build_error=error,
        )

        if error is not None:
            raise error

    async def clean(self) -> None:
        """Clean build artifacts of the current project."""
        root = await self._require_root()
        logger.info(f"Cleaning project at: {root}")

        config = await self.get_build_config()
        project_type = _detect(root)
        await self._dispatch("clean", root, project_type, config)

    async def _dispatch(
        self,
        operation: str,
        root: Path,
        project_type: ProjectType,
        config: BuildConfig,
    ) -> None:
        start_time = time.perf_counter()
        error: Exception | None = None
        try:
            builder = create_builder(project_type, config, self._runner)
            await getattr(builder, operation)(root, config.env_vars)
        except Exception as e:
            error = e
            raise
        finally:
            self._record(
                operation, root, project_type, time.perf_counter() - start_time, error
            )

    async def execute_command(self, program: str, args: Sequence[str] = ()) -> str:
        """Execute a custom command in the project directory.

        Returns:
            The command's stdout

        Raises:
            ToolExecutionError: If the command exits with a non-zero status
        """
        root = await self._require_root()
        env = await self.get_build_env_vars()
        invocation = ToolInvocation(program=program, args=tuple(args), cwd=root, env=env)
        logger.debug(f"Executing command: {invocation} in {root}")

        result = await self._runner.run(invocation)
        if not result.success:
            message = result.stderr.strip() or f"{program} exited with code {result.exit_code}"
            raise ToolExecutionError(f"Command failed: {message}", exit_code=result.exit_code)
        return result.stdout

    async def shutdown(
        self,
        poll_interval: float = SHUTDOWN_POLL_INTERVAL,
        timeout: float | None = None,
    ) -> None:
        """Wait for any in-flight build to finish.

        With ``timeout=None`` this waits forever: a tool that never exits keeps
        shutdown waiting too, since running tools cannot be cancelled.

        Raises:
            ShutdownTimeoutError: If timeout elapses while still building
        """
        logger.debug("Shutting down build manager")
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while await self.is_building():
            if deadline is not None and loop.time() >= deadline:
                raise ShutdownTimeoutError(
                    f"Build still in progress after {timeout}s"
                )
            await asyncio.sleep(poll_interval)

    async def status(self) -> dict[str, Any]:
        """Get manager status as dictionary."""
        root = await self.get_project_root()
        config = await self.get_build_config()
        result: dict[str, Any] = {
            "state": self.state.value,
            "projectRoot": str(root) if root else None,
            "projectType": detect_project_type(root).value if root else None,
            "matchingTypes": [t.value for t in matching_project_types(root)] if root else [],
            "config": config.to_dict(),
            "lastResults": {
                op: res.to_dict() for op, res in self._last_results.items()
            },
        }
        return result

    # ============== Internals ==============

    async def _publish(
        self,
        event: LifecycleEvent,
        correlation_id: str,
        build_error: Exception | None = None,
    ) -> None:
        message = EventMessage.from_event(
            event, source=self._source, correlation_id=correlation_id
        )
        try:
            await self._event_bus.publish(message)
        except EventPublicationError as e:
            if build_error is None:
                raise
            raise EventPublicationError(str(e), build_error=build_error) from build_error
        except Exception as e:
            raise EventPublicationError(
                f"Failed to publish {message.kind} event: {e}", build_error=build_error
            ) from e

    def _record(
        self,
        operation: str,
        root: Path,
        project_type: ProjectType,
        duration: float,
        error: Exception | None,
        target: str | None = None,
    ) -> None:
        self._last_results[operation] = OperationResult(
            operation=operation,
            success=error is None,
            project_root=str(root),
            project_type=project_type.value,
            target=target,
            duration_ms=duration * 1000,
            error=str(error) if error is not None else None,
        )
