"""Tests for BuildManager orchestration."""

import asyncio
from pathlib import Path

import pytest

from buildctl_mcp.build.detector import ProjectType
from buildctl_mcp.build.manager import AUTO_BUILD_TARGET, MANUAL_BUILD_TARGET, BuildManager
from buildctl_mcp.build.runner import ToolResult
from buildctl_mcp.build.state import BuildState
from buildctl_mcp.config import BuildConfig
from buildctl_mcp.errors import (
    BuildAlreadyInProgressError,
    BuildIOError,
    EventPublicationError,
    NoProjectRootError,
    ShutdownTimeoutError,
    ToolExecutionError,
    UnknownProjectTypeError,
)
from buildctl_mcp.events import EventSubscription


def kinds(events):
    return [m.kind for m in events]


def deny_marker(monkeypatch, name="Cargo.toml"):
    """Make checking one marker file fail with PermissionError."""
    original = Path.is_file

    def is_file(self):
        if self.name == name:
            raise PermissionError(13, "Permission denied", str(self))
        return original(self)

    monkeypatch.setattr(Path, "is_file", is_file)


class TestProjectRoot:
    """Tests for project root management."""

    @pytest.mark.asyncio
    async def test_no_root_initially(self, manager):
        """Test that a new manager has no project root."""
        assert await manager.get_project_root() is None

    @pytest.mark.asyncio
    async def test_set_project_root(self, manager, native_root):
        """Test setting a valid root and detecting its type."""
        root = await manager.set_project_root(str(native_root))

        assert root == native_root
        assert await manager.get_project_root() == native_root
        assert await manager.detect_project_type() == ProjectType.NATIVE

    @pytest.mark.asyncio
    async def test_set_invalid_root(self, manager, tmp_path):
        """Test that a missing directory is rejected and the root stays unset."""
        with pytest.raises(ValueError):
            await manager.set_project_root(tmp_path / "missing")
        assert await manager.get_project_root() is None

    @pytest.mark.asyncio
    async def test_clear_project_twice(self, manager, native_root):
        """Test that clearing an already cleared project is a no-op."""
        await manager.set_project_root(native_root)

        await manager.clear_project()
        await manager.clear_project()

        assert await manager.get_project_root() is None

    @pytest.mark.asyncio
    async def test_detect_without_root(self, manager):
        """Test that detection needs a project root."""
        with pytest.raises(NoProjectRootError):
            await manager.detect_project_type()


class TestBuild:
    """Tests for build()."""

    @pytest.mark.asyncio
    async def test_no_root(self, manager, runner, events):
        """Test that build without a root fails before any detection or spawn."""
        with pytest.raises(NoProjectRootError):
            await manager.build()

        assert runner.invocations == []
        assert events == []
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_success_events(self, manager, runner, events, native_root):
        """Test that a successful build publishes Started then Completed."""
        await manager.set_project_root(native_root)

        await manager.build()

        assert runner.commands == [["cargo", "build"]]
        assert kinds(events) == ["started", "completed"]
        started, completed = events
        assert started.data == {"target": MANUAL_BUILD_TARGET}
        assert completed.data["target"] == MANUAL_BUILD_TARGET
        assert completed.data["duration"] >= 0
        assert started.correlation_id == completed.correlation_id
        assert started.source == "build_manager"
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_auto_build_target(self, runner, event_bus, events, native_root):
        """Test that auto-build mode labels both events "auto-build"."""
        manager = BuildManager(
            BuildConfig(auto_build_on_save=True), event_bus=event_bus, runner=runner
        )
        await manager.set_project_root(native_root)

        await manager.build()

        assert [m.data["target"] for m in events] == [AUTO_BUILD_TARGET] * 2

    @pytest.mark.asyncio
    async def test_unknown_project_type(self, manager, runner, events, unknown_root):
        """Test that an unknown root publishes Failed and spawns nothing."""
        await manager.set_project_root(unknown_root)

        with pytest.raises(UnknownProjectTypeError):
            await manager.build()

        assert runner.invocations == []
        assert kinds(events) == ["started", "failed"]
        assert events[1].data["error"] == "Unknown project type"
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_tool_failure_event_carries_stderr(
        self, manager, runner, events, native_root
    ):
        """Test that the Failed event carries the tool's stderr."""
        runner.set_result(
            ("cargo", "build"),
            ToolResult(exit_code=101, stderr="error: could not compile `demo`\n"),
        )
        await manager.set_project_root(native_root)

        with pytest.raises(ToolExecutionError) as exc_info:
            await manager.build()

        assert exc_info.value.exit_code == 101
        assert kinds(events) == ["started", "failed"]
        assert events[1].data["error"] == "error: could not compile `demo`"
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_tool_failure_without_stderr(self, manager, runner, events, native_root):
        """Test that a silent failure gets an exit-code message."""
        runner.set_result(("cargo", "build"), ToolResult(exit_code=1))
        await manager.set_project_root(native_root)

        with pytest.raises(ToolExecutionError):
            await manager.build()

        assert "exited with code 1" in events[1].data["error"]

    @pytest.mark.asyncio
    async def test_native_and_engine_markers_use_cargo(self, manager, runner, tmp_path):
        """Test that the native manifest wins over the engine manifest."""
        (tmp_path / "Cargo.toml").touch()
        (tmp_path / "xylux.toml").touch()
        await manager.set_project_root(tmp_path)

        await manager.build()

        assert runner.commands == [["cargo", "build"]]

    @pytest.mark.asyncio
    async def test_type_is_detected_per_call(self, manager, runner, engine_root):
        """Test that the project type is not cached between builds."""
        await manager.set_project_root(engine_root)
        await manager.build()

        (engine_root / "Cargo.toml").touch()
        await manager.build()

        assert runner.commands == [["xylux", "build"], ["cargo", "build"]]

    @pytest.mark.asyncio
    async def test_environment_reaches_tool(self, runner, event_bus, native_root):
        """Test that configured env vars are passed to the tool."""
        manager = BuildManager(
            BuildConfig(env_vars={"RUST_LOG": "debug"}), event_bus=event_bus, runner=runner
        )
        await manager.set_project_root(native_root)

        await manager.build()

        assert dict(runner.invocations[0].env) == {"RUST_LOG": "debug"}

    @pytest.mark.asyncio
    async def test_records_last_result(self, manager, native_root):
        """Test that the build outcome is kept as the last result."""
        await manager.set_project_root(native_root)

        await manager.build()

        result = manager.get_last_result("build")
        assert result.success
        assert result.project_type == "native"
        assert result.target == MANUAL_BUILD_TARGET

    @pytest.mark.asyncio
    async def test_state_listener_sees_transitions(self, manager, native_root):
        """Test that state listeners see building then idle."""
        seen = []
        manager.on_build_state_change(seen.append)
        await manager.set_project_root(native_root)

        await manager.build()

        assert seen == [BuildState.BUILDING, BuildState.IDLE]

    @pytest.mark.asyncio
    async def test_marker_read_error_publishes_failed(
        self, manager, runner, events, native_root, monkeypatch
    ):
        """Test that an unreadable marker still ends with a Failed event."""
        await manager.set_project_root(native_root)
        deny_marker(monkeypatch)

        with pytest.raises(BuildIOError, match="Permission denied"):
            await manager.build()

        assert runner.invocations == []
        assert kinds(events) == ["started", "failed"]
        assert events[1].data["error"].startswith("I/O error")
        assert manager.state == BuildState.IDLE
        assert not manager.get_last_result("build").success



class TestSingleFlight:
    """Tests for concurrent build requests."""

    @pytest.mark.asyncio
    async def test_concurrent_build_fails_fast(self, manager, runner, events, native_root):
        """Test that a second build while one runs fails without a second spawn."""
        await manager.set_project_root(native_root)
        runner.gate = asyncio.Event()

        first = asyncio.create_task(manager.build())
        await runner.started.wait()
        assert await manager.is_building()

        with pytest.raises(BuildAlreadyInProgressError):
            await manager.build()

        runner.gate.set()
        await first

        assert len(runner.invocations) == 1
        assert kinds(events) == ["started", "completed"]
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_run_while_building_fails(self, manager, runner, native_root):
        """Test that run is refused while a build holds the guard."""
        await manager.set_project_root(native_root)
        runner.gate = asyncio.Event()

        first = asyncio.create_task(manager.build())
        await runner.started.wait()

        with pytest.raises(BuildAlreadyInProgressError):
            await manager.run()

        runner.gate.set()
        await first
        assert runner.commands == [["cargo", "build"]]

    @pytest.mark.asyncio
    async def test_build_allowed_after_previous_finishes(self, manager, runner, native_root):
        """Test that sequential builds both run."""
        await manager.set_project_root(native_root)

        await manager.build()
        await manager.build()

        assert len(runner.invocations) == 2

    @pytest.mark.asyncio
    async def test_build_allowed_after_failure(self, manager, runner, native_root):
        """Test that a failed build releases the guard."""
        runner.set_result(("cargo", "build"), ToolResult(exit_code=101, stderr="boom"))
        await manager.set_project_root(native_root)

        with pytest.raises(ToolExecutionError):
            await manager.build()

        runner.set_result(("cargo", "build"), ToolResult(exit_code=0))
        await manager.build()

    @pytest.mark.asyncio
    async def test_test_does_not_take_the_guard(self, manager, runner, events, native_root):
        """Test that tests can run while the guard is held."""
        await manager.set_project_root(native_root)
        manager._guard.try_acquire()

        await manager.test()

        assert runner.commands == [["cargo", "test"]]
        assert manager.state == BuildState.BUILDING


class TestRun:
    """Tests for run()."""

    @pytest.mark.asyncio
    async def test_builds_then_runs(self, manager, runner, events, engine_root):
        """Test that run builds first and then runs."""
        await manager.set_project_root(engine_root)

        await manager.run()

        assert runner.commands == [["xylux", "build"], ["xylux", "run"]]
        assert kinds(events) == ["started", "completed"]
        assert manager.get_last_result("run").success

    @pytest.mark.asyncio
    async def test_failed_build_skips_run(self, manager, runner, events, engine_root):
        """Test that a failed build stops run before the run step."""
        runner.set_result(("xylux", "build"), ToolResult(exit_code=1, stderr="shader error"))
        await manager.set_project_root(engine_root)

        with pytest.raises(ToolExecutionError, match="shader error"):
            await manager.run()

        assert runner.commands == [["xylux", "build"]]
        assert kinds(events) == ["started", "failed"]

    @pytest.mark.asyncio
    async def test_run_failure(self, manager, runner, engine_root):
        """Test that a failing run step is recorded and raised."""
        runner.set_result(("xylux", "run"), ToolResult(exit_code=3, stderr="panic"))
        await manager.set_project_root(engine_root)

        with pytest.raises(ToolExecutionError, match="panic"):
            await manager.run()

        assert not manager.get_last_result("run").success

    @pytest.mark.asyncio
    async def test_no_root(self, manager):
        """Test that run without a root fails."""
        with pytest.raises(NoProjectRootError):
            await manager.run()

    @pytest.mark.asyncio
    async def test_unknown_project_type(self, manager, runner, events, unknown_root):
        """Test that run on an unknown root fails in its build step."""
        await manager.set_project_root(unknown_root)

        with pytest.raises(UnknownProjectTypeError):
            await manager.run()

        assert runner.invocations == []
        assert kinds(events) == ["started", "failed"]
        assert manager.get_last_result("run") is None



class TestTest:
    """Tests for test()."""

    @pytest.mark.asyncio
    async def test_passing_run(self, manager, runner, events, native_root):
        """Test that a passing run counts as one passed test."""
        await manager.set_project_root(native_root)

        await manager.test()

        assert runner.commands == [["cargo", "test"]]
        assert kinds(events) == ["tests_started", "tests_completed"]
        assert events[1].data == {"passed": 1, "failed": 0}
        assert events[0].correlation_id == events[1].correlation_id

    @pytest.mark.asyncio
    async def test_failing_run(self, manager, runner, events, engine_root):
        """Test that a failing run counts as one failed test."""
        runner.set_result(("xylux", "test"), ToolResult(exit_code=1, stderr="2 tests failed"))
        await manager.set_project_root(engine_root)

        with pytest.raises(ToolExecutionError):
            await manager.test()

        assert events[1].data == {"passed": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_script_project_checks_scripts(self, manager, runner, events, script_root):
        """Test that script projects are tested with a compiler check rather than refused."""
        await manager.set_project_root(script_root)

        await manager.test()

        assert runner.commands[0][:2] == ["alux-compile", "check"]
        assert events[1].data == {"passed": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_unknown_project_type(self, manager, runner, events, unknown_root):
        """Test that an unknown root is not testable and counts as a failure."""
        await manager.set_project_root(unknown_root)

        with pytest.raises(UnknownProjectTypeError, match="not supported for this project type"):
            await manager.test()

        assert runner.invocations == []
        assert kinds(events) == ["tests_started", "tests_completed"]
        assert events[1].data == {"passed": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_no_root(self, manager, events):
        """Test that test without a root publishes nothing."""
        with pytest.raises(NoProjectRootError):
            await manager.test()
        assert events == []

    @pytest.mark.asyncio
    async def test_marker_read_error_counts_as_failure(
        self, manager, runner, events, native_root, monkeypatch
    ):
        """Test that an unreadable marker still publishes TestsCompleted(0, 1)."""
        await manager.set_project_root(native_root)
        deny_marker(monkeypatch)

        with pytest.raises(BuildIOError):
            await manager.test()

        assert runner.invocations == []
        assert kinds(events) == ["tests_started", "tests_completed"]
        assert events[1].data == {"passed": 0, "failed": 1}



class TestClean:
    """Tests for clean()."""

    @pytest.mark.asyncio
    async def test_clean_emits_no_events(self, manager, runner, events, native_root):
        """Test that clean delegates to the tool without events."""
        await manager.set_project_root(native_root)

        await manager.clean()

        assert runner.commands == [["cargo", "clean"]]
        assert events == []
        assert manager.get_last_result("clean").success

    @pytest.mark.asyncio
    async def test_clean_unknown(self, manager, unknown_root):
        """Test that clean on an unknown root fails."""
        await manager.set_project_root(unknown_root)

        with pytest.raises(UnknownProjectTypeError):
            await manager.clean()

        assert not manager.get_last_result("clean").success

    @pytest.mark.asyncio
    async def test_clean_script_project(self, manager, runner, script_root):
        """Test that cleaning scripts removes bytecode without a process."""
        (script_root / "scripts" / "main.auxc").write_bytes(b"\x00")
        await manager.set_project_root(script_root)

        await manager.clean()

        assert not (script_root / "scripts" / "main.auxc").exists()
        assert runner.invocations == []

    @pytest.mark.asyncio
    async def test_no_root(self, manager, runner, events):
        """Test that clean without a project root spawns nothing."""
        with pytest.raises(NoProjectRootError):
            await manager.clean()

        assert runner.invocations == []
        assert events == []

    @pytest.mark.asyncio
    async def test_marker_read_error(self, manager, runner, native_root, monkeypatch):
        """Test that a marker read failure surfaces as BuildIOError."""
        await manager.set_project_root(native_root)
        deny_marker(monkeypatch)

        with pytest.raises(BuildIOError):
            await manager.clean()

        assert runner.invocations == []



class TestEventPublicationFailure:
    """Tests for delivery failures of lifecycle events."""

    @staticmethod
    def _fail_on(bus, kind):
        def broken(message):
            raise RuntimeError(f"cannot deliver {message.kind}")

        bus.register_handler("broken", broken, EventSubscription(kinds=(kind,)))

    @pytest.mark.asyncio
    async def test_started_failure_aborts_build(self, manager, runner, event_bus, native_root):
        """Test that a Started delivery failure aborts before dispatch."""
        self._fail_on(event_bus, "started")
        await manager.set_project_root(native_root)

        with pytest.raises(EventPublicationError):
            await manager.build()

        assert runner.invocations == []
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_completed_failure_after_successful_build(
        self, manager, runner, event_bus, native_root
    ):
        """Test that a Completed delivery failure is raised with no build error."""
        self._fail_on(event_bus, "completed")
        await manager.set_project_root(native_root)

        with pytest.raises(EventPublicationError) as exc_info:
            await manager.build()

        assert exc_info.value.build_error is None
        assert manager.get_last_result("build").success
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_failed_event_failure_keeps_build_error(
        self, manager, runner, event_bus, native_root
    ):
        """Test that a Failed delivery failure keeps the build's own error."""
        self._fail_on(event_bus, "failed")
        runner.set_result(("cargo", "build"), ToolResult(exit_code=101, stderr="boom"))
        await manager.set_project_root(native_root)

        with pytest.raises(EventPublicationError) as exc_info:
            await manager.build()

        assert isinstance(exc_info.value.build_error, ToolExecutionError)
        assert exc_info.value.to_dict()["buildError"] == "boom"
        assert manager.state == BuildState.IDLE


class TestShutdown:
    """Tests for shutdown()."""

    @pytest.mark.asyncio
    async def test_idle_returns_immediately(self, manager):
        """Test that shutdown of an idle manager returns at once."""
        await asyncio.wait_for(manager.shutdown(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_build(self, manager, runner, native_root):
        """Test that shutdown waits until the build finishes."""
        await manager.set_project_root(native_root)
        runner.gate = asyncio.Event()

        build = asyncio.create_task(manager.build())
        await runner.started.wait()
        shutdown = asyncio.create_task(manager.shutdown(poll_interval=0.01))

        await asyncio.sleep(0.05)
        assert not shutdown.done()

        runner.gate.set()
        await build
        await asyncio.wait_for(shutdown, timeout=1.0)
        assert manager.state == BuildState.IDLE

    @pytest.mark.asyncio
    async def test_timeout(self, manager, runner, native_root):
        """Test that shutdown gives up after its timeout."""
        await manager.set_project_root(native_root)
        runner.gate = asyncio.Event()

        build = asyncio.create_task(manager.build())
        await runner.started.wait()

        with pytest.raises(ShutdownTimeoutError):
            await manager.shutdown(poll_interval=0.01, timeout=0.05)

        runner.gate.set()
        await build


class TestConfiguration:
    """Tests for configuration access."""

    @pytest.mark.asyncio
    async def test_snapshot_is_independent(self, manager):
        """Test that a config snapshot does not alias the manager's config."""
        config = await manager.get_build_config()
        config.env_vars["INJECTED"] = "1"

        assert "INJECTED" not in await manager.get_build_env_vars()

    @pytest.mark.asyncio
    async def test_update_config(self, manager):
        """Test replacing the configuration."""
        await manager.update_config(
            BuildConfig(auto_build_on_save=True, show_build_output=False, env_vars={"A": "1"})
        )

        assert await manager.is_auto_build_enabled()
        assert not await manager.should_show_build_output()
        assert await manager.get_build_env_vars() == {"A": "1"}

    @pytest.mark.asyncio
    async def test_update_does_not_alias_caller(self, manager):
        """Test that later edits to the caller's config are not seen."""
        config = BuildConfig(env_vars={"A": "1"})
        await manager.update_config(config)
        config.env_vars["B"] = "2"

        assert await manager.get_build_env_vars() == {"A": "1"}

    @pytest.mark.asyncio
    async def test_configured_tool_path(self, runner, event_bus, native_root):
        """Test that the configured cargo path is used."""
        manager = BuildManager(
            BuildConfig(cargo_path="/custom/cargo"), event_bus=event_bus, runner=runner
        )
        await manager.set_project_root(native_root)

        await manager.build()

        assert runner.commands == [["/custom/cargo", "build"]]


class TestExecuteCommand:
    """Tests for execute_command()."""

    @pytest.mark.asyncio
    async def test_returns_stdout(self, manager, runner, native_root):
        """Test that stdout is returned and the command runs in the root."""
        runner.set_result(("git", "status"), ToolResult(0, stdout="clean\n"))
        await manager.set_project_root(native_root)

        output = await manager.execute_command("git", ["status"])

        assert output == "clean\n"
        assert runner.invocations[0].cwd == native_root

    @pytest.mark.asyncio
    async def test_failure(self, manager, runner, native_root):
        """Test that a failing command raises with its stderr."""
        runner.set_result(("make",), ToolResult(exit_code=2, stderr="no rule"))
        await manager.set_project_root(native_root)

        with pytest.raises(ToolExecutionError, match="Command failed: no rule") as exc_info:
            await manager.execute_command("make")

        assert exc_info.value.exit_code == 2

    @pytest.mark.asyncio
    async def test_no_root(self, manager):
        """Test that a custom command needs a project root."""
        with pytest.raises(NoProjectRootError):
            await manager.execute_command("ls")

    @pytest.mark.asyncio
    async def test_not_guarded_and_no_events(self, manager, runner, events, native_root):
        """Test that custom commands neither take the guard nor publish."""
        await manager.set_project_root(native_root)

        await manager.execute_command("echo", ["hi"])

        assert events == []
        assert manager.state == BuildState.IDLE


class TestStatus:
    """Tests for status()."""

    @pytest.mark.asyncio
    async def test_without_project(self, manager):
        """Test status with no project set."""
        status = await manager.status()

        assert status["state"] == "idle"
        assert status["projectRoot"] is None
        assert status["projectType"] is None
        assert status["matchingTypes"] == []
        assert status["lastResults"] == {}

    @pytest.mark.asyncio
    async def test_with_project(self, manager, tmp_path):
        """Test status lists matching types and last results."""
        (tmp_path / "Cargo.toml").touch()
        (tmp_path / "scripts").mkdir()
        await manager.set_project_root(tmp_path)
        await manager.build()

        status = await manager.status()

        assert status["projectType"] == "native"
        assert status["matchingTypes"] == ["native", "script"]
        assert status["lastResults"]["build"]["success"] is True
        assert status["config"]["cargoPath"] == "cargo"
