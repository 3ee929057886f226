"""Pytest fixtures for buildctl-mcp tests."""

import asyncio
import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from buildctl_mcp.build.manager import BuildManager  # noqa: E402
from buildctl_mcp.build.runner import ToolInvocation, ToolResult  # noqa: E402
from buildctl_mcp.config import BuildConfig  # noqa: E402
from buildctl_mcp.events import EventBus  # noqa: E402


class FakeToolRunner:
    """ToolRunner that records invocations instead of spawning processes.

    Results are looked up by command-line prefix, longest prefix first.
    Setting ``gate`` makes every run wait until the event is set.
    """

    def __init__(self, default: ToolResult | None = None):
        self.invocations: list[ToolInvocation] = []
        self.default = default or ToolResult(exit_code=0)
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self._results: dict[tuple[str, ...], ToolResult | Exception] = {}

    def set_result(self, command: tuple[str, ...], result: ToolResult | Exception) -> None:
        self._results[tuple(command)] = result

    @property
    def commands(self) -> list[list[str]]:
        return [inv.command_line for inv in self.invocations]

    async def run(self, invocation: ToolInvocation) -> ToolResult:
        self.invocations.append(invocation)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        command = tuple(invocation.command_line)
        for key in sorted(self._results, key=len, reverse=True):
            if command[: len(key)] == key:
                outcome = self._results[key]
                break
        else:
            outcome = self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def runner():
    """Fake tool runner."""
    return FakeToolRunner()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def events(event_bus):
    """List receiving every published event message, in order."""
    received = []
    event_bus.register_handler("recorder", received.append)
    return received


@pytest.fixture
def manager(runner, event_bus):
    """Build manager wired to the fake runner and a fresh bus."""
    return BuildManager(BuildConfig(), event_bus=event_bus, runner=runner)


@pytest.fixture
def native_root(tmp_path):
    """Root with only a native toolchain manifest."""
    root = tmp_path / "native"
    root.mkdir()
    (root / "Cargo.toml").write_text('[package]\nname = "demo"\nversion = "0.1.0"\n')
    return root


@pytest.fixture
def engine_root(tmp_path):
    """Root with only an engine manifest."""
    root = tmp_path / "engine"
    root.mkdir()
    (root / "xylux.toml").write_text('[project]\nname = "game"\ntarget = "native"\n')
    return root


@pytest.fixture
def script_root(tmp_path):
    """Root with a scripts directory holding two scripts."""
    root = tmp_path / "script"
    (root / "scripts").mkdir(parents=True)
    (root / "scripts" / "main.aux").write_text("fn main() {}\n")
    (root / "scripts" / "utils.aux").write_text("fn helper() {}\n")
    return root


@pytest.fixture
def unknown_root(tmp_path):
    """Root with no marker files."""
    root = tmp_path / "unknown"
    root.mkdir()
    (root / "README.md").write_text("nothing to build\n")
    return root
