"""Builder capability and tool adapters.

Every adapter exposes the same four operations (build, run, test, clean).
Each operation checks that the root really is the adapter's project type,
runs exactly one external tool in the root, and turns a failing exit status
into ``ToolExecutionError`` carrying the tool's stderr (or a synthesized
"exited with code N" message when stderr is empty).
"""

from __future__ import annotations

import json
import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, Protocol

from ..config import BuildConfig
from ..errors import (
    BuildIOError,
    ToolExecutionError,
    UnknownProjectTypeError,
    WrongProjectTypeError,
)
from .detector import (
    ENGINE_MANIFEST,
    SCRIPT_ENTRY,
    SCRIPTS_DIR,
    ProjectType,
    detect_project_type,
)
from .runner import ToolInvocation, ToolResult, ToolRunner

logger = logging.getLogger(__name__)


class Builder(Protocol):
    """Build/run/test/clean contract implemented by every tool adapter."""

    project_type: ClassVar[ProjectType]

    async def build(self, root: Path, env: Mapping[str, str] | None = None) -> None: ...

    async def run(self, root: Path, env: Mapping[str, str] | None = None) -> None: ...

    async def test(self, root: Path, env: Mapping[str, str] | None = None) -> None: ...

    async def clean(self, root: Path, env: Mapping[str, str] | None = None) -> None: ...


class ToolBuilder:
    """Shared plumbing for adapters that drive a single CLI tool."""

    project_type: ClassVar[ProjectType] = ProjectType.UNKNOWN
    display_name: ClassVar[str] = "tool"

    def __init__(self, tool_path: str, runner: ToolRunner, log_output: bool = True):
        self.tool_path = tool_path
        self._runner = runner
        self._log_output = log_output

    def ensure_project(self, root: Path) -> None:
        """Raise WrongProjectTypeError unless root is this adapter's type."""
        try:
            actual = detect_project_type(root)
        except OSError as e:
            raise BuildIOError(f"Failed to read project markers in {root}: {e}") from e
        if actual != self.project_type:
            raise WrongProjectTypeError(
                self.project_type.value, actual.value, str(root)
            )

    async def execute(
        self,
        root: Path,
        args: list[str],
        env: Mapping[str, str] | None = None,
        program: str | None = None,
    ) -> str:
        """Run the tool in root and return its stdout.

        Raises:
            ToolExecutionError: If the tool exits with a non-zero status
        """
        invocation = ToolInvocation(
            program=program or self.tool_path,
            args=tuple(args),
            cwd=root,
            env=dict(env or {}),
        )
        logger.debug(f"Executing {invocation} in {root}")
        result = await self._runner.run(invocation)
        return self._check(invocation, result)

    def _check(self, invocation: ToolInvocation, result: ToolResult) -> str:
        if result.success:
            if self._log_output and result.stdout.strip():
                logger.info(f"{self.display_name} output: {result.stdout.strip()}")
            return result.stdout

        message = result.stderr.strip()
        if not message:
            message = f"{invocation.program} exited with code {result.exit_code}"
        logger.error(f"{self.display_name} error: {message}")
        raise ToolExecutionError(message, exit_code=result.exit_code)

    async def check_availability(self) -> str:
        """Return the tool's version line.

        Raises:
            ToolNotFoundError: If the tool is not installed
            ToolExecutionError: If the tool does not answer ``--version``
        """
        invocation = ToolInvocation(program=self.tool_path, args=("--version",))
        result = await self._runner.run(invocation)
        output = self._check(invocation, result).strip()
        return output.splitlines()[0] if output else ""


class NativeToolchainBuilder(ToolBuilder):
    """Cargo adapter for native toolchain projects."""

    project_type = ProjectType.NATIVE
    display_name = "Cargo"

    @classmethod
    def from_config(cls, config: BuildConfig, runner: ToolRunner) -> NativeToolchainBuilder:
        return cls(config.cargo_path, runner, log_output=config.show_build_output)

    async def build(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Building native project with cargo at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["build"], env)

    async def run(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Running native project with cargo at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["run"], env)

    async def test(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Testing native project with cargo at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["test"], env)

    async def clean(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Cleaning native project with cargo at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["clean"], env)

    async def build_with_profile(
        self, root: Path, profile: str, env: Mapping[str, str] | None = None
    ) -> None:
        """Build with a named cargo profile ("dev", "release" or custom)."""
        self.ensure_project(root)
        args = ["build"]
        if profile == "release":
            args.append("--release")
        elif profile != "dev":
            args.extend(["--profile", profile])
        await self.execute(root, args, env)

    async def metadata(self, root: Path, env: Mapping[str, str] | None = None) -> dict[str, Any]:
        """Return parsed ``cargo metadata`` for the project."""
        self.ensure_project(root)
        output = await self.execute(
            root, ["metadata", "--format-version", "1", "--no-deps"], env
        )
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ToolExecutionError(f"Failed to parse cargo metadata: {e}") from e

    async def workspace_members(
        self, root: Path, env: Mapping[str, str] | None = None
    ) -> list[str]:
        """Package ids of the workspace members."""
        metadata = await self.metadata(root, env)
        members = metadata.get("workspace_members") or []
        return [m for m in members if isinstance(m, str)]


class EngineBuilder(ToolBuilder):
    """Engine CLI adapter (``xylux``) for engine projects."""

    project_type = ProjectType.ENGINE
    display_name = "Xylux"

    @classmethod
    def from_config(cls, config: BuildConfig, runner: ToolRunner) -> EngineBuilder:
        return cls(config.xylux_cli_path, runner, log_output=config.show_build_output)

    async def build(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Building engine project at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["build"], env)

    async def run(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Running engine project at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["run"], env)

    async def test(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Testing engine project at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["test"], env)

    async def clean(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Cleaning engine project at: {root}")
        self.ensure_project(root)
        await self.execute(root, ["clean"], env)

    async def build_for_target(
        self, root: Path, target: str, env: Mapping[str, str] | None = None
    ) -> None:
        """Build for a specific engine target (e.g. "wasm")."""
        self.ensure_project(root)
        await self.execute(root, ["build", "--target", target], env)

    def project_config(self, root: Path) -> dict[str, Any]:
        """Parse the engine manifest."""
        manifest = root / ENGINE_MANIFEST
        try:
            with open(manifest, "rb") as f:
                return tomllib.load(f)
        except FileNotFoundError as e:
            raise WrongProjectTypeError(
                self.project_type.value, detect_project_type(root).value, str(root)
            ) from e
        except OSError as e:
            raise BuildIOError(f"Failed to read {manifest}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise BuildIOError(f"Failed to parse {manifest}: {e}") from e


SCRIPT_SUFFIX = ".aux"
BYTECODE_SUFFIX = ".auxc"
SCRIPT_SOURCE_DIRS: tuple[str, ...] = (SCRIPTS_DIR, "src")


class ScriptBuilder(ToolBuilder):
    """Script compiler/VM adapter (``alux-compile`` / ``alux-vm``)."""

    project_type = ProjectType.SCRIPT
    display_name = "Alux"

    def __init__(
        self,
        tool_path: str,
        runner: ToolRunner,
        vm_path: str = "alux-vm",
        log_output: bool = True,
    ):
        super().__init__(tool_path, runner, log_output=log_output)
        self.vm_path = vm_path

    @classmethod
    def from_config(cls, config: BuildConfig, runner: ToolRunner) -> ScriptBuilder:
        return cls(
            config.alux_compiler_path,
            runner,
            vm_path=config.alux_vm_path,
            log_output=config.show_build_output,
        )

    def find_scripts(self, root: Path) -> list[Path]:
        """Script sources: ``main.aux`` plus ``*.aux`` in scripts/ and src/."""
        scripts: list[Path] = []
        entry = root / SCRIPT_ENTRY
        if entry.is_file():
            scripts.append(entry)
        for dir_name in SCRIPT_SOURCE_DIRS:
            directory = root / dir_name
            if directory.is_dir():
                scripts.extend(
                    sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == SCRIPT_SUFFIX)
                )
        return scripts

    def _relative_scripts(self, root: Path) -> list[str]:
        return [str(p.relative_to(root)) for p in self.find_scripts(root)]

    async def build(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Compiling script project at: {root}")
        self.ensure_project(root)
        scripts = self._relative_scripts(root)
        if not scripts:
            raise ToolExecutionError("No script files found to compile")
        await self.execute(root, scripts, env)
        logger.info(f"Compiled {len(scripts)} scripts")

    async def run(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        logger.info(f"Running script project at: {root}")
        self.ensure_project(root)
        for candidate in (root / "main.auxc", root / SCRIPTS_DIR / "main.auxc"):
            if candidate.is_file():
                await self.execute(
                    root, [str(candidate.relative_to(root))], env, program=self.vm_path
                )
                return
        raise ToolExecutionError("No compiled main script found")

    async def test(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        # No test framework for scripts; a compiler check is the closest thing.
        logger.info(f"Checking script project at: {root}")
        self.ensure_project(root)
        scripts = self._relative_scripts(root)
        if not scripts:
            raise ToolExecutionError("No script files found to check")
        await self.execute(root, ["check", *scripts], env)

    async def clean(self, root: Path, env: Mapping[str, str] | None = None) -> None:
        """Remove compiled bytecode. Runs no external tool."""
        logger.info(f"Cleaning script project at: {root}")
        self.ensure_project(root)
        removed = 0
        for directory in (root, *(root / d for d in SCRIPT_SOURCE_DIRS)):
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.is_file() and path.suffix == BYTECODE_SUFFIX:
                    try:
                        path.unlink()
                    except OSError as e:
                        raise BuildIOError(f"Failed to remove {path}: {e}") from e
                    logger.debug(f"Removed: {path}")
                    removed += 1
        logger.info(f"Removed {removed} bytecode files")

    async def check_vm_availability(self) -> str:
        """Return the script VM's version line."""
        invocation = ToolInvocation(program=self.vm_path, args=("--version",))
        result = await self._runner.run(invocation)
        output = self._check(invocation, result).strip()
        return output.splitlines()[0] if output else ""


BUILDER_TYPES: dict[ProjectType, type[NativeToolchainBuilder | EngineBuilder | ScriptBuilder]] = {
    ProjectType.NATIVE: NativeToolchainBuilder,
    ProjectType.ENGINE: EngineBuilder,
    ProjectType.SCRIPT: ScriptBuilder,
}


def create_builder(
    project_type: ProjectType, config: BuildConfig, runner: ToolRunner
) -> NativeToolchainBuilder | EngineBuilder | ScriptBuilder:
    """Adapter for a project type, configured from a config snapshot.

    Raises:
        UnknownProjectTypeError: For ProjectType.UNKNOWN
    """
    builder_cls = BUILDER_TYPES.get(project_type)
    if builder_cls is None:
        raise UnknownProjectTypeError()
    return builder_cls.from_config(config, runner)
