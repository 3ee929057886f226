"""MCP Server for build orchestration."""

from __future__ import annotations

import json
import logging
from dataclasses import replace

from mcp.server.fastmcp import Context, FastMCP
from pydantic import AnyUrl

from .build import BuildManager
from .config import BuildConfig
from .errors import BuildError
from .events import EventLog

logger = logging.getLogger(__name__)

EVENT_LOG_HANDLER = "event_log"

# Global build manager (single client mode)
_manager: BuildManager | None = None
_event_log: EventLog | None = None


def get_manager(config: BuildConfig | None = None) -> BuildManager:
    """Get or create the build manager.

    Note: Single client mode - one open project at a time. ``config`` only
    applies when the manager is created; it defaults to the environment.
    """
    global _manager, _event_log
    if _manager is None:
        _manager = BuildManager(config or BuildConfig.from_env())
        _event_log = EventLog()
        _manager.event_bus.register_handler(EVENT_LOG_HANDLER, _event_log)
    return _manager


def get_event_log() -> EventLog:
    """Recent lifecycle events recorded by the server."""
    get_manager()
    assert _event_log is not None
    return _event_log


def reset_manager() -> None:
    """Drop the global manager (tests and server restarts)."""
    global _manager, _event_log
    _manager = None
    _event_log = None


def _error_response(e: Exception) -> dict:
    response: dict = {"success": False, "error": str(e)}
    if isinstance(e, BuildError):
        response["errorType"] = type(e).__name__
    return response


def create_server(
    project_path: str | None = None,
    config: BuildConfig | None = None,
) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        project_path: Initial project root. Set lazily on the first tool call
            so that an invalid path surfaces as a tool error, not a crash.
        config: Build configuration overriding the environment
    """
    mcp = FastMCP("buildctl-mcp")
    manager = get_manager(config)
    event_log = get_event_log()
    pending_root: list[str] = [project_path] if project_path else []

    async def ensure_initial_root() -> None:
        if pending_root:
            path = pending_root.pop()
            if await manager.get_project_root() is None:
                await manager.set_project_root(path)

    async def notify_state_changed(ctx: Context) -> None:
        """Notify client that build resources have changed."""
        try:
            if ctx.session:
                await ctx.session.send_resource_updated(AnyUrl("build://state"))
                await ctx.session.send_resource_updated(AnyUrl("build://events"))
        except Exception as e:
            # Notification failure shouldn't break the tool
            logger.debug(f"Resource update notification failed: {e}")

    # ============== Project Tools ==============

    @mcp.tool()
    async def set_project_root(ctx: Context, path: str) -> dict:
        """
        Set the project root used by all build operations.

        The project type is detected from marker files in this directory:
        Cargo.toml (native), xylux.toml (engine), scripts/ or main.aux (script).
        When several markers are present, that order decides.
        """
        try:
            pending_root.clear()
            root = await manager.set_project_root(path)
            await notify_state_changed(ctx)
            return {
                "success": True,
                "data": {
                    "projectRoot": str(root),
                    "projectType": (await manager.detect_project_type()).value,
                },
            }
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    async def clear_project(ctx: Context) -> dict:
        """Close the current project. Build operations fail until a new root is set."""
        try:
            pending_root.clear()
            await manager.clear_project()
            await notify_state_changed(ctx)
            return {"success": True}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    async def get_build_status() -> dict:
        """
        Get build state, project root and type, configuration and last results.

        Check this before starting a build: only one build can run at a time,
        and a second request while building fails instead of waiting.
        """
        try:
            await ensure_initial_root()
            return {"success": True, "data": await manager.status()}
        except Exception as e:
            return _error_response(e)

    # ============== Build Tools ==============

    @mcp.tool()
    async def build_project(ctx: Context) -> dict:
        """
        Build the current project with its detected tool.

        Fails immediately if a build is already running.
        """
        try:
            await ensure_initial_root()
            await manager.build()
            return {"success": True, "data": _last_result(manager, "build")}
        except Exception as e:
            return _error_response(e) | {"data": _last_result(manager, "build")}
        finally:
            await notify_state_changed(ctx)

    @mcp.tool()
    async def run_project(ctx: Context) -> dict:
        """Build the current project, then run it if the build succeeded."""
        try:
            await ensure_initial_root()
            await manager.run()
            return {"success": True, "data": _last_result(manager, "run")}
        except Exception as e:
            return _error_response(e)
        finally:
            await notify_state_changed(ctx)

    @mcp.tool()
    async def test_project(ctx: Context) -> dict:
        """Run the project's tests. Reported as a single pass or failure."""
        try:
            await ensure_initial_root()
            await manager.test()
            return {"success": True, "data": _last_result(manager, "test")}
        except Exception as e:
            return _error_response(e)
        finally:
            await notify_state_changed(ctx)

    @mcp.tool()
    async def clean_project(ctx: Context) -> dict:
        """Remove build artifacts of the current project."""
        try:
            await ensure_initial_root()
            await manager.clean()
            return {"success": True, "data": _last_result(manager, "clean")}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    async def execute_command(program: str, args: list[str] | None = None) -> dict:
        """
        Run a program in the project root and return its stdout.

        The program is executed directly (no shell), with the configured
        build environment variables.
        """
        try:
            await ensure_initial_root()
            output = await manager.execute_command(program, args or [])
            return {"success": True, "data": {"output": output}}
        except Exception as e:
            return _error_response(e)

    # ============== Configuration Tools ==============

    @mcp.tool()
    async def get_build_config() -> dict:
        """Get the current build configuration."""
        try:
            config = await manager.get_build_config()
            return {"success": True, "data": config.to_dict()}
        except Exception as e:
            return _error_response(e)

    @mcp.tool()
    async def update_build_config(
        auto_build_on_save: bool | None = None,
        show_build_output: bool | None = None,
        env_vars: dict[str, str] | None = None,
    ) -> dict:
        """
        Update build configuration. Omitted fields keep their current value.

        Args:
            auto_build_on_save: Mark builds as auto-builds (target "auto-build")
            show_build_output: Log tool output of successful runs
            env_vars: Replaces the extra environment passed to build tools
        """
        try:
            current = await manager.get_build_config()
            updated = replace(
                current,
                auto_build_on_save=(
                    current.auto_build_on_save if auto_build_on_save is None else auto_build_on_save
                ),
                show_build_output=(
                    current.show_build_output if show_build_output is None else show_build_output
                ),
                env_vars=current.env_vars if env_vars is None else dict(env_vars),
            )
            await manager.update_config(updated)
            return {"success": True, "data": updated.to_dict()}
        except Exception as e:
            return _error_response(e)

    # ============== Resources ==============

    @mcp.resource("build://state", mime_type="application/json")
    async def build_state_resource() -> str:
        """Current build status (JSON).

        Contains: state, project root and type, configuration, last results.
        Updates when: project changes, builds start or finish.
        """
        return json.dumps(await manager.status(), indent=2)

    @mcp.resource("build://events", mime_type="application/json")
    async def build_events_resource() -> str:
        """Recent build lifecycle events (JSON), oldest first."""
        return json.dumps([m.to_dict() for m in event_log.recent()], indent=2)

    logger.info("Build MCP Server initialized")
    return mcp


def _last_result(manager: BuildManager, operation: str) -> dict | None:
    result = manager.get_last_result(operation)
    return result.to_dict() if result else None
