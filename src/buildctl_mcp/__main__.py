"""Entry point for buildctl-mcp server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace

from .config import BuildConfig
from .server import create_server, get_manager
from .utils.project import find_project_root


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="buildctl MCP Server - build, run, test and clean projects via MCP"
    )
    parser.add_argument(
        "--project",
        type=str,
        default=None,
        help="Project root path. Build operations run in this directory.",
    )
    parser.add_argument(
        "--project-from-cwd",
        action="store_true",
        default=False,
        help="Auto-detect project from current working directory. "
        "Searches upward for Cargo.toml/xylux.toml, scripts/ or main.aux, or .git. "
        "Cannot be used with --project.",
    )
    parser.add_argument(
        "--auto-build",
        action="store_true",
        default=None,
        help="Label builds as auto-builds (overrides BUILDCTL_AUTO_BUILD_ON_SAVE).",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> BuildConfig:
    """Environment configuration with CLI overrides applied."""
    config = BuildConfig.from_env()
    if args.auto_build:
        config = replace(config, auto_build_on_save=True)
    return config


async def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    configure_logging()
    logger = logging.getLogger(__name__)

    args = parse_args(argv)

    if args.project_from_cwd:
        if args.project is not None:
            logger.error("--project-from-cwd cannot be used with --project")
            sys.exit(1)
        project_path = str(find_project_root())
        logger.info(f"Auto-detected project root: {project_path}")
    else:
        project_path = args.project or os.getcwd()

    logger.info(f"Starting buildctl MCP Server (project: {project_path})...")

    mcp = create_server(project_path, build_config(args))

    try:
        await mcp.run_stdio_async()
    except Exception:
        logger.exception("Server error")
        raise
    finally:
        # Let an in-flight build finish before exiting
        await get_manager().shutdown()
        logger.info("Server stopped")


def run() -> None:
    """Run the server."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
