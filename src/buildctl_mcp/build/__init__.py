"""Build orchestration module.

Provides IDE-style build integration with:
- Project type detection from marker files (fixed precedence)
- Builder adapters for cargo, the xylux engine CLI and alux scripts
- Single-flight build guard
- Lifecycle events around build and test runs
"""

from .builders import (
    Builder,
    EngineBuilder,
    NativeToolchainBuilder,
    ScriptBuilder,
    create_builder,
)
from .detector import MARKER_RULES, ProjectType, detect_project_type
from .manager import BuildManager
from .runner import SubprocessToolRunner, ToolInvocation, ToolResult, ToolRunner
from .state import BuildState, BuildStateGuard, OperationResult

__all__ = [
    "Builder",
    "BuildManager",
    "BuildState",
    "BuildStateGuard",
    "EngineBuilder",
    "MARKER_RULES",
    "NativeToolchainBuilder",
    "OperationResult",
    "ProjectType",
    "ScriptBuilder",
    "SubprocessToolRunner",
    "ToolInvocation",
    "ToolResult",
    "ToolRunner",
    "create_builder",
    "detect_project_type",
]
