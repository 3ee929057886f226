"""Build orchestration exceptions."""

from __future__ import annotations

from typing import Any


class BuildError(Exception):
    """Base exception for build orchestration errors."""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"error": str(self), "type": type(self).__name__}


class NoProjectRootError(BuildError):
    """Raised when an operation needs a project root and none is set."""

    def __init__(self, message: str = "No project root set"):
        super().__init__(message)


class BuildAlreadyInProgressError(BuildError):
    """Raised when a build is requested while another one is running."""

    def __init__(self, message: str = "Build already in progress"):
        super().__init__(message)


class UnknownProjectTypeError(BuildError):
    """Raised when the project root matches no known project type."""

    def __init__(self, message: str = "Unknown project type"):
        super().__init__(message)


class WrongProjectTypeError(BuildError):
    """Raised when a builder is handed a root of another project type."""

    def __init__(self, expected: str, actual: str, root: str):
        super().__init__(f"Not a {expected} project: {root} (detected: {actual})")
        self.expected = expected
        self.actual = actual
        self.root = root


class ToolNotFoundError(BuildError):
    """Raised when an external tool binary cannot be found."""

    def __init__(self, tool: str):
        super().__init__(f"Tool not found: {tool}")
        self.tool = tool


class ToolExecutionError(BuildError):
    """Raised when an external tool exits with a failure status."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.exit_code is not None:
            result["exitCode"] = self.exit_code
        return result


class BuildIOError(BuildError):
    """Raised on filesystem or process I/O failures."""

    def __init__(self, context: str):
        super().__init__(f"I/O error: {context}")
        self.context = context


class EventPublicationError(BuildError):
    """Raised when a lifecycle event could not be delivered.

    When raised after a build finished, ``build_error`` holds the build's own
    error (``None`` if the build itself succeeded).
    """

    def __init__(self, message: str, build_error: Exception | None = None):
        super().__init__(message)
        self.build_error = build_error

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.build_error is not None:
            result["buildError"] = str(self.build_error)
        return result


class ShutdownTimeoutError(BuildError):
    """Raised when shutdown gives up waiting for an in-flight build."""

    pass
