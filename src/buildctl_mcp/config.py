"""Build configuration.

Values come from the environment (and CLI flags in ``__main__``):

- BUILDCTL_AUTO_BUILD_ON_SAVE, BUILDCTL_SHOW_BUILD_OUTPUT: boolean flags
- BUILDCTL_ENV: extra tool environment, ``KEY=VALUE;KEY2=VALUE2``
- CARGO_PATH, XYLUX_CLI_PATH, ALUX_COMPILER_PATH, ALUX_VM_PATH: tool binaries
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning(f"{name}={value!r} is not a boolean, using {default}")
    return default


def parse_env_vars(value: str | None) -> dict[str, str]:
    """Parse ``KEY=VALUE;KEY2=VALUE2`` into a mapping.

    Later duplicates win. Entries without ``=`` are skipped.
    """
    result: dict[str, str] = {}
    if not value:
        return result
    for item in value.split(";"):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            logger.warning(f"Ignoring malformed BUILDCTL_ENV entry: {item!r}")
            continue
        key, val = item.split("=", 1)
        key = key.strip()
        if key:
            result[key] = val
    return result


@dataclass
class BuildConfig:
    """Build settings consumed by the build manager."""

    auto_build_on_save: bool = False
    show_build_output: bool = True
    env_vars: dict[str, str] = field(default_factory=dict)
    cargo_path: str = "cargo"
    xylux_cli_path: str = "xylux"
    alux_compiler_path: str = "alux-compile"
    alux_vm_path: str = "alux-vm"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BuildConfig:
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            auto_build_on_save=_parse_bool(
                "BUILDCTL_AUTO_BUILD_ON_SAVE",
                env.get("BUILDCTL_AUTO_BUILD_ON_SAVE"),
                defaults.auto_build_on_save,
            ),
            show_build_output=_parse_bool(
                "BUILDCTL_SHOW_BUILD_OUTPUT",
                env.get("BUILDCTL_SHOW_BUILD_OUTPUT"),
                defaults.show_build_output,
            ),
            env_vars=parse_env_vars(env.get("BUILDCTL_ENV")),
            cargo_path=env.get("CARGO_PATH") or defaults.cargo_path,
            xylux_cli_path=env.get("XYLUX_CLI_PATH") or defaults.xylux_cli_path,
            alux_compiler_path=env.get("ALUX_COMPILER_PATH") or defaults.alux_compiler_path,
            alux_vm_path=env.get("ALUX_VM_PATH") or defaults.alux_vm_path,
        )

    def snapshot(self) -> BuildConfig:
        """Independent copy, safe to hand to an in-flight operation."""
        return replace(self, env_vars=dict(self.env_vars))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "autoBuildOnSave": self.auto_build_on_save,
            "showBuildOutput": self.show_build_output,
            "envVars": dict(self.env_vars),
            "cargoPath": self.cargo_path,
            "xyluxCliPath": self.xylux_cli_path,
            "aluxCompilerPath": self.alux_compiler_path,
            "aluxVmPath": self.alux_vm_path,
        }
