"""Console output for aw_compiler.

All user-facing messages (warnings, errors, compile summaries) go through a
single OutputManager so the CLI and tests can control verbosity and colors in
one place. Library internals log through the standard ``logging`` module and
never print directly.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console


class Verbosity(Enum):
    """Verbosity levels for output."""

    QUIET = 0  # Errors only
    NORMAL = 1  # Warnings and summaries
    VERBOSE = 2  # Per-job details


SYMBOLS = {
    "success": "\u2713",  # ✓
    "failure": "\u2717",  # ✗
    "warning": "\u26a0",  # ⚠
    "info": "\u2139",  # ℹ
}


def _stderr_console() -> Console:
    return Console(stderr=True, highlight=False)


@dataclass
class OutputManager:
    """
    Centralized output formatting for aw_compiler.

    Messages go to stdout (info, success) or stderr (warnings, errors).
    Inside GitHub Actions, warnings and errors are emitted as workflow commands
    so they show up as annotations.
    """

    console: Console = field(default_factory=Console)
    err_console: Console = field(default_factory=_stderr_console)
    verbosity: Verbosity = Verbosity.NORMAL
    _is_gha: bool = field(default_factory=lambda: os.environ.get("GITHUB_ACTIONS") == "true")
    _warnings: list[str] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        """Every warning emitted through this manager, in order."""
        return list(self._warnings)

    def info(self, message: str) -> None:
        """Print an informational line (hidden in quiet mode)."""
        if self.verbosity == Verbosity.QUIET:
            return
        self.console.print(f"{SYMBOLS['info']} {message}", style="cyan", markup=False, highlight=False)

    def detail(self, message: str) -> None:
        """Print a detail line (verbose mode only)."""
        if self.verbosity != Verbosity.VERBOSE:
            return
        self.console.print(f"  {message}", style="dim", markup=False, highlight=False)

    def success(self, message: str) -> None:
        """Print a success line."""
        if self.verbosity == Verbosity.QUIET:
            return
        self.console.print(f"{SYMBOLS['success']} {message}", style="green", markup=False, highlight=False)

    def warning(self, message: str) -> None:
        """Print a warning to stderr and remember it."""
        self._warnings.append(message)
        if self.verbosity == Verbosity.QUIET:
            return
        if self._is_gha:
            print(f"::warning::{message}", file=sys.stderr, flush=True)
        else:
            self.err_console.print(
                f"{SYMBOLS['warning']} {message}", style="bold yellow", markup=False, highlight=False
            )

    def error(self, message: str) -> None:
        """Print an error message to stderr."""
        if self._is_gha:
            print(f"::error::{message}", file=sys.stderr, flush=True)
        else:
            self.err_console.print(
                f"{SYMBOLS['failure']} Error: {message}", style="bold red", markup=False, highlight=False
            )


_output_manager: OutputManager | None = None


def get_output_manager() -> OutputManager:
    """Get the global output manager instance."""
    global _output_manager
    if _output_manager is None:
        _output_manager = OutputManager()
    return _output_manager


def reset_output_manager() -> None:
    """Reset the global output manager (for testing)."""
    global _output_manager
    _output_manager = None


def configure_output(
    verbosity: Verbosity = Verbosity.NORMAL,
    force_color: bool | None = None,
) -> OutputManager:
    """
    Configure the global output manager.

    Args:
        verbosity: Output verbosity level
        force_color: Force color output on/off (None for auto-detect)

    Returns:
        The configured OutputManager instance.

    """
    global _output_manager

    console_kwargs: dict[str, Any] = {}
    if force_color is not None:
        console_kwargs["force_terminal"] = force_color

    _output_manager = OutputManager(
        console=Console(**console_kwargs),
        err_console=Console(stderr=True, highlight=False, **console_kwargs),
        verbosity=verbosity,
    )
    return _output_manager
