"""Exception types raised while compiling a workflow."""

from __future__ import annotations


class CompileError(Exception):
    """Base class for all errors raised by aw_compiler."""


class ExpressionParseError(CompileError, ValueError):
    """A boolean condition expression could not be parsed."""

    def __init__(self, message: str, *, expression: str = "", position: int | None = None):
        self.expression = expression
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)


class ConfigurationError(CompileError):
    """The workflow configuration cannot be compiled as written."""


class ActionPinError(ConfigurationError):
    """An action reference could not be pinned while strict mode is on."""

    def __init__(self, repo: str, version: str, message: str):
        self.repo = repo
        self.version = version
        super().__init__(message)


class JobGraphError(CompileError):
    """The job graph is malformed (duplicate names, unknown needs, or a cycle)."""
