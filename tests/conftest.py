"""Pytest configuration for aw_compiler tests."""

import pytest


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch):
    """Reset output state between tests and disable colors."""
    from aw_compiler.output import reset_output_manager

    # Rich ignores NO_COLOR when FORCE_COLOR is set
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")

    reset_output_manager()
    yield
    reset_output_manager()
