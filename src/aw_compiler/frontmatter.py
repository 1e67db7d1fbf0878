"""Load a markdown workflow (YAML frontmatter + markdown body) into WorkflowData."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .config import WorkflowData
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

FRONTMATTER_DELIMITER = "---"

# Keys that configure the compiled workflow but are written under `on:`
_LIFTED_ON_KEYS = ("stop-after", "skip-if-match", "skip-if-no-match", "reaction", "manual-approval")

COMMAND_EVENTS: dict[str, dict[str, list[str]]] = {
    "issues": {"types": ["opened", "edited", "reopened"]},
    "issue_comment": {"types": ["created", "edited"]},
    "pull_request": {"types": ["opened", "edited", "reopened"]},
    "pull_request_review_comment": {"types": ["created", "edited"]},
    "discussion": {"types": ["created", "edited"]},
    "discussion_comment": {"types": ["created", "edited"]},
}
"""Events a slash-command workflow listens on."""


def split_frontmatter(text: str) -> tuple[str, str]:
    """
    Split a markdown document into its frontmatter and body.

    Raises:
        ConfigurationError: If the document doesn't start with a `---` block
            or the block is never closed.

    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        raise ConfigurationError("workflow must start with a '---' frontmatter block")
    for i, line in enumerate(lines[1:], start=1):
        if line.strip() == FRONTMATTER_DELIMITER:
            return "".join(lines[1:i]), "".join(lines[i + 1 :])
    raise ConfigurationError("frontmatter block is not closed with '---'")


def parse_frontmatter(source: str) -> dict[str, Any]:
    """Parse frontmatter YAML into plain Python containers."""
    yaml = YAML(typ="safe", pure=True)
    try:
        data = yaml.load(source)
    except YAMLError as err:
        raise ConfigurationError(f"invalid frontmatter YAML: {err}") from err
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("frontmatter must be a mapping")
    return data


def lift_trigger_settings(frontmatter: dict[str, Any]) -> dict[str, Any]:
    """
    Move compiler settings written under `on:` to the top level.

    Also expands `on.command` into the comment events it listens on and pulls
    `lock-for-agent` out of individual event configurations.
    """
    result = dict(frontmatter)
    on = result.get("on")
    if not isinstance(on, dict):
        return result

    on = dict(on)
    for key in _LIFTED_ON_KEYS:
        if key in on:
            result.setdefault(key, on.pop(key))

    for key in ("command", "slash_command"):
        if key in on:
            result.setdefault("command", on.pop(key))
            for event, event_config in COMMAND_EVENTS.items():
                on.setdefault(event, event_config)

    for event, event_config in list(on.items()):
        if isinstance(event_config, dict) and "lock-for-agent" in event_config:
            event_config = dict(event_config)
            if event_config.pop("lock-for-agent"):
                result["lock-for-agent"] = True
            on[event] = event_config or None

    result["on"] = on
    return result


def load_workflow_text(text: str, *, name: str | None = None) -> WorkflowData:
    """
    Build WorkflowData from the text of a markdown workflow.

    Args:
        text: The full markdown document.
        name: Fallback workflow name when the frontmatter has none.

    Raises:
        ConfigurationError: On malformed frontmatter or invalid settings.

    """
    source, body = split_frontmatter(text)
    frontmatter = lift_trigger_settings(parse_frontmatter(source))
    if name and "name" not in frontmatter:
        frontmatter["name"] = name
    frontmatter["markdown_content"] = body

    try:
        data = WorkflowData.model_validate(frontmatter)
    except ValidationError as err:
        raise ConfigurationError(f"invalid workflow configuration:\n{err}") from err

    logger.debug("Loaded workflow %s with events %s", data.name, data.events)
    return data


def load_workflow(path: Path) -> WorkflowData:
    """Load a markdown workflow file."""
    return load_workflow_text(path.read_text(encoding="utf-8"), name=path.stem)
