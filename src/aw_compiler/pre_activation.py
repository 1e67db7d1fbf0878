"""The pre-activation job: role, stop-time, skip-query and command checks.

The job runs the configured checks and exposes a single `activated` output,
the conjunction of every check's result. The activation job runs when
pre-activation was skipped or reports `activated == 'true'`.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from .action_pins import PinContext
from .config import WorkflowData
from .custom_jobs import (
    PRE_ACTIVATION_CONFIG_KEYS,
    custom_job_names,
    parse_job_outputs,
    parse_job_steps,
    references_job_outputs,
)
from .errors import ConfigurationError
from .expressions import (
    ConditionNode,
    ExpressionNode,
    build_and_all,
    build_equals,
    build_event_type_not_equals,
    build_property_access,
    build_reaction_condition,
    build_string_literal,
    render_condition_as_if,
    strip_expression_wrapper,
)
from .gha import PRE_ACTIVATION_JOB_NAME, Job, StepSpec, build_github_script_step, build_setup_step
from .permissions import PermissionLevel, Permissions, PermissionScope

logger = logging.getLogger(__name__)

SAFE_EVENTS = ("schedule", "merge_group")
"""Events that are never user-initiated and need no role check."""

DEFAULT_RUNNER = "ubuntu-slim"

# Step ids and the output each check reports on
CHECK_MEMBERSHIP = ("check_membership", "is_team_member")
CHECK_STOP_TIME = ("check_stop_time", "stop_time_ok")
CHECK_SKIP_IF_MATCH = ("check_skip_if_match", "skip_check_ok")
CHECK_SKIP_IF_NO_MATCH = ("check_skip_if_no_match", "skip_no_match_check_ok")
CHECK_COMMAND_POSITION = ("check_command_position", "command_position_ok")

_ALLOWED_CUSTOM_FIELDS = ("steps", "outputs")

_RELATIVE_TIME_RE = re.compile(r"(\d+)\s*([wdhm])")
_RELATIVE_UNITS = {"w": "weeks", "d": "days", "h": "hours", "m": "minutes"}


# =============================================================================
# Decision
# =============================================================================


def needs_permission_check(data: WorkflowData) -> bool:
    """
    Whether a role check must run before the workflow activates.

    Not needed when every trigger is a safe event, or when roles is `all`.
    """
    if data.roles_are_all:
        return False
    return any(event not in SAFE_EVENTS for event in data.events)


def needs_pre_activation(data: WorkflowData) -> bool:
    return bool(
        needs_permission_check(data)
        or data.stop_time
        or data.skip_if_match
        or data.skip_if_no_match
        or data.command
    )


def skips_workflow_dispatch(data: WorkflowData) -> bool:
    """
    Whether pre-activation is skipped for `workflow_dispatch`.

    Only the default role set includes `write`, and anyone able to dispatch a
    workflow already has write access, so the membership check would pass.
    """
    return not data.roles_explicit


def build_skip_condition(data: WorkflowData) -> ConditionNode | None:
    """
    Condition under which the role check runs at all.

    None when a stop-time or skip query is configured, since those checks must
    run for every trigger.
    """
    if data.stop_time or data.skip_if_match or data.skip_if_no_match:
        return None
    events = list(SAFE_EVENTS)
    if skips_workflow_dispatch(data):
        events.append("workflow_dispatch")
    return build_and_all(build_event_type_not_equals(event) for event in events)


# =============================================================================
# Steps
# =============================================================================


def resolve_stop_time(value: str, now: datetime | None = None) -> str:
    """
    Turn a relative deadline (`+25h`, `+1w2d`) into an absolute UTC timestamp.

    Absolute values pass through unchanged.
    """
    text = value.strip()
    if not text.startswith("+"):
        return text
    matches = _RELATIVE_TIME_RE.findall(text[1:])
    if not matches or _RELATIVE_TIME_RE.sub("", text[1:]).strip():
        raise ConfigurationError(f"invalid relative stop-after value {value!r}")
    delta = timedelta()
    for amount, unit in matches:
        delta += timedelta(**{_RELATIVE_UNITS[unit]: int(amount)})
    base = now or datetime.now(timezone.utc)
    return (base + delta).strftime("%Y-%m-%d %H:%M:%S")


def _reaction_step(reaction: str) -> StepSpec:
    return build_github_script_step(
        f"Add {reaction} reaction for immediate feedback",
        "add_reaction.cjs",
        id="react",
        if_condition=render_condition_as_if(build_reaction_condition()),
        env={"GH_AW_REACTION": json.dumps(reaction)},
        github_token="${{ secrets.GITHUB_TOKEN }}",
    )


def _check_steps(data: WorkflowData) -> list[tuple[StepSpec, str]]:
    """Check steps with the output name each reports, in execution order."""
    checks: list[tuple[StepSpec, str]] = []

    if needs_permission_check(data):
        step_id, output = CHECK_MEMBERSHIP
        step = build_github_script_step(
            "Check team membership for workflow",
            "check_membership.cjs",
            id=step_id,
            env={"GH_AW_REQUIRED_ROLES": ",".join(data.role_list)},
            github_token="${{ secrets.GITHUB_TOKEN }}",
        )
        checks.append((step, output))

    if data.stop_time:
        step_id, output = CHECK_STOP_TIME
        step = build_github_script_step(
            "Check stop-time limit",
            "check_stop_time.cjs",
            id=step_id,
            env={"GH_AW_STOP_TIME": resolve_stop_time(data.stop_time), "GH_AW_WORKFLOW_NAME": data.name},
        )
        checks.append((step, output))

    if data.skip_if_match:
        step_id, output = CHECK_SKIP_IF_MATCH
        step = build_github_script_step(
            "Check skip-if-match query",
            "check_skip_if_match.cjs",
            id=step_id,
            env={
                "GH_AW_SKIP_QUERY": data.skip_if_match.query,
                "GH_AW_WORKFLOW_NAME": data.name,
                "GH_AW_SKIP_MAX_MATCHES": str(data.skip_if_match.max),
            },
        )
        checks.append((step, output))

    if data.skip_if_no_match:
        step_id, output = CHECK_SKIP_IF_NO_MATCH
        step = build_github_script_step(
            "Check skip-if-no-match query",
            "check_skip_if_no_match.cjs",
            id=step_id,
            env={
                "GH_AW_SKIP_QUERY": data.skip_if_no_match.query,
                "GH_AW_WORKFLOW_NAME": data.name,
                "GH_AW_SKIP_MIN_MATCHES": str(data.skip_if_no_match.min),
            },
        )
        checks.append((step, output))

    if data.command:
        step_id, output = CHECK_COMMAND_POSITION
        step = build_github_script_step(
            "Check command position",
            "check_command_position.cjs",
            id=step_id,
            env={"GH_AW_COMMANDS": json.dumps(data.command)},
        )
        checks.append((step, output))

    return checks


def _custom_config(data: WorkflowData) -> list[tuple[str, dict[str, Any]]]:
    """`jobs.pre-activation` / `jobs.pre_activation` entries, validated."""
    found = []
    for key in PRE_ACTIVATION_CONFIG_KEYS:
        if key not in data.jobs:
            continue
        config = data.jobs[key]
        if not isinstance(config, dict):
            raise ConfigurationError(f"jobs.{key} must be an object")
        for field_name in config:
            if field_name not in _ALLOWED_CUSTOM_FIELDS:
                raise ConfigurationError(
                    f"jobs.{key}: unsupported field '{field_name}' - only 'steps' and 'outputs' are allowed"
                )
        found.append((key, config))
    return found


def _activated_expression(outputs: list[tuple[str, str]]) -> str:
    condition = build_and_all(
        build_equals(build_property_access(f"steps.{step_id}.outputs.{output}"), build_string_literal("true"))
        for step_id, output in outputs
    )
    if condition is None:
        raise ConfigurationError("pre-activation job has no checks to run")
    return f"${{{{ {condition.render()} }}}}"


# =============================================================================
# Job
# =============================================================================


def build_pre_activation_job(data: WorkflowData, ctx: PinContext) -> Job:
    """
    Build the pre-activation job.

    Args:
        data: The workflow configuration.
        ctx: Pinning state for custom steps.

    Returns:
        The job, named `pre_activation`.

    Raises:
        ConfigurationError: On malformed `jobs.pre-activation` settings, or if
            no check applies.

    """
    permissions = Permissions.contents_read()
    steps: list[Any] = [build_setup_step()]

    reaction = data.reaction if data.reaction and data.reaction != "none" else None
    if reaction:
        steps.append(_reaction_step(reaction))
        for scope in (PermissionScope.DISCUSSIONS, PermissionScope.ISSUES, PermissionScope.PULL_REQUESTS):
            permissions.set(scope, PermissionLevel.WRITE)

    checks = _check_steps(data)
    steps.extend(step for step, _ in checks)

    outputs = {
        "activated": _activated_expression([(step.id or "", output) for step, output in checks]),
    }
    if data.command:
        outputs["matched_command"] = "${{ steps.check_command_position.outputs.matched_command }}"

    for key, config in _custom_config(data):
        steps.extend(parse_job_steps(key, config.get("steps"), ctx))
        outputs.update(parse_job_outputs(key, config.get("outputs")))

    conditions: list[ConditionNode] = []
    if needs_permission_check(data):
        skip = build_skip_condition(data)
        if skip is not None:
            conditions.append(skip)
    if data.if_condition and not references_job_outputs(data.if_condition, custom_job_names(data)):
        conditions.append(ExpressionNode(strip_expression_wrapper(data.if_condition)))
    condition = build_and_all(conditions)

    runs_on = DEFAULT_RUNNER
    if data.safe_outputs is not None and data.safe_outputs.runs_on:
        runs_on = data.safe_outputs.runs_on

    job = Job(
        name=PRE_ACTIVATION_JOB_NAME,
        runs_on=runs_on,
        if_condition=render_condition_as_if(condition) if condition is not None else "",
        permissions=permissions,
        steps=steps,
        outputs=outputs,
    )
    logger.debug("Built pre-activation job with checks %s", [step.id for step, _ in checks])
    return job
