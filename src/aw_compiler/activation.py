"""Activation job and the main agent job.

The activation job gates the agent: it runs when pre-activation was skipped or
reported `activated == 'true'`, and prepares what the agent reads from the
triggering event (sanitized text, the status comment, the issue lock).
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .action_pins import PinContext, apply_action_pin_to_step, get_action_pin
from .config import WorkflowData, agent_job_permissions
from .custom_jobs import (
    custom_job_names,
    depends_on,
    jobs_before_activation,
    jobs_before_agent,
    referenced_jobs,
    references_job_outputs,
)
from .expressions import (
    ConditionNode,
    DisjunctionNode,
    ExpressionNode,
    build_and,
    build_and_all,
    build_equals,
    build_event_type_equals,
    build_function_call,
    build_not,
    build_property_access,
    build_reaction_condition,
    build_string_literal,
    build_workflow_run_repo_safety,
    render_condition_as_if,
    strip_expression_wrapper,
)
from .gha import (
    ACTIVATION_JOB_NAME,
    AGENT_JOB_NAME,
    PRE_ACTIVATION_JOB_NAME,
    Job,
    StepSpec,
    build_github_script_step,
    build_setup_step,
)
from .permissions import PermissionLevel, Permissions, PermissionScope
from .pre_activation import DEFAULT_RUNNER

logger = logging.getLogger(__name__)

SAFE_OUTPUTS_DIR = "/opt/gh-aw/safeoutputs"
PROMPT_PATH = "/tmp/gh-aw/aw-prompts/prompt.txt"
PATCH_PATH = "/tmp/gh-aw/aw.patch"
AGENT_OUTPUT_ARTIFACT = "agent-output"
PATCH_ARTIFACT = "aw.patch"

PULL_REQUEST_OUTPUT_TYPES = ("create_pull_request", "push_to_pull_request_branch")


def has_reaction(data: WorkflowData) -> bool:
    return bool(data.reaction) and data.reaction != "none"


def safe_outputs_runner(data: WorkflowData) -> str:
    if data.safe_outputs is not None and data.safe_outputs.runs_on:
        return data.safe_outputs.runs_on
    return DEFAULT_RUNNER


def lock_file_name(workflow_file: str) -> str:
    """`triage.md` -> `triage.lock.yml`."""
    stem = workflow_file[:-3] if workflow_file.endswith(".md") else workflow_file
    return f"{stem}.lock.yml"


# =============================================================================
# Activation
# =============================================================================


def _pre_activation_gate() -> ConditionNode:
    """
    Run when pre-activation was skipped or activated the workflow.

    Without a status check function GitHub adds an implicit `success()`,
    which would skip this job whenever pre-activation is skipped.
    """
    skipped = build_equals(
        build_property_access(f"needs.{PRE_ACTIVATION_JOB_NAME}.result"),
        build_string_literal("skipped"),
    )
    activated = build_equals(
        build_property_access(f"needs.{PRE_ACTIVATION_JOB_NAME}.outputs.activated"),
        build_string_literal("true"),
    )
    return build_and(build_not(build_function_call("cancelled")), DisjunctionNode((skipped, activated)))


def _user_condition_on_activation(data: WorkflowData) -> bool:
    """
    Whether the workflow `if:` belongs on the activation job.

    A condition reading custom job outputs can only be evaluated there when
    those jobs run before activation.
    """
    if not data.if_condition:
        return False
    if not references_job_outputs(data.if_condition, custom_job_names(data)):
        return True
    return bool(jobs_before_activation(data))


def build_activation_condition(data: WorkflowData, *, has_pre_activation: bool) -> ConditionNode | None:
    conditions: list[ConditionNode] = []
    if has_pre_activation:
        conditions.append(_pre_activation_gate())
    if _user_condition_on_activation(data):
        conditions.append(ExpressionNode(strip_expression_wrapper(data.if_condition)))
    if "workflow_run" in data.on:
        conditions.append(build_workflow_run_repo_safety())
    return build_and_all(conditions)


def build_activation_job(
    data: WorkflowData,
    *,
    has_pre_activation: bool,
    workflow_file: str = "workflow.md",
) -> Job:
    """
    Build the activation job.

    Args:
        data: The workflow configuration.
        has_pre_activation: Whether a pre-activation job exists to depend on.
        workflow_file: Markdown file name, used to locate the lock file.

    Returns:
        The job, named `activation`.

    """
    permissions = Permissions.contents_read()
    outputs: dict[str, str] = {}
    steps: list[Any] = [
        build_setup_step(),
        build_github_script_step(
            "Check workflow file timestamps",
            "check_workflow_timestamp_api.cjs",
            env={"GH_AW_WORKFLOW_FILE": lock_file_name(workflow_file)},
        ),
    ]

    if data.needs_text_output:
        steps.append(build_github_script_step("Compute current body text", "compute_text.cjs", id="compute-text"))
        outputs["text"] = "${{ steps.compute-text.outputs.text }}"

    if has_reaction(data):
        env = {"GH_AW_WORKFLOW_NAME": json.dumps(data.name)}
        if data.tracker_id:
            env["GH_AW_TRACKER_ID"] = data.tracker_id
        if data.lock_for_agent:
            env["GH_AW_LOCK_FOR_AGENT"] = "true"
        if data.safe_outputs is not None and data.safe_outputs.messages:
            env["GH_AW_SAFE_OUTPUT_MESSAGES"] = json.dumps(data.safe_outputs.messages, sort_keys=True)
        steps.append(
            build_github_script_step(
                "Add comment with workflow run link",
                "add_workflow_run_comment.cjs",
                id="add-comment",
                if_condition=render_condition_as_if(build_reaction_condition()),
                env=env,
            )
        )
        outputs["comment_id"] = "${{ steps.add-comment.outputs.comment-id }}"
        outputs["comment_url"] = "${{ steps.add-comment.outputs.comment-url }}"
        outputs["comment_repo"] = "${{ steps.add-comment.outputs.comment-repo }}"
        for scope in (PermissionScope.DISCUSSIONS, PermissionScope.ISSUES, PermissionScope.PULL_REQUESTS):
            permissions.set(scope, PermissionLevel.WRITE)
    else:
        outputs["comment_id"] = '""'
        outputs["comment_repo"] = '""'

    if data.lock_for_agent:
        lock_condition = DisjunctionNode((build_event_type_equals("issues"), build_event_type_equals("issue_comment")))
        steps.append(
            build_github_script_step(
                "Lock issue for agent workflow",
                "lock-issue.cjs",
                id="lock-issue",
                if_condition=render_condition_as_if(lock_condition),
            )
        )
        outputs["issue_locked"] = "${{ steps.lock-issue.outputs.locked }}"
        permissions.set(PermissionScope.ISSUES, PermissionLevel.WRITE)

    needs: list[str] = []
    if has_pre_activation:
        needs.append(PRE_ACTIVATION_JOB_NAME)
        needs.extend(jobs_before_activation(data))
        if data.command:
            outputs["slash_command"] = f"${{{{ needs.{PRE_ACTIVATION_JOB_NAME}.outputs.matched_command }}}}"

    condition = build_activation_condition(data, has_pre_activation=has_pre_activation)
    job = Job(
        name=ACTIVATION_JOB_NAME,
        runs_on=safe_outputs_runner(data),
        if_condition=render_condition_as_if(condition) if condition is not None else "",
        needs=needs,
        permissions=permissions,
        steps=steps,
        outputs=outputs,
        environment=data.manual_approval,
    )
    logger.debug("Built activation job (needs: %s)", needs)
    return job


# =============================================================================
# Main agent job
# =============================================================================


def agent_job_condition(data: WorkflowData) -> str:
    """
    `if:` of the agent job.

    Activation already carries the workflow condition, unless it reads outputs
    of custom jobs that run after activation: then only the agent job can see them.
    """
    if not data.if_condition or _user_condition_on_activation(data):
        return ""
    return strip_expression_wrapper(data.if_condition)


def agent_job_needs(data: WorkflowData) -> list[str]:
    needs = [ACTIVATION_JOB_NAME]
    for name in jobs_before_agent(data):
        if name not in needs:
            needs.append(name)
    # Output references need a direct edge even when the job is reachable transitively
    for name in referenced_jobs(data.markdown_content, custom_job_names(data)):
        if name not in needs and not depends_on(data, name, AGENT_JOB_NAME):
            needs.append(name)
    return needs


def safe_outputs_env(data: WorkflowData) -> dict[str, str]:
    """Environment the agent's safe-outputs tooling reads."""
    env = {
        "GH_AW_SAFE_OUTPUTS": f"{SAFE_OUTPUTS_DIR}/outputs.jsonl",
        "GH_AW_MCP_LOG_DIR": "/tmp/gh-aw/mcp-logs/safeoutputs",
        "GH_AW_SAFE_OUTPUTS_CONFIG_PATH": f"{SAFE_OUTPUTS_DIR}/config.json",
        "GH_AW_SAFE_OUTPUTS_TOOLS_PATH": f"{SAFE_OUTPUTS_DIR}/tools.json",
        "GH_AW_ASSETS_BRANCH": '""',
        "GH_AW_ASSETS_MAX_SIZE_KB": "0",
        "GH_AW_ASSETS_ALLOWED_EXTS": '""',
        "DEFAULT_BRANCH": "${{ github.event.repository.default_branch }}",
    }
    assets = data.safe_outputs.upload_assets if data.safe_outputs is not None else None
    if assets is not None:
        env["GH_AW_ASSETS_BRANCH"] = json.dumps(assets.branch)
        env["GH_AW_ASSETS_MAX_SIZE_KB"] = str(assets.max_size)
        env["GH_AW_ASSETS_ALLOWED_EXTS"] = json.dumps(",".join(assets.allowed_exts))
    return env


def _prompt_step(data: WorkflowData) -> StepSpec:
    body = data.markdown_content.strip("\n")
    run = "\n".join(
        [
            'mkdir -p "$(dirname "$GH_AW_PROMPT")"',
            "cat << 'PROMPT_EOF' > \"$GH_AW_PROMPT\"",
            body,
            "PROMPT_EOF",
        ]
    )
    return StepSpec(name="Create prompt", env={"GH_AW_PROMPT": PROMPT_PATH}, run=run)


def _agent_output_steps(data: WorkflowData) -> list[StepSpec]:
    steps = [
        build_github_script_step(
            "Ingest agent output",
            "collect_ndjson_output.cjs",
            id="collect_output",
            env={"GH_AW_SAFE_OUTPUTS": "${{ env.GH_AW_SAFE_OUTPUTS }}"},
        ),
        StepSpec(
            name="Upload agent output",
            if_condition="always()",
            uses=get_action_pin("actions/upload-artifact"),
            with_={
                "name": AGENT_OUTPUT_ARTIFACT,
                "path": "${{ env.GH_AW_AGENT_OUTPUT }}",
                "if-no-files-found": "warn",
            },
        ),
    ]
    enabled = data.safe_outputs.enabled_types() if data.safe_outputs is not None else []
    if any(t in enabled for t in PULL_REQUEST_OUTPUT_TYPES):
        steps.append(
            StepSpec(
                name="Upload git patch",
                if_condition="always()",
                uses=get_action_pin("actions/upload-artifact"),
                with_={"name": PATCH_ARTIFACT, "path": PATCH_PATH, "if-no-files-found": "ignore"},
            )
        )
    return steps


def build_main_job(data: WorkflowData, ctx: PinContext) -> Job:
    """
    Build the agent job.

    The agent's engine invocation is not part of the graph; the job prepares
    the prompt and run info, runs any custom `steps:`, and collects the
    agent's safe outputs.
    """
    steps: list[Any] = [
        build_setup_step(),
        StepSpec(
            name="Checkout repository",
            uses=get_action_pin("actions/checkout"),
            with_={"persist-credentials": False},
        ),
    ]
    steps.extend(apply_action_pin_to_step(step, ctx) for step in data.steps or [])
    steps.append(_prompt_step(data))
    steps.append(
        build_github_script_step(
            "Generate agentic run info",
            "generate_aw_info.cjs",
            id="generate_aw_info",
            env={"GH_AW_ENGINE_ID": data.engine_id, "GH_AW_MODEL": data.engine_model},
        )
    )

    outputs = {"model": "${{ steps.generate_aw_info.outputs.model }}"}
    env: dict[str, str] | None = None
    if data.has_safe_outputs:
        steps.extend(_agent_output_steps(data))
        for key in ("output", "output_types", "has_patch"):
            outputs[key] = f"${{{{ steps.collect_output.outputs.{key} }}}}"
        env = safe_outputs_env(data)

    job = Job(
        name=AGENT_JOB_NAME,
        runs_on=data.runs_on,
        if_condition=agent_job_condition(data),
        needs=agent_job_needs(data),
        permissions=agent_job_permissions(data),
        steps=steps,
        outputs=outputs,
        env=env,
        environment=data.environment,
        concurrency=data.concurrency,
        timeout_minutes=data.timeout_minutes,
    )
    logger.debug("Built agent job (needs: %s)", job.needs)
    return job
