"""The consolidated safe-outputs job.

The agent never writes to GitHub itself. It records what it wants done
(issues, comments, pull requests, project updates, ...) as safe outputs, and a
single job after the agent applies them with the right tokens:

- shared setup: scripts, the agent output artifact, the patch, an app token
- one checkout + git identity, only when a type needs a working tree
- the project handler, before the general handler, since it produces the
  temporary project id map later handlers resolve
- the general handler manager for every other handled type
- standalone steps for types that need their own token (assign to agent)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .action_pins import get_action_pin
from .config import (
    CreateProjectStatusUpdateConfig,
    GitHubAppConfig,
    SafeOutputsConfig,
    UpdateProjectConfig,
    WorkflowData,
)
from .errors import ConfigurationError
from .expressions import (
    AGENT_JOB_NAME,
    ConditionNode,
    DisjunctionNode,
    ExpressionNode,
    add_detection_success_check,
    build_and,
    build_equals,
    build_not_equals,
    build_property_access,
    build_safe_output_type,
    build_string_literal,
    render_condition_as_if,
)
from .gha import (
    DETECTION_JOB_NAME,
    SAFE_OUTPUTS_JOB_NAME,
    Job,
    StepSpec,
    build_setup_step,
    inline_script,
    require_script,
)
from .permissions import PermissionLevel, Permissions, PermissionScope
from .pre_activation import DEFAULT_RUNNER

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_TOKEN = "${{ secrets.GH_AW_GITHUB_TOKEN || secrets.GITHUB_TOKEN }}"
DEFAULT_PROJECT_TOKEN = "${{ secrets.GH_AW_PROJECT_GITHUB_TOKEN }}"
DEFAULT_AGENT_TOKEN = "${{ secrets.GH_AW_AGENT_TOKEN }}"
APP_TOKEN = "${{ steps.safe-outputs-app-token.outputs.token }}"

AGENT_OUTPUT_DIR = "/tmp/gh-aw/safeoutputs/"

PROJECT_TYPES = ("create_project", "create_project_status_update", "update_project", "copy_project")
"""Handled by the project handler, in token-precedence order."""

HANDLER_TYPES = (
    "create_issue",
    "add_comment",
    "create_discussion",
    "create_pull_request",
    "push_to_pull_request_branch",
    "update_issue",
    "add_labels",
    "upload_assets",
    "noop",
)
"""Handled by the general handler manager."""

PATCH_TYPES = ("create_pull_request", "push_to_pull_request_branch")
"""Types that apply a patch, so need the patch artifact and a working tree."""

_READ = PermissionLevel.READ
_WRITE = PermissionLevel.WRITE

TYPE_PERMISSIONS: dict[str, dict[PermissionScope, PermissionLevel]] = {
    "create_issue": {PermissionScope.CONTENTS: _READ, PermissionScope.ISSUES: _WRITE},
    "add_comment": {
        PermissionScope.CONTENTS: _READ,
        PermissionScope.ISSUES: _WRITE,
        PermissionScope.PULL_REQUESTS: _WRITE,
        PermissionScope.DISCUSSIONS: _WRITE,
    },
    "create_discussion": {PermissionScope.CONTENTS: _READ, PermissionScope.DISCUSSIONS: _WRITE},
    "create_pull_request": {
        PermissionScope.CONTENTS: _WRITE,
        PermissionScope.ISSUES: _WRITE,
        PermissionScope.PULL_REQUESTS: _WRITE,
    },
    "push_to_pull_request_branch": {PermissionScope.CONTENTS: _WRITE, PermissionScope.PULL_REQUESTS: _WRITE},
    "update_issue": {PermissionScope.CONTENTS: _READ, PermissionScope.ISSUES: _WRITE},
    "add_labels": {
        PermissionScope.CONTENTS: _READ,
        PermissionScope.ISSUES: _WRITE,
        PermissionScope.PULL_REQUESTS: _WRITE,
    },
    "create_project": {PermissionScope.CONTENTS: _READ},
    "update_project": {PermissionScope.CONTENTS: _READ},
    "copy_project": {PermissionScope.CONTENTS: _READ},
    "create_project_status_update": {PermissionScope.CONTENTS: _READ},
    "assign_to_agent": {PermissionScope.CONTENTS: _READ, PermissionScope.ISSUES: _WRITE},
    "upload_assets": {PermissionScope.CONTENTS: _WRITE},
    "noop": {PermissionScope.CONTENTS: _READ},
}


# =============================================================================
# Project auto-configuration
# =============================================================================


def apply_project_safe_outputs(data: WorkflowData) -> WorkflowData:
    """
    Enable the project types a top-level `project:` URL implies.

    Adds `update-project` (max 100) and `create-project-status-update` (max 1)
    unless already configured. Returns a new WorkflowData; `data` is unchanged.
    """
    url = (data.project or "").strip()
    if not url:
        return data

    safe_outputs = data.safe_outputs.model_copy() if data.safe_outputs is not None else SafeOutputsConfig()
    if safe_outputs.update_project is None:
        safe_outputs.update_project = UpdateProjectConfig(max=100)
    if safe_outputs.create_project_status_update is None:
        safe_outputs.create_project_status_update = CreateProjectStatusUpdateConfig(max=1)
    logger.debug("Project %s enables update-project and create-project-status-update", url)
    return data.model_copy(update={"safe_outputs": safe_outputs, "project": url})


# =============================================================================
# Tokens
# =============================================================================


def _first_custom_token(config: SafeOutputsConfig, types: tuple[str, ...]) -> str | None:
    for name in types:
        type_config = config.get_type(name)
        if type_config is not None and type_config.github_token:
            return type_config.github_token
    return None


def handler_token(data: WorkflowData) -> str:
    """
    Token for the general handler manager.

    An app token wins when an app is configured. Otherwise: per-type token,
    then safe-outputs token, then workflow token, then the default secret.
    """
    config = data.safe_outputs or SafeOutputsConfig()
    if config.app is not None:
        return APP_TOKEN
    return (
        _first_custom_token(config, HANDLER_TYPES)
        or config.github_token
        or data.github_token
        or DEFAULT_GITHUB_TOKEN
    )


def project_token(data: WorkflowData) -> str:
    """Token for the project handler: the first custom project token, else the project secret."""
    config = data.safe_outputs or SafeOutputsConfig()
    return _first_custom_token(config, PROJECT_TYPES) or DEFAULT_PROJECT_TOKEN


def agent_assignment_token(data: WorkflowData) -> str:
    config = data.safe_outputs or SafeOutputsConfig()
    if config.assign_to_agent is not None and config.assign_to_agent.github_token:
        return config.assign_to_agent.github_token
    return DEFAULT_AGENT_TOKEN


def checkout_token(data: WorkflowData) -> str:
    config = data.safe_outputs or SafeOutputsConfig()
    return APP_TOKEN if config.app is not None else "${{ github.token }}"


# =============================================================================
# Steps
# =============================================================================


@dataclass
class SafeOutputStepConfig:
    """Inputs of one consolidated safe-output step."""

    step_name: str
    step_id: str
    script_name: str | None = None
    """Runtime script to `require`, e.g. `safe_output_handler_manager.cjs`."""

    script: str = ""
    """Inline script body, used when `script_name` is None."""

    condition: ConditionNode | None = None
    custom_env: dict[str, str] = field(default_factory=dict)
    token: str = DEFAULT_GITHUB_TOKEN


def build_consolidated_safe_output_step(config: SafeOutputStepConfig) -> StepSpec:
    """
    Build one github-script step of the safe-outputs job.

    Every step reads the agent output path from `GH_AW_AGENT_OUTPUT`, then the
    step's own environment.
    """
    env = {"GH_AW_AGENT_OUTPUT": "${{ env.GH_AW_AGENT_OUTPUT }}"}
    env.update(config.custom_env)
    script = require_script(config.script_name) if config.script_name else inline_script(config.script)
    return StepSpec(
        name=config.step_name,
        id=config.step_id,
        if_condition=render_condition_as_if(config.condition) if config.condition is not None else None,
        uses=get_action_pin("actions/github-script"),
        env=env,
        with_={"github-token": config.token, "script": script},
    )


def _output_types_condition(types: list[str]) -> ConditionNode:
    """The agent ran and produced an output of any of `types`."""
    terms: list[ConditionNode] = [build_safe_output_type(t) for t in types]
    return terms[0] if len(terms) == 1 else DisjunctionNode(tuple(terms))


def handler_config_json(config: SafeOutputsConfig, types: list[str]) -> str:
    """Handler configuration: type name to its settings, keys sorted."""
    settings: dict[str, Any] = {}
    for name in types:
        type_config = config.get_type(name)
        if type_config is None:
            raise ConfigurationError(f"safe output type '{name}' is not configured")
        settings[name] = type_config.handler_settings()
    return json.dumps(settings, sort_keys=True)


def _download_agent_output_steps() -> list[StepSpec]:
    return [
        StepSpec(
            name="Download agent output artifact",
            continue_on_error=True,
            uses=get_action_pin("actions/download-artifact"),
            with_={"name": "agent-output", "path": AGENT_OUTPUT_DIR},
        ),
        StepSpec(
            name="Setup agent output environment variable",
            run="\n".join(
                [
                    f"mkdir -p {AGENT_OUTPUT_DIR}",
                    f'find "{AGENT_OUTPUT_DIR}" -type f -print',
                    f'echo "GH_AW_AGENT_OUTPUT={AGENT_OUTPUT_DIR}agent_output.json" >> "$GITHUB_ENV"',
                ]
            ),
        ),
    ]


def _download_patch_step() -> StepSpec:
    return StepSpec(
        name="Download patch artifact",
        continue_on_error=True,
        uses=get_action_pin("actions/download-artifact"),
        with_={"name": "aw.patch", "path": "/tmp/gh-aw/"},
    )


def _app_token_steps(app: GitHubAppConfig) -> tuple[StepSpec, StepSpec]:
    """Mint and revoke steps for the configured GitHub App."""
    with_: dict[str, Any] = {
        "app-id": app.app_id,
        "private-key": app.private_key,
        "owner": app.owner or "${{ github.repository_owner }}",
        "repositories": ",".join(app.repositories or []) or "${{ github.event.repository.name }}",
    }
    mint = StepSpec(
        name="Generate GitHub App token",
        id="safe-outputs-app-token",
        uses=get_action_pin("actions/create-github-app-token"),
        with_=with_,
    )
    revoke = StepSpec(
        name="Invalidate GitHub App token",
        if_condition="always() && steps.safe-outputs-app-token.outputs.token != ''",
        env={"TOKEN": APP_TOKEN},
        run="\n".join(
            [
                'echo "Revoking GitHub App installation token..."',
                'curl -L -X DELETE -H "Accept: application/vnd.github+json" \\',
                '  -H "Authorization: Bearer $TOKEN" -H "X-GitHub-Api-Version: 2022-11-28" \\',
                '  "${GITHUB_API_URL}/installation/token"',
            ]
        ),
    )
    return mint, revoke


def _checkout_steps(condition: ConditionNode, token: str) -> list[StepSpec]:
    rendered = render_condition_as_if(condition)
    return [
        StepSpec(
            name="Checkout repository",
            if_condition=rendered,
            uses=get_action_pin("actions/checkout"),
            with_={"token": token, "persist-credentials": False, "fetch-depth": 1},
        ),
        StepSpec(
            name="Configure Git credentials",
            if_condition=rendered,
            env={
                "REPO_NAME": "${{ github.repository }}",
                "SERVER_URL": "${{ github.server_url }}",
                "GIT_TOKEN": token,
            },
            run="\n".join(
                [
                    'git config --global user.email "github-actions[bot]@users.noreply.github.com"',
                    'git config --global user.name "github-actions[bot]"',
                    'SERVER_URL_STRIPPED="${SERVER_URL#https://}"',
                    'git remote set-url origin '
                    '"https://x-access-token:${GIT_TOKEN}@${SERVER_URL_STRIPPED}/${REPO_NAME}.git"',
                    'echo "Git configured with standard GitHub Actions identity"',
                ]
            ),
        ),
    ]


# =============================================================================
# Job
# =============================================================================


def safe_outputs_job_condition(*, threat_detection: bool) -> str:
    not_cancelled = ExpressionNode("!cancelled()")
    agent_ran = build_not_equals(
        build_property_access(f"needs.{AGENT_JOB_NAME}.result"),
        build_string_literal("skipped"),
    )
    condition = build_and(not_cancelled, agent_ran).render()
    if threat_detection:
        condition = add_detection_success_check(condition)
    return condition


def safe_outputs_permissions(types: list[str]) -> Permissions:
    permissions = Permissions.new()
    for name in types:
        permissions.merge(Permissions.from_map(TYPE_PERMISSIONS[name]))
    return permissions


def build_safe_outputs_job(data: WorkflowData) -> Job | None:
    """
    Build the consolidated safe-outputs job.

    Args:
        data: The workflow configuration, after `apply_project_safe_outputs`.

    Returns:
        The job, or None when no safe-output type is enabled.

    """
    config = data.safe_outputs
    if config is None or not config.has_any():
        return None

    enabled = config.enabled_types()
    project_types = [t for t in PROJECT_TYPES if t in enabled]
    handler_types = [t for t in HANDLER_TYPES if t in enabled]
    patch_types = [t for t in PATCH_TYPES if t in enabled]

    steps: list[Any] = [build_setup_step()]
    steps.extend(_download_agent_output_steps())
    if patch_types:
        steps.append(_download_patch_step())

    revoke: StepSpec | None = None
    if config.app is not None:
        mint, revoke = _app_token_steps(config.app)
        steps.append(mint)

    if patch_types:
        steps.extend(_checkout_steps(_output_types_condition(patch_types), checkout_token(data)))

    outputs: dict[str, str] = {}

    if project_types:
        token = project_token(data)
        env = {
            "GH_AW_SAFE_OUTPUTS_PROJECT_HANDLER_CONFIG": handler_config_json(config, project_types),
            "GH_AW_PROJECT_GITHUB_TOKEN": token,
        }
        if data.project:
            env["GH_AW_PROJECT_URL"] = json.dumps(data.project)
        steps.append(
            build_consolidated_safe_output_step(
                SafeOutputStepConfig(
                    step_name="Process Project-Related Safe Outputs",
                    step_id="process_project_safe_outputs",
                    script_name="safe_output_project_handler_manager.cjs",
                    condition=_output_types_condition(project_types),
                    custom_env=env,
                    token=token,
                )
            )
        )
        outputs["process_project_safe_outputs_temporary_project_map"] = (
            "${{ steps.process_project_safe_outputs.outputs.temporary_project_map }}"
        )

    if handler_types:
        env = {}
        if project_types:
            env["GH_AW_TEMPORARY_PROJECT_MAP"] = (
                "${{ steps.process_project_safe_outputs.outputs.temporary_project_map }}"
            )
        env["GH_AW_SAFE_OUTPUTS_HANDLER_CONFIG"] = handler_config_json(config, handler_types)
        steps.append(
            build_consolidated_safe_output_step(
                SafeOutputStepConfig(
                    step_name="Process Safe Outputs",
                    step_id="process_safe_outputs",
                    script_name="safe_output_handler_manager.cjs",
                    condition=_output_types_condition(handler_types),
                    custom_env=env,
                    token=handler_token(data),
                )
            )
        )
        outputs["process_safe_outputs_temporary_id_map"] = "${{ steps.process_safe_outputs.outputs.temporary_id_map }}"
        outputs["process_safe_outputs_processed_count"] = "${{ steps.process_safe_outputs.outputs.processed_count }}"

    if config.assign_to_agent is not None:
        env = {"GH_AW_AGENT_MAX_COUNT": str(config.assign_to_agent.effective_max)}
        if config.assign_to_agent.name:
            env["GH_AW_AGENT_DEFAULT"] = config.assign_to_agent.name
        steps.append(
            build_consolidated_safe_output_step(
                SafeOutputStepConfig(
                    step_name="Assign To Agent",
                    step_id="assign_to_agent",
                    script_name="assign_to_agent.cjs",
                    condition=build_safe_output_type("assign_to_agent"),
                    custom_env=env,
                    token=agent_assignment_token(data),
                )
            )
        )
        outputs["assign_to_agent_assigned"] = "${{ steps.assign_to_agent.outputs.assigned }}"

    if revoke is not None:
        steps.append(revoke)

    needs = [AGENT_JOB_NAME]
    if config.threat_detection:
        needs.append(DETECTION_JOB_NAME)

    env = {"GH_AW_WORKFLOW_NAME": json.dumps(data.name)}
    if config.env:
        env.update(config.env)

    job = Job(
        name=SAFE_OUTPUTS_JOB_NAME,
        runs_on=config.runs_on or DEFAULT_RUNNER,
        if_condition=safe_outputs_job_condition(threat_detection=config.threat_detection),
        needs=needs,
        permissions=safe_outputs_permissions(enabled),
        steps=steps,
        outputs=outputs,
        env=env,
        timeout_minutes=15,
    )
    logger.debug("Built safe outputs job for types %s", enabled)
    return job


def build_detection_job(data: WorkflowData) -> Job | None:
    """Threat detection over the agent output, when enabled."""
    config = data.safe_outputs
    if config is None or not config.threat_detection or not config.has_any():
        return None

    steps: list[Any] = [build_setup_step()]
    steps.extend(_download_agent_output_steps())
    if any(t in config.enabled_types() for t in PATCH_TYPES):
        steps.append(_download_patch_step())
    steps.append(
        build_consolidated_safe_output_step(
            SafeOutputStepConfig(
                step_name="Parse threat detection results",
                step_id="parse_results",
                script_name="parse_threat_detection_results.cjs",
            )
        )
    )

    agent_succeeded = build_equals(
        build_property_access(f"needs.{AGENT_JOB_NAME}.result"),
        build_string_literal("success"),
    )
    return Job(
        name=DETECTION_JOB_NAME,
        runs_on=DEFAULT_RUNNER,
        if_condition=render_condition_as_if(agent_succeeded),
        needs=[AGENT_JOB_NAME],
        permissions=Permissions.new(),
        steps=steps,
        outputs={"success": "${{ steps.parse_results.outputs.success }}"},
        timeout_minutes=10,
    )
