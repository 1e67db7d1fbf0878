"""Workflow configuration models.

These models are the typed form of a workflow's frontmatter. Keys keep their
frontmatter spelling as aliases (`stop-after`, `safe-outputs`, `github-token`,
...) and can also be populated by field name from Python.
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator

from .permissions import PermissionLevel, Permissions, PermissionScope

DEFAULT_ROLES = ["admin", "maintainer", "write"]
"""Roles allowed to trigger a workflow when `roles:` is not configured."""

ALL_ROLES = "all"

DEFAULT_RUNS_ON = "ubuntu-latest"

_STRICT_KEYS = {"populate_by_name": True, "extra": "forbid"}


# =============================================================================
# Trigger-level checks
# =============================================================================


class SkipIfMatch(BaseModel):
    """Skip the run when a search query returns at least `max` results."""

    query: str
    max: int = 1

    model_config = _STRICT_KEYS  # type: ignore[assignment]


class SkipIfNoMatch(BaseModel):
    """Skip the run when a search query returns fewer than `min` results."""

    query: str
    min: int = 1

    model_config = _STRICT_KEYS  # type: ignore[assignment]


class GitHubAppConfig(BaseModel):
    """GitHub App credentials used to mint a token for safe outputs."""

    app_id: str = Field(alias="app-id")
    private_key: str = Field(alias="private-key")
    owner: str | None = None
    repositories: list[str] | None = None

    model_config = _STRICT_KEYS  # type: ignore[assignment]


# =============================================================================
# Safe outputs
# =============================================================================


class SafeOutputTypeConfig(BaseModel):
    """Settings shared by every safe-output type."""

    max: int | None = None
    """Maximum number of items of this type processed per run."""

    github_token: str | None = Field(default=None, alias="github-token")
    """Token overriding the safe-outputs and workflow tokens for this type."""

    target: str | None = None
    target_repo: str | None = Field(default=None, alias="target-repo")
    staged: bool | None = None

    default_max: ClassVar[int] = 1

    model_config = _STRICT_KEYS  # type: ignore[assignment]

    @property
    def effective_max(self) -> int:
        return self.max if self.max is not None else self.default_max

    def handler_settings(self) -> dict[str, Any]:
        """Entry for the handler configuration JSON."""
        settings: dict[str, Any] = {"max": self.effective_max}
        extra = self.model_dump(
            by_alias=True,
            exclude_none=True,
            exclude={"max", "github_token"},
        )
        settings.update(extra)
        return settings


class CreateIssueConfig(SafeOutputTypeConfig):
    title_prefix: str | None = Field(default=None, alias="title-prefix")
    labels: list[str] | None = None
    assignees: list[str] | None = None


class AddCommentConfig(SafeOutputTypeConfig):
    hide_older_comments: bool | None = Field(default=None, alias="hide-older-comments")


class CreateDiscussionConfig(SafeOutputTypeConfig):
    category: str | None = None
    title_prefix: str | None = Field(default=None, alias="title-prefix")


class CreatePullRequestConfig(SafeOutputTypeConfig):
    title_prefix: str | None = Field(default=None, alias="title-prefix")
    labels: list[str] | None = None
    draft: bool | None = None


class PushToPullRequestBranchConfig(SafeOutputTypeConfig):
    branch: str | None = None


class UpdateIssueConfig(SafeOutputTypeConfig):
    status: bool | None = None
    title: bool | None = None
    body: bool | None = None


class AddLabelsConfig(SafeOutputTypeConfig):
    allowed: list[str] | None = None

    default_max: ClassVar[int] = 3


class CreateProjectConfig(SafeOutputTypeConfig):
    target_owner: str | None = Field(default=None, alias="target-owner")


class UpdateProjectConfig(SafeOutputTypeConfig):
    default_max: ClassVar[int] = 10


class CopyProjectConfig(SafeOutputTypeConfig):
    pass


class CreateProjectStatusUpdateConfig(SafeOutputTypeConfig):
    pass


class AssignToAgentConfig(SafeOutputTypeConfig):
    name: str | None = None
    """Default agent to assign."""


class UploadAssetsConfig(SafeOutputTypeConfig):
    branch: str = "assets/${{ github.workflow }}"
    max_size: int = Field(default=10240, alias="max-size")
    """Maximum asset size in KB."""

    allowed_exts: list[str] = Field(default_factory=lambda: [".png", ".jpg", ".jpeg"], alias="allowed-exts")

    default_max: ClassVar[int] = 10


class NoopConfig(SafeOutputTypeConfig):
    pass


SAFE_OUTPUT_TYPES: dict[str, str] = {
    "create_issue": "create-issue",
    "add_comment": "add-comment",
    "create_discussion": "create-discussion",
    "create_pull_request": "create-pull-request",
    "push_to_pull_request_branch": "push-to-pull-request-branch",
    "update_issue": "update-issue",
    "add_labels": "add-labels",
    "create_project": "create-project",
    "update_project": "update-project",
    "copy_project": "copy-project",
    "create_project_status_update": "create-project-status-update",
    "assign_to_agent": "assign-to-agent",
    "upload_assets": "upload-assets",
    "noop": "noop",
}
"""Safe-output type name (as emitted by the agent) to frontmatter key."""


class SafeOutputsConfig(BaseModel):
    """The `safe-outputs:` block."""

    create_issue: CreateIssueConfig | None = Field(default=None, alias="create-issue")
    add_comment: AddCommentConfig | None = Field(default=None, alias="add-comment")
    create_discussion: CreateDiscussionConfig | None = Field(default=None, alias="create-discussion")
    create_pull_request: CreatePullRequestConfig | None = Field(default=None, alias="create-pull-request")
    push_to_pull_request_branch: PushToPullRequestBranchConfig | None = Field(
        default=None, alias="push-to-pull-request-branch"
    )
    update_issue: UpdateIssueConfig | None = Field(default=None, alias="update-issue")
    add_labels: AddLabelsConfig | None = Field(default=None, alias="add-labels")
    create_project: CreateProjectConfig | None = Field(default=None, alias="create-project")
    update_project: UpdateProjectConfig | None = Field(default=None, alias="update-project")
    copy_project: CopyProjectConfig | None = Field(default=None, alias="copy-project")
    create_project_status_update: CreateProjectStatusUpdateConfig | None = Field(
        default=None, alias="create-project-status-update"
    )
    assign_to_agent: AssignToAgentConfig | None = Field(default=None, alias="assign-to-agent")
    upload_assets: UploadAssetsConfig | None = Field(default=None, alias="upload-assets")
    noop: NoopConfig | None = None

    runs_on: str | None = Field(default=None, alias="runs-on")
    github_token: str | None = Field(default=None, alias="github-token")
    app: GitHubAppConfig | None = None
    threat_detection: bool = Field(default=False, alias="threat-detection")
    messages: dict[str, str] | None = None
    env: dict[str, str] | None = None

    model_config = _STRICT_KEYS  # type: ignore[assignment]

    @field_validator(*SAFE_OUTPUT_TYPES, mode="before")
    @classmethod
    def _enable_empty_type(cls, value: Any) -> Any:
        # `create-issue:` with no body enables the type with defaults
        if value is None or value is True:
            return {}
        if value is False:
            return None
        return value

    def enabled_types(self) -> list[str]:
        """Configured type names, in declaration order."""
        return [name for name in SAFE_OUTPUT_TYPES if getattr(self, name) is not None]

    def get_type(self, name: str) -> SafeOutputTypeConfig | None:
        return getattr(self, name) if name in SAFE_OUTPUT_TYPES else None

    def has_any(self) -> bool:
        return bool(self.enabled_types())


# =============================================================================
# Workflow
# =============================================================================


class WorkflowData(BaseModel):
    """
    Parsed workflow configuration.

    Fields that frontmatter nests under `on:` (`stop-after`, `skip-if-match`,
    `reaction`, ...) are top-level here; `frontmatter.load_workflow` lifts them.
    """

    name: str = "workflow"
    on: dict[str, Any] = Field(default_factory=dict)
    """Trigger mapping: event name to event configuration (possibly None)."""

    roles: list[str] | str = Field(default_factory=lambda: list(DEFAULT_ROLES))
    if_condition: str = Field(default="", alias="if")
    permissions: Any = None
    """Raw `permissions:` value; see `parsed_permissions`."""

    runs_on: str | list[str] = Field(default=DEFAULT_RUNS_ON, alias="runs-on")
    environment: str | dict[str, Any] | None = None
    concurrency: str | dict[str, Any] | None = None
    timeout_minutes: int | None = Field(default=None, alias="timeout-minutes")
    github_token: str | None = Field(default=None, alias="github-token")
    strict: bool = False
    project: str | None = None
    manual_approval: str | None = Field(default=None, alias="manual-approval")
    tracker_id: str | None = Field(default=None, alias="tracker-id")
    engine: str | dict[str, Any] | None = None
    steps: list[dict[str, Any]] | None = None
    """Custom steps run in the agent job before the agent."""

    jobs: dict[str, Any] = Field(default_factory=dict)
    """User-defined jobs, raw."""

    safe_outputs: SafeOutputsConfig | None = Field(default=None, alias="safe-outputs")

    stop_time: str | None = Field(default=None, alias="stop-after")
    skip_if_match: SkipIfMatch | None = Field(default=None, alias="skip-if-match")
    skip_if_no_match: SkipIfNoMatch | None = Field(default=None, alias="skip-if-no-match")
    reaction: str | None = None
    lock_for_agent: bool = Field(default=False, alias="lock-for-agent")
    command: list[str] | None = None
    needs_text_output: bool = False
    markdown_content: str = ""

    model_config = {"populate_by_name": True, "extra": "ignore"}  # type: ignore[assignment]

    @field_validator("on", mode="before")
    @classmethod
    def _normalize_on(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return {value: None}
        if isinstance(value, list):
            return {str(event): None for event in value}
        return value

    @field_validator("roles", mode="before")
    @classmethod
    def _normalize_roles(cls, value: Any) -> Any:
        if isinstance(value, str) and value != ALL_ROLES:
            return [value]
        return value

    @field_validator("skip_if_match", "skip_if_no_match", mode="before")
    @classmethod
    def _query_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"query": value}
        return value

    @field_validator("command", mode="before")
    @classmethod
    def _normalize_command(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            return [value]
        if isinstance(value, dict):
            names = value.get("name", value.get("names"))
            if names is None:
                return None
            return [names] if isinstance(names, str) else names
        return value

    @field_validator("reaction", mode="before")
    @classmethod
    def _normalize_reaction(cls, value: Any) -> Any:
        # YAML reads `+1` as an integer
        if isinstance(value, int) and not isinstance(value, bool):
            return f"+{value}" if value > 0 else str(value)
        return value

    @field_validator("safe_outputs", mode="before")
    @classmethod
    def _empty_safe_outputs(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _text_output_from_content(self) -> WorkflowData:
        if "needs.activation.outputs.text" in self.markdown_content:
            self.needs_text_output = True
        return self

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    @property
    def events(self) -> list[str]:
        """Trigger event names."""
        return list(self.on)

    @property
    def roles_are_all(self) -> bool:
        return self.roles == ALL_ROLES or (isinstance(self.roles, list) and ALL_ROLES in self.roles)

    @property
    def roles_explicit(self) -> bool:
        """Whether `roles:` was configured rather than defaulted."""
        return "roles" in self.model_fields_set

    @property
    def role_list(self) -> list[str]:
        if isinstance(self.roles, str):
            return [self.roles]
        return list(self.roles)

    @property
    def parsed_permissions(self) -> Permissions | None:
        if self.permissions is None:
            return None
        return Permissions.from_config(self.permissions)

    @property
    def has_safe_outputs(self) -> bool:
        return self.safe_outputs is not None and self.safe_outputs.has_any()

    @property
    def engine_id(self) -> str:
        if isinstance(self.engine, dict):
            return str(self.engine.get("id", "copilot"))
        return self.engine or "copilot"

    @property
    def engine_model(self) -> str:
        if isinstance(self.engine, dict):
            return str(self.engine.get("model", ""))
        return ""


def agent_job_permissions(data: WorkflowData) -> Permissions:
    """Configured permissions plus `contents: read` when contents is missing or `none`."""
    perms = data.parsed_permissions or Permissions.new()
    perms = perms.copy()
    if perms.get(PermissionScope.CONTENTS) in (None, PermissionLevel.NONE):
        perms.set(PermissionScope.CONTENTS, PermissionLevel.READ)
    return perms
