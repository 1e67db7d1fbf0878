"""GitHub Actions workflow structure for compiled workflows.

This module provides:
- Dataclasses for steps, jobs and the complete workflow
- JobManager, which owns the job graph and validates its `needs` edges
- YAML rendering via ruamel.yaml
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import StringIO
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.scalarstring import LiteralScalarString

from .action_pins import get_action_pin
from .errors import JobGraphError
from .expressions import AGENT_JOB_NAME, DETECTION_JOB_NAME
from .permissions import Permissions

logger = logging.getLogger(__name__)

PRE_ACTIVATION_JOB_NAME = "pre_activation"
ACTIVATION_JOB_NAME = "activation"
SAFE_OUTPUTS_JOB_NAME = "safe_outputs"

__all__ = [
    "ACTIVATION_JOB_NAME",
    "AGENT_JOB_NAME",
    "DETECTION_JOB_NAME",
    "PRE_ACTIVATION_JOB_NAME",
    "SAFE_OUTPUTS_JOB_NAME",
    "Job",
    "JobManager",
    "Step",
    "StepSpec",
    "WorkflowSpec",
    "build_github_script_step",
    "build_setup_step",
    "generate_workflow_header",
    "inline_script",
    "require_script",
]


def _block(text: str) -> str:
    """Emit multi-line text as a YAML literal block."""
    return LiteralScalarString(text) if "\n" in text else text


# =============================================================================
# Steps and jobs
# =============================================================================


@dataclass
class StepSpec:
    """A step within a GHA job."""

    name: str
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Any] | None = None
    env: dict[str, str] | None = None
    id: str | None = None
    if_condition: str | None = None  # GHA `if:` expression
    continue_on_error: bool = False

    def to_dict(self) -> CommentedMap:
        """Convert to dict for YAML serialization."""
        d: CommentedMap = CommentedMap()
        d["name"] = self.name
        if self.id:
            d["id"] = self.id
        if self.if_condition:
            d["if"] = _block(self.if_condition)
        if self.continue_on_error:
            d["continue-on-error"] = True
        if self.uses:
            d["uses"] = self.uses
        if self.with_:
            d["with"] = {k: _block(v) if isinstance(v, str) else v for k, v in self.with_.items()}
        if self.run:
            d["run"] = _block(self.run)
        if self.env:
            d["env"] = dict(self.env)
        return d


Step = StepSpec | dict[str, Any]
"""A generated step, or a user-supplied step passed through as written."""


@dataclass
class Job:
    """A job within the compiled workflow."""

    name: str
    runs_on: str | list[str] = "ubuntu-latest"
    if_condition: str = ""
    needs: list[str] = field(default_factory=list)
    permissions: Permissions | None = None
    steps: list[Step] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    """Named output expressions other jobs read via `needs.<name>.outputs.<key>`."""

    env: dict[str, str] | None = None
    environment: str | dict[str, Any] | None = None
    concurrency: str | dict[str, Any] | None = None
    timeout_minutes: int | None = None
    uses: str | None = None
    """Reusable workflow reference; such jobs have no steps."""

    with_: dict[str, Any] | None = None
    secrets: dict[str, str] | None = None

    def add_need(self, name: str) -> None:
        if name not in self.needs:
            self.needs.append(name)

    def step_ids(self) -> list[str]:
        ids = []
        for step in self.steps:
            step_id = step.id if isinstance(step, StepSpec) else step.get("id")
            if step_id:
                ids.append(step_id)
        return ids

    def find_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if (step.id if isinstance(step, StepSpec) else step.get("id")) == step_id:
                return step
        return None

    def to_dict(self) -> CommentedMap:
        """Convert to dict for YAML serialization."""
        d: CommentedMap = CommentedMap()
        if self.needs:
            d["needs"] = self.needs[0] if len(self.needs) == 1 else list(self.needs)
        if self.if_condition:
            d["if"] = _block(self.if_condition)
        if self.uses:
            d["uses"] = self.uses
            if self.with_:
                d["with"] = dict(self.with_)
            if self.secrets:
                d["secrets"] = dict(self.secrets)
            if self.permissions is not None:
                d["permissions"] = self.permissions.to_yaml_value()
            return d

        d["runs-on"] = self.runs_on
        if self.environment:
            d["environment"] = self.environment
        if self.permissions is not None:
            d["permissions"] = self.permissions.to_yaml_value()
        if self.concurrency:
            d["concurrency"] = self.concurrency
        if self.timeout_minutes:
            d["timeout-minutes"] = self.timeout_minutes
        if self.env:
            d["env"] = dict(self.env)
        if self.outputs:
            d["outputs"] = dict(self.outputs)
        d["steps"] = [s.to_dict() if isinstance(s, StepSpec) else s for s in self.steps]
        return d

    def __repr__(self) -> str:
        return f"Job({self.name}, needs={self.needs})"


# =============================================================================
# Job graph
# =============================================================================


class JobManager:
    """
    Owns the jobs of one compilation, keyed by name, in insertion order.

    `needs` edges are plain job names; `validate()` checks that they resolve
    and form a DAG.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def add_job(self, job: Job) -> None:
        """
        Register a job.

        Raises:
            JobGraphError: If a job with the same name exists.

        """
        if job.name in self._jobs:
            raise JobGraphError(f"job '{job.name}' already exists")
        logger.debug("Adding job %s (needs: %s)", job.name, job.needs)
        self._jobs[job.name] = job

    def get_job(self, name: str) -> Job | None:
        return self._jobs.get(name)

    def has_job(self, name: str) -> bool:
        return name in self._jobs

    @property
    def jobs(self) -> dict[str, Job]:
        return dict(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    def validate(self) -> None:
        """
        Check every `needs` entry names a known job and the graph is acyclic.

        Raises:
            JobGraphError: On a dangling dependency or a cycle. The cycle
                message lists the path, e.g. `a -> b -> a`.

        """
        for job in self._jobs.values():
            for dep in job.needs:
                if dep not in self._jobs:
                    raise JobGraphError(f"job '{job.name}' depends on unknown job '{dep}'")

        visiting: list[str] = []
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name) :] + [name]
                raise JobGraphError(f"dependency cycle detected: {' -> '.join(cycle)}")
            visiting.append(name)
            for dep in self._jobs[name].needs:
                visit(dep)
            visiting.pop()
            done.add(name)

        for name in self._jobs:
            visit(name)

    def topological_order(self) -> list[Job]:
        """
        Return jobs with dependencies before dependents.

        Uses Kahn's algorithm; jobs that become ready together keep insertion order.
        """
        self.validate()

        in_degree: dict[str, int] = {name: 0 for name in self._jobs}
        dependents: dict[str, list[str]] = {name: [] for name in self._jobs}
        for job in self._jobs.values():
            for dep in job.needs:
                in_degree[job.name] += 1
                dependents[dep].append(job.name)

        queue = [name for name, deg in in_degree.items() if deg == 0]
        result: list[Job] = []
        while queue:
            name = queue.pop(0)
            result.append(self._jobs[name])
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
        return result


# =============================================================================
# Workflow
# =============================================================================


def generate_workflow_header(source: str | None = None) -> str:
    """
    Generate a header comment for compiled lock files.

    Args:
        source: Optional path of the markdown workflow this was compiled from.

    Returns:
        Header comment string to prepend to YAML content.

    """
    lines = [
        "# ============================================================================",
        "# GENERATED FILE - DO NOT EDIT MANUALLY",
        "#",
        "# This workflow is compiled by aw-compiler. To modify:",
        "#   1. Edit the source markdown workflow",
        "#   2. Run: aw-compiler compile <workflow.md>",
        "#   3. Commit the regenerated lock file",
        "#",
    ]
    if source:
        lines.append(f"# Source: {source}")
    lines.extend(
        [
            "# ============================================================================",
            "",
        ]
    )
    return "\n".join(lines)


@dataclass
class WorkflowSpec:
    """A complete compiled workflow."""

    name: str
    on: dict[str, Any]
    jobs: dict[str, Job]
    permissions: Permissions | None = None
    concurrency: str | dict[str, Any] | None = None
    env: dict[str, str] | None = None
    path: Path | None = None  # Output file path, if known

    def __str__(self) -> str:
        """User-friendly string representation."""
        num_jobs = len(self.jobs)
        total_steps = sum(len(job.steps) for job in self.jobs.values())
        triggers = ", ".join(self.on.keys())
        path_str = f" -> {self.path}" if self.path else ""
        return f"WorkflowSpec({self.name}) - {num_jobs} job(s), {total_steps} step(s), on: {triggers}{path_str}"

    __repr__ = __str__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for YAML serialization."""
        d: dict[str, Any] = {
            "name": self.name,
            "on": {event: config for event, config in self.on.items()},
        }
        if self.permissions is not None:
            d["permissions"] = self.permissions.to_yaml_value()
        if self.concurrency:
            d["concurrency"] = self.concurrency
        if self.env:
            d["env"] = self.env
        d["jobs"] = {name: job.to_dict() for name, job in self.jobs.items()}
        return d

    def to_yaml(self, *, include_header: bool = False, source: str | None = None) -> str:
        """
        Render as YAML string.

        Args:
            include_header: If True, prepend generated-file header comment.
            source: Source description for header. If not provided and
                include_header=True, uses the workflow name.

        Returns:
            YAML string, optionally with header.

        """
        yaml = YAML()
        yaml.default_flow_style = False
        yaml.width = 4096  # keep long `if:` expressions on their rendered lines

        stream = StringIO()
        yaml.dump(self.to_dict(), stream)
        yaml_content = stream.getvalue()

        if include_header:
            header_source = source if source else f"workflow: {self.name}"
            return generate_workflow_header(header_source) + yaml_content

        return yaml_content


# =============================================================================
# Common steps
# =============================================================================

SETUP_ACTION = "./actions/setup"
SCRIPTS_DIR = "/opt/gh-aw/actions"
"""Where the setup action installs the runtime scripts."""

GITHUB_SCRIPT_REPO = "actions/github-script"


def build_setup_step() -> StepSpec:
    """Install the runtime scripts every generated job requires."""
    return StepSpec(name="Setup Scripts", uses=SETUP_ACTION, with_={"destination": SCRIPTS_DIR})


def require_script(script_file: str) -> str:
    """github-script body that loads `script_file` from the scripts directory and runs its `main`."""
    return "\n".join(
        [
            f"const {{ setupGlobals }} = require('{SCRIPTS_DIR}/setup_globals.cjs');",
            "setupGlobals(core, github, context, exec, io);",
            f"const {{ main }} = require('{SCRIPTS_DIR}/{script_file}');",
            "await main();",
        ]
    )


def inline_script(body: str) -> str:
    """github-script body running `body` after the globals are set up."""
    return "\n".join(
        [
            f"const {{ setupGlobals }} = require('{SCRIPTS_DIR}/setup_globals.cjs');",
            "setupGlobals(core, github, context, exec, io);",
            body.rstrip("\n"),
        ]
    )


def build_github_script_step(
    name: str,
    script_file: str,
    *,
    id: str | None = None,
    if_condition: str | None = None,
    env: dict[str, str] | None = None,
    github_token: str | None = None,
) -> StepSpec:
    """
    A github-script step running one of the runtime scripts.

    Args:
        name: Step display name.
        script_file: Script file name under the scripts directory, e.g. `add_reaction.cjs`.
        id: Step id, required when later steps or job outputs read its outputs.
        if_condition: Rendered `if:` expression.
        env: Step environment.
        github_token: Token passed to github-script; its default token when None.

    """
    with_: dict[str, Any] = {}
    if github_token:
        with_["github-token"] = github_token
    with_["script"] = require_script(script_file)
    return StepSpec(
        name=name,
        id=id,
        if_condition=if_condition,
        uses=get_action_pin(GITHUB_SCRIPT_REPO),
        env=env,
        with_=with_,
    )
