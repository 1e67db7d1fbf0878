"""Compile a workflow configuration into a GitHub Actions job graph."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .action_pins import ActionPinCatalog, ActionResolver, PinContext
from .activation import build_activation_job, build_main_job, lock_file_name
from .config import WorkflowData
from .custom_jobs import build_custom_jobs
from .errors import ConfigurationError
from .frontmatter import load_workflow
from .gha import Job, JobManager, WorkflowSpec
from .output import get_output_manager
from .permissions import Permissions
from .pre_activation import build_pre_activation_job, needs_pre_activation
from .safe_outputs import apply_project_safe_outputs, build_detection_job, build_safe_outputs_job

logger = logging.getLogger(__name__)


@dataclass
class CompileResult:
    """Outcome of compiling one workflow."""

    workflow: WorkflowSpec
    jobs: JobManager
    warnings: list[str] = field(default_factory=list)
    lock_path: Path | None = None


class Compiler:
    """
    Compiles workflows one at a time.

    Each compilation gets fresh pinning state, so pin warnings are emitted
    once per action per workflow.
    """

    def __init__(
        self,
        *,
        strict: bool = False,
        resolver: ActionResolver | None = None,
        catalog: ActionPinCatalog | None = None,
    ):
        self.strict = strict
        self.resolver = resolver
        self.catalog = catalog

    def _pin_context(self, data: WorkflowData) -> PinContext:
        return PinContext(strict=self.strict or data.strict, resolver=self.resolver, catalog=self.catalog)

    def build_jobs(self, data: WorkflowData, *, workflow_file: str = "workflow.md") -> JobManager:
        """
        Build and validate the job graph.

        Raises:
            ConfigurationError: If a job can't be built from the configuration.
            JobGraphError: If the resulting graph is invalid.

        """
        data = apply_project_safe_outputs(data)
        ctx = self._pin_context(data)
        manager = JobManager()

        has_pre_activation = needs_pre_activation(data)
        builders: list[tuple[str, Callable[[], Job | None]]] = []
        if has_pre_activation:
            builders.append(("pre_activation", lambda: build_pre_activation_job(data, ctx)))
        builders.append(
            (
                "activation",
                lambda: build_activation_job(data, has_pre_activation=has_pre_activation, workflow_file=workflow_file),
            )
        )
        builders.append(("agent", lambda: build_main_job(data, ctx)))
        builders.append(("detection", lambda: build_detection_job(data)))
        builders.append(("safe_outputs", lambda: build_safe_outputs_job(data)))

        for name, build in builders:
            try:
                job = build()
            except ConfigurationError as err:
                raise ConfigurationError(f"failed to build {name} job: {err}") from err
            if job is not None:
                manager.add_job(job)

        for job in build_custom_jobs(data, ctx):
            manager.add_job(job)

        manager.validate()
        logger.debug("Built %d jobs for %s", len(manager), data.name)
        return manager

    def compile_data(self, data: WorkflowData, *, workflow_file: str = "workflow.md") -> CompileResult:
        """Compile parsed configuration into a workflow."""
        output = get_output_manager()
        warnings_before = len(output.warnings)

        manager = self.build_jobs(data, workflow_file=workflow_file)
        workflow = WorkflowSpec(
            name=data.name,
            on=dict(data.on),
            jobs=manager.jobs,
            permissions=Permissions.new(),
        )
        return CompileResult(workflow=workflow, jobs=manager, warnings=output.warnings[warnings_before:])

    def compile_file(self, path: Path, output_path: Path | None = None) -> CompileResult:
        """
        Compile a markdown workflow and write its lock file.

        Args:
            path: The markdown workflow.
            output_path: Where to write; `<name>.lock.yml` next to `path` by default.

        Returns:
            The compile result, with `lock_path` set.

        """
        data = load_workflow(path)
        result = self.compile_data(data, workflow_file=path.name)

        lock_path = output_path or path.with_name(lock_file_name(path.name))
        workflow = result.workflow
        workflow.path = lock_path
        lock_path.write_text(workflow.to_yaml(include_header=True, source=str(path)), encoding="utf-8")
        result.lock_path = lock_path
        logger.debug("Wrote %s", lock_path)
        return result


def compile_workflow(data: WorkflowData, *, strict: bool = False) -> WorkflowSpec:
    """Compile parsed configuration with default settings."""
    return Compiler(strict=strict).compile_data(data).workflow
