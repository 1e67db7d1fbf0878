"""User-defined jobs from the `jobs:` configuration."""

from __future__ import annotations

import logging
import re
from typing import Any

from .action_pins import PinContext, apply_action_pin_to_step
from .config import DEFAULT_RUNS_ON, WorkflowData
from .errors import ConfigurationError
from .expressions import strip_expression_wrapper
from .gha import ACTIVATION_JOB_NAME, AGENT_JOB_NAME, PRE_ACTIVATION_JOB_NAME, Job
from .permissions import Permissions

logger = logging.getLogger(__name__)

PRE_ACTIVATION_CONFIG_KEYS = ("pre-activation", "pre_activation")
"""`jobs:` keys that extend the pre-activation job instead of defining a new job."""

_PASSTHROUGH_FIELDS = ("env", "environment", "concurrency", "timeout-minutes")


def custom_job_names(data: WorkflowData) -> list[str]:
    return [name for name in data.jobs if name not in PRE_ACTIVATION_CONFIG_KEYS]


def job_needs(config: Any) -> list[str]:
    """Explicit `needs` of a raw job config (a string or a list)."""
    if not isinstance(config, dict):
        return []
    needs = config.get("needs")
    if needs is None:
        return []
    if isinstance(needs, str):
        return [needs]
    if isinstance(needs, list):
        return [str(n) for n in needs]
    raise ConfigurationError(f"needs must be a string or a list, got {type(needs).__name__}")


def depends_on(data: WorkflowData, job_name: str, target: str) -> bool:
    return target in job_needs(data.jobs.get(job_name))


def jobs_before_activation(data: WorkflowData) -> list[str]:
    """Custom jobs that run between pre-activation and activation."""
    return [name for name in custom_job_names(data) if depends_on(data, name, PRE_ACTIVATION_JOB_NAME)]


def jobs_before_agent(data: WorkflowData) -> list[str]:
    """Custom jobs the agent job depends on directly."""
    return [
        name
        for name in custom_job_names(data)
        if not depends_on(data, name, PRE_ACTIVATION_JOB_NAME) and not depends_on(data, name, AGENT_JOB_NAME)
    ]


def _output_reference(job_name: str) -> re.Pattern[str]:
    return re.compile(rf"\bneeds\.{re.escape(job_name)}\.")


def references_job_outputs(text: str, job_names: list[str]) -> bool:
    """Whether `text` reads `needs.<job>.` of any of `job_names`."""
    return any(_output_reference(name).search(text) for name in job_names)


def referenced_jobs(text: str, job_names: list[str]) -> list[str]:
    """The jobs among `job_names` whose results `text` references, in `job_names` order."""
    return [name for name in job_names if _output_reference(name).search(text)]


# =============================================================================
# Building
# =============================================================================


def _require_mapping(name: str, config: Any) -> dict[str, Any]:
    if not isinstance(config, dict):
        raise ConfigurationError(f"jobs.{name} must be an object")
    return config


def parse_job_outputs(name: str, raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"jobs.{name}.outputs must be an object")
    outputs = {}
    for key, value in raw.items():
        if not isinstance(value, str):
            raise ConfigurationError(f"jobs.{name}.outputs.{key} must be a string")
        outputs[str(key)] = value
    return outputs


def parse_job_steps(name: str, raw: Any, ctx: PinContext) -> list[dict[str, Any]]:
    """Validate raw steps and pin their action references."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError(f"jobs.{name}.steps must be a list")
    steps = []
    for i, step in enumerate(raw):
        if not isinstance(step, dict):
            raise ConfigurationError(f"jobs.{name}.steps[{i}] must be an object")
        steps.append(apply_action_pin_to_step(step, ctx))
    return steps


def _parse_secrets(name: str, raw: Any) -> dict[str, str] | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError(f"jobs.{name}.secrets must be an object")
    secrets = {}
    for key, value in raw.items():
        if not isinstance(value, str) or not (value.strip().startswith("${{") and value.strip().endswith("}}")):
            raise ConfigurationError(
                f"jobs.{name}.secrets.{key} must be a GitHub Actions expression like '${{{{ secrets.NAME }}}}'"
            )
        secrets[str(key)] = value
    return secrets


def build_custom_job(name: str, config: Any, ctx: PinContext) -> Job:
    """
    Build one user-defined job.

    A job without explicit `needs` runs after activation.

    Raises:
        ConfigurationError: If the config is malformed.

    """
    config = _require_mapping(name, config)
    needs = job_needs(config) or [ACTIVATION_JOB_NAME]

    job = Job(name=name, needs=needs)
    job.runs_on = config.get("runs-on", DEFAULT_RUNS_ON)
    if config.get("if"):
        job.if_condition = strip_expression_wrapper(str(config["if"]))
    if "permissions" in config:
        job.permissions = Permissions.from_config(config["permissions"])
    job.outputs = parse_job_outputs(name, config.get("outputs"))

    if "uses" in config:
        job.uses = str(config["uses"])
        job.with_ = config.get("with")
        job.secrets = _parse_secrets(name, config.get("secrets"))
    else:
        job.steps = list(parse_job_steps(name, config.get("steps"), ctx))

    for key in _PASSTHROUGH_FIELDS:
        if key in config:
            setattr(job, key.replace("-", "_"), config[key])

    logger.debug("Built custom job %s (needs: %s)", name, job.needs)
    return job


def build_custom_jobs(data: WorkflowData, ctx: PinContext) -> list[Job]:
    return [build_custom_job(name, data.jobs[name], ctx) for name in custom_job_names(data)]
