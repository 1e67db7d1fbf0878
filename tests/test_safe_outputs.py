"""Tests for the consolidated safe-outputs job."""

import json
from typing import Any

import pytest

from aw_compiler.config import WorkflowData
from aw_compiler.errors import ConfigurationError
from aw_compiler.expression_wrap import normalize_expression_for_comparison
from aw_compiler.gha import StepSpec
from aw_compiler.safe_outputs import (
    APP_TOKEN,
    DEFAULT_AGENT_TOKEN,
    DEFAULT_GITHUB_TOKEN,
    DEFAULT_PROJECT_TOKEN,
    SafeOutputStepConfig,
    agent_assignment_token,
    apply_project_safe_outputs,
    build_consolidated_safe_output_step,
    build_detection_job,
    build_safe_outputs_job,
    checkout_token,
    handler_config_json,
    handler_token,
    project_token,
    safe_outputs_job_condition,
    safe_outputs_permissions,
)

JOB_CONDITION = "(!cancelled()) && (needs.agent.result != 'skipped')"
APP = {"app-id": "${{ vars.APP_ID }}", "private-key": "${{ secrets.APP_PRIVATE_KEY }}"}


def _gate(output_type: str) -> str:
    return (
        "((!(cancelled())) && (needs.agent.result != 'skipped')) && "
        f"(contains(needs.agent.outputs.output_types, '{output_type}'))"
    )


def _if(step: StepSpec) -> str:
    assert step.if_condition is not None
    return normalize_expression_for_comparison(step.if_condition)


def _data(safe_outputs: dict[str, Any] | None, **fields: Any) -> WorkflowData:
    return WorkflowData.model_validate({"on": "issues", "safe-outputs": safe_outputs, **fields})


def _job(safe_outputs: dict[str, Any] | None, **fields: Any):
    job = build_safe_outputs_job(apply_project_safe_outputs(_data(safe_outputs, **fields)))
    assert job is not None
    return job


def _names(job) -> list[str]:
    return [step.name for step in job.steps if isinstance(step, StepSpec)]


def _step(job, step_id: str) -> StepSpec:
    step = job.find_step(step_id)
    assert isinstance(step, StepSpec)
    return step


class TestJobShape:
    """Existence, condition, needs and permissions of the job."""

    def test_no_types_no_job(self) -> None:
        assert build_safe_outputs_job(_data(None)) is None
        assert build_safe_outputs_job(_data({"runs-on": "self-hosted"})) is None
        assert build_safe_outputs_job(WorkflowData()) is None

    def test_single_type(self) -> None:
        job = _job({"create-issue": None}, name="Triage")
        assert job.name == "safe_outputs"
        assert job.needs == ["agent"]
        assert job.if_condition == JOB_CONDITION
        assert job.runs_on == "ubuntu-slim"
        assert job.timeout_minutes == 15
        assert job.env == {"GH_AW_WORKFLOW_NAME": '"Triage"'}
        assert job.permissions is not None
        assert job.permissions.to_yaml_value() == {"contents": "read", "issues": "write"}
        assert _names(job) == [
            "Setup Scripts",
            "Download agent output artifact",
            "Setup agent output environment variable",
            "Process Safe Outputs",
        ]
        assert set(job.outputs) == {"process_safe_outputs_temporary_id_map", "process_safe_outputs_processed_count"}

    def test_runner_and_env_from_config(self) -> None:
        job = _job({"noop": None, "runs-on": "self-hosted", "env": {"DRY_RUN": "1"}})
        assert job.runs_on == "self-hosted"
        assert job.env == {"GH_AW_WORKFLOW_NAME": '"workflow"', "DRY_RUN": "1"}

    def test_permissions_union(self) -> None:
        perms = safe_outputs_permissions(["create_issue", "add_comment", "create_pull_request"])
        assert perms.to_yaml_value() == {
            "contents": "write",
            "discussions": "write",
            "issues": "write",
            "pull-requests": "write",
        }

    def test_threat_detection(self) -> None:
        job = _job({"create-issue": None, "threat-detection": True})
        assert job.needs == ["agent", "detection"]
        assert job.if_condition == f"({JOB_CONDITION}) && (needs.detection.outputs.success == 'true')"
        assert safe_outputs_job_condition(threat_detection=False) == JOB_CONDITION


class TestHandlerSteps:
    """The handler manager step."""

    def test_handler_step(self) -> None:
        job = _job({"create-issue": {"title-prefix": "[triage] "}, "add-labels": {"allowed": ["bug"]}})
        step = _step(job, "process_safe_outputs")
        assert _if(step) == f"{_gate('create_issue')} || {_gate('add_labels')}"
        assert step.env is not None
        assert list(step.env) == ["GH_AW_AGENT_OUTPUT", "GH_AW_SAFE_OUTPUTS_HANDLER_CONFIG"]
        assert json.loads(step.env["GH_AW_SAFE_OUTPUTS_HANDLER_CONFIG"]) == {
            "add_labels": {"max": 3, "allowed": ["bug"]},
            "create_issue": {"max": 1, "title-prefix": "[triage] "},
        }
        assert step.with_ is not None
        assert step.with_["github-token"] == DEFAULT_GITHUB_TOKEN
        assert "safe_output_handler_manager.cjs" in step.with_["script"]

    def test_handler_config_keys_sorted(self) -> None:
        data = _data({"noop": None, "add-comment": {"max": 5}})
        assert data.safe_outputs is not None
        text = handler_config_json(data.safe_outputs, ["noop", "add_comment"])
        assert text == '{"add_comment": {"max": 5}, "noop": {"max": 1}}'

    def test_handler_config_unconfigured_type(self) -> None:
        data = _data({"noop": None})
        assert data.safe_outputs is not None
        with pytest.raises(ConfigurationError, match="create_issue"):
            handler_config_json(data.safe_outputs, ["create_issue"])


class TestCheckout:
    """The shared checkout for types that need a working tree."""

    def test_single_checkout_for_pull_request_types(self) -> None:
        job = _job({"create-pull-request": None, "push-to-pull-request-branch": None})
        names = _names(job)
        assert names.count("Checkout repository") == 1
        assert names.index("Download patch artifact") < names.index("Checkout repository")
        assert names.index("Configure Git credentials") == names.index("Checkout repository") + 1

        checkout = job.steps[names.index("Checkout repository")]
        assert isinstance(checkout, StepSpec)
        assert checkout.if_condition is not None
        assert "\n" in checkout.if_condition
        assert _if(checkout) == f"{_gate('create_pull_request')} || {_gate('push_to_pull_request_branch')}"
        credentials = job.steps[names.index("Configure Git credentials")]
        assert isinstance(credentials, StepSpec)
        assert credentials.if_condition == checkout.if_condition
        assert checkout.with_ is not None
        assert checkout.with_["token"] == "${{ github.token }}"

    def test_no_checkout_for_comment_types(self) -> None:
        names = _names(_job({"add-comment": None}))
        assert "Checkout repository" not in names
        assert "Download patch artifact" not in names

    def test_single_pull_request_type(self) -> None:
        job = _job({"push-to-pull-request-branch": None, "add-comment": None})
        names = _names(job)
        checkout = job.steps[names.index("Checkout repository")]
        assert isinstance(checkout, StepSpec)
        assert _if(checkout) == _gate("push_to_pull_request_branch")

    def test_no_checkout_for_upload_assets(self) -> None:
        names = _names(_job({"upload-assets": None}))
        assert "Checkout repository" not in names
        assert "Configure Git credentials" not in names
        assert "Download patch artifact" not in names


class TestProjects:
    """Project handler and project auto-configuration."""

    def test_project_url_enables_types(self) -> None:
        data = _data(None, project="https://github.com/orgs/octo/projects/7")
        updated = apply_project_safe_outputs(data)
        assert updated.safe_outputs is not None
        assert updated.safe_outputs.update_project is not None
        assert updated.safe_outputs.update_project.max == 100
        assert updated.safe_outputs.create_project_status_update is not None
        assert updated.safe_outputs.create_project_status_update.max == 1
        assert data.safe_outputs is not None
        assert data.safe_outputs.update_project is None

    def test_configured_project_type_kept(self) -> None:
        data = _data({"update-project": {"max": 5}}, project="https://github.com/orgs/octo/projects/7")
        updated = apply_project_safe_outputs(data)
        assert updated.safe_outputs is not None
        assert updated.safe_outputs.update_project is not None
        assert updated.safe_outputs.update_project.max == 5

    def test_no_project_no_change(self) -> None:
        data = _data({"noop": None})
        assert apply_project_safe_outputs(data) is data

    def test_project_handler_runs_first(self) -> None:
        job = _job({"add-comment": None}, project="https://github.com/orgs/octo/projects/7")
        names = _names(job)
        assert names.index("Process Project-Related Safe Outputs") < names.index("Process Safe Outputs")

        project_step = _step(job, "process_project_safe_outputs")
        assert project_step.env is not None
        assert project_step.env["GH_AW_PROJECT_URL"] == '"https://github.com/orgs/octo/projects/7"'
        assert json.loads(project_step.env["GH_AW_SAFE_OUTPUTS_PROJECT_HANDLER_CONFIG"]) == {
            "create_project_status_update": {"max": 1},
            "update_project": {"max": 100},
        }
        assert project_step.with_ is not None
        assert project_step.with_["github-token"] == DEFAULT_PROJECT_TOKEN
        assert _if(project_step) == f"{_gate('create_project_status_update')} || {_gate('update_project')}"

        handler_step = _step(job, "process_safe_outputs")
        assert handler_step.env is not None
        assert handler_step.env["GH_AW_TEMPORARY_PROJECT_MAP"] == (
            "${{ steps.process_project_safe_outputs.outputs.temporary_project_map }}"
        )
        assert "process_project_safe_outputs_temporary_project_map" in job.outputs

    def test_project_only(self) -> None:
        job = _job({"create-project": None})
        names = _names(job)
        assert "Process Project-Related Safe Outputs" in names
        assert "Process Safe Outputs" not in names


class TestTokens:
    """Token precedence."""

    def test_handler_default(self) -> None:
        assert handler_token(_data({"create-issue": None})) == DEFAULT_GITHUB_TOKEN

    def test_handler_workflow_token(self) -> None:
        data = _data({"create-issue": None}, **{"github-token": "${{ secrets.WORKFLOW }}"})
        assert handler_token(data) == "${{ secrets.WORKFLOW }}"

    def test_handler_safe_outputs_token(self) -> None:
        data = _data(
            {"create-issue": None, "github-token": "${{ secrets.SAFE }}"},
            **{"github-token": "${{ secrets.WORKFLOW }}"},
        )
        assert handler_token(data) == "${{ secrets.SAFE }}"

    def test_handler_per_type_token(self) -> None:
        data = _data(
            {"create-issue": {"github-token": "${{ secrets.ISSUES }}"}, "github-token": "${{ secrets.SAFE }}"}
        )
        assert handler_token(data) == "${{ secrets.ISSUES }}"

    def test_app_token_wins(self) -> None:
        data = _data({"create-issue": {"github-token": "${{ secrets.ISSUES }}"}, "app": APP})
        assert handler_token(data) == APP_TOKEN
        assert checkout_token(data) == APP_TOKEN

    def test_project_token(self) -> None:
        assert project_token(_data({"update-project": None})) == DEFAULT_PROJECT_TOKEN
        data = _data(
            {
                "update-project": {"github-token": "${{ secrets.UPDATE }}"},
                "create-project": {"github-token": "${{ secrets.CREATE }}"},
            }
        )
        assert project_token(data) == "${{ secrets.CREATE }}"

    def test_project_token_ignores_workflow_token(self) -> None:
        data = _data({"update-project": None}, **{"github-token": "${{ secrets.WORKFLOW }}"})
        assert project_token(data) == DEFAULT_PROJECT_TOKEN

    def test_agent_assignment_token(self) -> None:
        assert agent_assignment_token(_data({"assign-to-agent": None})) == DEFAULT_AGENT_TOKEN
        data = _data({"assign-to-agent": {"github-token": "${{ secrets.PAT }}"}})
        assert agent_assignment_token(data) == "${{ secrets.PAT }}"


class TestStepOrder:
    """Full step order with every optional piece."""

    def test_order(self) -> None:
        job = _job(
            {
                "app": APP,
                "create-pull-request": None,
                "update-project": None,
                "create-issue": None,
                "assign-to-agent": {"name": "copilot"},
            }
        )
        assert _names(job) == [
            "Setup Scripts",
            "Download agent output artifact",
            "Setup agent output environment variable",
            "Download patch artifact",
            "Generate GitHub App token",
            "Checkout repository",
            "Configure Git credentials",
            "Process Project-Related Safe Outputs",
            "Process Safe Outputs",
            "Assign To Agent",
            "Invalidate GitHub App token",
        ]

    def test_assign_to_agent_step(self) -> None:
        job = _job({"assign-to-agent": {"name": "copilot", "max": 2}})
        step = _step(job, "assign_to_agent")
        assert step.if_condition is not None
        assert "contains(needs.agent.outputs.output_types, 'assign_to_agent')" in step.if_condition
        assert "!(cancelled())" in step.if_condition
        assert step.env == {
            "GH_AW_AGENT_OUTPUT": "${{ env.GH_AW_AGENT_OUTPUT }}",
            "GH_AW_AGENT_MAX_COUNT": "2",
            "GH_AW_AGENT_DEFAULT": "copilot",
        }
        assert step.with_ is not None
        assert step.with_["github-token"] == DEFAULT_AGENT_TOKEN
        assert job.outputs["assign_to_agent_assigned"] == "${{ steps.assign_to_agent.outputs.assigned }}"

    def test_app_token_steps(self) -> None:
        job = _job({"app": {**APP, "repositories": ["a", "b"]}, "noop": None})
        mint = _step(job, "safe-outputs-app-token")
        assert mint.with_ is not None
        assert mint.with_["repositories"] == "a,b"
        assert mint.with_["owner"] == "${{ github.repository_owner }}"
        revoke = job.steps[-1]
        assert isinstance(revoke, StepSpec)
        assert revoke.name == "Invalidate GitHub App token"
        assert revoke.if_condition == "always() && steps.safe-outputs-app-token.outputs.token != ''"


class TestConsolidatedStep:
    """Tests for build_consolidated_safe_output_step."""

    def test_named_script(self) -> None:
        step = build_consolidated_safe_output_step(
            SafeOutputStepConfig(step_name="Run", step_id="run", script_name="noop.cjs", custom_env={"X": "1"})
        )
        assert step.if_condition is None
        assert step.env == {"GH_AW_AGENT_OUTPUT": "${{ env.GH_AW_AGENT_OUTPUT }}", "X": "1"}
        assert step.with_ is not None
        assert step.with_["github-token"] == DEFAULT_GITHUB_TOKEN
        assert "require('/opt/gh-aw/actions/noop.cjs')" in step.with_["script"]

    def test_inline_script(self) -> None:
        step = build_consolidated_safe_output_step(
            SafeOutputStepConfig(step_name="Inline", step_id="inline", script="core.info('done');", token="T")
        )
        assert step.with_ is not None
        assert step.with_["script"].endswith("core.info('done');")
        assert step.with_["github-token"] == "T"


class TestDetectionJob:
    """Tests for build_detection_job."""

    def test_disabled_by_default(self) -> None:
        assert build_detection_job(_data({"create-issue": None})) is None

    @pytest.mark.parametrize("types", [{"create-issue": None}, {"create-pull-request": None}])
    def test_enabled(self, types: dict[str, Any]) -> None:
        job = build_detection_job(_data({**types, "threat-detection": True}))
        assert job is not None
        assert job.name == "detection"
        assert job.needs == ["agent"]
        assert job.if_condition == "needs.agent.result == 'success'"
        assert job.permissions is not None
        assert job.permissions.to_yaml_value() == {}
        assert job.outputs == {"success": "${{ steps.parse_results.outputs.success }}"}
        assert "parse_results" in job.step_ids()
