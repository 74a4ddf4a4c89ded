from __future__ import annotations

from typing import Any

import pytest
import yaml

from tests.fakes import BROKEN_TEMPLATE, FakeProvisioner

NETWORK_OUTPUTS = {"network": {"VpcId": "vpc-123"}}


def _stdout(result) -> str:
    return getattr(result, "stdout", result.output)


def _stderr(result) -> str:
    return getattr(result, "stderr", result.output)


def _parse_yaml_stdout(result) -> Any:
    return yaml.safe_load(_stdout(result))


@pytest.fixture
def fake_provisioner(cli_runner, monkeypatch):
    import stratus.cli as cli

    provisioner = FakeProvisioner(outputs=NETWORK_OUTPUTS)
    monkeypatch.setattr(cli, "_make_provisioner", lambda region: provisioner)
    return provisioner


def _invoke(cli_runner, *args):
    runner, app = cli_runner
    return runner.invoke(app, list(args))


def test_check_env_reports_missing_credentials(cli_runner):
    result = _invoke(cli_runner, "check-env")

    assert result.exit_code == 1
    assert _parse_yaml_stdout(result)["missing"] == ["AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION"]
    assert "Error: Missing AWS environment variables" in _stderr(result)


def test_check_env_ok(cli_runner, monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIA")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("AWS_REGION", "eu-west-1")
    monkeypatch.setenv("STRATUS_TEMPLATE_BUCKET", "acme-templates")

    result = _invoke(cli_runner, "check-env")

    assert result.exit_code == 0
    data = _parse_yaml_stdout(result)
    assert data["region"] == "eu-west-1"
    assert data["template_bucket"] == "acme-templates"
    assert data["missing"] == []


def test_check_env_rejects_bad_poll_interval(cli_runner, monkeypatch):
    monkeypatch.setenv("STRATUS_POLL_INTERVAL", "soon")
    result = _invoke(cli_runner, "check-env")
    assert result.exit_code == 1
    assert "STRATUS_POLL_INTERVAL must be a number" in _stderr(result)


def test_lint_all_environments(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "lint", "--project-dir", str(project_dir))

    assert result.exit_code == 0, _stderr(result)
    reports = _parse_yaml_stdout(result)
    assert [r["template"] for r in reports] == [
        f"{env}/{name}"
        for env in ("development", "staging", "production")
        for name in ("compute.yaml", "network.yaml")
    ]
    assert all(r["ok"] for r in reports)


def test_lint_failure_exits_non_zero(cli_runner, fake_provisioner, project_dir):
    (project_dir / "infrastructure" / "staging" / "compute.yaml").write_text(BROKEN_TEMPLATE)

    result = _invoke(cli_runner, "lint", "staging", "--project-dir", str(project_dir))

    assert result.exit_code == 1
    reports = _parse_yaml_stdout(result)
    assert reports[0]["issues"] == [
        {
            "severity": "error",
            "path": "Resources/Instance/Properties/SubnetId",
            "message": "unresolved reference 'MissingSubnet'",
        }
    ]
    assert "Error: Lint errors in staging/compute.yaml" in _stderr(result)


def test_lint_unknown_environment(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "lint", "qa", "--project-dir", str(project_dir))
    assert result.exit_code == 1
    assert "Error: Environment 'qa' is not defined" in _stderr(result)


def test_plan(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "plan", "production", "--project-dir", str(project_dir))

    assert result.exit_code == 0, _stderr(result)
    plan = _parse_yaml_stdout(result)
    assert plan["requires_approval"] is True
    assert [s["stack_name"] for s in plan["stacks"]] == ["acme-production-network", "acme-production-compute"]
    assert plan["stacks"][1]["depends_on"] == ["network"]
    assert fake_provisioner.calls == []


def test_deploy_development(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "deploy", "development", "--project-dir", str(project_dir))

    assert result.exit_code == 0, _stderr(result)
    deployment = _parse_yaml_stdout(result)
    assert deployment["status"] == "ready"
    assert [op["status"] for op in deployment["stack_operations"]] == ["complete", "complete"]
    assert fake_provisioner.operations() == [
        ("create_stack", "acme-development-network"),
        ("create_stack", "acme-development-compute"),
    ]


def test_deploy_failure_exits_one(cli_runner, monkeypatch, project_dir):
    import stratus.cli as cli

    provisioner = FakeProvisioner(outputs=NETWORK_OUTPUTS, fail_on=("compute",))
    monkeypatch.setattr(cli, "_make_provisioner", lambda region: provisioner)

    result = _invoke(cli_runner, "deploy", "development", "--project-dir", str(project_dir))

    assert result.exit_code == 1
    assert _parse_yaml_stdout(result)["status"] == "error"
    assert "failed: Stack acme-development-compute ended in ROLLBACK_COMPLETE" in _stderr(result)


def test_production_approval_flow(cli_runner, fake_provisioner, project_dir):
    waiting = _invoke(cli_runner, "deploy", "production", "--project-dir", str(project_dir))
    assert waiting.exit_code == 2
    deployment_id = _parse_yaml_stdout(waiting)["id"]
    assert f"stratus approve {deployment_id}" in _stderr(waiting)
    assert fake_provisioner.calls == []

    approved = _invoke(cli_runner, "approve", str(deployment_id), "--approver", "alice")
    assert approved.exit_code == 0, _stderr(approved)
    assert _parse_yaml_stdout(approved)["approved_by"] == "alice"

    result = _invoke(cli_runner, "deploy", "production", "--project-dir", str(project_dir))
    assert result.exit_code == 0, _stderr(result)
    deployment = _parse_yaml_stdout(result)
    assert deployment["id"] == deployment_id
    assert deployment["status"] == "ready"


def test_approve_missing_deployment(cli_runner):
    result = _invoke(cli_runner, "approve", "99", "--approver", "alice")
    assert result.exit_code == 1
    assert "Error: Deployment not found" in _stderr(result)


def test_promote_stops_before_production(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "promote", "--project-dir", str(project_dir))

    assert result.exit_code == 2
    assert [(d["environment"], d["status"]) for d in _parse_yaml_stdout(result)] == [
        ("development", "ready"),
        ("staging", "ready"),
        ("production", "awaiting_approval"),
    ]


def test_promote_with_approval(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "promote", "--approve", "production=alice", "--project-dir", str(project_dir))

    assert result.exit_code == 0, _stderr(result)
    assert [d["status"] for d in _parse_yaml_stdout(result)] == ["ready", "ready", "ready"]


def test_promote_rejects_malformed_approval(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "promote", "--approve", "alice", "--project-dir", str(project_dir))
    assert result.exit_code == 1
    assert "expected ENVIRONMENT=APPROVER" in _stderr(result)


def test_destroy(cli_runner, fake_provisioner, project_dir):
    _invoke(cli_runner, "deploy", "development", "--project-dir", str(project_dir))

    result = _invoke(cli_runner, "destroy", "development", "--project-dir", str(project_dir))

    assert result.exit_code == 0, _stderr(result)
    assert _parse_yaml_stdout(result)["status"] == "destroyed"
    assert fake_provisioner.stacks == {}


def test_destroy_production_requires_approver(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "destroy", "production", "--project-dir", str(project_dir))
    assert result.exit_code == 1
    assert "requires an approver" in _stderr(result)


def test_publish(cli_runner, fake_provisioner, project_dir):
    result = _invoke(
        cli_runner, "publish", "staging", "--bucket", "acme-templates", "--region", "eu-west-1",
        "--project-dir", str(project_dir),
    )

    assert result.exit_code == 0, _stderr(result)
    assert [ref["key"] for ref in _parse_yaml_stdout(result)] == [
        "infrastructure/staging/compute.yaml",
        "infrastructure/staging/network.yaml",
    ]
    assert len(fake_provisioner.s3.uploads) == 2


def test_publish_without_bucket(cli_runner, fake_provisioner, project_dir):
    result = _invoke(cli_runner, "publish", "staging", "--project-dir", str(project_dir))
    assert result.exit_code == 1
    assert "No template bucket configured" in _stderr(result)


def test_list_and_get_deployments(cli_runner, fake_provisioner, project_dir):
    _invoke(cli_runner, "deploy", "development", "--project-dir", str(project_dir))
    _invoke(cli_runner, "deploy", "staging", "--project-dir", str(project_dir))

    listed = _invoke(cli_runner, "list-deployments", "--environment", "staging")
    assert listed.exit_code == 0
    deployments = _parse_yaml_stdout(listed)
    assert [d["environment"] for d in deployments] == ["staging"]

    fetched = _invoke(cli_runner, "get-deployment", str(deployments[0]["id"]))
    assert fetched.exit_code == 0
    assert _parse_yaml_stdout(fetched)["stack_operations"][0]["stack"] == "network"

    missing = _invoke(cli_runner, "get-deployment", "999")
    assert missing.exit_code == 1
    assert "Error: Deployment not found" in _stderr(missing)
