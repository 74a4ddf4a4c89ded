from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from fastapi.encoders import jsonable_encoder

from stratus.config import Settings, load_settings
from stratus.db import engine, init_db, session_scope
from stratus.logging_config import configure_logging
from stratus.models import DeploymentRead
from stratus.proc import AdapterCommandError
from stratus.provisioner import Provisioner
from stratus.services import deployments as deployment_service
from stratus.services.constants import DEPLOYMENT_STATUS_AWAITING_APPROVAL, DEPLOYMENT_STATUS_ERROR
from stratus.services.errors import StratusException
from stratus.services.manifest import Manifest, load_manifest
from stratus.services.orchestrator import DeploymentOrchestrator
from stratus.services.planner import DeploymentPlan
from stratus.services.poller import StackStatePoller
from stratus.services.registry import TemplateRegistry, build_registry
from stratus.services.template_lint import LintReport

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Stratus CloudFormation deployment CLI", pretty_exceptions_show_locals=False)

EXIT_AWAITING_APPROVAL = 2

ProjectDirOption = typer.Option(Path("."), "--project-dir", help="Directory holding stratus.yaml and the templates.")
BucketOption = typer.Option(None, "--bucket", help="Template bucket; overrides STRATUS_TEMPLATE_BUCKET.")
RegionOption = typer.Option(None, "--region", help="AWS region; overrides AWS_REGION.")
FromBucketOption = typer.Option(False, "--from-bucket", help="Read templates from the bucket instead of disk.")


def _exit_for_domain_error(exc: Exception) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def _make_provisioner(region: str | None) -> Provisioner:
    return Provisioner(region=region)


def _load_settings() -> Settings:
    try:
        return load_settings()
    except ValueError as e:
        _exit_for_domain_error(e)


def _load_project(
    project_dir: Path,
    *,
    bucket: str | None,
    region: str | None,
    from_bucket: bool,
) -> tuple[Manifest, TemplateRegistry, Provisioner, Settings]:
    settings = _load_settings()
    try:
        manifest = load_manifest(project_dir)
    except StratusException as e:
        _exit_for_domain_error(e)
    region = region or settings.region or manifest.region
    bucket = bucket or settings.template_bucket or manifest.bucket
    provisioner = _make_provisioner(region)
    try:
        registry = build_registry(
            base_dir=project_dir,
            template_root=manifest.template_root,
            bucket=bucket,
            region=region,
            s3=provisioner.s3,
            from_bucket=from_bucket,
        )
    except StratusException as e:
        _exit_for_domain_error(e)
    return manifest, registry, provisioner, settings


def _orchestrator(
    session,
    *,
    manifest: Manifest,
    registry: TemplateRegistry,
    provisioner: Provisioner,
    settings: Settings,
    remote_validate: bool = False,
) -> DeploymentOrchestrator:
    poller = StackStatePoller(provisioner, interval=settings.poll_interval, timeout=settings.poll_timeout)
    return DeploymentOrchestrator(
        session=session,
        manifest=manifest,
        registry=registry,
        provisioner=provisioner,
        poller=poller,
        remote_validate=remote_validate,
    )


def _warn_missing_credentials(settings: Settings) -> None:
    if not settings.has_credentials:
        logger.warning("Missing AWS environment variables: %s", ", ".join(settings.missing_aws_variables))


def _report_entity(report: LintReport) -> dict:
    return {
        "template": report.template,
        "ok": report.ok,
        "issues": [
            {"severity": issue.severity, "path": issue.path, "message": issue.message}
            for issue in report.issues
        ],
    }


def _plan_entity(plan: DeploymentPlan) -> dict:
    return {
        "project": plan.project,
        "environment": plan.environment,
        "requires_approval": plan.requires_approval,
        "stacks": [
            {
                "stack": item.stack.name,
                "stack_name": item.stack_name,
                "template": item.template.url or str(item.template.path),
                "depends_on": list(item.depends_on),
            }
            for item in plan.stacks
        ],
    }


def _exit_for_result(result: DeploymentRead) -> None:
    if result.status == DEPLOYMENT_STATUS_ERROR:
        typer.echo(f"Error: Deployment {result.id} of {result.environment} failed: {result.last_error}", err=True)
        raise typer.Exit(code=1)
    if result.status == DEPLOYMENT_STATUS_AWAITING_APPROVAL:
        typer.echo(
            f"Deployment {result.id} of {result.environment} is awaiting approval; "
            f"run 'stratus approve {result.id} --approver <name>'",
            err=True,
        )
        raise typer.Exit(code=EXIT_AWAITING_APPROVAL)


def _parse_approvals(values: list[str]) -> dict[str, str]:
    approvals = {}
    for value in values:
        environment, sep, approver = value.partition("=")
        if not sep or not environment.strip() or not approver.strip():
            raise ValueError(f"Invalid --approve value {value!r}; expected ENVIRONMENT=APPROVER")
        approvals[environment.strip()] = approver.strip()
    return approvals


@app.callback()
def main() -> None:
    init_db(engine)


@app.command("check-env")
def check_env() -> None:
    settings = _load_settings()
    _echo_yaml_entity(
        {
            "region": settings.region,
            "template_bucket": settings.template_bucket,
            "database_url": settings.database_url,
            "poll_interval": settings.poll_interval,
            "poll_timeout": settings.poll_timeout,
            "missing": list(settings.missing_aws_variables),
        }
    )
    if not settings.has_credentials:
        typer.echo(
            f"Error: Missing AWS environment variables: {', '.join(settings.missing_aws_variables)}",
            err=True,
        )
        raise typer.Exit(code=1)


@app.command("lint")
def lint(
    environments: Optional[list[str]] = typer.Argument(None, help="Environments to lint; all when omitted."),
    project_dir: Path = ProjectDirOption,
    bucket: Optional[str] = BucketOption,
    region: Optional[str] = RegionOption,
    from_bucket: bool = FromBucketOption,
    remote_validate: bool = typer.Option(
        False, "--remote-validate", help="Also run 'aws cloudformation validate-template'."
    ),
) -> None:
    manifest, registry, provisioner, settings = _load_project(
        project_dir, bucket=bucket, region=region, from_bucket=from_bucket
    )
    names = environments or manifest.environment_names
    with session_scope() as session:
        orchestrator = _orchestrator(
            session,
            manifest=manifest,
            registry=registry,
            provisioner=provisioner,
            settings=settings,
            remote_validate=remote_validate,
        )
        reports = []
        try:
            for name in names:
                manifest.environment(name)
                reports.extend(orchestrator.lint(name))
        except (StratusException, AdapterCommandError) as e:
            _exit_for_domain_error(e)
    _echo_yaml_entity([_report_entity(report) for report in reports])
    failed = [report.template for report in reports if not report.ok]
    if failed:
        typer.echo(f"Error: Lint errors in {', '.join(failed)}", err=True)
        raise typer.Exit(code=1)


@app.command("publish")
def publish(
    environment: str,
    project_dir: Path = ProjectDirOption,
    bucket: Optional[str] = BucketOption,
    region: Optional[str] = RegionOption,
) -> None:
    manifest, registry, _, _ = _load_project(project_dir, bucket=bucket, region=region, from_bucket=False)
    try:
        manifest.environment(environment)
        refs = registry.publish(environment)
    except (StratusException, AdapterCommandError) as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity([{"name": ref.name, "key": ref.key, "url": ref.url} for ref in refs])


@app.command("plan")
def plan(
    environment: str,
    project_dir: Path = ProjectDirOption,
    bucket: Optional[str] = BucketOption,
    region: Optional[str] = RegionOption,
    from_bucket: bool = FromBucketOption,
) -> None:
    manifest, registry, provisioner, settings = _load_project(
        project_dir, bucket=bucket, region=region, from_bucket=from_bucket
    )
    with session_scope() as session:
        orchestrator = _orchestrator(
            session, manifest=manifest, registry=registry, provisioner=provisioner, settings=settings
        )
        try:
            result = orchestrator.plan(environment)
        except (StratusException, AdapterCommandError) as e:
            _exit_for_domain_error(e)
    _echo_yaml_entity(_plan_entity(result))


@app.command("deploy")
def deploy(
    environment: str,
    approved_by: Optional[str] = typer.Option(None, "--approved-by", help="Record an approval before deploying."),
    deployment_id: Optional[int] = typer.Option(None, "--deployment-id", help="Resume a specific deployment."),
    project_dir: Path = ProjectDirOption,
    bucket: Optional[str] = BucketOption,
    region: Optional[str] = RegionOption,
    from_bucket: bool = FromBucketOption,
    remote_validate: bool = typer.Option(False, "--remote-validate"),
) -> None:
    manifest, registry, provisioner, settings = _load_project(
        project_dir, bucket=bucket, region=region, from_bucket=from_bucket
    )
    _warn_missing_credentials(settings)
    with session_scope() as session:
        orchestrator = _orchestrator(
            session,
            manifest=manifest,
            registry=registry,
            provisioner=provisioner,
            settings=settings,
            remote_validate=remote_validate,
        )
        try:
            result = orchestrator.deploy(environment, approved_by=approved_by, deployment_id=deployment_id)
        except StratusException as e:
            _exit_for_domain_error(e)
    _echo_yaml_entity(result)
    _exit_for_result(result)


@app.command("approve")
def approve(
    deployment_id: int,
    approver: str = typer.Option(..., "--approver", help="Name of the person approving the deployment."),
) -> None:
    with session_scope() as session:
        try:
            deployment = deployment_service.approve_deployment(
                session, deployment_id=deployment_id, approver=approver
            )
        except StratusException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(deployment)


@app.command("promote")
def promote(
    environments: Optional[list[str]] = typer.Argument(None, help="Environments to promote through; all when omitted."),
    approve_values: Optional[list[str]] = typer.Option(
        None, "--approve", help="ENVIRONMENT=APPROVER; may be repeated."
    ),
    project_dir: Path = ProjectDirOption,
    bucket: Optional[str] = BucketOption,
    region: Optional[str] = RegionOption,
    from_bucket: bool = FromBucketOption,
) -> None:
    try:
        approvals = _parse_approvals(approve_values or [])
    except ValueError as e:
        _exit_for_domain_error(e)
    manifest, registry, provisioner, settings = _load_project(
        project_dir, bucket=bucket, region=region, from_bucket=from_bucket
    )
    _warn_missing_credentials(settings)
    with session_scope() as session:
        orchestrator = _orchestrator(
            session, manifest=manifest, registry=registry, provisioner=provisioner, settings=settings
        )
        try:
            results = orchestrator.promote(environments or None, approvals=approvals)
        except StratusException as e:
            _exit_for_domain_error(e)
    _echo_yaml_entity(results)
    if results:
        _exit_for_result(results[-1])


@app.command("destroy")
def destroy(
    environment: str,
    approved_by: Optional[str] = typer.Option(None, "--approved-by"),
    project_dir: Path = ProjectDirOption,
    region: Optional[str] = RegionOption,
) -> None:
    manifest, registry, provisioner, settings = _load_project(
        project_dir, bucket=None, region=region, from_bucket=False
    )
    _warn_missing_credentials(settings)
    with session_scope() as session:
        orchestrator = _orchestrator(
            session, manifest=manifest, registry=registry, provisioner=provisioner, settings=settings
        )
        try:
            result = orchestrator.destroy(environment, approved_by=approved_by)
        except StratusException as e:
            _exit_for_domain_error(e)
    _echo_yaml_entity(result)
    _exit_for_result(result)


@app.command("list-deployments")
def list_deployments(
    environment: Optional[str] = typer.Option(None, "--environment"),
    project: Optional[str] = typer.Option(None, "--project"),
    limit: int = typer.Option(50, "--limit", min=1),
) -> None:
    with session_scope() as session:
        _echo_yaml_entity(
            deployment_service.list_deployments(session, environment=environment, project=project, limit=limit)
        )


@app.command("get-deployment")
def get_deployment(deployment_id: int) -> None:
    with session_scope() as session:
        try:
            deployment = deployment_service.get_deployment(session, deployment_id=deployment_id)
        except StratusException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(deployment)
