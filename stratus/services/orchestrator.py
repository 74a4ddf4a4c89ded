from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from sqlmodel import Session

from stratus.models import DeploymentCreate, DeploymentORM, DeploymentRead, StackOperationORM, utcnow
from stratus.proc import AdapterCommandError
from stratus.provisioner import Provisioner
from stratus.services import deployments as deployment_service
from stratus.services.constants import (
    DEPLOYMENT_STATUS_AWAITING_APPROVAL,
    DEPLOYMENT_STATUS_DESTROYED,
    DEPLOYMENT_STATUS_ERROR,
    DEPLOYMENT_STATUS_PENDING,
    DEPLOYMENT_STATUS_READY,
    OPERATION_CREATE,
    OPERATION_DELETE,
    OPERATION_NOOP,
    OPERATION_UPDATE,
    STACK_OP_STATUS_COMPLETE,
    STACK_OP_STATUS_FAILED,
    STACK_OP_STATUS_IN_PROGRESS,
    STACK_OP_STATUS_PENDING,
    STACK_OP_STATUS_SKIPPED,
    STACK_OP_STATUS_UNCHANGED,
)
from stratus.services.errors import (
    ApprovalRequiredException,
    DeploymentInProgressException,
    IntegrityException,
    StackOperationException,
    TemplateValidationException,
)
from stratus.services.manifest import EnvironmentSpec, Manifest
from stratus.services.naming import stack_name_for
from stratus.services.planner import (
    DeploymentPlan,
    StackPlan,
    build_plan,
    environment_order,
    order_stacks,
    resolve_parameters,
)
from stratus.services.poller import STACK_ABSENT, StackState, StackStatePoller, is_in_progress
from stratus.services.registry import TemplateRegistry
from stratus.services.template_lint import LintReport, lint_template, template_parameters

logger = logging.getLogger(__name__)

# a stack left in this state by a failed create can only be deleted
_UNRECOVERABLE_STATUSES = ("ROLLBACK_COMPLETE",)


class DeploymentOrchestrator:
    """Deploy the stacks of an environment in dependency order.

    Each call to :meth:`deploy` is recorded as a deployment with one stack
    operation per stack. Environments that require approval are parked in
    ``awaiting_approval`` until an approver is recorded.
    """

    def __init__(
        self,
        *,
        session: Session,
        manifest: Manifest,
        registry: TemplateRegistry,
        provisioner: Provisioner | None = None,
        poller: StackStatePoller | None = None,
        remote_validate: bool = False,
    ) -> None:
        self._session = session
        self._manifest = manifest
        self._registry = registry
        self._provisioner = provisioner or Provisioner(region=manifest.region)
        self._poller = poller or StackStatePoller(self._provisioner)
        self._remote_validate = remote_validate

    def plan(self, environment: str) -> DeploymentPlan:
        return build_plan(self._manifest, environment, self._registry)

    def lint(self, environment: str) -> list[LintReport]:
        reports = []
        for name in self._registry.list_templates(environment):
            body = self._registry.fetch(environment, name)
            report = lint_template(body, name=f"{environment}/{name}", has_bucket=self._registry.has_bucket)
            if self._remote_validate and report.ok:
                self._validate_remotely(environment, name, report)
            logger.info("Linted %s", report.summary())
            reports.append(report)
        return reports

    def _validate_remotely(self, environment: str, name: str, report: LintReport) -> None:
        ref = self._registry.resolve(environment, name)
        try:
            self._provisioner.validate_template(**self._registry.deploy_source(ref))
        except AdapterCommandError as exc:
            if exc.retryable:
                raise
            report.error("<remote>", (exc.result.stderr or exc.result.stdout).strip() or str(exc))

    def deploy(
        self,
        environment: str,
        *,
        approved_by: str | None = None,
        deployment_id: int | None = None,
    ) -> DeploymentRead:
        env = self._manifest.environment(environment)
        deployment = self._load_or_create(env, deployment_id)
        if approved_by and deployment.approved_by is None:
            deployment_service.approve_deployment(self._session, deployment_id=deployment.id, approver=approved_by)
            self._session.refresh(deployment)

        if deployment.requires_approval and deployment.approved_by is None:
            deployment_service.mark_awaiting_approval(self._session, deployment)
            return DeploymentRead.model_validate(deployment)

        deployment_service.mark_in_progress(self._session, deployment)
        logger.info("Starting deployment id=%s environment=%s", deployment.id, environment)
        try:
            plan = self.plan(environment)
            deployment.template_digest = self._registry.digest(environment)
            self._session.add(deployment)
            self._session.commit()

            reports = self.lint(environment)
            failed = [report for report in reports if not report.ok]
            if failed:
                raise TemplateValidationException(_lint_failure_message(failed), reports=reports)

            if self._registry.publish_to is not None:
                self._registry.publish(environment)

            self._apply(deployment, plan, env)
        except Exception as exc:
            logger.exception("Deployment id=%s environment=%s failed", deployment.id, environment)
            deployment_service.mark_finished(
                self._session, deployment, status=DEPLOYMENT_STATUS_ERROR, last_error=str(exc)
            )
        else:
            deployment_service.mark_finished(self._session, deployment, status=DEPLOYMENT_STATUS_READY)
        logger.info(
            "Finished deployment id=%s environment=%s status=%s",
            deployment.id,
            environment,
            deployment.status,
        )
        return DeploymentRead.model_validate(deployment)

    def approve(self, deployment_id: int, approver: str) -> DeploymentRead:
        return deployment_service.approve_deployment(self._session, deployment_id=deployment_id, approver=approver)

    def promote(
        self,
        environments: Sequence[str] | None = None,
        *,
        approvals: Mapping[str, str] | None = None,
    ) -> list[DeploymentRead]:
        """Deploy environments in promotion order, stopping at the first that is not ready."""
        approvals = approvals or {}
        results = []
        for env in environment_order(self._manifest, environments):
            result = self.deploy(env.name, approved_by=approvals.get(env.name))
            results.append(result)
            if result.status != DEPLOYMENT_STATUS_READY:
                logger.info("Promotion stopped at environment=%s status=%s", env.name, result.status)
                break
        return results

    def destroy(self, environment: str, *, approved_by: str | None = None) -> DeploymentRead:
        """Delete the environment's stacks in reverse dependency order."""
        env = self._manifest.environment(environment)
        if env.requires_approval and not approved_by:
            raise ApprovalRequiredException(f"Destroying environment {environment!r} requires an approver")

        deployment = deployment_service.create_deployment(
            self._session,
            payload=DeploymentCreate(
                environment=environment,
                project=self._manifest.project,
                requires_approval=env.requires_approval,
            ),
        )
        if approved_by:
            deployment_service.approve_deployment(self._session, deployment_id=deployment.id, approver=approved_by)
            self._session.refresh(deployment)
        try:
            deployment_service.mark_in_progress(self._session, deployment)
        except DeploymentInProgressException as exc:
            # otherwise a later deploy would resume this record
            deployment_service.mark_finished(
                self._session, deployment, status=DEPLOYMENT_STATUS_ERROR, last_error=str(exc)
            )
            raise

        stacks = list(reversed(order_stacks(self._manifest.stacks)))
        rows = [
            self._add_operation(
                deployment,
                stack=stack.name,
                stack_name=stack_name_for(self._manifest.project, environment, stack.name),
                position=position,
                operation=OPERATION_DELETE,
            )
            for position, stack in enumerate(stacks)
        ]
        self._session.commit()
        try:
            for index, row in enumerate(rows):
                try:
                    self._delete_stack(row)
                except Exception as exc:
                    self._fail_operation(row, exc)
                    self._skip_remaining(rows[index + 1:])
                    raise
        except Exception as exc:
            logger.exception("Destroy id=%s environment=%s failed", deployment.id, environment)
            deployment_service.mark_finished(
                self._session, deployment, status=DEPLOYMENT_STATUS_ERROR, last_error=str(exc)
            )
        else:
            deployment_service.mark_finished(self._session, deployment, status=DEPLOYMENT_STATUS_DESTROYED)
        return DeploymentRead.model_validate(deployment)

    def _load_or_create(self, env: EnvironmentSpec, deployment_id: int | None) -> DeploymentORM:
        if deployment_id is not None:
            deployment = deployment_service.get_deployment_orm(self._session, deployment_id=deployment_id)
            if deployment.environment != env.name or deployment.project != self._manifest.project:
                raise IntegrityException(
                    f"Deployment {deployment_id} belongs to {deployment.project}/{deployment.environment}, "
                    f"not {self._manifest.project}/{env.name}"
                )
            return deployment

        latest = deployment_service.latest_deployment(
            self._session, project=self._manifest.project, environment=env.name
        )
        if latest is not None and latest.status in (DEPLOYMENT_STATUS_PENDING, DEPLOYMENT_STATUS_AWAITING_APPROVAL):
            logger.info("Resuming deployment id=%s environment=%s status=%s", latest.id, env.name, latest.status)
            return latest
        return deployment_service.create_deployment(
            self._session,
            payload=DeploymentCreate(
                environment=env.name,
                project=self._manifest.project,
                requires_approval=env.requires_approval,
            ),
        )

    def _add_operation(
        self,
        deployment: DeploymentORM,
        *,
        stack: str,
        stack_name: str,
        position: int,
        operation: str | None = None,
    ) -> StackOperationORM:
        row = StackOperationORM(
            deployment_id=deployment.id,
            stack=stack,
            stack_name=stack_name,
            position=position,
            operation=operation,
            status=STACK_OP_STATUS_PENDING,
        )
        self._session.add(row)
        return row

    def _apply(self, deployment: DeploymentORM, plan: DeploymentPlan, env: EnvironmentSpec) -> None:
        rows = [
            self._add_operation(
                deployment,
                stack=item.stack.name,
                stack_name=item.stack_name,
                position=item.position,
            )
            for item in plan.stacks
        ]
        self._session.commit()

        outputs: dict[str, dict[str, str]] = {}
        for index, (item, row) in enumerate(zip(plan.stacks, rows)):
            try:
                outputs[item.stack.name] = self._converge(item, row, env, outputs)
            except Exception as exc:
                self._fail_operation(row, exc)
                self._skip_remaining(rows[index + 1:])
                raise

    def _system_parameters(self, environment: str) -> dict[str, Any]:
        store = self._registry.bucket_store
        return {
            "Environment": environment,
            "ProjectName": self._manifest.project,
            "TemplateBucket": store.bucket if store is not None else None,
            "TemplateBaseUrl": self._registry.base_url(environment),
        }

    def _tags(self, env: EnvironmentSpec) -> dict[str, str]:
        return {
            **self._manifest.tags,
            **env.tags,
            "stratus:project": self._manifest.project,
            "stratus:environment": env.name,
        }

    def _converge(
        self,
        item: StackPlan,
        row: StackOperationORM,
        env: EnvironmentSpec,
        upstream_outputs: Mapping[str, Mapping[str, str]],
    ) -> dict[str, str]:
        """Create, update or leave alone one stack; returns its outputs."""
        environment = env.name
        declared = template_parameters(self._registry.fetch(environment, item.stack.template))
        parameters = resolve_parameters(
            stack=item.stack,
            environment=env,
            declared=declared,
            upstream_outputs=upstream_outputs,
            system=self._system_parameters(environment),
        )
        source = self._registry.deploy_source(self._registry.resolve(environment, item.stack.template))

        row.parameters_json = parameters
        row.status = STACK_OP_STATUS_IN_PROGRESS
        row.started_at = utcnow()
        self._save(row)

        stack_name = item.stack_name
        description = self._provisioner.describe_stack(stack_name=stack_name)
        if description.exists and is_in_progress(description.status):
            logger.info("Stack %s is busy (%s); waiting for it to settle", stack_name, description.status)
            self._poller.wait(stack_name, operation="settle")
            description = self._provisioner.describe_stack(stack_name=stack_name)
        if description.exists and description.status in _UNRECOVERABLE_STATUSES:
            logger.warning("Stack %s is %s; deleting before re-creating", stack_name, description.status)
            self._provisioner.delete_stack(stack_name=stack_name)
            self._expect_success(row, self._poller.wait(stack_name, operation="delete"))
            description = self._provisioner.describe_stack(stack_name=stack_name)

        since = utcnow()
        common = dict(
            stack_name=stack_name,
            parameters=parameters,
            capabilities=self._manifest.capabilities,
            tags=self._tags(env),
            **source,
        )
        if not description.exists:
            row.operation = OPERATION_CREATE
            self._save(row)
            self._provisioner.create_stack(**common)
        else:
            row.operation = OPERATION_UPDATE
            self._save(row)
            result = self._provisioner.update_stack(**common)
            if not result.changed:
                row.operation = OPERATION_NOOP
                row.status = STACK_OP_STATUS_UNCHANGED
                row.stack_status = description.status
                row.outputs_json = dict(description.outputs)
                row.finished_at = utcnow()
                self._save(row)
                return dict(description.outputs)

        state = self._poller.wait(
            stack_name,
            operation=row.operation,
            since=since,
            on_status=lambda _name, status: self._record_stack_status(row, status),
        )
        self._expect_success(row, state)
        row.status = STACK_OP_STATUS_COMPLETE
        row.stack_status = state.status
        row.outputs_json = dict(state.outputs)
        row.finished_at = utcnow()
        self._save(row)
        return dict(state.outputs)

    def _delete_stack(self, row: StackOperationORM) -> None:
        row.status = STACK_OP_STATUS_IN_PROGRESS
        row.started_at = utcnow()
        self._save(row)
        description = self._provisioner.describe_stack(stack_name=row.stack_name)
        if not description.exists:
            row.operation = OPERATION_NOOP
            row.status = STACK_OP_STATUS_UNCHANGED
            row.stack_status = STACK_ABSENT
            row.finished_at = utcnow()
            self._save(row)
            return
        if is_in_progress(description.status):
            self._poller.wait(row.stack_name, operation="settle")
        since = utcnow()
        self._provisioner.delete_stack(stack_name=row.stack_name)
        state = self._poller.wait(
            row.stack_name,
            operation="delete",
            since=since,
            on_status=lambda _name, status: self._record_stack_status(row, status),
        )
        self._expect_success(row, state)
        row.status = STACK_OP_STATUS_COMPLETE
        row.stack_status = state.status
        row.finished_at = utcnow()
        self._save(row)

    def _expect_success(self, row: StackOperationORM, state: StackState) -> None:
        if state.succeeded:
            return
        row.status = STACK_OP_STATUS_FAILED
        row.stack_status = state.status
        row.last_error = state.reason
        row.finished_at = utcnow()
        self._save(row)
        raise StackOperationException(
            f"Stack {state.stack_name} ended in {state.status}: {state.reason}",
            stack_name=state.stack_name,
            stack_status=state.status,
        )

    def _fail_operation(self, row: StackOperationORM, exc: Exception) -> None:
        if row.status == STACK_OP_STATUS_FAILED:
            return
        row.status = STACK_OP_STATUS_FAILED
        if isinstance(exc, StackOperationException) and exc.stack_status:
            row.stack_status = exc.stack_status
        row.last_error = str(exc)
        row.finished_at = utcnow()
        self._save(row)

    def _record_stack_status(self, row: StackOperationORM, status: str) -> None:
        row.stack_status = status
        self._save(row)

    def _skip_remaining(self, rows: list[StackOperationORM]) -> None:
        for row in rows:
            row.status = STACK_OP_STATUS_SKIPPED
            self._session.add(row)
        self._session.commit()
        if rows:
            logger.warning("Skipped stacks after failure: %s", ", ".join(row.stack for row in rows))

    def _save(self, row: StackOperationORM) -> None:
        self._session.add(row)
        self._session.commit()
        self._session.refresh(row)


def _lint_failure_message(reports: list[LintReport]) -> str:
    details = [f"{report.template}: {issue.path}: {issue.message}" for report in reports for issue in report.errors]
    return "Template validation failed: " + "; ".join(details)
