from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from typing import Any

from stratus.proc import AdapterCommandError, CommandRunner, run_command

logger = logging.getLogger(__name__)

_NO_UPDATES_MARKER = "no updates are to be performed"
_STACK_MISSING_MARKER = "does not exist"
_S3_MISSING_MARKERS = ("nosuchkey", "(404)", "not found", "does not exist")


def _parse_json(stdout: str, *, what: str) -> Any:
    try:
        return json.loads(stdout) if stdout.strip() else {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON from {what}") from exc


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ObjectUploadResult:
    bucket: str
    key: str
    changed: bool


class S3Adapter:
    """Adapter for template objects in S3."""

    def __init__(self, *, runner: CommandRunner | None = None, region: str | None = None) -> None:
        self._runner = runner
        self._region = region

    def _base(self, *args: str) -> list[str]:
        cmd = ["aws", *args]
        if self._region:
            cmd.extend(["--region", self._region])
        return cmd

    def upload_file(self, *, path: Path, bucket: str, key: str) -> ObjectUploadResult:
        logger.info("Uploading %s to s3://%s/%s", path, bucket, key)
        run_command(
            self._base("s3", "cp", str(path), f"s3://{bucket}/{key}", "--only-show-errors"),
            runner=self._runner,
            error_message=f"Failed to upload {path} to s3://{bucket}/{key}",
        )
        return ObjectUploadResult(bucket=bucket, key=key, changed=True)

    def read_object(self, *, bucket: str, key: str) -> str | None:
        logger.debug("Reading s3://%s/%s", bucket, key)
        try:
            result = run_command(
                self._base("s3", "cp", f"s3://{bucket}/{key}", "-", "--only-show-errors"),
                runner=self._runner,
                error_message=f"Failed to read s3://{bucket}/{key}",
            )
        except AdapterCommandError as exc:
            text = exc.output.lower()
            if any(marker in text for marker in _S3_MISSING_MARKERS):
                logger.debug("Object not found: s3://%s/%s", bucket, key)
                return None
            raise
        return result.stdout

    def list_keys(self, *, bucket: str, prefix: str) -> list[str]:
        result = run_command(
            self._base(
                "s3api",
                "list-objects-v2",
                "--bucket",
                bucket,
                "--prefix",
                prefix,
                "--output",
                "json",
            ),
            runner=self._runner,
            error_message=f"Failed to list s3://{bucket}/{prefix}",
        )
        payload = _parse_json(result.stdout, what="s3api list-objects-v2")
        contents = payload.get("Contents") if isinstance(payload, dict) else None
        if not isinstance(contents, list):
            return []
        return sorted(item["Key"] for item in contents if isinstance(item, dict) and isinstance(item.get("Key"), str))


@dataclass(frozen=True)
class TemplateValidationResult:
    parameters: tuple[str, ...]
    capabilities: tuple[str, ...]
    description: str | None = None


@dataclass(frozen=True)
class StackDescription:
    stack_name: str
    exists: bool
    status: str | None = None
    status_reason: str | None = None
    stack_id: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StackOperationResult:
    stack_name: str
    operation: str
    changed: bool
    stack_id: str | None = None


@dataclass(frozen=True)
class StackEvent:
    timestamp: datetime | None
    logical_id: str | None
    resource_type: str | None
    status: str | None
    reason: str | None


class CloudFormationAdapter:
    """Adapter for CloudFormation stack lifecycle operations."""

    def __init__(self, *, runner: CommandRunner | None = None, region: str | None = None) -> None:
        self._runner = runner
        self._region = region

    def _base(self, *args: str) -> list[str]:
        cmd = ["aws", "cloudformation", *args, "--output", "json"]
        if self._region:
            cmd.extend(["--region", self._region])
        return cmd

    @staticmethod
    def _template_args(*, template_url: str | None, template_path: Path | None) -> list[str]:
        if (template_url is None) == (template_path is None):
            raise ValueError("Exactly one of template_url or template_path is required")
        if template_url is not None:
            return ["--template-url", template_url]
        return ["--template-body", f"file://{template_path}"]

    def validate_template(
        self,
        *,
        template_url: str | None = None,
        template_path: Path | None = None,
    ) -> TemplateValidationResult:
        logger.debug("Validating template url=%s path=%s", template_url, template_path)
        result = run_command(
            self._base(
                "validate-template",
                *self._template_args(template_url=template_url, template_path=template_path),
            ),
            runner=self._runner,
            error_message=f"Template validation failed for {template_url or template_path}",
        )
        payload = _parse_json(result.stdout, what="validate-template")
        params = payload.get("Parameters") or []
        return TemplateValidationResult(
            parameters=tuple(p["ParameterKey"] for p in params if isinstance(p, dict) and "ParameterKey" in p),
            capabilities=tuple(payload.get("Capabilities") or ()),
            description=payload.get("Description"),
        )

    def describe_stack(self, stack_name: str) -> StackDescription:
        try:
            result = run_command(
                self._base("describe-stacks", "--stack-name", stack_name),
                runner=self._runner,
                error_message=f"Failed to describe stack {stack_name}",
            )
        except AdapterCommandError as exc:
            if _STACK_MISSING_MARKER in exc.output.lower():
                logger.debug("Stack not found: %s", stack_name)
                return StackDescription(stack_name=stack_name, exists=False)
            raise

        payload = _parse_json(result.stdout, what="describe-stacks")
        stacks = payload.get("Stacks") if isinstance(payload, dict) else None
        if not stacks:
            return StackDescription(stack_name=stack_name, exists=False)
        stack = stacks[0]
        outputs = {
            o["OutputKey"]: str(o.get("OutputValue", ""))
            for o in stack.get("Outputs") or []
            if isinstance(o, dict) and "OutputKey" in o
        }
        parameters = {
            p["ParameterKey"]: str(p.get("ParameterValue", ""))
            for p in stack.get("Parameters") or []
            if isinstance(p, dict) and "ParameterKey" in p
        }
        return StackDescription(
            stack_name=stack_name,
            exists=True,
            status=stack.get("StackStatus"),
            status_reason=stack.get("StackStatusReason"),
            stack_id=stack.get("StackId"),
            outputs=outputs,
            parameters=parameters,
        )

    def _stack_args(
        self,
        *,
        stack_name: str,
        template_url: str | None,
        template_path: Path | None,
        parameters: dict[str, str],
        capabilities: tuple[str, ...],
        tags: dict[str, str],
    ) -> list[str]:
        args = [
            "--stack-name",
            stack_name,
            *self._template_args(template_url=template_url, template_path=template_path),
        ]
        if parameters:
            args.extend(
                [
                    "--parameters",
                    json.dumps([{"ParameterKey": k, "ParameterValue": v} for k, v in sorted(parameters.items())]),
                ]
            )
        if capabilities:
            args.extend(["--capabilities", *capabilities])
        if tags:
            args.extend(["--tags", json.dumps([{"Key": k, "Value": v} for k, v in sorted(tags.items())])])
        return args

    def create_stack(
        self,
        *,
        stack_name: str,
        template_url: str | None = None,
        template_path: Path | None = None,
        parameters: dict[str, str],
        capabilities: tuple[str, ...] = (),
        tags: dict[str, str] | None = None,
    ) -> StackOperationResult:
        logger.info("Creating stack %s", stack_name)
        cmd = self._base(
            "create-stack",
            *self._stack_args(
                stack_name=stack_name,
                template_url=template_url,
                template_path=template_path,
                parameters=parameters,
                capabilities=capabilities,
                tags=tags or {},
            ),
        )
        # rollback is left to CloudFormation; a failed create ends in ROLLBACK_COMPLETE
        cmd.extend(["--on-failure", "ROLLBACK"])
        result = run_command(cmd, runner=self._runner, error_message=f"Failed to create stack {stack_name}")
        payload = _parse_json(result.stdout, what="create-stack")
        return StackOperationResult(
            stack_name=stack_name,
            operation="create",
            changed=True,
            stack_id=payload.get("StackId") if isinstance(payload, dict) else None,
        )

    def update_stack(
        self,
        *,
        stack_name: str,
        template_url: str | None = None,
        template_path: Path | None = None,
        parameters: dict[str, str],
        capabilities: tuple[str, ...] = (),
        tags: dict[str, str] | None = None,
    ) -> StackOperationResult:
        logger.info("Updating stack %s", stack_name)
        try:
            result = run_command(
                self._base(
                    "update-stack",
                    *self._stack_args(
                        stack_name=stack_name,
                        template_url=template_url,
                        template_path=template_path,
                        parameters=parameters,
                        capabilities=capabilities,
                        tags=tags or {},
                    ),
                ),
                runner=self._runner,
                error_message=f"Failed to update stack {stack_name}",
            )
        except AdapterCommandError as exc:
            if _NO_UPDATES_MARKER in exc.output.lower():
                logger.info("Stack %s is already up to date", stack_name)
                return StackOperationResult(stack_name=stack_name, operation="update", changed=False)
            raise
        payload = _parse_json(result.stdout, what="update-stack")
        return StackOperationResult(
            stack_name=stack_name,
            operation="update",
            changed=True,
            stack_id=payload.get("StackId") if isinstance(payload, dict) else None,
        )

    def delete_stack(self, stack_name: str) -> StackOperationResult:
        logger.info("Deleting stack %s", stack_name)
        try:
            run_command(
                self._base("delete-stack", "--stack-name", stack_name),
                runner=self._runner,
                error_message=f"Failed to delete stack {stack_name}",
            )
        except AdapterCommandError as exc:
            if _STACK_MISSING_MARKER in exc.output.lower():
                logger.debug("Stack already absent: %s", stack_name)
                return StackOperationResult(stack_name=stack_name, operation="delete", changed=False)
            raise
        return StackOperationResult(stack_name=stack_name, operation="delete", changed=True)

    def describe_stack_events(self, stack_name: str, *, since: datetime | None = None) -> list[StackEvent]:
        """Return stack events, newest first, optionally only those at or after ``since``."""
        try:
            result = run_command(
                self._base("describe-stack-events", "--stack-name", stack_name),
                runner=self._runner,
                error_message=f"Failed to describe events for stack {stack_name}",
            )
        except AdapterCommandError as exc:
            if _STACK_MISSING_MARKER in exc.output.lower():
                return []
            raise
        payload = _parse_json(result.stdout, what="describe-stack-events")
        raw_events = payload.get("StackEvents") if isinstance(payload, dict) else None
        events = []
        for raw in raw_events or []:
            if not isinstance(raw, dict):
                continue
            event = StackEvent(
                timestamp=parse_timestamp(raw.get("Timestamp")),
                logical_id=raw.get("LogicalResourceId"),
                resource_type=raw.get("ResourceType"),
                status=raw.get("ResourceStatus"),
                reason=raw.get("ResourceStatusReason"),
            )
            if since is not None and event.timestamp is not None and event.timestamp < since:
                continue
            events.append(event)
        return events


class Provisioner:
    """Facade over the S3 and CloudFormation adapters used by the orchestrator."""

    def __init__(
        self,
        *,
        s3: S3Adapter | None = None,
        cloudformation: CloudFormationAdapter | None = None,
        region: str | None = None,
    ) -> None:
        self.s3 = s3 or S3Adapter(region=region)
        self.cloudformation = cloudformation or CloudFormationAdapter(region=region)

    def validate_template(
        self,
        *,
        template_url: str | None = None,
        template_path: Path | None = None,
    ) -> TemplateValidationResult:
        return self.cloudformation.validate_template(template_url=template_url, template_path=template_path)

    def describe_stack(self, *, stack_name: str) -> StackDescription:
        return self.cloudformation.describe_stack(stack_name)

    def create_stack(self, **kwargs: Any) -> StackOperationResult:
        return self.cloudformation.create_stack(**kwargs)

    def update_stack(self, **kwargs: Any) -> StackOperationResult:
        return self.cloudformation.update_stack(**kwargs)

    def delete_stack(self, *, stack_name: str) -> StackOperationResult:
        return self.cloudformation.delete_stack(stack_name)

    def describe_stack_events(self, *, stack_name: str, since: datetime | None = None) -> list[StackEvent]:
        return self.cloudformation.describe_stack_events(stack_name, since=since)
