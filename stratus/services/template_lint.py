"""Static checks for CloudFormation templates.

Templates are linted before anything is published or deployed. The checks are
structural (a JSON schema over the template sections) and referential (every
``Ref``, ``Fn::GetAtt``, ``Fn::Sub`` variable, condition and mapping lookup must
point at something the template declares). Resource dependency cycles and the
service limits that CloudFormation enforces on create are reported as errors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Iterator

import yaml
from jsonschema import Draft202012Validator

from stratus.services.cfn_yaml import load_template
from stratus.services.constants import (
    MAX_INLINE_TEMPLATE_BYTES,
    MAX_OUTPUTS,
    MAX_PARAMETERS,
    MAX_RESOURCES,
    MAX_TEMPLATE_BYTES,
    SEVERITY_ERROR,
    SEVERITY_WARNING,
)
from stratus.services.graph import find_cycle

PSEUDO_PARAMETERS = frozenset(
    {
        "AWS::AccountId",
        "AWS::NotificationARNs",
        "AWS::NoValue",
        "AWS::Partition",
        "AWS::Region",
        "AWS::StackId",
        "AWS::StackName",
        "AWS::URLSuffix",
    }
)
NESTED_STACK_TYPE = "AWS::CloudFormation::Stack"

LOGICAL_ID_RE = re.compile(r"^[A-Za-z0-9]+$")
_SUB_VARIABLE_RE = re.compile(r"\$\{([^}!][^}]*)\}")

_RESOURCE_TYPE_PATTERN = (
    r"^(AWS::[A-Za-z0-9]+::[A-Za-z0-9]+(::[A-Za-z0-9]+)?"
    r"|Custom::[A-Za-z0-9_@-]+"
    r"|[A-Za-z0-9]+::[A-Za-z0-9]+::[A-Za-z0-9]+::MODULE)$"
)

TEMPLATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["Resources"],
    "additionalProperties": False,
    "properties": {
        "AWSTemplateFormatVersion": {"const": "2010-09-09"},
        "Description": {"type": "string", "maxLength": 1024},
        "Metadata": {"type": "object"},
        "Transform": {"type": ["string", "array"], "items": {"type": "string"}},
        "Rules": {"type": "object"},
        "Mappings": {"type": "object", "additionalProperties": {"type": "object"}},
        "Conditions": {"type": "object"},
        "Parameters": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["Type"],
                "properties": {
                    "Type": {"type": "string"},
                    "Description": {"type": "string"},
                    "AllowedValues": {"type": "array"},
                    "AllowedPattern": {"type": "string"},
                    "NoEcho": {"type": ["boolean", "string"]},
                },
            },
        },
        "Resources": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["Type"],
                "properties": {
                    "Type": {"type": "string", "pattern": _RESOURCE_TYPE_PATTERN},
                    "Properties": {"type": "object"},
                    "DependsOn": {
                        "type": ["string", "array"],
                        "items": {"type": "string"},
                    },
                    "Condition": {"type": "string"},
                    "DeletionPolicy": {"enum": ["Delete", "Retain", "Snapshot", "RetainExceptOnCreate"]},
                    "UpdateReplacePolicy": {"enum": ["Delete", "Retain", "Snapshot"]},
                    "Metadata": {"type": "object"},
                    "CreationPolicy": {"type": "object"},
                    "UpdatePolicy": {"type": "object"},
                },
            },
        },
        "Outputs": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["Value"],
                "properties": {
                    "Description": {"type": "string"},
                    "Export": {"type": "object", "required": ["Name"]},
                    "Condition": {"type": "string"},
                },
            },
        },
    },
}

_schema_validator = Draft202012Validator(TEMPLATE_SCHEMA)


@dataclass(frozen=True)
class LintIssue:
    severity: str
    path: str
    message: str


@dataclass
class LintReport:
    template: str
    issues: list[LintIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[LintIssue]:
        return [issue for issue in self.issues if issue.severity == SEVERITY_ERROR]

    @property
    def warnings(self) -> list[LintIssue]:
        return [issue for issue in self.issues if issue.severity == SEVERITY_WARNING]

    def error(self, path: str, message: str) -> None:
        self.issues.append(LintIssue(SEVERITY_ERROR, path, message))

    def warning(self, path: str, message: str) -> None:
        self.issues.append(LintIssue(SEVERITY_WARNING, path, message))

    def summary(self) -> str:
        return f"{self.template}: {len(self.errors)} error(s), {len(self.warnings)} warning(s)"


@dataclass(frozen=True)
class _Reference:
    kind: str
    target: str
    path: str
    attribute: str | None = None


def _json_path(parts: Iterator[Any] | list[Any]) -> str:
    return "/".join(str(p) for p in parts) or "<root>"


def _sub_variables(template: str) -> list[str]:
    return [match.strip() for match in _SUB_VARIABLE_RE.findall(template)]


def _collect_references(node: Any, path: str, *, in_conditions: bool = False) -> list[_Reference]:
    refs: list[_Reference] = []
    if isinstance(node, dict):
        if len(node) == 1:
            key, value = next(iter(node.items()))
            if key == "Ref" and isinstance(value, str):
                refs.append(_Reference("Ref", value, path))
            elif key == "Fn::GetAtt":
                if isinstance(value, str):
                    value = value.split(".", 1)
                if isinstance(value, list) and value and isinstance(value[0], str):
                    attribute = value[1] if len(value) > 1 and isinstance(value[1], str) else None
                    refs.append(_Reference("GetAtt", value[0], path, attribute))
            elif key == "Fn::Sub":
                template, local_names = value, set()
                if isinstance(value, list) and value:
                    template = value[0]
                    if len(value) > 1 and isinstance(value[1], dict):
                        local_names = set(value[1])
                if isinstance(template, str):
                    for variable in _sub_variables(template):
                        if variable in local_names or variable in PSEUDO_PARAMETERS:
                            continue
                        name, _, attribute = variable.partition(".")
                        if attribute:
                            refs.append(_Reference("GetAtt", name, path, attribute))
                        else:
                            refs.append(_Reference("Ref", name, path))
            elif key == "Fn::If" and isinstance(value, list) and value and isinstance(value[0], str):
                refs.append(_Reference("Condition", value[0], path))
            elif key == "Condition" and in_conditions and isinstance(value, str):
                refs.append(_Reference("Condition", value, path))
            elif key == "Fn::FindInMap" and isinstance(value, list) and value and isinstance(value[0], str):
                refs.append(_Reference("Mapping", value[0], path))
        for key, value in node.items():
            refs.extend(_collect_references(value, f"{path}/{key}", in_conditions=in_conditions))
    elif isinstance(node, list):
        for index, value in enumerate(node):
            refs.extend(_collect_references(value, f"{path}/{index}", in_conditions=in_conditions))
    return refs


def _depends_on(resource: dict[str, Any]) -> list[str]:
    raw = resource.get("DependsOn")
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list):
        return [item for item in raw if isinstance(item, str)]
    return []


def parse_template(body: str) -> dict[str, Any]:
    """Parse a template body; raises ``ValueError`` when it is not a mapping."""
    try:
        document = load_template(body)
    except yaml.YAMLError as exc:
        raise ValueError(f"template is not valid YAML/JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("template must be a mapping at the top level")
    return document


def template_parameters(body: str) -> dict[str, dict[str, Any]]:
    """Declared parameters of a template, keyed by logical name."""
    params = parse_template(body).get("Parameters") or {}
    return {name: spec for name, spec in params.items() if isinstance(spec, dict)}


def lint_template(body: str, *, name: str = "template", has_bucket: bool = False) -> LintReport:
    report = LintReport(template=name)

    size = len(body.encode("utf-8"))
    if size > MAX_TEMPLATE_BYTES:
        report.error("<root>", f"template is {size} bytes; the maximum is {MAX_TEMPLATE_BYTES}")
    elif size > MAX_INLINE_TEMPLATE_BYTES and not has_bucket:
        report.error(
            "<root>",
            f"template is {size} bytes; bodies over {MAX_INLINE_TEMPLATE_BYTES} bytes must be deployed from S3",
        )

    try:
        document = parse_template(body)
    except ValueError as exc:
        report.error("<root>", str(exc))
        return report

    lint_document(document, report, has_bucket=has_bucket)
    return report


def lint_document(document: dict[str, Any], report: LintReport, *, has_bucket: bool = False) -> None:
    for err in sorted(_schema_validator.iter_errors(document), key=lambda e: list(map(str, e.absolute_path))):
        report.error(_json_path(err.absolute_path), err.message)

    sections = {
        section: document.get(section) if isinstance(document.get(section), dict) else {}
        for section in ("Parameters", "Mappings", "Conditions", "Resources", "Outputs")
    }
    parameters = sections["Parameters"]
    mappings = sections["Mappings"]
    conditions = sections["Conditions"]
    resources = sections["Resources"]
    outputs = sections["Outputs"]

    for section, limit in (("Parameters", MAX_PARAMETERS), ("Resources", MAX_RESOURCES), ("Outputs", MAX_OUTPUTS)):
        if len(sections[section]) > limit:
            report.error(section, f"{len(sections[section])} entries exceed the limit of {limit}")

    for section, entries in sections.items():
        for logical_id in entries:
            if not isinstance(logical_id, str) or not LOGICAL_ID_RE.fullmatch(logical_id):
                report.error(f"{section}/{logical_id}", "logical ID must be alphanumeric")

    referenced_parameters: set[str] = set()

    def check(ref: _Reference, *, allow_resources: bool = True) -> None:
        if ref.kind == "Ref":
            if ref.target in PSEUDO_PARAMETERS:
                return
            if ref.target in parameters:
                referenced_parameters.add(ref.target)
                return
            if ref.target in resources:
                if not allow_resources:
                    report.error(ref.path, f"conditions cannot reference resource {ref.target!r}")
                return
            report.error(ref.path, f"unresolved reference {ref.target!r}")
        elif ref.kind == "GetAtt":
            if ref.target not in resources:
                report.error(ref.path, f"Fn::GetAtt target {ref.target!r} is not a resource")
        elif ref.kind == "Condition":
            if ref.target not in conditions:
                report.error(ref.path, f"condition {ref.target!r} is not defined")
        elif ref.kind == "Mapping":
            if ref.target not in mappings:
                report.error(ref.path, f"mapping {ref.target!r} is not defined")

    for cond_name, cond in conditions.items():
        for ref in _collect_references(cond, f"Conditions/{cond_name}", in_conditions=True):
            check(ref, allow_resources=False)

    graph: dict[str, set[str]] = {}
    for logical_id, resource in resources.items():
        if not isinstance(resource, dict):
            continue
        path = f"Resources/{logical_id}"
        edges: set[str] = set()
        for ref in _collect_references(resource.get("Properties"), f"{path}/Properties"):
            check(ref)
            if ref.kind in ("Ref", "GetAtt") and ref.target in resources:
                edges.add(ref.target)
        for ref in _collect_references(resource.get("Metadata"), f"{path}/Metadata"):
            check(ref)
        for dep in _depends_on(resource):
            if dep == logical_id:
                report.error(f"{path}/DependsOn", "resource cannot depend on itself")
            elif dep not in resources:
                report.error(f"{path}/DependsOn", f"DependsOn target {dep!r} is not a resource")
            else:
                edges.add(dep)
        condition = resource.get("Condition")
        if isinstance(condition, str) and condition not in conditions:
            report.error(f"{path}/Condition", f"condition {condition!r} is not defined")
        graph[logical_id] = edges - {logical_id}

        if resource.get("Type") == NESTED_STACK_TYPE:
            _check_nested_stack(resource, path, report, has_bucket=has_bucket)

    for output_name, output in outputs.items():
        if not isinstance(output, dict):
            continue
        path = f"Outputs/{output_name}"
        for key in ("Value", "Export"):
            for ref in _collect_references(output.get(key), f"{path}/{key}"):
                check(ref)
        condition = output.get("Condition")
        if isinstance(condition, str) and condition not in conditions:
            report.error(f"{path}/Condition", f"condition {condition!r} is not defined")

    if cycle := find_cycle(graph):
        report.error("Resources", f"circular dependency: {' -> '.join(cycle)}")

    for param in parameters:
        if param not in referenced_parameters:
            report.warning(f"Parameters/{param}", f"parameter {param!r} is never referenced")


def _check_nested_stack(resource: dict[str, Any], path: str, report: LintReport, *, has_bucket: bool) -> None:
    properties = resource.get("Properties")
    template_url = properties.get("TemplateURL") if isinstance(properties, dict) else None
    if template_url is None:
        report.error(f"{path}/Properties", "nested stack requires TemplateURL")
        return
    if isinstance(template_url, str) and not template_url.startswith(("https://", "s3://")):
        report.warning(
            f"{path}/Properties/TemplateURL",
            "TemplateURL should be an S3 URL; local paths are only resolved by `aws cloudformation package`",
        )
    if not has_bucket:
        report.warning(path, "nested stack templates must be published to S3 but no bucket is configured")
