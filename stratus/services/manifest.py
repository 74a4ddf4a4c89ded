"""Project manifest (``stratus.yaml``) loading.

The manifest names the project, the ordered environments (promotion order), and
the stacks deployed into every environment together with their dependencies.
A repository without a manifest gets the conventional layout: the three default
environments and a single ``root`` stack built from ``root.yaml``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from stratus.services.constants import (
    APPROVAL_REQUIRED_BY_DEFAULT,
    DEFAULT_CAPABILITIES,
    DEFAULT_ENVIRONMENTS,
    DEFAULT_ROOT_TEMPLATE,
    DEFAULT_TEMPLATE_ROOT,
)
from stratus.services.errors import IntegrityException, NotFoundException
from stratus.services.naming import LABEL_RE, PROJECT_RE, TEMPLATE_FILE_RE, slugify_project

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "stratus.yaml"

OUTPUT_REF_RE = re.compile(r"^\$\{([a-z][a-z0-9-]{0,30})\.([A-Za-z0-9]+)\}$")

_LABEL_PATTERN = LABEL_RE.pattern
_SCALAR = {"type": ["string", "number", "integer", "boolean"]}
_PARAMETER_VALUE = {"anyOf": [_SCALAR, {"type": "array", "items": _SCALAR}]}
_PARAMETERS = {
    "type": "object",
    "propertyNames": {"pattern": "^[A-Za-z0-9]+$"},
    "additionalProperties": _PARAMETER_VALUE,
}

MANIFEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["project"],
    "additionalProperties": False,
    "properties": {
        "project": {"type": "string", "pattern": PROJECT_RE.pattern},
        "template_root": {"type": "string", "minLength": 1},
        "bucket": {"type": "string", "minLength": 3, "maxLength": 63},
        "region": {"type": "string", "minLength": 1},
        "capabilities": {
            "type": "array",
            "items": {"enum": list(DEFAULT_CAPABILITIES)},
            "uniqueItems": True,
        },
        "tags": {"type": "object", "additionalProperties": {"type": "string"}},
        "environments": {
            "type": "object",
            "minProperties": 1,
            "propertyNames": {"pattern": _LABEL_PATTERN},
            "additionalProperties": {
                "type": ["object", "null"],
                "additionalProperties": False,
                "properties": {
                    "requires_approval": {"type": "boolean"},
                    "parameters": _PARAMETERS,
                    "tags": {"type": "object", "additionalProperties": {"type": "string"}},
                },
            },
        },
        "stacks": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["name", "template"],
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string", "pattern": _LABEL_PATTERN},
                    "template": {"type": "string", "pattern": TEMPLATE_FILE_RE.pattern},
                    "depends_on": {
                        "type": "array",
                        "items": {"type": "string", "pattern": _LABEL_PATTERN},
                        "uniqueItems": True,
                    },
                    "parameters": _PARAMETERS,
                },
            },
        },
    },
}

_validator = Draft202012Validator(MANIFEST_SCHEMA)


@dataclass(frozen=True)
class EnvironmentSpec:
    name: str
    requires_approval: bool = False
    parameters: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StackSpec:
    name: str
    template: str
    depends_on: tuple[str, ...] = ()
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def output_references(self) -> dict[str, tuple[str, str]]:
        """Parameters whose value is ``${stack.Output}``, keyed by parameter name."""
        refs: dict[str, tuple[str, str]] = {}
        for key, value in self.parameters.items():
            if isinstance(value, str) and (match := OUTPUT_REF_RE.fullmatch(value.strip())):
                refs[key] = (match.group(1), match.group(2))
        return refs

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Explicit ``depends_on`` plus stacks referenced through outputs, in first-seen order."""
        seen = list(self.depends_on)
        for stack, _ in self.output_references.values():
            if stack not in seen:
                seen.append(stack)
        return tuple(seen)


@dataclass(frozen=True)
class Manifest:
    project: str
    environments: tuple[EnvironmentSpec, ...]
    stacks: tuple[StackSpec, ...]
    template_root: str = DEFAULT_TEMPLATE_ROOT
    bucket: str | None = None
    region: str | None = None
    capabilities: tuple[str, ...] = DEFAULT_CAPABILITIES
    tags: dict[str, str] = field(default_factory=dict)

    def environment(self, name: str) -> EnvironmentSpec:
        for env in self.environments:
            if env.name == name:
                return env
        raise NotFoundException(f"Environment {name!r} is not defined for project {self.project!r}")

    @property
    def environment_names(self) -> list[str]:
        return [env.name for env in self.environments]


def _default_requires_approval(name: str) -> bool:
    return name in APPROVAL_REQUIRED_BY_DEFAULT


def default_manifest(project: str) -> Manifest:
    return Manifest(
        project=slugify_project(project),
        environments=tuple(
            EnvironmentSpec(name=name, requires_approval=_default_requires_approval(name))
            for name in DEFAULT_ENVIRONMENTS
        ),
        stacks=(StackSpec(name="root", template=DEFAULT_ROOT_TEMPLATE),),
    )


def parse_manifest(data: Any) -> Manifest:
    if not isinstance(data, dict):
        raise IntegrityException("Manifest must be a mapping")
    errors = sorted(_validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    if errors:
        first = errors[0]
        location = "/".join(str(p) for p in first.absolute_path) or "<root>"
        raise IntegrityException(f"Manifest is invalid at {location}: {first.message}")

    raw_envs = data.get("environments")
    if raw_envs is None:
        environments = tuple(
            EnvironmentSpec(name=name, requires_approval=_default_requires_approval(name))
            for name in DEFAULT_ENVIRONMENTS
        )
    else:
        environments = tuple(
            EnvironmentSpec(
                name=name,
                requires_approval=(cfg or {}).get("requires_approval", _default_requires_approval(name)),
                parameters=dict((cfg or {}).get("parameters") or {}),
                tags=dict((cfg or {}).get("tags") or {}),
            )
            for name, cfg in raw_envs.items()
        )

    raw_stacks = data.get("stacks") or [{"name": "root", "template": DEFAULT_ROOT_TEMPLATE}]
    stacks = tuple(
        StackSpec(
            name=item["name"],
            template=item["template"],
            depends_on=tuple(item.get("depends_on") or ()),
            parameters=dict(item.get("parameters") or {}),
        )
        for item in raw_stacks
    )
    names = [stack.name for stack in stacks]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise IntegrityException(f"Duplicate stack names in manifest: {', '.join(duplicates)}")
    for stack in stacks:
        for dep in stack.dependencies:
            if dep not in names:
                raise IntegrityException(f"Stack {stack.name!r} depends on unknown stack {dep!r}")
            if dep == stack.name:
                raise IntegrityException(f"Stack {stack.name!r} cannot depend on itself")

    return Manifest(
        project=data["project"],
        environments=environments,
        stacks=stacks,
        template_root=data.get("template_root", DEFAULT_TEMPLATE_ROOT),
        bucket=data.get("bucket"),
        region=data.get("region"),
        capabilities=tuple(data.get("capabilities") or DEFAULT_CAPABILITIES),
        tags=dict(data.get("tags") or {}),
    )


def load_manifest(path: Path) -> Manifest:
    """Load a manifest file, or fall back to the conventional layout.

    ``path`` may point at the manifest itself or at the directory holding it.
    """
    manifest_path = path / MANIFEST_FILENAME if path.is_dir() else path
    if not manifest_path.exists():
        if path.is_dir():
            logger.info("No %s in %s; using default manifest", MANIFEST_FILENAME, path)
            return default_manifest(path.resolve().name)
        raise NotFoundException(f"Manifest not found: {manifest_path}")
    try:
        data = yaml.safe_load(manifest_path.read_text())
    except yaml.YAMLError as exc:
        raise IntegrityException(f"Manifest {manifest_path} is not valid YAML: {exc}") from exc
    manifest = parse_manifest(data)
    logger.debug(
        "Loaded manifest %s project=%s environments=%s stacks=%s",
        manifest_path,
        manifest.project,
        manifest.environment_names,
        [stack.name for stack in manifest.stacks],
    )
    return manifest
