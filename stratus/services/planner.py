from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Sequence

from stratus.services.errors import IntegrityException, NotFoundException
from stratus.services.graph import find_cycle, topological_order
from stratus.services.manifest import EnvironmentSpec, Manifest, StackSpec
from stratus.services.naming import stack_name_for
from stratus.services.registry import TemplateRef, TemplateRegistry

logger = logging.getLogger(__name__)

SYSTEM_PARAMETERS = ("Environment", "ProjectName", "TemplateBucket", "TemplateBaseUrl")


@dataclass(frozen=True)
class StackPlan:
    stack: StackSpec
    stack_name: str
    template: TemplateRef
    depends_on: tuple[str, ...]
    position: int


@dataclass(frozen=True)
class DeploymentPlan:
    project: str
    environment: str
    requires_approval: bool
    stacks: tuple[StackPlan, ...]

    @property
    def stack_order(self) -> list[str]:
        return [plan.stack.name for plan in self.stacks]


def order_stacks(stacks: Sequence[StackSpec]) -> list[StackSpec]:
    """Dependency order of ``stacks``; independent stacks keep their declared order."""
    by_name = {stack.name: stack for stack in stacks}
    dependencies = {stack.name: stack.dependencies for stack in stacks}
    for name, deps in dependencies.items():
        for dep in deps:
            if dep not in by_name:
                raise IntegrityException(f"Stack {name!r} depends on unknown stack {dep!r}")
    order = topological_order([stack.name for stack in stacks], dependencies)
    if order is None:
        cycle = find_cycle({name: set(deps) for name, deps in dependencies.items()}) or []
        raise IntegrityException(f"Dependency cycle between stacks: {' -> '.join(cycle)}")
    return [by_name[name] for name in order]


def environment_order(manifest: Manifest, environments: Sequence[str] | None = None) -> list[EnvironmentSpec]:
    """Promotion order: manifest order, optionally restricted to ``environments``."""
    if environments is None:
        return list(manifest.environments)
    wanted = set(environments)
    unknown = sorted(wanted - set(manifest.environment_names))
    if unknown:
        raise NotFoundException(f"Unknown environment(s): {', '.join(unknown)}")
    return [env for env in manifest.environments if env.name in wanted]


def format_parameter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(format_parameter_value(item) for item in value)
    return str(value)


def resolve_parameters(
    *,
    stack: StackSpec,
    environment: EnvironmentSpec,
    declared: Mapping[str, Mapping[str, Any]],
    upstream_outputs: Mapping[str, Mapping[str, str]],
    system: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Parameter values for one stack, restricted to what its template declares.

    Precedence (lowest first): environment parameters, stack parameters (with
    ``${stack.Output}`` replaced by upstream outputs), system parameters.
    """
    unknown = sorted(set(stack.parameters) - set(declared))
    if unknown:
        raise IntegrityException(
            f"Stack {stack.name!r} sets parameters its template does not declare: {', '.join(unknown)}"
        )

    values: dict[str, Any] = {k: v for k, v in environment.parameters.items() if k in declared}
    references = stack.output_references
    for key, value in stack.parameters.items():
        if key in references:
            upstream, output = references[key]
            outputs = upstream_outputs.get(upstream)
            if outputs is None or output not in outputs:
                raise IntegrityException(
                    f"Stack {stack.name!r} parameter {key!r} needs output {output!r} of stack {upstream!r}, "
                    "which is not available"
                )
            value = outputs[output]
        values[key] = value
    for key, value in (system or {}).items():
        if key in declared and value is not None:
            values[key] = value

    resolved = {key: format_parameter_value(value) for key, value in values.items()}
    missing = sorted(name for name, spec in declared.items() if name not in resolved and "Default" not in spec)
    if missing:
        raise IntegrityException(f"Stack {stack.name!r} is missing values for parameters: {', '.join(missing)}")
    return resolved


def build_plan(manifest: Manifest, environment: str, registry: TemplateRegistry) -> DeploymentPlan:
    env = manifest.environment(environment)
    available = set(registry.list_templates(environment))
    plans = []
    for position, stack in enumerate(order_stacks(manifest.stacks)):
        if stack.template not in available:
            raise NotFoundException(
                f"Template {stack.template!r} for stack {stack.name!r} not found in environment {environment!r}"
            )
        try:
            stack_name = stack_name_for(manifest.project, environment, stack.name)
        except ValueError as exc:
            raise IntegrityException(str(exc)) from exc
        plans.append(
            StackPlan(
                stack=stack,
                stack_name=stack_name,
                template=registry.resolve(environment, stack.template),
                depends_on=stack.dependencies,
                position=position,
            )
        )
    plan = DeploymentPlan(
        project=manifest.project,
        environment=environment,
        requires_approval=env.requires_approval,
        stacks=tuple(plans),
    )
    logger.debug("Planned environment=%s order=%s", environment, plan.stack_order)
    return plan
