from __future__ import annotations

import re

from stratus.services.constants import DEFAULT_TEMPLATE_ROOT

STACK_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,127}$")
LABEL_RE = re.compile(r"^[a-z][a-z0-9-]{0,30}$")
PROJECT_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,63}$")
TEMPLATE_FILE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*\.(ya?ml|json)$")

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]+")
_HYPHEN_RUN_RE = re.compile(r"-+")


def slugify_project(value: str) -> str:
    replaced = _NON_ALNUM_RE.sub("-", value)
    collapsed = _HYPHEN_RUN_RE.sub("-", replaced).strip("-")
    if not collapsed or not collapsed[0].isalpha():
        collapsed = f"p-{collapsed}" if collapsed else "stratus"
    return collapsed[:64].rstrip("-")


def is_valid_stack_name(value: str) -> bool:
    return bool(STACK_NAME_RE.fullmatch(value))


def stack_name_for(project: str, environment: str, stack: str) -> str:
    """CloudFormation stack name for a logical stack of a project environment."""
    name = f"{project}-{environment}-{stack}"
    if not is_valid_stack_name(name):
        raise ValueError(f"{name!r} is not a valid CloudFormation stack name")
    return name


def template_prefix(environment: str, *, root: str = DEFAULT_TEMPLATE_ROOT) -> str:
    """Object-key prefix holding an environment's templates, with trailing slash."""
    base = root.strip("/")
    return f"{base}/{environment}/" if base else f"{environment}/"


def template_key(environment: str, template: str, *, root: str = DEFAULT_TEMPLATE_ROOT) -> str:
    if not TEMPLATE_FILE_RE.fullmatch(template):
        raise ValueError(f"{template!r} is not a valid template file name")
    return f"{template_prefix(environment, root=root)}{template}"


def s3_url(bucket: str, key: str, *, region: str | None) -> str:
    # us-east-1 is the only region served from the legacy global endpoint
    if not region or region == "us-east-1":
        return f"https://{bucket}.s3.amazonaws.com/{key}"
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


def s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"
