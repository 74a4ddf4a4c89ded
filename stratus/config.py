from __future__ import annotations

from dataclasses import dataclass
import os

REQUIRED_AWS_VARIABLES = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION")

_DEFAULT_DATABASE_URL = "sqlite:///./stratus.db"
_DEFAULT_POLL_INTERVAL = 10.0
_DEFAULT_POLL_TIMEOUT = 3600.0


@dataclass(frozen=True)
class Settings:
    region: str | None
    template_bucket: str | None
    database_url: str
    poll_interval: float
    poll_timeout: float
    missing_aws_variables: tuple[str, ...]

    @property
    def has_credentials(self) -> bool:
        return not self.missing_aws_variables


def _float_from_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def database_url() -> str:
    return os.getenv("STRATUS_DATABASE_URL", _DEFAULT_DATABASE_URL)


def load_settings() -> Settings:
    return Settings(
        region=os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or None,
        template_bucket=os.getenv("STRATUS_TEMPLATE_BUCKET") or None,
        database_url=database_url(),
        poll_interval=_float_from_env("STRATUS_POLL_INTERVAL", _DEFAULT_POLL_INTERVAL),
        poll_timeout=_float_from_env("STRATUS_POLL_TIMEOUT", _DEFAULT_POLL_TIMEOUT),
        missing_aws_variables=tuple(name for name in REQUIRED_AWS_VARIABLES if not os.getenv(name)),
    )
