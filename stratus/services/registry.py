from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
from pathlib import Path
from typing import Protocol

from stratus.provisioner import S3Adapter
from stratus.services.constants import DEFAULT_TEMPLATE_ROOT
from stratus.services.errors import IntegrityException, NotFoundException
from stratus.services.naming import TEMPLATE_FILE_RE, s3_uri, s3_url, template_key, template_prefix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateRef:
    environment: str
    name: str
    key: str
    path: Path | None = None
    url: str | None = None


class TemplateStore(Protocol):
    key_root: str

    def list_names(self, environment: str) -> list[str]: ...

    def read(self, environment: str, name: str) -> str | None: ...

    def ref(self, environment: str, name: str) -> TemplateRef: ...


class LocalTemplateStore:
    """Templates laid out on disk as ``<root>/<environment>/<file>``."""

    def __init__(self, root: Path, *, key_root: str = DEFAULT_TEMPLATE_ROOT) -> None:
        self.root = root
        self.key_root = key_root

    def _env_dir(self, environment: str) -> Path:
        return self.root / environment

    def list_names(self, environment: str) -> list[str]:
        env_dir = self._env_dir(environment)
        if not env_dir.is_dir():
            raise NotFoundException(f"No template directory for environment {environment!r}: {env_dir}")
        return sorted(p.name for p in env_dir.iterdir() if p.is_file() and TEMPLATE_FILE_RE.fullmatch(p.name))

    def read(self, environment: str, name: str) -> str | None:
        path = self._env_dir(environment) / name
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def ref(self, environment: str, name: str) -> TemplateRef:
        return TemplateRef(
            environment=environment,
            name=name,
            key=template_key(environment, name, root=self.key_root),
            path=self._env_dir(environment) / name,
        )


class S3TemplateStore:
    """Templates stored in a bucket under ``<key_root>/<environment>/<file>``."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        s3: S3Adapter | None = None,
        key_root: str = DEFAULT_TEMPLATE_ROOT,
    ) -> None:
        self.bucket = bucket
        self.region = region
        self.key_root = key_root
        self._s3 = s3 or S3Adapter(region=region)

    def list_names(self, environment: str) -> list[str]:
        prefix = template_prefix(environment, root=self.key_root)
        names = []
        for key in self._s3.list_keys(bucket=self.bucket, prefix=prefix):
            name = key[len(prefix):]
            if "/" not in name and TEMPLATE_FILE_RE.fullmatch(name):
                names.append(name)
        if not names:
            raise NotFoundException(f"No templates for environment {environment!r} in {s3_uri(self.bucket, prefix)}")
        return sorted(names)

    def read(self, environment: str, name: str) -> str | None:
        return self._s3.read_object(bucket=self.bucket, key=template_key(environment, name, root=self.key_root))

    def ref(self, environment: str, name: str) -> TemplateRef:
        key = template_key(environment, name, root=self.key_root)
        return TemplateRef(
            environment=environment,
            name=name,
            key=key,
            url=s3_url(self.bucket, key, region=self.region),
        )

    def base_url(self, environment: str) -> str:
        return s3_url(self.bucket, template_prefix(environment, root=self.key_root), region=self.region)

    def upload(self, environment: str, name: str, *, path: Path) -> TemplateRef:
        ref = self.ref(environment, name)
        self._s3.upload_file(path=path, bucket=self.bucket, key=ref.key)
        return ref


class TemplateRegistry:
    """Resolves, fetches and publishes the templates of each environment.

    ``source`` is where templates are read from. When ``publish_to`` is given,
    local templates can be uploaded there, after which they resolve to S3 URLs
    so that CloudFormation (and nested stacks) can fetch them.
    """

    def __init__(self, source: TemplateStore, *, publish_to: S3TemplateStore | None = None) -> None:
        self.source = source
        self.publish_to = publish_to
        self._published: set[tuple[str, str]] = set()

    @property
    def bucket_store(self) -> S3TemplateStore | None:
        if self.publish_to is not None:
            return self.publish_to
        return self.source if isinstance(self.source, S3TemplateStore) else None

    @property
    def has_bucket(self) -> bool:
        return self.bucket_store is not None

    def list_templates(self, environment: str) -> list[str]:
        return self.source.list_names(environment)

    def fetch(self, environment: str, name: str) -> str:
        body = self.source.read(environment, name)
        if body is None:
            raise NotFoundException(f"Template {name!r} not found for environment {environment!r}")
        return body

    def resolve(self, environment: str, name: str) -> TemplateRef:
        """Ref used for deployment: the S3 URL once published, else the source location."""
        ref = self.source.ref(environment, name)
        if self.publish_to is not None and (environment, name) in self._published:
            remote = self.publish_to.ref(environment, name)
            return TemplateRef(environment=environment, name=name, key=remote.key, path=ref.path, url=remote.url)
        return ref

    def digest(self, environment: str) -> str:
        hasher = hashlib.sha256()
        for name in self.list_templates(environment):
            hasher.update(name.encode("utf-8"))
            hasher.update(b"\0")
            hasher.update(self.fetch(environment, name).encode("utf-8"))
            hasher.update(b"\0")
        return hasher.hexdigest()

    def deploy_source(self, ref: TemplateRef) -> dict[str, str | Path]:
        """Keyword arguments naming the template for create/update/validate calls."""
        if ref.url:
            return {"template_url": ref.url}
        if ref.path is None:
            raise IntegrityException(f"Template {ref.name!r} has neither a URL nor a local path")
        return {"template_path": ref.path}

    def base_url(self, environment: str) -> str | None:
        store = self.bucket_store
        return store.base_url(environment) if store is not None else None

    def publish(self, environment: str) -> list[TemplateRef]:
        if self.publish_to is None:
            raise IntegrityException(
                "No template bucket configured; set STRATUS_TEMPLATE_BUCKET or the manifest bucket"
            )
        if not isinstance(self.source, LocalTemplateStore):
            raise IntegrityException("Only local templates can be published")
        refs = []
        for name in self.list_templates(environment):
            local = self.source.ref(environment, name)
            if local.path is None:
                raise IntegrityException(f"Template {name!r} has no local path to publish from")
            self.publish_to.upload(environment, name, path=local.path)
            self._published.add((environment, name))
            refs.append(self.resolve(environment, name))
        logger.info(
            "Published %s template(s) for environment=%s to %s",
            len(refs),
            environment,
            s3_uri(self.publish_to.bucket, template_prefix(environment, root=self.publish_to.key_root)),
        )
        return refs


def build_registry(
    *,
    base_dir: Path,
    template_root: str = DEFAULT_TEMPLATE_ROOT,
    bucket: str | None = None,
    region: str | None = None,
    s3: S3Adapter | None = None,
    from_bucket: bool = False,
) -> TemplateRegistry:
    """Registry over ``<base_dir>/<template_root>``, publishing to ``bucket`` when set.

    With ``from_bucket`` the bucket itself is the source (templates were published
    by an earlier CI step).
    """
    if from_bucket:
        if not bucket:
            raise IntegrityException("Reading templates from S3 requires a bucket")
        return TemplateRegistry(S3TemplateStore(bucket, region=region, s3=s3, key_root=template_root))
    local = LocalTemplateStore(base_dir / template_root, key_root=template_root)
    remote = S3TemplateStore(bucket, region=region, s3=s3, key_root=template_root) if bucket else None
    return TemplateRegistry(local, publish_to=remote)
