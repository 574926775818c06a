"""Runner installation data model.

An InstallationSpec is what the user declares and the store persists. An
InstanceSpec is one concrete, independently scaled unit derived from it on
every reconcile pass (see reconciler/expand.py).
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from errors import ValidationError

# Mounting over the host package store root breaks the runner image itself
RESERVED_CACHE_TARGETS = ('/nix/store',)

_NAME_RE = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$')
MAX_NAME_LENGTH = 45  # leaves room for the -gha-rs-kube-mode resource suffix


class ContainerMode(Enum):
    """Execution strategy for runner workloads."""
    STANDARD = 'kubernetes'
    DIND = 'dind'
    PRIVILEGED_CACHED = 'cached-privileged-kubernetes'

    @classmethod
    def parse(cls, value) -> 'ContainerMode':
        if isinstance(value, cls):
            return value
        for mode in cls:
            if mode.value == value or mode.name.lower() == str(value).lower():
                return mode
        valid = ', '.join(m.value for m in cls)
        raise ValidationError(
            f"invalid container mode: {value} (expected one of: {valid})",
            reason='unknown_mode',
        )


class AuthMethod(Enum):
    """How the runner authenticates to GitHub."""
    TOKEN = 'pat'
    APP_KEY = 'github-app'

    @classmethod
    def parse(cls, value) -> 'AuthMethod':
        if isinstance(value, cls):
            return value
        for method in cls:
            if method.value == value:
                return method
        valid = ', '.join(m.value for m in cls)
        raise ValidationError(
            f"invalid auth type: {value} (expected one of: {valid})",
            reason='unknown_auth',
        )


@dataclass(frozen=True)
class CacheMount:
    """A path cached across runner jobs.

    An empty source means an ephemeral volume, anything else is a host path.
    """
    target: str
    source: str = ''

    @property
    def is_host_backed(self) -> bool:
        return bool(self.source)

    def validate(self, allow_reserved: bool = False) -> None:
        if not self.target:
            raise ValidationError("cache target path must not be empty", reason='cache_target')
        if not allow_reserved and self.target.rstrip('/') in RESERVED_CACHE_TARGETS:
            raise ValidationError(
                f"caching {self.target} is not supported: mounting over the "
                "package store root hides the runner's own binaries. "
                "Cache /root/.cache/nix or /var/lib/docker instead",
                reason='reserved_cache_target',
            )
        if not self.target.startswith('/'):
            raise ValidationError(
                f"cache target path '{self.target}' must be an absolute path",
                reason='cache_target',
            )
        if self.source and not self.source.startswith('/'):
            raise ValidationError(
                f"cache source path '{self.source}' must be an absolute path",
                reason='cache_source',
            )

    @classmethod
    def parse(cls, arg: str) -> 'CacheMount':
        """Parse 'target' or 'source:target' command-line notation."""
        if ':' in arg:
            source, target = arg.split(':', 1)
            return cls(target=target, source=source)
        return cls(target=arg)

    @classmethod
    def from_dict(cls, data: dict) -> 'CacheMount':
        return cls(target=data.get('target', ''), source=data.get('source', '') or '')

    def to_dict(self) -> dict:
        return {'target': self.target, 'source': self.source}


def instance_name(installation_name: str, ordinal: int) -> str:
    """Bare name for a single instance, '{name}-{ordinal}' under fan-out."""
    if ordinal == 0:
        return installation_name
    return f'{installation_name}-{ordinal}'


def sanitize_repository_url(url: str) -> str:
    """Normalize a repository URL to https without trailing slashes."""
    url = url.strip()
    if url.startswith('http://'):
        url = 'https://' + url[len('http://'):]
    return url.rstrip('/')


@dataclass
class InstallationSpec:
    """User-declared desired runner deployment."""
    name: str
    repository: str
    container_mode: ContainerMode = ContainerMode.STANDARD
    min_replicas: int = 1
    max_replicas: int = 5
    instance_count: int = 1
    cache_mounts: list[CacheMount] = field(default_factory=list)
    auth_method: AuthMethod = AuthMethod.TOKEN
    auth_secret: str = field(default='', repr=False)

    def __post_init__(self):
        self.container_mode = ContainerMode.parse(self.container_mode)
        self.auth_method = AuthMethod.parse(self.auth_method)
        self.repository = sanitize_repository_url(self.repository)

    def validate(self, allow_reserved: bool = False) -> None:
        """Check invariants; raises ValidationError on the first violation.

        Reserved cache targets are refused when an installation is admitted
        to the store. Compilation passes allow_reserved=True so entries that
        predate the rule still render.
        """
        if not self.name:
            raise ValidationError("installation name must not be empty", reason='name')
        if len(self.name) > MAX_NAME_LENGTH or not _NAME_RE.match(self.name):
            raise ValidationError(
                f"installation name '{self.name}' must be lowercase alphanumeric "
                f"with dashes, at most {MAX_NAME_LENGTH} characters",
                reason='name',
            )
        if not self.repository:
            raise ValidationError(f"installation '{self.name}' has no repository", reason='repository')
        if self.instance_count < 1:
            raise ValidationError(
                f"instances must be at least 1, got {self.instance_count}",
                reason='instance_count',
            )
        if self.min_replicas < 0:
            raise ValidationError(
                f"min runners must not be negative, got {self.min_replicas}",
                reason='replicas',
            )
        if self.max_replicas < self.min_replicas:
            raise ValidationError(
                f"max runners ({self.max_replicas}) must be >= min runners ({self.min_replicas})",
                reason='replicas',
            )
        for mount in self.cache_mounts:
            mount.validate(allow_reserved=allow_reserved)

    @property
    def fans_out(self) -> bool:
        return self.instance_count > 1

    def instance_names(self) -> list[str]:
        """Names of the runner applications this installation deploys."""
        if not self.fans_out:
            return [self.name]
        return [instance_name(self.name, n) for n in range(1, self.instance_count + 1)]

    @classmethod
    def from_dict(cls, data: dict) -> 'InstallationSpec':
        """Build from the store's mapping shape."""
        return cls(
            name=data.get('name', ''),
            repository=data.get('repository', ''),
            container_mode=data.get('container_mode', ContainerMode.STANDARD.value),
            min_replicas=int(data.get('min_runners', 1)),
            max_replicas=int(data.get('max_runners', 5)),
            instance_count=int(data.get('instances', 1) or 1),
            cache_mounts=[CacheMount.from_dict(c) for c in data.get('cache_paths') or []],
            auth_method=data.get('auth_type', AuthMethod.TOKEN.value),
            auth_secret=data.get('auth_value', ''),
        )

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'repository': self.repository,
            'container_mode': self.container_mode.value,
            'min_runners': self.min_replicas,
            'max_runners': self.max_replicas,
            'instances': self.instance_count,
            'cache_paths': [c.to_dict() for c in self.cache_mounts],
            'auth_type': self.auth_method.value,
            'auth_value': self.auth_secret,
        }


@dataclass(frozen=True)
class InstanceSpec:
    """One concrete runner scale set derived from an InstallationSpec."""
    name: str
    ordinal: int
    installation: InstallationSpec
    min_replicas: int
    max_replicas: int
    cache_mounts: tuple[CacheMount, ...] = ()

    @property
    def container_mode(self) -> ContainerMode:
        return self.installation.container_mode

    @property
    def repository(self) -> str:
        return self.installation.repository

    @property
    def auth_method(self) -> AuthMethod:
        return self.installation.auth_method

    @property
    def auth_secret(self) -> str:
        return self.installation.auth_secret

    @property
    def parent_name(self) -> Optional[str]:
        """Installation this instance belongs to, None for single instances."""
        return self.installation.name if self.ordinal else None
