"""Persistent store of configured runner installations.

Installations are kept in {config_dir}/installations.yaml:

    installations:
      ci:
        name: ci
        repository: https://github.com/owner/repo
        container_mode: cached-privileged-kubernetes
        min_runners: 1
        max_runners: 1
        instances: 1
        cache_paths:
        - {target: /var/lib/docker, source: ''}
        auth_type: pat
        auth_value: ghp_...

Older configurations used capitalised field names (Name, CachePaths, ...)
and MountPath/HostPath cache keys, and lived in config.json. Both are
migrated on load and the file is rewritten in the current format.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from config import ConfigError, get_config_dir
from errors import ValidationError
from installation import InstallationSpec

logger = logging.getLogger(__name__)

STORE_FILENAME = 'installations.yaml'
LEGACY_FILENAME = 'config.json'

_LEGACY_FIELDS = {
    'Name': 'name',
    'Repository': 'repository',
    'ContainerMode': 'container_mode',
    'MinRunners': 'min_runners',
    'MaxRunners': 'max_runners',
    'Instances': 'instances',
    'CachePaths': 'cache_paths',
    'AuthType': 'auth_type',
    'AuthValue': 'auth_value',
}
_LEGACY_CACHE_FIELDS = {
    'MountPath': 'target',
    'HostPath': 'source',
    'Target': 'target',
    'Source': 'source',
}


def migrate_entry(entry: dict) -> tuple[dict, bool]:
    """Convert one legacy installation mapping. Returns (entry, changed)."""
    changed = False
    migrated = {}
    for key, value in entry.items():
        new_key = _LEGACY_FIELDS.get(key, key)
        changed = changed or new_key != key
        migrated[new_key] = value

    caches = []
    for cache in migrated.get('cache_paths') or []:
        new_cache = {}
        for key, value in cache.items():
            new_key = _LEGACY_CACHE_FIELDS.get(key, key)
            changed = changed or new_key != key
            new_cache[new_key] = value or ''
        caches.append(new_cache)
    migrated['cache_paths'] = caches
    return migrated, changed


class InstallationStore:
    """CRUD over configured installations, keyed by name."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir is not None else get_config_dir()
        self._entries: dict[str, dict] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self.config_dir / STORE_FILENAME

    def _read(self, path: Path) -> dict:
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        return data

    def load(self) -> 'InstallationStore':
        """Read the store, migrating legacy content. Missing file means empty."""
        source = self.path
        if not source.exists():
            legacy = self.config_dir / LEGACY_FILENAME
            if not legacy.exists():
                self._entries = {}
                self._loaded = True
                return self
            source = legacy

        # JSON is a subset of YAML, so the legacy file parses the same way
        data = self._read(source)
        installations = data.get('installations') or {}
        if not isinstance(installations, dict):
            raise ConfigError(f"'installations' in {source} must be a mapping")

        needs_save = source != self.path
        entries = {}
        for name, entry in installations.items():
            if not isinstance(entry, dict):
                raise ConfigError(f"Installation '{name}' in {source} must be a mapping")
            entry, changed = migrate_entry(entry)
            entry.setdefault('name', name)
            entries[name] = entry
            needs_save = needs_save or changed

        self._entries = entries
        self._loaded = True
        if needs_save:
            logger.info(f"Migrating installation config from {source} to {self.path}")
            self.save()
        return self

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def save(self) -> Path:
        """Write the store. The file holds secrets, so it is private to the user."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = {'installations': self._entries}
        tmp = self.path.with_suffix('.yaml.tmp')
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
        os.replace(tmp, self.path)
        logger.debug(f"Saved {len(self._entries)} installations to {self.path}")
        return self.path

    def names(self) -> list[str]:
        self._ensure_loaded()
        return list(self._entries)

    def entries(self) -> tuple[list[InstallationSpec], dict[str, ConfigError]]:
        """Parse every stored installation, in insertion order.

        Entries that cannot be parsed are returned separately, keyed by
        name, so one bad entry never hides the others.
        """
        self._ensure_loaded()
        specs = []
        invalid: dict[str, ConfigError] = {}
        for name, entry in self._entries.items():
            try:
                specs.append(InstallationSpec.from_dict(entry))
            except (ValidationError, TypeError, ValueError) as e:
                invalid[name] = ConfigError(f"Installation '{name}' is invalid: {e}")
        return specs, invalid

    def _claimed_names(self) -> dict[str, str]:
        """Instance name -> owning installation, for every stored entry."""
        specs, invalid = self.entries()
        claimed = {name: name for name in invalid}
        for spec in specs:
            for name in spec.instance_names():
                claimed[name] = spec.name
        return claimed

    def list(self) -> list[InstallationSpec]:
        """Configured installations in insertion order.

        Entries that cannot be parsed are skipped with a warning; use
        entries() to get them.
        """
        specs, invalid = self.entries()
        for error in invalid.values():
            logger.warning(str(error))
        return specs

    def get(self, name: str) -> InstallationSpec:
        self._ensure_loaded()
        if name not in self._entries:
            raise ConfigError(f"Installation '{name}' not found")
        return InstallationSpec.from_dict(self._entries[name])

    def add(self, spec: InstallationSpec) -> None:
        """Validate and store a new installation.

        Names are unique, and no instance name the installation deploys may
        belong to another installation ('ci-1' next to a fanned-out 'ci').
        """
        self._ensure_loaded()
        spec.validate()
        if spec.name in self._entries:
            raise ConfigError(f"Installation '{spec.name}' already exists")
        claimed = self._claimed_names()
        for name in spec.instance_names():
            if name in claimed:
                raise ConfigError(
                    f"Instance name '{name}' of installation '{spec.name}' is already "
                    f"used by installation '{claimed[name]}'"
                )
        self._entries[spec.name] = spec.to_dict()
        self.save()

    def remove(self, name: str) -> InstallationSpec:
        self._ensure_loaded()
        if name not in self._entries:
            raise ConfigError(f"Installation '{name}' not found")
        spec = InstallationSpec.from_dict(self._entries.pop(name))
        self.save()
        return spec
