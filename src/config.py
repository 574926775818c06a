"""Driver configuration.

Configuration lives in a single directory:
- settings.yaml: driver settings (all keys optional)
- installations.yaml: configured runner installations (see store.py)

Resolution order for the directory:
1. $DESKRUN_CONFIG_DIR environment variable
2. ~/.deskrun/

Settings are merged as: defaults -> settings.yaml -> environment overrides.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


DEFAULT_CLUSTER_NAME = 'deskrun'
DEFAULT_NAMESPACE = 'arc-systems'
DEFAULT_CONTROLLER_APP = 'arc-controller'
DEFAULT_RUNNER_IMAGE = 'ghcr.io/actions/actions-runner:latest'
DEFAULT_CONTROLLER_IMAGE = 'ghcr.io/actions/gha-runner-scale-set-controller:0.12.1'


@dataclass
class DriverConfig:
    """Explicit settings handed to the compiler, reconciler and bootstrapper."""
    cluster_name: str = DEFAULT_CLUSTER_NAME
    namespace: str = DEFAULT_NAMESPACE
    controller_app: str = DEFAULT_CONTROLLER_APP
    runner_image: str = DEFAULT_RUNNER_IMAGE
    controller_image: str = DEFAULT_CONTROLLER_IMAGE

    # Controller readiness polling
    bootstrap_poll_interval: float = 1.0
    bootstrap_timeout: float = 30.0

    # External tools
    command_timeout: int = 300
    kapp_bin: str = 'kapp'
    kind_bin: str = 'kind'
    kubectl_bin: str = 'kubectl'

    # Convergence
    max_workers: int = 1

    # Root for auto-generated host cache paths; None keeps empty sources ephemeral
    cache_root: Optional[str] = None

    verbose: bool = False

    def __post_init__(self):
        if self.bootstrap_poll_interval <= 0:
            raise ConfigError("bootstrap_poll_interval must be positive")
        if self.bootstrap_timeout <= 0:
            raise ConfigError("bootstrap_timeout must be positive")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.cache_root is not None and not str(self.cache_root).startswith('/'):
            raise ConfigError(f"cache_root '{self.cache_root}' must be an absolute path")

    @property
    def kube_context(self) -> str:
        """Kubeconfig context kind creates for the cluster."""
        return f'kind-{self.cluster_name}'

    @classmethod
    def from_dict(cls, data: dict) -> 'DriverConfig':
        """Build from a settings mapping, rejecting unknown keys."""
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(unknown)}")

        kwargs = {}
        for key, value in data.items():
            expected = known[key].type
            kwargs[key] = _coerce(key, value, expected)
        return cls(**kwargs)


def _coerce(key: str, value, expected):
    """Coerce a YAML scalar to the dataclass field type."""
    if value is None:
        if expected == Optional[str]:
            return None
        raise ConfigError(f"Setting '{key}' must not be empty")
    try:
        if expected is bool:
            if isinstance(value, bool):
                return value
            if str(value).lower() in ('1', 'true', 'yes', 'on'):
                return True
            if str(value).lower() in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError(value)
        if expected is int:
            return int(value)
        if expected is float:
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Setting '{key}' has invalid value {value!r}") from e
    return str(value)


def get_config_dir() -> Path:
    """Discover the configuration directory.

    Resolution order:
    1. $DESKRUN_CONFIG_DIR environment variable
    2. ~/.deskrun/

    The directory need not exist yet; it is created on first save.
    """
    if env_path := os.environ.get('DESKRUN_CONFIG_DIR'):
        path = Path(env_path)
        if path.exists() and not path.is_dir():
            raise ConfigError(f"DESKRUN_CONFIG_DIR={env_path} is not a directory")
        return path
    return Path.home() / '.deskrun'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML mapping file, empty files yield {}."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_driver_config(config_dir: Optional[Path] = None, **overrides) -> DriverConfig:
    """Load settings.yaml, then apply environment and keyword overrides.

    Keyword overrides whose value is None are ignored so CLI flags can be
    passed straight through.
    """
    if config_dir is None:
        config_dir = get_config_dir()

    settings: dict = {}
    settings_file = config_dir / 'settings.yaml'
    if settings_file.exists():
        settings.update(_parse_yaml(settings_file))

    if cluster := os.environ.get('DESKRUN_CLUSTER'):
        settings['cluster_name'] = cluster
    if namespace := os.environ.get('DESKRUN_NAMESPACE'):
        settings['namespace'] = namespace

    settings.update({k: v for k, v in overrides.items() if v is not None})
    return DriverConfig.from_dict(settings)
