"""Shared pytest fixtures for deskrun tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cluster.base import DeployedApp  # noqa: E402
from config import DriverConfig  # noqa: E402
from errors import ApplyError  # noqa: E402
from installation import CacheMount, ContainerMode, InstallationSpec  # noqa: E402


class FakeApplier:
    """In-memory ManifestApplier recording every call in order."""

    def __init__(self, deployed=None, controller_app='arc-controller'):
        self.deployed = list(deployed or [])
        self.controller_app = controller_app
        self.manifests: dict[str, bytes] = {}
        self.calls: list[tuple] = []
        self.failures: dict[tuple, ApplyError] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, name: str, stderr: str = 'boom') -> None:
        self.failures[(operation, name)] = ApplyError(operation, name, stderr, returncode=1)

    def _record(self, operation: str, name: str) -> None:
        with self._lock:
            self.calls.append((operation, name))
        if (operation, name) in self.failures:
            raise self.failures[(operation, name)]

    def apply(self, app_name, manifest_bytes):
        self._record('apply', app_name)
        self.manifests[app_name] = manifest_bytes
        with self._lock:
            if app_name not in self.deployed:
                self.deployed.append(app_name)

    def delete(self, app_name):
        self._record('delete', app_name)
        with self._lock:
            if app_name in self.deployed:
                self.deployed.remove(app_name)

    # ops() sits above list() so its annotation still sees the builtin
    def ops(self, operation: str) -> list[str]:
        return [name for op, name in self.calls if op == operation]

    def list(self):
        self._record('list', '')
        return [DeployedApp(name=n) for n in self.deployed if n != self.controller_app]


class FakeProbe:
    """SchemaProbe answering from a script; the last answer repeats."""

    def __init__(self, answers=(True,)):
        self.answers = list(answers)
        self.calls = 0

    def exists(self, name):
        self.calls += 1
        answer = self.answers[0] if len(self.answers) == 1 else self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeProvisioner:
    def __init__(self, present=True):
        self.present = present
        self.created = False

    def exists(self):
        return self.present

    def create(self):
        self.present = True
        self.created = True

    def delete(self):
        self.present = False

    def connection_handle(self):
        return 'kind-test'


class StepClock:
    """Monotonic clock that advances a fixed step on every read."""

    def __init__(self, step=1.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def config():
    return DriverConfig(bootstrap_poll_interval=0.01, bootstrap_timeout=5.0)


@pytest.fixture
def applier():
    return FakeApplier()


@pytest.fixture
def make_spec():
    """Factory for installation specs with sensible defaults."""
    def _make(name='ci', mode=ContainerMode.STANDARD, **kwargs):
        kwargs.setdefault('repository', 'https://github.com/acme/widgets')
        kwargs.setdefault('auth_secret', 'ghp_test')
        return InstallationSpec(name=name, container_mode=mode, **kwargs)
    return _make


@pytest.fixture
def ci_spec():
    """Privileged installation with one ephemeral and one host-backed cache."""
    return InstallationSpec(
        name='ci',
        repository='https://github.com/acme/widgets',
        container_mode=ContainerMode.PRIVILEGED_CACHED,
        min_replicas=1,
        max_replicas=1,
        cache_mounts=[
            CacheMount(target='/var/lib/docker'),
            CacheMount(target='/nix/store', source='/host/nix'),
        ],
        auth_secret='ghp_test',
    )


@pytest.fixture
def config_dir(tmp_path):
    d = tmp_path / 'deskrun'
    d.mkdir()
    return d
