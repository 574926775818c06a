"""Tests for the installation data model."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from errors import ErrorKind, ValidationError
from installation import (
    AuthMethod,
    CacheMount,
    ContainerMode,
    InstallationSpec,
    InstanceSpec,
    instance_name,
    sanitize_repository_url,
)


class TestContainerMode:
    """Tests for ContainerMode.parse."""

    def test_parses_stored_values(self):
        assert ContainerMode.parse('kubernetes') is ContainerMode.STANDARD
        assert ContainerMode.parse('dind') is ContainerMode.DIND
        assert ContainerMode.parse('cached-privileged-kubernetes') is ContainerMode.PRIVILEGED_CACHED

    def test_passes_enum_through(self):
        assert ContainerMode.parse(ContainerMode.DIND) is ContainerMode.DIND

    def test_unknown_mode_raises_validation_error(self):
        """Unknown modes are rejected with a distinguishable reason."""
        with pytest.raises(ValidationError) as exc_info:
            ContainerMode.parse('podman')
        assert exc_info.value.reason == 'unknown_mode'
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert 'podman' in str(exc_info.value)


class TestAuthMethod:
    def test_parse(self):
        assert AuthMethod.parse('pat') is AuthMethod.TOKEN
        assert AuthMethod.parse('github-app') is AuthMethod.APP_KEY

    def test_unknown_auth(self):
        with pytest.raises(ValidationError) as exc_info:
            AuthMethod.parse('ssh')
        assert exc_info.value.reason == 'unknown_auth'


class TestCacheMount:
    """Tests for cache mount parsing and validation."""

    def test_parse_target_only(self):
        mount = CacheMount.parse('/var/lib/docker')
        assert mount == CacheMount(target='/var/lib/docker', source='')
        assert not mount.is_host_backed

    def test_parse_source_and_target(self):
        mount = CacheMount.parse('/host/nix:/root/.cache/nix')
        assert mount.source == '/host/nix'
        assert mount.target == '/root/.cache/nix'
        assert mount.is_host_backed

    def test_parse_splits_on_first_colon(self):
        mount = CacheMount.parse('/a:/b:c')
        assert mount.source == '/a'
        assert mount.target == '/b:c'

    def test_reserved_target_rejected(self):
        """Mounting over /nix/store is refused by default."""
        with pytest.raises(ValidationError) as exc_info:
            CacheMount(target='/nix/store').validate()
        assert exc_info.value.reason == 'reserved_cache_target'

    def test_reserved_target_with_trailing_slash_rejected(self):
        with pytest.raises(ValidationError):
            CacheMount(target='/nix/store/').validate()

    def test_reserved_target_allowed_when_requested(self):
        CacheMount(target='/nix/store', source='/host/nix').validate(allow_reserved=True)

    def test_relative_target_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            CacheMount(target='var/cache').validate()
        assert exc_info.value.reason == 'cache_target'

    def test_relative_source_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            CacheMount(target='/var/cache', source='cache').validate()
        assert exc_info.value.reason == 'cache_source'

    def test_empty_target_rejected(self):
        with pytest.raises(ValidationError):
            CacheMount(target='').validate()


class TestSanitizeRepositoryUrl:
    def test_http_becomes_https(self):
        assert sanitize_repository_url('http://github.com/a/b') == 'https://github.com/a/b'

    def test_trailing_slashes_stripped(self):
        assert sanitize_repository_url(' https://github.com/a/b// ') == 'https://github.com/a/b'


class TestInstallationSpec:
    """Tests for InstallationSpec validation and serialization."""

    def _spec(self, **kwargs):
        kwargs.setdefault('name', 'ci')
        kwargs.setdefault('repository', 'https://github.com/acme/widgets')
        return InstallationSpec(**kwargs)

    def test_defaults(self):
        spec = self._spec()
        assert spec.container_mode is ContainerMode.STANDARD
        assert spec.auth_method is AuthMethod.TOKEN
        assert spec.instance_count == 1
        spec.validate()

    def test_string_mode_is_parsed(self):
        spec = self._spec(container_mode='dind')
        assert spec.container_mode is ContainerMode.DIND

    def test_secret_not_in_repr(self):
        spec = self._spec(auth_secret='ghp_supersecret')
        assert 'ghp_supersecret' not in repr(spec)

    @pytest.mark.parametrize('name', ['', 'CI', 'ci_runner', '-ci', 'ci-', 'x' * 46])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError) as exc_info:
            self._spec(name=name).validate()
        assert exc_info.value.reason == 'name'

    def test_missing_repository(self):
        with pytest.raises(ValidationError) as exc_info:
            self._spec(repository='').validate()
        assert exc_info.value.reason == 'repository'

    def test_zero_instances_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            self._spec(instance_count=0).validate()
        assert exc_info.value.reason == 'instance_count'

    def test_negative_min_rejected(self):
        with pytest.raises(ValidationError):
            self._spec(min_replicas=-1).validate()

    def test_max_below_min_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            self._spec(min_replicas=3, max_replicas=2).validate()
        assert exc_info.value.reason == 'replicas'

    def test_zero_min_allowed(self):
        self._spec(min_replicas=0, max_replicas=0).validate()

    def test_reserved_cache_rejected_unless_allowed(self):
        spec = self._spec(cache_mounts=[CacheMount(target='/nix/store')])
        with pytest.raises(ValidationError):
            spec.validate()
        spec.validate(allow_reserved=True)

    def test_dict_round_trip(self):
        spec = self._spec(
            container_mode=ContainerMode.PRIVILEGED_CACHED,
            min_replicas=0,
            max_replicas=3,
            instance_count=2,
            cache_mounts=[CacheMount(target='/var/lib/docker'), CacheMount(target='/cache', source='/host')],
            auth_method=AuthMethod.APP_KEY,
            auth_secret='-----BEGIN KEY-----',
        )
        data = spec.to_dict()
        assert data['container_mode'] == 'cached-privileged-kubernetes'
        assert data['cache_paths'] == [
            {'target': '/var/lib/docker', 'source': ''},
            {'target': '/cache', 'source': '/host'},
        ]
        assert InstallationSpec.from_dict(data) == spec

    def test_from_dict_defaults(self):
        spec = InstallationSpec.from_dict({'name': 'ci', 'repository': 'https://github.com/a/b'})
        assert spec.min_replicas == 1
        assert spec.max_replicas == 5
        assert spec.cache_mounts == []


class TestInstanceSpec:
    def test_delegates_to_installation(self):
        parent = InstallationSpec(name='ci', repository='https://github.com/a/b', container_mode='dind')
        instance = InstanceSpec(name='ci-2', ordinal=2, installation=parent, min_replicas=1, max_replicas=1)
        assert instance.container_mode is ContainerMode.DIND
        assert instance.repository == 'https://github.com/a/b'
        assert instance.parent_name == 'ci'

    def test_single_instance_has_no_parent(self):
        parent = InstallationSpec(name='ci', repository='https://github.com/a/b')
        instance = InstanceSpec(name='ci', ordinal=0, installation=parent, min_replicas=1, max_replicas=5)
        assert instance.parent_name is None


class TestInstanceNames:
    def test_single(self):
        spec = InstallationSpec(name='ci', repository='https://github.com/a/b')
        assert not spec.fans_out
        assert spec.instance_names() == ['ci']

    def test_fan_out(self):
        spec = InstallationSpec(name='ci', repository='https://github.com/a/b', instance_count=3, max_replicas=1)
        assert spec.fans_out
        assert spec.instance_names() == ['ci-1', 'ci-2', 'ci-3']
        assert instance_name('ci', 0) == 'ci'
