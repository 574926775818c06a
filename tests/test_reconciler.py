"""Tests for Reconciler - convergence, failure isolation and cancellation."""

import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from config import ConfigError, DriverConfig
from conftest import FakeApplier, FakeProbe, FakeProvisioner
from errors import CancelledError, ClusterNotFoundError, CompileError, ErrorKind
from installation import CacheMount, ContainerMode, InstallationSpec
from manifest import Manifest
from reconciler import ControllerBootstrapper, Reconciler, expand
from reconciler.bootstrap import BootstrapState
from reconciler.state import APPLY, DELETE, REPLACE


def _spec(name, **kwargs):
    kwargs.setdefault('repository', 'https://github.com/acme/widgets')
    return InstallationSpec(name=name, **kwargs)


def _instances(*names):
    return [i for name in names for i in expand(_spec(name))]


class TestPlan:
    """Tests for operation planning."""

    def test_replace_apply_delete(self, applier, config):
        reconciler = Reconciler(applier=applier, config=config)
        tasks = reconciler.plan(_instances('a', 'b'), ['b', 'c'])
        assert [(t.name, t.operation) for t in tasks] == [('a', APPLY), ('b', REPLACE), ('c', DELETE)]

    def test_duplicate_desired_names_kept_once(self, applier, config, caplog):
        reconciler = Reconciler(applier=applier, config=config)
        tasks = reconciler.plan(_instances('a', 'a'), [])
        assert [t.name for t in tasks] == ['a']
        assert 'declared more than once' in caplog.text

    def test_duplicate_deployed_names_deleted_once(self, applier, config):
        reconciler = Reconciler(applier=applier, config=config)
        tasks = reconciler.plan([], ['c', 'c'])
        assert [(t.name, t.operation) for t in tasks] == [('c', DELETE)]


class TestConverge:
    """Tests for converge() against an in-memory applier."""

    def test_replace_and_delete_stale(self, config):
        """Desired A,B with deployed A,B,C: replace A and B, delete C once."""
        applier = FakeApplier(deployed=['a', 'b', 'c'])
        result = Reconciler(applier=applier, config=config).converge(_instances('a', 'b'), ['a', 'b', 'c'])

        assert applier.calls == [
            ('delete', 'a'), ('apply', 'a'),
            ('delete', 'b'), ('apply', 'b'),
            ('delete', 'c'),
        ]
        assert result.success
        assert result.names(REPLACE) == ['a', 'b']
        assert result.names(DELETE) == ['c']
        assert sorted(applier.deployed) == ['a', 'b']

    def test_new_instances_are_applied(self, applier, config):
        result = Reconciler(applier=applier, config=config).converge(_instances('a'), [])
        assert applier.calls == [('apply', 'a')]
        assert result.get('a').operation == APPLY
        assert result.summary() == '1 applied, 0 replaced, 0 deleted, 0 failed'

    def test_applied_bytes_are_compiled_manifest(self, applier, config):
        Reconciler(applier=applier, config=config).converge(_instances('a'), [])
        manifest = Manifest.from_yaml(applier.manifests['a'].decode('utf-8'))
        assert manifest.find('AutoscalingRunnerSet', 'a') is not None

    def test_idempotent_full_replace(self, config):
        """Running twice with unchanged input replaces everything both times."""
        applier = FakeApplier()
        reconciler = Reconciler(applier=applier, config=config)
        reconciler.converge(_instances('a'), [])
        applier.calls.clear()
        reconciler.converge(_instances('a'), ['a'])
        assert applier.calls == [('delete', 'a'), ('apply', 'a')]

    def test_failure_is_isolated(self, config):
        """One failing instance never stops the rest of the batch."""
        applier = FakeApplier(deployed=['c'])
        applier.fail('apply', 'a', 'admission webhook denied')
        result = Reconciler(applier=applier, config=config).converge(_instances('a', 'b'), ['c'])

        assert not result.success
        [failed] = result.failed
        assert failed.name == 'a'
        assert 'admission webhook denied' in failed.error
        assert failed.error_kind == 'ApplyError'
        assert result.get('b').succeeded
        assert result.get('c').succeeded

    def test_compile_failure_skips_delete(self, config):
        """A replace whose compile fails leaves the deployed app in place."""
        applier = FakeApplier(deployed=['a'])
        reconciler = Reconciler(applier=applier, config=config)
        reconciler.compiler = MagicMock()
        reconciler.compiler.compile.side_effect = CompileError(ErrorKind.DATA, 'bad value')
        result = reconciler.converge(_instances('a'), ['a'])

        assert applier.calls == []
        assert result.get('a').error_kind == 'CompileError'
        assert applier.deployed == ['a']

    def test_delete_failure_recorded(self, config):
        applier = FakeApplier(deployed=['old'])
        applier.fail('delete', 'old')
        result = Reconciler(applier=applier, config=config).converge([], ['old'])
        assert result.get('old').status == 'failed'

    def test_fan_out_instances_each_deployed(self, applier, config):
        spec = _spec('ci', instance_count=3, max_replicas=1)
        result = Reconciler(applier=applier, config=config).converge(expand(spec), [])
        assert applier.ops('apply') == ['ci-1', 'ci-2', 'ci-3']
        assert result.success

    def test_cancel_before_start_leaves_pending(self, applier, config):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledError) as exc_info:
            Reconciler(applier=applier, config=config).converge(_instances('a', 'b'), [], cancel)
        assert applier.calls == []
        result = exc_info.value.result
        assert [o.status for o in result.outcomes] == ['pending', 'pending']

    def test_cancel_mid_batch(self, config):
        """Operations already started finish; later ones never start."""
        cancel = threading.Event()
        applier = FakeApplier()
        original_apply = applier.apply

        def apply_then_cancel(name, data):
            original_apply(name, data)
            cancel.set()

        applier.apply = apply_then_cancel
        with pytest.raises(CancelledError) as exc_info:
            Reconciler(applier=applier, config=config).converge(_instances('a', 'b'), [], cancel)
        result = exc_info.value.result
        assert result.get('a').succeeded
        assert result.get('b').status == 'pending'
        assert applier.deployed == ['a']

    def test_parallel_converge(self):
        config = DriverConfig(max_workers=4)
        applier = FakeApplier(deployed=['a', 'b', 'x', 'y'])
        result = Reconciler(applier=applier, config=config).converge(
            _instances('a', 'b', 'c', 'd'), ['a', 'b', 'x', 'y'])

        assert result.success
        assert sorted(applier.deployed) == ['a', 'b', 'c', 'd']
        # one name's operations stay ordered even when names run concurrently
        for name in ('a', 'b'):
            ops = [op for op, n in applier.calls if n == name]
            assert ops == ['delete', 'apply']
        assert [o.name for o in result.outcomes] == ['a', 'b', 'c', 'd', 'x', 'y']

    def test_result_to_dict(self, applier, config):
        result = Reconciler(applier=applier, config=config).converge(_instances('a'), [])
        data = result.to_dict()
        assert data['success'] is True
        assert data['instances'][0]['name'] == 'a'
        assert data['instances'][0]['status'] == 'completed'
        assert 'duration' in data


class TestReconcile:
    """Tests for the full reconcile pass."""

    def _reconciler(self, applier, config, cluster=True, schema=(True,)):
        return Reconciler(
            applier=applier,
            provisioner=FakeProvisioner(present=cluster),
            bootstrapper=ControllerBootstrapper(applier, FakeProbe(schema), config),
            config=config,
        )

    def test_missing_cluster_is_fatal(self, applier, config):
        reconciler = self._reconciler(applier, config, cluster=False)
        with pytest.raises(ClusterNotFoundError, match='deskrun cluster create'):
            reconciler.reconcile([_spec('a')])
        assert applier.calls == []

    def test_full_pass(self, config):
        applier = FakeApplier(deployed=['arc-controller', 'a', 'stale'])
        result = self._reconciler(applier, config).reconcile([_spec('a'), _spec('b')])

        assert applier.calls == [
            ('list', ''),
            ('delete', 'a'), ('apply', 'a'),
            ('apply', 'b'),
            ('delete', 'stale'),
        ]
        assert result.success
        assert result.bootstrap_state == BootstrapState.READY.value

    def test_bootstrap_installs_controller_first(self, config):
        applier = FakeApplier()
        result = self._reconciler(applier, config, schema=(False, True)).reconcile([_spec('a')])
        assert applier.calls[0] == ('apply', 'arc-controller')
        assert ('apply', 'a') in applier.calls
        assert result.success

    def test_deployed_set_is_requeried_each_pass(self, config):
        applier = FakeApplier()
        reconciler = self._reconciler(applier, config)
        reconciler.reconcile([_spec('a')])
        reconciler.reconcile([_spec('a')])
        assert applier.ops('list') == ['', '']
        assert applier.calls[-2:] == [('delete', 'a'), ('apply', 'a')]

    def test_invalid_installation_reported_and_protected(self, config):
        """An invalid entry fails in the result; its deployed apps are kept."""
        applier = FakeApplier(deployed=['bad-1', 'bad-2', 'good'])
        bad = _spec('bad', instance_count=2, max_replicas=1, cache_mounts=[CacheMount(target='relative')])
        result = self._reconciler(applier, config).reconcile([bad, _spec('good')])

        assert applier.ops('delete') == ['good']
        assert 'bad-1' in applier.deployed
        assert result.get('bad').status == 'failed'
        assert result.get('good').succeeded
        assert not result.success

    def test_list_failure_fails_the_pass(self, config, caplog):
        """Convergence still runs but the pass never reports success."""
        applier = FakeApplier(deployed=['a', 'stale'])
        applier.fail('list', '', 'Unable to connect to the server')
        result = self._reconciler(applier, config).reconcile([_spec('a')])

        assert applier.ops('apply') == ['a']
        assert result.get('a').succeeded
        assert not result.success
        assert 'Unable to connect to the server' in result.errors[0]
        assert result.to_dict()['errors'] == result.errors
        assert 'Could not list deployed runners' in caplog.text

    def test_unreadable_entries_reported_and_protected(self, config):
        """Entries the store could not parse fail alone; their apps are kept."""
        applier = FakeApplier(deployed=['good', 'bad', 'bad-2', 'badger'])
        unreadable = {'bad': ConfigError("Installation 'bad' is invalid: invalid container mode: privileged")}
        result = self._reconciler(applier, config).reconcile([_spec('good')], unreadable=unreadable)

        assert applier.ops('delete') == ['good', 'badger']
        assert applier.ops('apply') == ['good']
        assert result.get('good').succeeded
        assert result.get('bad').status == 'failed'
        assert result.get('bad').error_kind == 'ConfigError'
        assert not result.success

    def test_cancel_before_instances(self, applier, config):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledError):
            self._reconciler(applier, config).reconcile([_spec('a')], cancel)
        assert applier.ops('apply') == []

    def test_privileged_mode_end_to_end(self, config, ci_spec):
        applier = FakeApplier()
        result = self._reconciler(applier, config).reconcile([ci_spec])
        assert result.success
        text = applier.manifests['ci'].decode('utf-8')
        assert 'privileged-hook-extension-ci' in text
        assert ci_spec.container_mode is ContainerMode.PRIVILEGED_CACHED
