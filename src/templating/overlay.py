"""Container-mode overlays.

Exactly one overlay applies to a compiled runner scale set. Each overlay
works on a private copy of the bound documents and returns the patched
copy, so a failure part way through never leaks a half-patched manifest.
"""

import copy

from errors import CompileError, ErrorKind
from installation import ContainerMode
from manifest import dump_yaml


RUNNER_SET_KIND = 'AutoscalingRunnerSet'
RUNNER_CONTAINER = 'runner'
JOB_CONTAINER = '$job'

WORK_DIR = '/home/runner/_work'
HOOK_EXTENSION_DIR = '/etc/hooks'
RUNNER_GROUP_ID = 123

JOB_CAPABILITIES = [
    'SYS_ADMIN',
    'NET_ADMIN',
    'SYS_PTRACE',
    'SYS_CHROOT',
    'SETFCAP',
    'SETPCAP',
    'NET_RAW',
    'IPC_LOCK',
    'SYS_RESOURCE',
    'MKNOD',
    'AUDIT_WRITE',
    'AUDIT_CONTROL',
]

# (volume name, host path) pairs exposed to privileged job containers
JOB_HOST_MOUNTS = [
    ('sys', '/sys'),
    ('cgroup', '/sys/fs/cgroup'),
    ('proc', '/proc'),
    ('dev', '/dev'),
    ('dev-pts', '/dev/pts'),
    ('shm', '/dev/shm'),
]


def hook_extension_name(instance_name: str) -> str:
    return f'privileged-hook-extension-{instance_name}'


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------

def _overlay_error(message: str, template_name: str) -> CompileError:
    return CompileError(ErrorKind.OVERLAY, message, template_name=template_name)


def _runner_set(documents: list[dict], template_name: str) -> dict:
    for doc in documents:
        if doc.get('kind') == RUNNER_SET_KIND:
            return doc
    raise _overlay_error(f"no {RUNNER_SET_KIND} document to patch", template_name)


def _pod_spec(runner_set: dict, template_name: str) -> dict:
    try:
        pod_spec = runner_set['spec']['template']['spec']
    except (KeyError, TypeError):
        pod_spec = None
    if not isinstance(pod_spec, dict):
        raise _overlay_error(f"{RUNNER_SET_KIND} has no spec.template.spec", template_name)
    return pod_spec


def _container(pod_spec: dict, name: str, template_name: str) -> dict:
    for container in pod_spec.get('containers') or []:
        if container.get('name') == name:
            return container
    raise _overlay_error(f"pod template has no '{name}' container", template_name)


def _set_env(container: dict, name: str, value: str) -> None:
    env = container.get('env')
    if env is None:
        env = container['env'] = []
    for item in env:
        if item.get('name') == name:
            item.pop('valueFrom', None)
            item['value'] = value
            return
    env.append({'name': name, 'value': value})


def _append_named(parent: dict, key: str, item: dict, template_name: str) -> None:
    items = parent.get(key)
    if items is None:
        items = parent[key] = []
    if any(existing.get('name') == item['name'] for existing in items):
        raise _overlay_error(f"duplicate {key} entry '{item['name']}'", template_name)
    items.append(item)


def cache_volume(index: int, source: str) -> dict:
    """Volume for the index-th cache mount: ephemeral unless a source is given."""
    name = f'cache-{index}'
    if source:
        return {'name': name, 'hostPath': {'path': source, 'type': 'DirectoryOrCreate'}}
    return {'name': name, 'emptyDir': {}}


def cache_mount(index: int, target: str) -> dict:
    return {'name': f'cache-{index}', 'mountPath': target}


# ---------------------------------------------------------------------------
# Overlays
# ---------------------------------------------------------------------------

class Overlay:
    """Patch applied to the bound scale-set documents for one container mode."""

    mode: ContainerMode

    def apply(self, documents: list[dict], values: dict, template_name: str = '') -> list[dict]:
        patched = copy.deepcopy(documents)
        runner_set = _runner_set(patched, template_name)
        pod_spec = _pod_spec(runner_set, template_name)
        runner = _container(pod_spec, RUNNER_CONTAINER, template_name)
        self.patch(patched, runner_set, pod_spec, runner, values['installation'], template_name)
        return patched

    def patch(self, documents, runner_set, pod_spec, runner, installation, template_name):
        raise NotImplementedError


class StandardOverlay(Overlay):
    """Jobs run in their own pod, the runner only needs a work volume."""

    mode = ContainerMode.STANDARD

    def patch(self, documents, runner_set, pod_spec, runner, installation, template_name):
        _set_env(runner, 'ACTIONS_RUNNER_CONTAINER_HOOKS', '/home/runner/k8s/index.js')
        _set_env(runner, 'ACTIONS_RUNNER_REQUIRE_JOB_CONTAINER', 'true')
        _append_named(runner, 'volumeMounts', {'name': 'work', 'mountPath': WORK_DIR}, template_name)
        _append_named(pod_spec, 'volumes', {
            'name': 'work',
            'ephemeral': {
                'volumeClaimTemplate': {
                    'spec': {
                        'accessModes': ['ReadWriteOnce'],
                        'storageClassName': 'standard',
                        'resources': {'requests': {'storage': '1Gi'}},
                    },
                },
            },
        }, template_name)


class PrivilegedCachedOverlay(Overlay):
    """Privileged runner whose job pods are extended by a hook template.

    The hook extension ConfigMap carries a pod spec patch that the runner
    container hooks merge into every job pod: host namespaces, the system
    host paths and the configured cache volumes.
    """

    mode = ContainerMode.PRIVILEGED_CACHED

    def patch(self, documents, runner_set, pod_spec, runner, installation, template_name):
        name = installation['name']
        caches = installation['cachePaths']

        pod_spec['securityContext'] = {'fsGroup': RUNNER_GROUP_ID}
        runner['securityContext'] = {'privileged': True}
        _set_env(runner, 'ACTIONS_RUNNER_CONTAINER_HOOKS', '/home/runner/k8s-novolume/index.js')
        _set_env(runner, 'ACTIONS_RUNNER_CONTAINER_HOOK_TEMPLATE', f'{HOOK_EXTENSION_DIR}/content')
        _set_env(runner, 'ACTIONS_RUNNER_REQUIRE_JOB_CONTAINER', 'false')

        _append_named(runner, 'volumeMounts', {
            'name': 'hook-extension',
            'mountPath': HOOK_EXTENSION_DIR,
            'readOnly': True,
        }, template_name)
        _append_named(pod_spec, 'volumes', {
            'name': 'hook-extension',
            'configMap': {'name': hook_extension_name(name), 'defaultMode': 0o755},
        }, template_name)

        for i, cache in enumerate(caches):
            _append_named(runner, 'volumeMounts', cache_mount(i, cache['target']), template_name)
            _append_named(pod_spec, 'volumes', cache_volume(i, cache['source']), template_name)

        config_map = {
            'apiVersion': 'v1',
            'kind': 'ConfigMap',
            'metadata': {
                'name': hook_extension_name(name),
                'namespace': installation['namespace'],
                'labels': {
                    'app.kubernetes.io/name': name,
                    'app.kubernetes.io/component': 'hook-extension',
                    'app.kubernetes.io/part-of': 'gha-rs',
                    'app.kubernetes.io/managed-by': 'deskrun',
                },
            },
            'data': {'content': dump_yaml(self.job_pod_patch(caches))},
        }
        # Must exist before the scale set starts scheduling job pods
        documents.insert(documents.index(runner_set), config_map)

    @staticmethod
    def job_pod_patch(caches: list[dict]) -> dict:
        mounts = []
        volumes = []
        for volume_name, host_path in JOB_HOST_MOUNTS:
            mount = {'name': volume_name, 'mountPath': host_path}
            if volume_name == 'cgroup':
                mount['mountPropagation'] = 'Bidirectional'
            mounts.append(mount)
            volumes.append({'name': volume_name, 'hostPath': {'path': host_path, 'type': 'Directory'}})
        for i, cache in enumerate(caches):
            mounts.append(cache_mount(i, cache['target']))
            volumes.append(cache_volume(i, cache['source']))

        return {
            'spec': {
                'hostPID': True,
                'hostIPC': True,
                'securityContext': {'runAsUser': 0, 'runAsGroup': 0, 'fsGroup': 0},
                'containers': [{
                    'name': JOB_CONTAINER,
                    'securityContext': {
                        'privileged': True,
                        'runAsUser': 0,
                        'runAsGroup': 0,
                        'allowPrivilegeEscalation': True,
                        'capabilities': {'add': list(JOB_CAPABILITIES)},
                    },
                    'volumeMounts': mounts,
                }],
                'volumes': volumes,
            },
        }


class DindOverlay(Overlay):
    """Nested container engine as a privileged sidecar sharing a socket."""

    mode = ContainerMode.DIND

    def patch(self, documents, runner_set, pod_spec, runner, installation, template_name):
        _set_env(runner, 'DOCKER_HOST', 'unix:///var/run/docker.sock')
        _append_named(runner, 'volumeMounts', {'name': 'work', 'mountPath': WORK_DIR}, template_name)
        _append_named(runner, 'volumeMounts', {'name': 'dind-sock', 'mountPath': '/var/run'}, template_name)

        _append_named(pod_spec, 'initContainers', {
            'name': 'init-dind-externals',
            'image': runner['image'],
            'command': ['cp'],
            'args': ['-r', '/home/runner/externals/.', '/home/runner/tmpDir/'],
            'volumeMounts': [{'name': 'dind-externals', 'mountPath': '/home/runner/tmpDir'}],
        }, template_name)
        _append_named(pod_spec, 'containers', {
            'name': 'dind',
            'image': 'docker:dind',
            'args': [
                'dockerd',
                '--host=unix:///var/run/docker.sock',
                '--group=$(DOCKER_GROUP_GID)',
            ],
            'env': [{'name': 'DOCKER_GROUP_GID', 'value': str(RUNNER_GROUP_ID)}],
            'securityContext': {'privileged': True},
            'volumeMounts': [
                {'name': 'work', 'mountPath': WORK_DIR},
                {'name': 'dind-sock', 'mountPath': '/var/run'},
                {'name': 'dind-externals', 'mountPath': '/home/runner/externals'},
            ],
        }, template_name)
        for volume_name in ('work', 'dind-sock', 'dind-externals'):
            _append_named(pod_spec, 'volumes', {'name': volume_name, 'emptyDir': {}}, template_name)


OVERLAYS: dict[ContainerMode, Overlay] = {
    ContainerMode.STANDARD: StandardOverlay(),
    ContainerMode.PRIVILEGED_CACHED: PrivilegedCachedOverlay(),
    ContainerMode.DIND: DindOverlay(),
}


def overlay_for(mode: ContainerMode, template_name: str = '') -> Overlay:
    try:
        return OVERLAYS[mode]
    except KeyError:
        raise _overlay_error(f"no overlay for container mode {mode}", template_name) from None
