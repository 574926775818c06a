"""ClusterProvisioner backed by the kind CLI.

The cluster is a single control-plane node. Host paths useful to runners
(the Nix store and daemon socket, the Docker socket, the deskrun cache
directory) are mounted into the node when they exist on the host.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from common import first_line, run_command
from config import DriverConfig
from errors import ClusterError

logger = logging.getLogger(__name__)

NIX_DAEMON_SOCKETS = (
    '/nix/var/nix/daemon-socket/socket',
    '/var/run/nix/daemon-socket/socket',
)
DOCKER_SOCKET = '/var/run/docker.sock'
CREATE_TIMEOUT = 600


@dataclass(frozen=True)
class NodeMount:
    """Host path mounted into the kind node container."""
    host_path: str
    container_path: str
    readonly: bool = False

    def to_dict(self) -> dict:
        d = {'hostPath': self.host_path, 'containerPath': self.container_path}
        if self.readonly:
            d['readOnly'] = True
        return d


def detect_host_mounts(cache_dir: Optional[Path] = None) -> list[NodeMount]:
    """Host paths worth exposing to the cluster node."""
    mounts = []
    if os.path.isdir('/nix/store'):
        mounts.append(NodeMount('/nix/store', '/nix/store', readonly=True))
    for socket in NIX_DAEMON_SOCKETS:
        if os.path.exists(socket):
            mounts.append(NodeMount(os.path.dirname(socket), '/nix/var/nix/daemon-socket'))
            break
    if os.path.exists(DOCKER_SOCKET):
        mounts.append(NodeMount(DOCKER_SOCKET, DOCKER_SOCKET))
    if cache_dir is not None:
        # Same path inside the node so generated hostPath volumes resolve
        mounts.append(NodeMount(str(cache_dir), str(cache_dir)))
    return mounts


class KindProvisioner:
    """Creates, deletes and locates the kind cluster."""

    def __init__(self, config: Optional[DriverConfig] = None, mounts: Optional[list[NodeMount]] = None):
        self.config = config or DriverConfig()
        self.mounts = mounts if mounts is not None else []

    @property
    def name(self) -> str:
        return self.config.cluster_name

    def _clusters(self) -> list[str]:
        rc, out, err = run_command([self.config.kind_bin, 'get', 'clusters'], timeout=60)
        if rc != 0:
            raise ClusterError(f"Failed to list kind clusters: {first_line(err) or rc}")
        return [line.strip() for line in out.splitlines() if line.strip()]

    def exists(self) -> bool:
        return self.name in self._clusters()

    def cluster_config(self) -> dict:
        """kind Cluster configuration with one control-plane node."""
        node: dict = {'role': 'control-plane'}
        if self.mounts:
            node['extraMounts'] = [m.to_dict() for m in self.mounts]
        return {
            'kind': 'Cluster',
            'apiVersion': 'kind.x-k8s.io/v1alpha4',
            'name': self.name,
            'nodes': [node],
        }

    def create(self) -> None:
        if self.exists():
            raise ClusterError(f"Cluster {self.name} already exists")
        logger.info(f"Creating kind cluster '{self.name}'...")
        rc, _, err = run_command(
            [self.config.kind_bin, 'create', 'cluster', '--name', self.name, '--config', '-'],
            timeout=CREATE_TIMEOUT,
            input_text=yaml.safe_dump(self.cluster_config(), sort_keys=False),
        )
        if rc != 0:
            raise ClusterError(f"Failed to create cluster {self.name}: {err.strip()}")
        logger.info(f"Cluster '{self.name}' created")

    def delete(self) -> None:
        if not self.exists():
            raise ClusterError(f"Cluster {self.name} does not exist")
        logger.info(f"Deleting kind cluster '{self.name}'...")
        rc, _, err = run_command([self.config.kind_bin, 'delete', 'cluster', '--name', self.name], timeout=300)
        if rc != 0:
            raise ClusterError(f"Failed to delete cluster {self.name}: {err.strip()}")

    def connection_handle(self) -> str:
        return self.config.kube_context
