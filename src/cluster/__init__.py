"""Adapters for the cluster hosting the runners (kapp, kind, kubectl)."""

from cluster.base import (
    ARC_SCHEMA_EXTENSION,
    ClusterProvisioner,
    DeployedApp,
    ManifestApplier,
    SchemaProbe,
)
from cluster.kapp import KappApplier
from cluster.kind import KindProvisioner, detect_host_mounts
from cluster.kubectl import KubectlProbe
from errors import ClusterError

__all__ = [
    'ARC_SCHEMA_EXTENSION',
    'ClusterError',
    'ClusterProvisioner',
    'DeployedApp',
    'KappApplier',
    'KindProvisioner',
    'KubectlProbe',
    'ManifestApplier',
    'SchemaProbe',
    'detect_host_mounts',
]
