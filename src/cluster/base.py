"""Collaborator interfaces for the hosting cluster.

The reconciler and bootstrapper depend only on these protocols. Concrete
implementations shell out to kapp, kind and kubectl; tests use in-memory
fakes.
"""

from typing import NamedTuple, Protocol, runtime_checkable

ARC_SCHEMA_EXTENSION = 'autoscalingrunnersets.actions.github.com'


class DeployedApp(NamedTuple):
    """Application reported live by the applier."""
    name: str
    kind: str = 'app'


@runtime_checkable
class ManifestApplier(Protocol):
    """Applies, deletes and lists named applications on the cluster.

    Every method raises ApplyError on failure.
    """

    def apply(self, app_name: str, manifest_bytes: bytes) -> None:
        """Create or update an application from a multi-document manifest."""

    def delete(self, app_name: str) -> None:
        """Remove an application and every resource it owns."""

    def list(self) -> list[DeployedApp]:
        """Applications currently deployed, excluding the controller."""


@runtime_checkable
class SchemaProbe(Protocol):
    """Reports whether a schema extension (CRD) is registered."""

    def exists(self, name: str) -> bool:
        """True once the named CRD is served by the API server."""


@runtime_checkable
class ClusterProvisioner(Protocol):
    """Lifecycle of the cluster hosting the runners."""

    def exists(self) -> bool:
        """True if the cluster is present."""

    def create(self) -> None:
        """Create the cluster."""

    def delete(self) -> None:
        """Delete the cluster."""

    def connection_handle(self) -> str:
        """Kubeconfig context used to reach the cluster."""
