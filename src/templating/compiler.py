"""Template compiler: InstanceSpec -> Manifest.

Pipeline per instance:
1. select_base(mode)       parsed base template for the container mode
2. build_data_values(...)  data-value tree for the instance
3. apply_overlay(...)      bind placeholders, then the one mode overlay

Compilation does no cluster or network I/O. The only files read are the
packaged base templates, parsed once per process.
"""

import logging
from typing import Optional

from config import DriverConfig
from errors import CompileError, ErrorKind, ValidationError
from installation import ContainerMode, InstanceSpec
from manifest import Manifest
from templating.bases import BaseTemplate, bind, find_unresolved, load_template
from templating.overlay import overlay_for
from templating.values import build_controller_values, build_data_values

logger = logging.getLogger(__name__)

BASE_FILES = {
    ContainerMode.STANDARD: 'kubernetes.yaml',
    ContainerMode.DIND: 'dind.yaml',
    ContainerMode.PRIVILEGED_CACHED: 'privileged.yaml',
}
CONTROLLER_FILE = 'controller.yaml'


def _check_resolved(documents: list[dict], template_name: str) -> None:
    unresolved = find_unresolved(documents)
    if unresolved:
        raise CompileError(
            ErrorKind.OVERLAY,
            f"unresolved placeholders: {', '.join(unresolved)}",
            template_name=template_name,
        )


class TemplateCompiler:
    """Compiles runner instances and the controller into manifests."""

    def __init__(self, config: Optional[DriverConfig] = None):
        self.config = config or DriverConfig()

    def select_base(self, mode) -> BaseTemplate:
        """Base template for a container mode.

        Accepts a ContainerMode or its string value; anything else raises
        ValidationError(reason='unknown_mode').
        """
        mode = ContainerMode.parse(mode)
        filename = BASE_FILES.get(mode)
        if filename is None:
            raise ValidationError(f"no base template for container mode {mode.value}", reason='unknown_mode')
        return load_template(filename)

    def build_data_values(self, instance: InstanceSpec) -> dict:
        return build_data_values(
            instance,
            namespace=self.config.namespace,
            runner_image=self.config.runner_image,
        )

    def apply_overlay(self, base: BaseTemplate, values: dict) -> Manifest:
        """Bind every placeholder of base from values and apply the mode overlay."""
        mode = ContainerMode.parse(values['installation']['containerMode'])
        documents = bind(list(base.documents), values, base.name)
        documents = overlay_for(mode, base.name).apply(documents, values, base.name)
        _check_resolved(documents, base.name)
        return Manifest(documents=documents, source=base.name)

    def compile(self, instance: InstanceSpec) -> Manifest:
        """Compile one instance. Same input always yields byte-identical YAML."""
        base = self.select_base(instance.container_mode)
        instance.installation.validate(allow_reserved=True)
        for mount in instance.cache_mounts:
            mount.validate(allow_reserved=True)
        if instance.cache_mounts and instance.container_mode != ContainerMode.PRIVILEGED_CACHED:
            logger.warning(
                f"[{instance.name}] cache paths are only mounted in "
                f"{ContainerMode.PRIVILEGED_CACHED.value} mode, ignoring {len(instance.cache_mounts)}"
            )

        values = self.build_data_values(instance)
        manifest = self.apply_overlay(base, values)
        logger.debug(f"[{instance.name}] compiled {len(manifest)} documents from {base.name}")
        return manifest

    def controller_manifest(self) -> Manifest:
        """Static manifest for the cluster-wide runner controller."""
        base = load_template(CONTROLLER_FILE)
        values = build_controller_values(self.config.namespace, self.config.controller_image)
        documents = bind(list(base.documents), values, base.name)
        _check_resolved(documents, base.name)
        return Manifest(documents=documents, source=base.name)
