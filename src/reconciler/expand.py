"""Fan-out of installations into concrete instances."""

import logging
from typing import Optional

from config import DriverConfig
from installation import CacheMount, InstallationSpec, InstanceSpec, instance_name

logger = logging.getLogger(__name__)


def instance_cache_mounts(
    mounts: list[CacheMount],
    name: str,
    cache_root: Optional[str] = None,
) -> tuple[CacheMount, ...]:
    """Per-instance cache list.

    With a cache_root, empty sources become host paths under
    {cache_root}/{instance name}/cache-{i}; the instance name carries the
    ordinal so fanned-out instances never share a host directory. Without
    one, empty sources stay ephemeral.
    """
    resolved = []
    for i, mount in enumerate(mounts):
        if not mount.source and cache_root:
            mount = CacheMount(target=mount.target, source=f"{cache_root.rstrip('/')}/{name}/cache-{i}")
        resolved.append(mount)
    return tuple(resolved)


def expand(spec: InstallationSpec, config: Optional[DriverConfig] = None) -> list[InstanceSpec]:
    """Expand an installation into the instances that realize it.

    instance_count <= 1 yields one instance named exactly spec.name with the
    installation's replica bounds. instance_count = K > 1 yields
    {name}-1 .. {name}-K, each pinned to exactly one runner.
    """
    config = config or DriverConfig()

    if not spec.fans_out:
        return [InstanceSpec(
            name=spec.name,
            ordinal=0,
            installation=spec,
            min_replicas=spec.min_replicas,
            max_replicas=spec.max_replicas,
            cache_mounts=instance_cache_mounts(spec.cache_mounts, spec.name, config.cache_root),
        )]

    if (spec.min_replicas, spec.max_replicas) != (1, 1):
        logger.warning(
            f"[{spec.name}] {spec.instance_count} instances requested with "
            f"min/max runners {spec.min_replicas}/{spec.max_replicas}; "
            f"each instance runs exactly 1 runner"
        )

    instances = []
    for ordinal in range(1, spec.instance_count + 1):
        name = instance_name(spec.name, ordinal)
        instances.append(InstanceSpec(
            name=name,
            ordinal=ordinal,
            installation=spec,
            min_replicas=1,
            max_replicas=1,
            cache_mounts=instance_cache_mounts(spec.cache_mounts, name, config.cache_root),
        ))
    return instances
