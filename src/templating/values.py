"""Data-value tree construction.

The data-value tree is the only input the base templates bind from. It is
built fresh for every instance and never contains None where a template
expects a collection (cachePaths is always a list).
"""

import base64
from typing import Optional

from config import DEFAULT_CONTROLLER_IMAGE, DEFAULT_NAMESPACE, DEFAULT_RUNNER_IMAGE
from errors import ValidationError
from installation import AuthMethod, InstanceSpec

CONTROLLER_SERVICE_ACCOUNT = 'arc-gha-rs-controller'


def _b64(value: str) -> str:
    return base64.b64encode(value.encode('utf-8')).decode('ascii')


def encode_secret(auth_method: AuthMethod, secret: str) -> dict:
    """Secret payload keyed the way the runner listener reads it."""
    if auth_method == AuthMethod.TOKEN:
        return {'github_token': _b64(secret)}
    return {
        'github_app_id': _b64(''),
        'github_app_installation_id': _b64(''),
        'github_app_private_key': _b64(secret),
    }


def build_data_values(
    instance: InstanceSpec,
    namespace: str = DEFAULT_NAMESPACE,
    runner_image: str = DEFAULT_RUNNER_IMAGE,
) -> dict:
    """Build the data-value tree for one instance.

    Raises ValidationError when the instance has no name or repository.
    """
    if not instance.name:
        raise ValidationError("instance name is required", reason='name')
    if not instance.repository:
        raise ValidationError(f"repository URL is required for '{instance.name}'", reason='repository')

    return {
        'installation': {
            'name': instance.name,
            'repository': instance.repository,
            'namespace': namespace,
            'runnerImage': runner_image,
            'controllerServiceAccount': CONTROLLER_SERVICE_ACCOUNT,
            'authMethod': instance.auth_method.value,
            'secretData': encode_secret(instance.auth_method, instance.auth_secret),
            'containerMode': instance.container_mode.value,
            'minRunners': instance.min_replicas,
            'maxRunners': instance.max_replicas,
            'instanceNum': instance.ordinal,
            'cachePaths': [
                {'source': mount.source, 'target': mount.target}
                for mount in instance.cache_mounts
            ],
        },
    }


def build_controller_values(namespace: str = DEFAULT_NAMESPACE, image: Optional[str] = None) -> dict:
    return {
        'controller': {
            'namespace': namespace,
            'image': image or DEFAULT_CONTROLLER_IMAGE,
            'serviceAccount': CONTROLLER_SERVICE_ACCOUNT,
        },
    }
