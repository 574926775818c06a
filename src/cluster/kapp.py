"""ManifestApplier backed by the kapp CLI.

Each runner instance and the controller are separate kapp applications in
the runner namespace, so deleting an application removes exactly the
resources it created.
"""

import json
import logging
from typing import Optional

from cluster.base import DeployedApp
from common import run_command
from config import DriverConfig
from errors import ApplyError

logger = logging.getLogger(__name__)


class KappApplier:
    """Applies manifests with `kapp deploy`, non-interactively."""

    def __init__(self, config: Optional[DriverConfig] = None):
        self.config = config or DriverConfig()

    def _base_args(self) -> list[str]:
        return [
            '--kubeconfig-context', self.config.kube_context,
            '-n', self.config.namespace,
            '--color=false',
            '--tty=false',
        ]

    def _run(self, args: list[str], input_text: Optional[str] = None) -> tuple[int, str, str]:
        cmd = [self.config.kapp_bin] + args + self._base_args()
        return run_command(cmd, timeout=self.config.command_timeout, input_text=input_text)

    def apply(self, app_name: str, manifest_bytes: bytes) -> None:
        logger.debug(f"kapp deploy {app_name} ({len(manifest_bytes)} bytes)")
        rc, out, err = self._run(
            ['deploy', '-a', app_name, '-f', '-', '-y'],
            input_text=manifest_bytes.decode('utf-8'),
        )
        if rc != 0:
            raise ApplyError('deploy', app_name, err or out, returncode=rc)

    def delete(self, app_name: str) -> None:
        logger.debug(f"kapp delete {app_name}")
        rc, out, err = self._run(['delete', '-a', app_name, '-y'])
        if rc != 0:
            raise ApplyError('delete', app_name, err or out, returncode=rc)

    def inspect(self, app_name: str) -> list[dict]:
        """Resources owned by an application, one row per resource."""
        rc, out, err = self._run(['inspect', '-a', app_name, '--json'])
        if rc != 0:
            raise ApplyError('inspect', app_name, err, returncode=rc)
        return _first_table_rows(out, 'inspect', app_name)

    def list(self) -> list[DeployedApp]:
        """Deployed runner applications, excluding the controller.

        A missing namespace means nothing has been deployed yet.
        """
        rc, out, err = self._run(['list', '--json'])
        if rc != 0:
            if 'not found' in err:
                return []
            raise ApplyError('list', self.config.namespace, err, returncode=rc)

        apps = []
        for row in _first_table_rows(out, 'list', self.config.namespace):
            name = row.get('name', '')
            if name and name != self.config.controller_app:
                apps.append(DeployedApp(name=name))
        return apps


def _first_table_rows(output: str, operation: str, subject: str) -> list[dict]:
    """Rows of the first table in kapp --json output."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ApplyError(operation, subject, f"unparseable kapp output: {e}") from e
    tables = data.get('Tables') or []
    if not tables:
        return []
    return [row for row in tables[0].get('Rows') or [] if isinstance(row, dict)]
