"""SchemaProbe backed by kubectl."""

from typing import Optional

from common import first_line, run_command
from config import DriverConfig
from errors import ApplyError


class KubectlProbe:
    """Checks CRD registration with `kubectl get crd`."""

    def __init__(self, config: Optional[DriverConfig] = None):
        self.config = config or DriverConfig()

    def exists(self, name: str) -> bool:
        rc, _, err = run_command(
            [
                self.config.kubectl_bin, 'get', 'crd', name,
                '--context', self.config.kube_context,
                '-o', 'name',
            ],
            timeout=30,
        )
        if rc == 0:
            return True
        if 'NotFound' in err or 'not found' in err:
            return False
        raise ApplyError('get crd', name, first_line(err), returncode=rc)
