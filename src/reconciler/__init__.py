"""Reconciliation engine.

Expands configured installations into runner instances, bootstraps the
cluster-wide controller and converges deployed applications with the
freshly compiled desired set.
"""

from reconciler.bootstrap import BootstrapState, ControllerBootstrapper
from reconciler.executor import Reconciler
from reconciler.expand import expand, instance_name
from reconciler.state import ConvergeResult, InstanceOutcome

__all__ = [
    'BootstrapState',
    'ControllerBootstrapper',
    'ConvergeResult',
    'InstanceOutcome',
    'Reconciler',
    'expand',
    'instance_name',
]
