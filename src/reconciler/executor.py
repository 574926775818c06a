"""Convergence of deployed runner applications with configured installations.

For every desired instance the manifest is compiled fresh; an instance that
is already deployed is deleted and re-applied (never patched in place), a
new one is applied, and every deployed application without a desired
counterpart is deleted. Failures are recorded per instance and never stop
the rest of the batch.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional

from cluster.base import ClusterProvisioner, ManifestApplier
from config import DriverConfig
from errors import ApplyError, CancelledError, ClusterNotFoundError, CompileError, DeskrunError
from installation import InstallationSpec, InstanceSpec
from reconciler.bootstrap import ControllerBootstrapper
from reconciler.expand import expand
from reconciler.state import APPLY, DELETE, REPLACE, ConvergeResult, InstanceOutcome
from templating import TemplateCompiler

logger = logging.getLogger(__name__)


@dataclass
class _Task:
    """Operations for one instance name, always executed in order."""
    name: str
    operation: str
    instance: Optional[InstanceSpec] = None


@dataclass
class Reconciler:
    """Converges the cluster's runner applications to the desired set.

    Attributes:
        applier: Applies, deletes and lists applications
        provisioner: Reports whether the hosting cluster exists
        bootstrapper: Ensures the controller before any instance work
        config: Driver settings; max_workers > 1 converges distinct
            instance names concurrently
    """
    applier: ManifestApplier
    provisioner: Optional[ClusterProvisioner] = None
    bootstrapper: Optional[ControllerBootstrapper] = None
    config: DriverConfig = field(default_factory=DriverConfig)
    compiler: TemplateCompiler = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.compiler is None:
            self.compiler = TemplateCompiler(self.config)

    # -----------------------------------------------------------------------
    # Planning
    # -----------------------------------------------------------------------

    def expand_all(self, specs: Iterable[InstallationSpec]) -> tuple[list[InstanceSpec], dict[str, DeskrunError]]:
        """Expand installations, collecting invalid ones instead of raising."""
        instances: list[InstanceSpec] = []
        invalid: dict[str, DeskrunError] = {}
        for spec in specs:
            try:
                spec.validate(allow_reserved=True)
                instances.extend(expand(spec, self.config))
            except CompileError as e:
                logger.error(f"[{spec.name}] invalid installation: {e}")
                invalid[spec.name] = e
        return instances, invalid

    def plan(self, desired: list[InstanceSpec], deployed_names: Iterable[str]) -> list[_Task]:
        deployed = list(dict.fromkeys(deployed_names))
        deployed_set = set(deployed)
        tasks = []
        desired_names = set()
        for instance in desired:
            if instance.name in desired_names:
                logger.warning(f"[{instance.name}] declared more than once, keeping the first")
                continue
            desired_names.add(instance.name)
            operation = REPLACE if instance.name in deployed_set else APPLY
            tasks.append(_Task(name=instance.name, operation=operation, instance=instance))
        for name in deployed:
            if name not in desired_names:
                tasks.append(_Task(name=name, operation=DELETE))
        return tasks

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    def _execute(self, task: _Task, outcome: InstanceOutcome, cancel: threading.Event) -> None:
        if cancel.is_set():
            return
        outcome.start()
        try:
            if task.operation == DELETE:
                logger.info(f"[{task.name}] Removing stale runner...")
                self.applier.delete(task.name)
            else:
                manifest = self.compiler.compile(task.instance)
                if task.operation == REPLACE:
                    logger.info(f"[{task.name}] Replacing runner...")
                    self.applier.delete(task.name)
                else:
                    logger.info(f"[{task.name}] Installing runner...")
                self.applier.apply(task.name, manifest.to_bytes())
        except DeskrunError as e:
            outcome.fail(e)
            logger.error(f"[{task.name}] {task.operation} failed: {e}")
            return
        outcome.complete()
        logger.info(f"[{task.name}] {task.operation} completed")

    def converge(
        self,
        desired_specs: list[InstanceSpec],
        deployed_names: Iterable[str],
        cancel: Optional[threading.Event] = None,
    ) -> ConvergeResult:
        """Issue replace, apply and delete operations; never raises for one instance.

        Setting cancel stops new work from starting; operations already
        running finish, then CancelledError is raised carrying the partial
        result (instances never started stay pending).
        """
        cancel = cancel if cancel is not None else threading.Event()
        result = ConvergeResult()
        result.start()
        tasks = self.plan(desired_specs, deployed_names)
        work = [(task, result.add(task.name, task.operation)) for task in tasks]

        if self.config.max_workers > 1 and len(work) > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix='converge') as pool:
                futures = [pool.submit(self._execute, task, outcome, cancel) for task, outcome in work]
                for future in futures:
                    future.result()
        else:
            for task, outcome in work:
                self._execute(task, outcome, cancel)

        result.finish()
        if cancel.is_set():
            raise CancelledError("reconcile cancelled", result=result)
        logger.info(f"Converge finished: {result.summary()}")
        return result

    def reconcile(
        self,
        specs: Iterable[InstallationSpec],
        cancel: Optional[threading.Event] = None,
        unreadable: Optional[dict[str, Exception]] = None,
    ) -> ConvergeResult:
        """Full pass: cluster check, controller bootstrap, fresh list, converge.

        Raises ClusterNotFoundError before any instance work when the cluster
        is absent. Bootstrap timeout and cancellation propagate.

        Installations that fail validation, and stored entries that could
        not be parsed at all (unreadable, keyed by name), are reported as
        failed outcomes; their deployed applications are left in place. A
        failure to list deployed applications is recorded on the result,
        which then never reports success.
        """
        cancel = cancel if cancel is not None else threading.Event()
        if self.provisioner is not None and not self.provisioner.exists():
            raise ClusterNotFoundError(self.config.cluster_name)

        bootstrap_state = None
        if self.bootstrapper is not None:
            bootstrap_state = self.bootstrapper.ensure(cancel)
        if cancel.is_set():
            raise CancelledError("reconcile cancelled")

        desired, invalid = self.expand_all(specs)
        failed: dict[str, Exception] = {**invalid, **(unreadable or {})}

        list_error = None
        try:
            deployed = [app.name for app in self.applier.list()]
        except ApplyError as e:
            logger.error(f"Could not list deployed runners, stale runners will not be removed: {e}")
            list_error = e
            deployed = []

        kept = [name for name in deployed if _owned_by(name, failed)]
        if kept:
            logger.warning(f"Keeping deployed runners of invalid installations: {', '.join(kept)}")
        deployed = [name for name in deployed if name not in kept]
        logger.info(f"Desired instances: {len(desired)}, deployed: {len(deployed)}")

        result = self.converge(desired, deployed, cancel)
        if list_error is not None:
            result.record_error(list_error)
        for name, error in failed.items():
            result.add(name, APPLY).fail(error)
        if bootstrap_state is not None:
            result.bootstrap_state = bootstrap_state.value
        return result


def _owned_by(app_name: str, installations: Iterable[str]) -> bool:
    """True for an installation's own name or one of its '{name}-N' instances."""
    for owner in installations:
        if app_name == owner:
            return True
        if app_name.startswith(f'{owner}-') and app_name[len(owner) + 1:].isdigit():
            return True
    return False
