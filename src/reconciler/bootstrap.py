"""Controller bootstrap.

The runner controller and its CRDs are cluster-wide singletons. Before any
runner instance is applied the bootstrapper makes sure the controller is
installed and the AutoscalingRunnerSet schema extension is served:

    ABSENT -> INSTALLING -> WAITING_FOR_READY -> READY
    ALREADY_PRESENT -> READY                     (schema already served)

Two bootstrappers racing each other are reconciled through the applier's
"already exists" error rather than a lock: the loser treats it as success
and waits for the schema like the winner.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from cluster.base import ARC_SCHEMA_EXTENSION, ManifestApplier, SchemaProbe
from config import DriverConfig
from errors import ApplyError, BootstrapTimeoutError, CancelledError
from manifest import Manifest
from templating import TemplateCompiler

logger = logging.getLogger(__name__)


class BootstrapState(Enum):
    ABSENT = 'absent'
    INSTALLING = 'installing'
    WAITING_FOR_READY = 'waiting_for_ready'
    ALREADY_PRESENT = 'already_present'
    READY = 'ready'


class ControllerBootstrapper:
    """Ensures the runner controller is installed and its schema is served."""

    def __init__(
        self,
        applier: ManifestApplier,
        probe: SchemaProbe,
        config: Optional[DriverConfig] = None,
        controller_manifest: Optional[Manifest] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.applier = applier
        self.probe = probe
        self.config = config or DriverConfig()
        self._manifest = controller_manifest
        self.clock = clock
        self.state = BootstrapState.ABSENT
        self.history: list[BootstrapState] = []

    @property
    def manifest(self) -> Manifest:
        if self._manifest is None:
            self._manifest = TemplateCompiler(self.config).controller_manifest()
        return self._manifest

    def _enter(self, state: BootstrapState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"Controller bootstrap: {state.value}")

    @staticmethod
    def _check_cancel(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise CancelledError("controller bootstrap cancelled")

    def ensure(self, cancel: Optional[threading.Event] = None) -> BootstrapState:
        """Block until the controller is ready.

        Returns BootstrapState.READY. Raises BootstrapTimeoutError when the
        schema never appears, ApplyError when the controller apply itself
        fails and CancelledError as soon as cancel is set.
        """
        cancel = cancel or threading.Event()
        self.history = []
        self._check_cancel(cancel)

        if self.probe.exists(ARC_SCHEMA_EXTENSION):
            self._enter(BootstrapState.ALREADY_PRESENT)
            self._enter(BootstrapState.READY)
            return self.state

        self._enter(BootstrapState.ABSENT)
        self._check_cancel(cancel)
        self._enter(BootstrapState.INSTALLING)
        logger.info("Installing GitHub Actions Runner Controller...")
        try:
            self.applier.apply(self.config.controller_app, self.manifest.to_bytes())
        except ApplyError as e:
            if not e.already_exists:
                raise
            logger.info("Controller already installed")
            self._enter(BootstrapState.ALREADY_PRESENT)

        self._enter(BootstrapState.WAITING_FOR_READY)
        self._wait_for_schema(cancel)
        self._enter(BootstrapState.READY)
        logger.info("Runner controller is ready")
        return self.state

    def _wait_for_schema(self, cancel: threading.Event) -> None:
        timeout = self.config.bootstrap_timeout
        interval = self.config.bootstrap_poll_interval
        logger.info(f"Waiting for {ARC_SCHEMA_EXTENSION} (timeout {timeout:g}s)...")
        deadline = self.clock() + timeout

        while True:
            self._check_cancel(cancel)
            try:
                if self.probe.exists(ARC_SCHEMA_EXTENSION):
                    return
            except ApplyError as e:
                # API server can be briefly unavailable right after an apply
                logger.debug(f"Schema probe failed, retrying: {e}")

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise BootstrapTimeoutError(ARC_SCHEMA_EXTENSION, timeout)
            if cancel.wait(min(interval, remaining)):
                raise CancelledError("controller bootstrap cancelled")
