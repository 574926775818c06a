"""Convergence outcome tracking.

Outcomes live only for the duration of one reconcile pass; nothing is
persisted between passes.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

# Operations issued for an instance name
APPLY = 'apply'
REPLACE = 'replace'
DELETE = 'delete'


@dataclass
class InstanceOutcome:
    """Per-instance convergence state.

    Attributes:
        name: Instance (application) name
        operation: apply, replace or delete
        status: pending, running, completed or failed
        error: Error message if failed
        error_kind: Exception class name if failed
    """
    name: str
    operation: str
    status: str = 'pending'
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()

    def complete(self) -> None:
        self.status = 'completed'
        self.completed_at = time.time()

    def fail(self, error: Exception) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = str(error)
        self.error_kind = type(error).__name__

    @property
    def succeeded(self) -> bool:
        return self.status == 'completed'

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'operation': self.operation,
            'status': self.status,
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        if self.error is not None:
            d['error'] = self.error
            d['error_kind'] = self.error_kind
        return d


class ConvergeResult:
    """Aggregate outcome of one converge call, in issue order."""

    def __init__(self):
        self._outcomes: dict[str, InstanceOutcome] = {}
        self._lock = threading.Lock()
        self.bootstrap_state: Optional[str] = None
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        # Failures of the pass itself, not tied to one instance
        self.errors: list[str] = []

    def add(self, name: str, operation: str) -> InstanceOutcome:
        outcome = InstanceOutcome(name=name, operation=operation)
        with self._lock:
            self._outcomes[name] = outcome
        return outcome

    def record_error(self, error: Exception) -> None:
        with self._lock:
            self.errors.append(str(error))

    def get(self, name: str) -> InstanceOutcome:
        """Outcome by instance name.

        Raises:
            KeyError: If no operation was issued for the name
        """
        return self._outcomes[name]

    @property
    def outcomes(self) -> list[InstanceOutcome]:
        return list(self._outcomes.values())

    @property
    def failed(self) -> list[InstanceOutcome]:
        return [o for o in self._outcomes.values() if o.status == 'failed']

    @property
    def success(self) -> bool:
        return not self.errors and all(o.succeeded for o in self._outcomes.values())

    def names(self, operation: str) -> list[str]:
        return [o.name for o in self._outcomes.values() if o.operation == operation]

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def summary(self) -> str:
        counts = {APPLY: 0, REPLACE: 0, DELETE: 0}
        for outcome in self._outcomes.values():
            if outcome.succeeded:
                counts[outcome.operation] += 1
        return (
            f"{counts[APPLY]} applied, {counts[REPLACE]} replaced, "
            f"{counts[DELETE]} deleted, {len(self.failed)} failed"
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'success': self.success,
            'summary': self.summary(),
            'instances': [o.to_dict() for o in self._outcomes.values()],
        }
        if self.errors:
            d['errors'] = list(self.errors)
        if self.bootstrap_state is not None:
            d['bootstrap'] = self.bootstrap_state
        if self.started_at and self.completed_at:
            d['duration'] = round(self.completed_at - self.started_at, 3)
        return d
