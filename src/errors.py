"""Error taxonomy for compilation, reconciliation and bootstrap.

Every error raised by the driver derives from DeskrunError so that callers
can catch the whole family at a single seam. Configuration problems use
config.ConfigError instead.
"""

from enum import Enum
from typing import Optional


class DeskrunError(Exception):
    """Base class for driver errors."""


class ErrorKind(Enum):
    """Stage of the compile pipeline that failed."""
    SYNTAX = 'syntax'
    OVERLAY = 'overlay'
    DATA = 'data'
    VALIDATION = 'validation'


class CompileError(DeskrunError):
    """Failure while turning an instance into a manifest.

    SYNTAX and OVERLAY point at a defect in a packaged template. DATA and
    VALIDATION point at the caller's input.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        template_name: str = '',
        line: int = 0,
        column: int = 0,
        context: str = '',
    ):
        self.kind = kind
        self.message = message
        self.template_name = template_name
        self.line = line
        self.column = column
        self.context = context
        super().__init__(str(self))

    @property
    def is_input_error(self) -> bool:
        return self.kind in (ErrorKind.DATA, ErrorKind.VALIDATION)

    def __str__(self) -> str:
        if self.template_name and self.line:
            return (
                f"{self.kind.value} error in {self.template_name} "
                f"at line {self.line}, column {self.column}: {self.message}"
            )
        if self.template_name:
            return f"{self.kind.value} error in {self.template_name}: {self.message}"
        return f"{self.kind.value} error: {self.message}"

    def verbose(self) -> str:
        """Multi-line diagnostic including the offending template context."""
        lines = [str(self)]
        if self.context:
            lines.append('')
            lines.append('Context:')
            for ctx_line in self.context.splitlines():
                lines.append(f'  {ctx_line}')
        return '\n'.join(lines)


class ValidationError(CompileError):
    """Caller input rejected before compilation."""

    def __init__(self, message: str, reason: str = 'invalid', template_name: str = ''):
        self.reason = reason
        super().__init__(ErrorKind.VALIDATION, message, template_name=template_name)


class ApplyError(DeskrunError):
    """External apply, delete or list operation failed."""

    def __init__(self, operation: str, app_name: str, stderr: str = '', returncode: Optional[int] = None):
        self.operation = operation
        self.app_name = app_name
        self.stderr = stderr.strip()
        self.returncode = returncode
        detail = self.stderr or f'exit code {returncode}'
        super().__init__(f"{operation} {app_name} failed: {detail}")

    @property
    def already_exists(self) -> bool:
        return 'already exists' in self.stderr.lower()


class ClusterNotFoundError(DeskrunError):
    """The hosting cluster does not exist."""

    def __init__(self, cluster_name: str):
        self.cluster_name = cluster_name
        super().__init__(
            f"Cluster '{cluster_name}' does not exist. "
            "Create it with: deskrun cluster create"
        )


class ClusterError(DeskrunError):
    """Cluster provisioner failed to list, create or delete a cluster."""


class BootstrapTimeoutError(DeskrunError, TimeoutError):
    """Controller applied but its schema extension never appeared."""

    def __init__(self, crd_name: str, timeout: float):
        self.crd_name = crd_name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for {crd_name}")


class CancelledError(DeskrunError):
    """Caller aborted the operation.

    When raised from a convergence pass, result holds the outcomes of the
    operations that ran before cancellation was observed.
    """

    def __init__(self, message: str = 'operation cancelled', result=None):
        self.result = result
        super().__init__(message)
