"""Common utilities for driving cluster tooling."""

import logging
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    timeout: int = 300,
    input_text: Optional[str] = None,
    env: Optional[dict] = None,
) -> tuple[int, str, str]:
    """Run an external tool and return (returncode, stdout, stderr).

    Tool failures are reported through the return code, never raised:
    a timeout or an executable that cannot be started comes back as
    returncode -1 with the reason in stderr. input_text is written to the
    tool's stdin (kapp and kind read manifests from '-').
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"{cmd[0]} timed out after {timeout}s")
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', f'Cannot run {cmd[0]}: {e}'

    if proc.returncode != 0:
        logger.debug(f"{cmd[0]} exited with {proc.returncode}")
    return proc.returncode, proc.stdout or '', proc.stderr or ''


def first_line(text: str) -> str:
    """Return the first non-empty line of command output, stripped."""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ''
