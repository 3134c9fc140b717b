"""
External command helpers.
"""

import subprocess
import time
from typing import List

from oslo_log import log as logging

from truenas_block.exceptions import CommandError

LOG = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30
UDEV_GRACE_SECONDS = 0.25


def run_command(
    cmd: List[str],
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> subprocess.CompletedProcess:
    """
    Run a command and return the completed process.

    Args:
        cmd: Command and arguments
        timeout: Timeout in seconds

    Returns:
        Completed process

    Raises:
        CommandError: If the command fails, times out or is not installed
    """
    LOG.debug("Running command: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise CommandError(cmd, -1, message=f"Command '{' '.join(cmd)}' timed out after {timeout}s")
    except FileNotFoundError:
        raise CommandError(cmd, 127, message=f"Command not found: {cmd[0]}")

    if result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stderr or result.stdout)

    return result


def try_run(cmd: List[str], timeout: int = DEFAULT_COMMAND_TIMEOUT) -> bool:
    """Run a command, logging instead of raising on failure."""
    try:
        run_command(cmd, timeout=timeout)
        return True
    except CommandError as e:
        LOG.debug("Ignoring failed command: %s", e.message)
        return False


def run_lines(cmd: List[str], timeout: int = DEFAULT_COMMAND_TIMEOUT) -> List[str]:
    """Run a command and return its non-empty stdout lines."""
    result = run_command(cmd, timeout=timeout)
    return [line for line in (result.stdout or "").splitlines() if line.strip()]


def udev_settle(timeout: int = 10, grace: float = UDEV_GRACE_SECONDS) -> None:
    """Wait for udev to process pending events, then pause briefly."""
    try_run(["udevadm", "settle", f"--timeout={timeout}"], timeout=timeout + 5)
    if grace:
        time.sleep(grace)


def udev_trigger() -> None:
    try_run(["udevadm", "trigger", "--subsystem-match=block", "--action=add"])
