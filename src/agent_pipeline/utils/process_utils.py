"""Process management utilities for killing spawned agent processes."""

import asyncio
import logging
import os
import signal

logger = logging.getLogger(__name__)


def kill_process_tree(pid: int, sig: int = signal.SIGKILL) -> None:
    """Send signal to the process group, falling back to the single process.

    Agent commands are spawned with start_new_session=True so they lead their
    own group and killpg reaches any tools they started.
    """
    try:
        pgid = os.getpgid(pid)
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass


def force_kill(process: asyncio.subprocess.Process) -> None:
    """Kill a running process and its group. No-op once it has exited."""
    if process.returncode is not None:
        return
    logger.debug(f"Killing process group of pid {process.pid}")
    kill_process_tree(process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        pass
