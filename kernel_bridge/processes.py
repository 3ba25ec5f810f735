"""
Process-tree inspection and forced termination.

The supervisor relies on these helpers to prove a kernel is gone after a kill,
and tests use :func:`list_children` to count spawned kernels.
"""

import os
from typing import List, Optional

import psutil

from .observability import get_logger

logger = get_logger(__name__)


def list_children(pid: Optional[int] = None) -> List[psutil.Process]:
    """List live descendants of ``pid`` (default: this process), zombies excluded."""
    try:
        parent = psutil.Process(pid if pid is not None else os.getpid())
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []

    live = []
    for child in children:
        try:
            if child.status() != psutil.STATUS_ZOMBIE:
                live.append(child)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return live


def is_in_tree(pid: int, root: Optional[int] = None) -> bool:
    """True when ``pid`` is a live descendant of ``root``."""
    return any(child.pid == pid for child in list_children(root))


def force_kill(pid: int, timeout: float = 3.0) -> Optional[int]:
    """
    Terminate a process, escalating to SIGKILL when it ignores SIGTERM.

    Returns:
        The exit code when it could be collected, otherwise None
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return None

    try:
        proc.terminate()
        return proc.wait(timeout=timeout)
    except psutil.TimeoutExpired:
        logger.warning("Process ignored SIGTERM, sending SIGKILL", pid=pid)
        try:
            proc.kill()
            return proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return None
        except psutil.TimeoutExpired:
            logger.error("Process survived SIGKILL", pid=pid)
            return None
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied as e:
        logger.error("Cannot terminate process", pid=pid, error=str(e))
        return None
