"""
Interpreter discovery.

Introspects a Python interpreter candidate by running it in a short-lived
subprocess. Nothing here touches a running kernel, so a probe can be made
before (or without) starting one.
"""

import json
import subprocess
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .config import settings
from .errors import ProbeError
from .models import EnvironmentInfo
from .observability import get_logger
from .paths import resolve_executable, resolve_home_directory

logger = get_logger(__name__)

# Runs inside the probed interpreter, which may be older than ours
PROBE_SCRIPT = """
import json, os, platform, sys
try:
    from importlib import metadata
    packages = sorted(set(
        "%s==%s" % (d.metadata["Name"], d.version)
        for d in metadata.distributions() if d.metadata["Name"]
    ))
except ImportError:
    import pkg_resources
    packages = sorted("%s==%s" % (d.project_name, d.version) for d in pkg_resources.working_set)
print(json.dumps({
    "executable": sys.executable,
    "version": platform.python_version(),
    "cwd": os.getcwd(),
    "argv": sys.argv,
    "packages": packages,
}))
"""

KERNEL_CHECK_SCRIPT = "import ipykernel"


def _run(command: List[str], timeout: float) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise ProbeError(f"{command[0]} did not answer within {timeout}s") from e
    except OSError as e:
        raise ProbeError(f"Cannot run {command[0]}: {e}") from e


def has_jupyter_kernel(executable: str, timeout: Optional[float] = None) -> bool:
    """True when ``executable`` can import ipykernel. Never raises."""
    timeout = timeout or settings.PROBE_TIMEOUT
    try:
        result = subprocess.run(
            [executable, "-c", KERNEL_CHECK_SCRIPT],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug("ipykernel check failed", executable=executable, error=str(e))
        return False
    return result.returncode == 0


def probe(
    candidate: Optional[str] = None,
    timeout: Optional[float] = None,
    resolver: Callable[[str], str] = resolve_home_directory,
) -> EnvironmentInfo:
    """
    Describe the interpreter at ``candidate``.

    Args:
        candidate: Path or command name; empty means the configured interpreter
        timeout: Seconds to wait for each subprocess
        resolver: Expands home-relative paths before lookup

    Returns:
        EnvironmentInfo for the interpreter

    Raises:
        ProbeError: If the candidate is missing, not executable, fails, times
            out or prints something other than the expected JSON
    """
    candidate = candidate or settings.PYTHON_EXECUTABLE
    timeout = timeout or settings.PROBE_TIMEOUT

    executable = resolve_executable(candidate, resolver)
    if executable is None:
        raise ProbeError(f"Python executable not found: {candidate}")

    logger.debug("Probing interpreter", executable=executable)
    result = _run([executable, "-c", PROBE_SCRIPT], timeout)
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise ProbeError(f"{executable} exited with code {result.returncode}: {stderr}")

    lines = [line for line in (result.stdout or "").splitlines() if line.strip()]
    if not lines:
        raise ProbeError(f"{executable} printed nothing")
    try:
        data = json.loads(lines[-1])
    except ValueError as e:
        raise ProbeError(f"Unexpected probe output from {executable}: {lines[-1][:200]}") from e
    if not isinstance(data, dict):
        raise ProbeError(f"Unexpected probe output from {executable}")

    try:
        info = EnvironmentInfo(
            executable=data.get("executable") or executable,
            version=data.get("version", ""),
            cwd=data.get("cwd", ""),
            argv=data.get("argv") or [],
            packages=sorted(data.get("packages") or []),
            has_jupyter_kernel=has_jupyter_kernel(executable, timeout),
        )
    except PydanticValidationError as e:
        raise ProbeError(f"Incomplete probe output from {executable}: {e}") from e

    logger.info(
        "Probed interpreter",
        executable=info.executable,
        version=info.version,
        packages=len(info.packages),
        has_jupyter_kernel=info.has_jupyter_kernel,
    )
    return info
