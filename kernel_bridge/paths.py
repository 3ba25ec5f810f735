"""Path helpers shared by the environment probe and preference validators."""

import os
import shutil
from pathlib import Path
from typing import Optional


def resolve_home_directory(value: str) -> str:
    """Expand a leading ``~`` or ``%HOME%`` to the user's home directory."""
    if not value:
        return value
    home = str(Path.home())
    if value.startswith("~"):
        return home + value[1:]
    if value.startswith("%HOME%"):
        return home + value[len("%HOME%"):]
    return value


def resolve_executable(candidate: str, resolver=resolve_home_directory) -> Optional[str]:
    """
    Resolve an interpreter candidate to an executable path.

    Home-relative paths are expanded first. A bare command name (no path
    separator) is looked up on PATH.

    Returns:
        Absolute path of an existing executable file, or None
    """
    expanded = resolver(candidate)
    if os.sep not in expanded and (os.altsep is None or os.altsep not in expanded):
        found = shutil.which(expanded)
        if found:
            return os.path.abspath(found)
    path = Path(expanded)
    if path.is_file() and os.access(str(path), os.X_OK):
        return str(path.absolute())
    return None
