import sys
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BridgeSettings(BaseSettings):
    """Kernel client configuration read from KERNEL_BRIDGE_* environment variables."""

    # Interpreter used to launch the kernel and as the default probe candidate
    PYTHON_EXECUTABLE: str = Field(default_factory=lambda: sys.executable)
    KERNEL_ARGS: List[str] = Field(default_factory=list)
    KERNEL_CWD: Optional[str] = None

    # Deadlines (seconds)
    STARTUP_TIMEOUT: float = Field(default=60.0, gt=0)
    REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)
    EXECUTE_TIMEOUT: Optional[float] = Field(default=300.0, gt=0)
    KILL_TIMEOUT: float = Field(default=5.0, gt=0)
    PROBE_TIMEOUT: float = Field(default=15.0, gt=0)

    # Background task cadence (seconds)
    MONITOR_INTERVAL: float = Field(default=0.5, gt=0)
    SWEEP_INTERVAL: float = Field(default=0.1, gt=0)

    COMPLETENESS_SOURCE: Literal["local", "kernel"] = "local"
    MAX_LISTENER_ERRORS: int = Field(default=5, ge=1)

    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="info"
    )

    model_config = SettingsConfigDict(
        env_prefix="KERNEL_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def load_settings(**overrides) -> BridgeSettings:
    """Build a validated settings object from the environment plus explicit overrides.

    Raises pydantic.ValidationError on invalid values.
    """
    return BridgeSettings(**overrides)


# Shared default used when a client is created without explicit settings
settings = BridgeSettings()
