"""Asynchronous client for supervised IPython kernels."""

from .client import InputRequest, KernelClient, check_python, create
from .errors import (
    DuplicateRequestError,
    EvalError,
    KernelBridgeError,
    MalformedMessageError,
    NotReadyError,
    ProbeError,
    ProcessTerminated,
    RequestTimeoutError,
    SpawnError,
    TransportError,
    UnknownValidatorError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "InputRequest",
    "KernelClient",
    "check_python",
    "create",
    "DuplicateRequestError",
    "EvalError",
    "KernelBridgeError",
    "MalformedMessageError",
    "NotReadyError",
    "ProbeError",
    "ProcessTerminated",
    "RequestTimeoutError",
    "SpawnError",
    "TransportError",
    "UnknownValidatorError",
    "ValidationError",
]
