"""
Exception hierarchy for kernel-bridge.

All client-side failures derive from :class:`KernelBridgeError` so callers can
catch the whole family with one clause. User-code faults inside the kernel are
not exceptions here: ``execute`` reports them as an ``error``-shaped result.
The one exception to that rule is :class:`EvalError`, raised by ``evaluate``
when the expression itself fails.
"""

from typing import List, Optional


class KernelBridgeError(Exception):
    """Base exception for all kernel-bridge errors."""


# ── Process ──────────────────────────────────────────────────


class SpawnError(KernelBridgeError):
    """The kernel subprocess could not be launched or never completed its handshake."""


class ProcessTerminated(KernelBridgeError):
    """The kernel subprocess exited; outstanding requests can never complete."""

    def __init__(self, message: str = "Kernel process terminated", *, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class NotReadyError(KernelBridgeError):
    """An operation was invoked before the kernel reached the ready state."""


# ── Requests ─────────────────────────────────────────────────


class RequestTimeoutError(KernelBridgeError, TimeoutError):
    """A single request exceeded its deadline. Sibling requests are unaffected."""

    def __init__(self, message: str, *, request_id: Optional[str] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id
        self.kind = kind


class DuplicateRequestError(KernelBridgeError):
    """A correlation id was registered while a live entry already holds it."""


class EvalError(KernelBridgeError):
    """An evaluated expression raised inside the kernel."""

    def __init__(self, ename: str, evalue: str, traceback: Optional[List[str]] = None):
        super().__init__(f"{ename}: {evalue}")
        self.ename = ename
        self.evalue = evalue
        self.traceback = list(traceback or [])


class MalformedMessageError(KernelBridgeError, ValueError):
    """An inbound protocol unit could not be interpreted."""


class TransportError(KernelBridgeError):
    """A channel listener stopped, so replies on that channel can no longer arrive."""

    def __init__(self, message: str, *, channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel


# ── Environment ──────────────────────────────────────────────


class ProbeError(KernelBridgeError):
    """The interpreter candidate could not be introspected."""


# ── Validation ───────────────────────────────────────────────


class ValidationError(KernelBridgeError):
    """A preference value failed one of its validators."""


class UnknownValidatorError(KernelBridgeError, LookupError):
    """A preference item names a validator that is not registered."""
