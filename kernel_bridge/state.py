"""
Kernel Lifecycle State Machine
==============================

Every kernel process moves through ``starting -> ready <-> busy -> exited``.
Transitions are driven by a small set of events and the transition table is
total: every (state, event) pair has a defined successor, so a late iopub
status after an exit or a duplicate handshake can never leave the machine in
an undefined place.

Observers subscribe to named events through :class:`Subscriptions`, the same
registry the client uses for ``input_request`` and ``output`` notifications.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .observability import get_logger

logger = get_logger(__name__)


class KernelState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    EXITED = "exited"


class KernelEvent(str, Enum):
    HANDSHAKE = "handshake"  # kernel answered kernel_info and helpers are installed
    BUSY = "busy"  # iopub execution_state=busy
    IDLE = "idle"  # iopub execution_state=idle
    EXIT = "exit"  # process gone, requested or not


S, E = KernelState, KernelEvent

TRANSITIONS: Dict[Tuple[KernelState, KernelEvent], KernelState] = {
    (S.STARTING, E.HANDSHAKE): S.READY,
    (S.STARTING, E.BUSY): S.STARTING,
    (S.STARTING, E.IDLE): S.STARTING,
    (S.STARTING, E.EXIT): S.EXITED,
    (S.READY, E.HANDSHAKE): S.READY,
    (S.READY, E.BUSY): S.BUSY,
    (S.READY, E.IDLE): S.READY,
    (S.READY, E.EXIT): S.EXITED,
    (S.BUSY, E.HANDSHAKE): S.BUSY,
    (S.BUSY, E.BUSY): S.BUSY,
    (S.BUSY, E.IDLE): S.READY,
    (S.BUSY, E.EXIT): S.EXITED,
    (S.EXITED, E.HANDSHAKE): S.EXITED,
    (S.EXITED, E.BUSY): S.EXITED,
    (S.EXITED, E.IDLE): S.EXITED,
    (S.EXITED, E.EXIT): S.EXITED,
}

del S, E


def _notification_for(old: KernelState, new: KernelState, event: KernelEvent) -> Optional[str]:
    """Name of the event observers hear about for a transition, if any."""
    if old == new:
        return None
    if new == KernelState.READY and old == KernelState.STARTING:
        return "ready"
    if new == KernelState.BUSY:
        return "busy"
    if new == KernelState.READY and old == KernelState.BUSY:
        return "idle"
    if new == KernelState.EXITED:
        return "exited"
    return None


class Subscriptions:
    """
    Callback registry keyed by event name.

    Callbacks may be plain functions or coroutine functions; coroutines are
    scheduled as tasks on the running loop. A failing callback is logged and
    never propagates into the emitter.
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callable]] = {}
        self._tasks = set()

    def on(self, name: str, callback: Callable) -> Callable[[], None]:
        self._callbacks.setdefault(name, []).append(callback)

        def unsubscribe():
            try:
                self._callbacks.get(name, []).remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def count(self, name: str) -> int:
        return len(self._callbacks.get(name, []))

    def emit(self, name: str, *args: Any) -> None:
        for callback in list(self._callbacks.get(name, [])):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                logger.warning("Event callback failed", event_name=name, error=str(e))

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async event callback failed", error=str(exc))

    def clear(self):
        self._callbacks.clear()


class KernelStateMachine:
    """Current lifecycle state of one kernel process plus its transition history."""

    def __init__(self, subscriptions: Optional[Subscriptions] = None):
        self.state = KernelState.STARTING
        self.subscriptions = subscriptions or Subscriptions()
        self.history: List[Tuple[KernelState, KernelEvent, KernelState]] = []
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()

    def fire(self, event: KernelEvent, *payload: Any) -> KernelState:
        old = self.state
        new = TRANSITIONS[(old, event)]
        self.state = new
        if old != new:
            self.history.append((old, event, new))
            logger.debug("Kernel state transition", old=old.value, trigger=event.value, new=new.value)

        if new == KernelState.READY:
            self._ready.set()
        elif new == KernelState.EXITED:
            self._exited.set()

        name = _notification_for(old, new, event)
        if name:
            self.subscriptions.emit(name, *payload)
        return new

    @property
    def is_ready(self) -> bool:
        """True once the handshake completed and the process has not exited."""
        return self.state in (KernelState.READY, KernelState.BUSY)

    @property
    def has_exited(self) -> bool:
        return self.state == KernelState.EXITED

    async def wait_ready(self):
        """Wait for the handshake; returns the final state if the process exits first."""
        ready = asyncio.ensure_future(self._ready.wait())
        exited = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            exited.cancel()
        return self.state

    async def wait_exited(self):
        await self._exited.wait()
