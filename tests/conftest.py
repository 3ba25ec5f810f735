"""
Pytest configuration and fixtures for kernel-bridge tests.

Most tests drive a real ``KernelClient`` against ``FakeKernelClient``, an
in-memory stand-in for ``jupyter_client.AsyncKernelClient`` whose channels are
asyncio queues. Tests script the kernel side by registering handlers per
request type.
"""

import asyncio
import sys
import uuid
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import structlog

from kernel_bridge.client import KernelClient
from kernel_bridge.config import BridgeSettings
from kernel_bridge.processes import force_kill, list_children
from kernel_bridge.state import KernelEvent, KernelStateMachine
from kernel_bridge.supervisor import KernelProcess


def _cleanup_stray_kernels():
    """Kill ipykernel processes this test session spawned and leaked."""
    for child in list_children():
        try:
            cmdline = " ".join(child.cmdline())
        except Exception:
            continue
        if "ipykernel_launcher" in cmdline:
            force_kill(child.pid, timeout=1.0)


@pytest.fixture(scope="session", autouse=True)
def cleanup_kernels_at_session_end():
    yield
    _cleanup_stray_kernels()


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any logging configuration a test installed."""
    yield
    structlog.reset_defaults()


def make_message(msg_type: str, content: Dict[str, Any], parent: Optional[Dict] = None) -> Dict:
    return {
        "header": {"msg_id": uuid.uuid4().hex, "msg_type": msg_type, "date": None},
        "parent_header": dict(parent["header"]) if parent else {},
        "msg_type": msg_type,
        "metadata": {},
        "content": content,
    }


class FakeSession:
    def msg(self, msg_type, content=None, parent=None):
        return make_message(msg_type, content or {}, parent)


class FakeChannel:
    def __init__(self, kernel: "FakeKernelClient", name: str):
        self.kernel = kernel
        self.name = name

    def send(self, msg):
        self.kernel.receive(self.name, msg)


class FakeKernelClient:
    """Mock Jupyter kernel client speaking the message protocol over queues."""

    def __init__(self):
        self.session = FakeSession()
        self.shell_channel = FakeChannel(self, "shell")
        self.stdin_channel = FakeChannel(self, "stdin")
        self.queues = {name: asyncio.Queue() for name in ("shell", "iopub", "stdin")}
        self.handlers: Dict[str, Callable[["FakeKernelClient", Dict], None]] = {}
        self.received: List[Dict] = []

    async def _next(self, channel: str):
        item = await self.queues[channel].get()
        if isinstance(item, Exception):
            raise item
        return item

    async def get_shell_msg(self):
        return await self._next("shell")

    async def get_iopub_msg(self):
        return await self._next("iopub")

    async def get_stdin_msg(self):
        return await self._next("stdin")

    def break_channel(self, channel: str, times: int):
        """Make the next ``times`` receives on ``channel`` fail."""
        for _ in range(times):
            self.queues[channel].put_nowait(ValueError("Invalid Signature"))

    def receive(self, channel: str, msg: Dict):
        self.received.append(msg)
        handler = self.handlers.get(msg["header"]["msg_type"])
        if handler is not None:
            handler(self, msg)

    def requests(self, msg_type: str) -> List[Dict]:
        return [m for m in self.received if m["header"]["msg_type"] == msg_type]

    def push(self, channel: str, msg_type: str, content: Dict, parent: Optional[Dict] = None) -> Dict:
        msg = make_message(msg_type, content, parent)
        self.queues[channel].put_nowait(msg)
        return msg

    def reply(self, request: Dict, content: Dict, msg_type: Optional[str] = None) -> Dict:
        msg_type = msg_type or request["header"]["msg_type"].replace("_request", "_reply")
        return self.push("shell", msg_type, content, parent=request)

    def status(self, request: Dict, execution_state: str):
        self.push("iopub", "status", {"execution_state": execution_state}, parent=request)


def expression_result(value_repr: str) -> Dict:
    """user_expressions entry as IPython formats a successful expression."""
    return {"status": "ok", "data": {"text/plain": value_repr}, "metadata": {}}


class FakeSupervisor:
    """Stands in for ProcessSupervisor; the process is the FakeKernelClient."""

    def __init__(self, kc: FakeKernelClient):
        self.kc = kc
        self.kills = 0
        self.interrupts = 0
        self.watched = []

    async def start(self, executable, args=(), env=None, cwd=None, subscriptions=None):
        return KernelProcess(
            executable=executable,
            argv=[executable, *args],
            km=MagicMock(),
            machine=KernelStateMachine(subscriptions),
            kc=self.kc,
            pid=None,
        )

    async def handshake(self, process, timeout=None):
        return None

    def watch(self, process):
        self.watched.append(process)

    async def interrupt(self, process):
        self.interrupts += 1

    async def kill(self, process):
        if process.released:
            return
        process.released = True
        self.kills += 1
        process.exit_code = -9
        process.machine.fire(KernelEvent.EXIT, -9)


@pytest.fixture
def bridge_settings():
    return BridgeSettings(
        PYTHON_EXECUTABLE=sys.executable,
        REQUEST_TIMEOUT=2.0,
        EXECUTE_TIMEOUT=2.0,
        SWEEP_INTERVAL=0.01,
        MONITOR_INTERVAL=0.01,
    )


@pytest.fixture
async def fake_kernel():
    return FakeKernelClient()


@pytest.fixture
async def client(fake_kernel, bridge_settings):
    """A ready KernelClient wired to the fake kernel."""
    kernel_client = KernelClient(settings=bridge_settings)
    kernel_client.supervisor = FakeSupervisor(fake_kernel)
    await kernel_client.start()
    yield kernel_client
    await kernel_client.kill()
