"""
Kernel Client
=============

Public API for driving one IPython kernel.

A ``KernelClient`` supervises its kernel subprocess, correlates every request
with its reply, serializes execute requests, relays interactive input prompts
and normalizes replies into stable dict shapes.

Usage:

    client = await create()
    await client.execute("x = 1")
    value = await client.evaluate("x + 1")
    await client.kill()
"""

import ast
import asyncio
import functools
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

import nbformat

from .completeness import check_complete, normalize_kernel_reply
from .config import BridgeSettings, settings as default_settings
from .environment import probe
from .errors import (
    EvalError,
    MalformedMessageError,
    NotReadyError,
    ProcessTerminated,
    TransportError,
)
from .kernel_startup import (
    EVAL_EXPRESSION_KEY,
    STATUS_EXPRESSION_KEY,
    eval_expressions,
    execute_content,
    silent_execute_content,
    status_expressions,
)
from .models import (
    CompleteReply,
    ExecuteError,
    ExecuteOk,
    InspectReply,
    RequestKind,
    StatusReply,
    VariableSnapshot,
)
from .observability import bind_request, get_logger, get_tracer
from .pending import PendingRequestTable
from .scheduler import ExecutionScheduler
from .state import KernelEvent, KernelState, Subscriptions
from .supervisor import EnvProvider, KernelProcess, ProcessSupervisor
from .transport import Message, MessageKind, MessageTransport

logger = get_logger(__name__)
tracer = get_tracer(__name__)

EVENT_NAMES = ("ready", "busy", "idle", "exited", "input_request", "output")
STATUS_FIELDS = ("cwd", "variables")

_USE_DEFAULT = object()


@dataclass(frozen=True)
class InputRequest:
    """A prompt the kernel is blocked on until ``supply_input`` answers it."""

    id: str
    parent_id: Optional[str]
    prompt: str = ""
    password: bool = False


# ============================================================================
# REPLY NORMALIZATION
# ============================================================================


def _literal_text(text: str) -> str:
    """Undo the kernel's text/plain repr of a string."""
    try:
        value = ast.literal_eval(text)
    except (SyntaxError, ValueError):
        # Long reprs may be split over several lines
        try:
            value = ast.literal_eval(f"({text})")
        except (SyntaxError, ValueError) as e:
            raise MalformedMessageError(f"Cannot decode expression result: {text[:200]}") from e
    if not isinstance(value, str):
        raise MalformedMessageError("Expression result is not a JSON string")
    return value


def decode_expression(content: Mapping[str, Any], key: str) -> Any:
    """
    Extract a JSON-encoded user expression from an execute_reply.

    Raises:
        EvalError: If the helper code or the expression raised in the kernel
        MalformedMessageError: If the reply does not carry the expression
    """
    if content.get("status") != "ok":
        raise EvalError(
            str(content.get("ename", "ExecutionAborted")),
            str(content.get("evalue", "")),
            content.get("traceback"),
        )

    result = (content.get("user_expressions") or {}).get(key)
    if not isinstance(result, dict):
        raise MalformedMessageError(f"Reply has no user expression {key!r}")
    if result.get("status") == "error":
        raise EvalError(
            str(result.get("ename", "")), str(result.get("evalue", "")), result.get("traceback")
        )

    text = (result.get("data") or {}).get("text/plain")
    if text is None:
        raise MalformedMessageError(f"User expression {key!r} has no text/plain value")
    try:
        return json.loads(_literal_text(text))
    except ValueError as e:
        if isinstance(e, MalformedMessageError):
            raise
        raise MalformedMessageError(f"User expression {key!r} is not valid JSON") from e


def normalize_execute(content: Mapping[str, Any]) -> Dict[str, Any]:
    status = content.get("status")
    user_expressions = dict(content.get("user_expressions") or {})
    if status == "ok":
        return ExecuteOk(
            user_expressions=user_expressions, payload=list(content.get("payload") or [])
        ).model_dump()
    if status == "error":
        return ExecuteError(
            user_expressions=user_expressions,
            ename=str(content.get("ename", "")),
            evalue=str(content.get("evalue", "")),
            traceback=[str(line) for line in content.get("traceback") or []],
        ).model_dump()
    if status == "aborted":
        return ExecuteError(
            user_expressions=user_expressions,
            ename="ExecutionAborted",
            evalue="Execution was aborted by the kernel",
        ).model_dump()
    raise MalformedMessageError(f"Unexpected execute_reply status {status!r}")


def normalize_complete(content: Mapping[str, Any], cursor_pos: int) -> Dict[str, Any]:
    metadata = {
        key: value
        for key, value in (content.get("metadata") or {}).items()
        if not str(key).startswith("_")
    }
    return CompleteReply(
        matches=list(content.get("matches") or []),
        status=content.get("status", "ok"),
        cursor_start=int(content.get("cursor_start", cursor_pos)),
        cursor_end=int(content.get("cursor_end", cursor_pos)),
        metadata=metadata,
    ).model_dump()


def normalize_inspect(content: Mapping[str, Any]) -> Dict[str, Any]:
    return InspectReply(
        status=content.get("status", "ok"),
        found=bool(content.get("found", False)),
        data=dict(content.get("data") or {}),
    ).model_dump()


def output_from_message(message: Message) -> Optional[Dict[str, Any]]:
    """nbformat output dict for an iopub output message, None for non-output types."""
    try:
        return nbformat.v4.output_from_msg(
            {"header": {"msg_type": message.msg_type}, "content": message.content}
        )
    except (ValueError, KeyError):
        return None


# ============================================================================
# CLIENT
# ============================================================================


class KernelClient:
    """
    Client for one kernel subprocess.

    Args:
        executable: Interpreter that runs the kernel (default: configured one)
        args: Extra kernel command-line arguments
        cwd: Working directory of the kernel
        env: Explicit kernel environment; overrides ``env_provider``
        env_provider: Callable (sync or async) returning the kernel environment
        settings: Configuration; defaults to the environment-derived settings
    """

    def __init__(
        self,
        executable: Optional[str] = None,
        args: Optional[Sequence[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        env_provider: Optional[EnvProvider] = None,
        settings: Optional[BridgeSettings] = None,
    ):
        self.settings = settings or default_settings
        self.executable = executable or self.settings.PYTHON_EXECUTABLE
        self.args = list(args if args is not None else self.settings.KERNEL_ARGS)
        self.cwd = cwd or self.settings.KERNEL_CWD
        self.env = env

        self.supervisor = ProcessSupervisor(
            env_provider=env_provider,
            startup_timeout=self.settings.STARTUP_TIMEOUT,
            kill_timeout=self.settings.KILL_TIMEOUT,
            monitor_interval=self.settings.MONITOR_INTERVAL,
        )
        self.subscriptions = Subscriptions()
        self.pending = PendingRequestTable()
        self.process: Optional[KernelProcess] = None
        self.transport: Optional[MessageTransport] = None
        self.scheduler: Optional[ExecutionScheduler] = None

        self._startup: Optional[asyncio.Future] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._input_requests: Dict[str, InputRequest] = {}
        self._environment = None
        self._transport_error: Optional[TransportError] = None

        self.subscriptions.on("exited", self._on_exited)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.kill()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> Optional[KernelState]:
        return self.process.state if self.process is not None else None

    async def start(self) -> KernelProcess:
        """Spawn the kernel and wait until it is ready."""
        if self._startup is None:
            self._startup = asyncio.ensure_future(self._start())
        return await asyncio.shield(self._startup)

    async def wait_until_ready(self) -> KernelProcess:
        """
        Wait for a start() in progress to finish.

        Raises:
            NotReadyError: If start() was never called
            SpawnError: If the kernel could not be started
        """
        if self._startup is None:
            raise NotReadyError("Kernel has not been started")
        return await asyncio.shield(self._startup)

    async def _start(self) -> KernelProcess:
        with tracer.start_as_current_span("kernel.start") as span:
            span.set_attribute("kernel.executable", self.executable)
            process = await self.supervisor.start(
                self.executable,
                self.args,
                env=self.env,
                cwd=self.cwd,
                subscriptions=self.subscriptions,
            )
            self.process = process
            span.set_attribute("kernel.pid", process.pid or 0)

            try:
                await self.supervisor.handshake(process)
            except Exception:
                await self.supervisor.kill(process)
                raise

            self._transport_error = None
            self.transport = MessageTransport(
                process.kc,
                max_consecutive_errors=self.settings.MAX_LISTENER_ERRORS,
                on_channel_failure=self._on_channel_failure,
            )
            self.transport.on_message(functools.partial(self._dispatch, process))
            self.transport.start()

            self.scheduler = ExecutionScheduler(self._run_execute)
            self.scheduler.start()
            self._sweeper = asyncio.create_task(self._sweep(), name="kernel-bridge-sweeper")
            self.supervisor.watch(process)

            process.machine.fire(KernelEvent.HANDSHAKE)
            logger.info("Kernel ready", pid=process.pid)
            return process

    async def kill(self):
        """Stop the kernel and fail everything still waiting on it. Idempotent."""
        startup = self._startup
        if startup is not None and not startup.done():
            startup.cancel()
            try:
                await startup
            except (asyncio.CancelledError, Exception):
                pass

        error = ProcessTerminated("Kernel was killed")
        self.pending.reject_all(error)
        self._input_requests.clear()

        if self.scheduler is not None:
            await self.scheduler.stop(error)
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self.transport is not None:
            await self.transport.stop()

        if self.process is not None:
            await self.supervisor.kill(self.process)

    async def restart(self) -> KernelProcess:
        """Replace the kernel with a fresh one; its namespace is lost."""
        await self.kill()
        self.process = None
        self.transport = None
        self.scheduler = None
        self._startup = None
        return await self.start()

    async def interrupt(self):
        process = self._ensure_ready()
        await self.supervisor.interrupt(process)

    def on(self, name: str, callback: Callable) -> Callable[[], None]:
        """
        Subscribe to a client event; returns an unsubscribe callable.

        Events: ready, busy, idle, exited (exit code), input_request
        (InputRequest), output (nbformat output dict, parent request id).
        """
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event {name!r}; expected one of {', '.join(EVENT_NAMES)}")
        return self.subscriptions.on(name, callback)

    def _ensure_ready(self) -> KernelProcess:
        process = self.process
        if process is not None and process.machine.has_exited:
            raise ProcessTerminated("Kernel process has exited", exit_code=process.exit_code)
        if self._transport_error is not None:
            raise TransportError(str(self._transport_error), channel=self._transport_error.channel)
        if process is None or not process.machine.is_ready:
            raise NotReadyError("Kernel is not ready")
        return process

    def _on_exited(self, exit_code=None):
        error = ProcessTerminated(f"Kernel process exited with code {exit_code}", exit_code=exit_code)
        self.pending.reject_all(error)
        if self.scheduler is not None:
            self.scheduler.fail_pending(error)
        self._input_requests.clear()

    def _on_channel_failure(self, channel: str):
        if channel == "iopub":
            # Replies still arrive; only status and output events are lost
            logger.error("iopub listener stopped; busy, idle and output events will not fire")
            return
        error = TransportError(f"The {channel} channel listener stopped", channel=channel)
        self._transport_error = error
        failed = self.pending.reject_all(error)
        if self.scheduler is not None:
            self.scheduler.fail_pending(error)
        self._input_requests.clear()
        logger.error("Kernel client unusable after channel failure", channel=channel, rejected=failed)

    async def _sweep(self):
        try:
            while True:
                await asyncio.sleep(self.settings.SWEEP_INTERVAL)
                self.pending.expire_overdue()
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------ #
    # Inbound dispatch
    # ------------------------------------------------------------------ #

    def _dispatch(self, process: KernelProcess, message: Message):
        kind = message.kind
        if kind is MessageKind.REPLY:
            if message.parent_id:
                self.pending.resolve(message.parent_id, message)
        elif kind is MessageKind.STATUS:
            execution_state = message.content.get("execution_state")
            if execution_state == "busy":
                process.machine.fire(KernelEvent.BUSY)
            elif execution_state == "idle":
                process.machine.fire(KernelEvent.IDLE)
        elif kind is MessageKind.INPUT_REQUEST:
            self._on_input_request(message)
        elif kind is MessageKind.OUTPUT:
            output = output_from_message(message)
            if output is not None:
                self.subscriptions.emit("output", output, message.parent_id)

    def _on_input_request(self, message: Message):
        request = InputRequest(
            id=message.id,
            parent_id=message.parent_id,
            prompt=str(message.content.get("prompt", "")),
            password=bool(message.content.get("password", False)),
        )
        self._input_requests[request.id] = request
        if request.parent_id is not None:
            # The kernel is blocked on the user now, not on work
            self.pending.refresh(request.parent_id, None)

        if not self.subscriptions.count("input_request"):
            logger.warning("Kernel is waiting for input but nobody is subscribed", prompt=request.prompt)
        logger.info("Kernel requested input", request_id=request.id, parent_id=request.parent_id)
        self.subscriptions.emit("input_request", request)

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        kind: RequestKind,
        msg_type: str,
        content: Dict[str, Any],
        timeout: Any = _USE_DEFAULT,
    ) -> Message:
        self._ensure_ready()
        if timeout is _USE_DEFAULT:
            timeout = self.settings.REQUEST_TIMEOUT
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        with tracer.start_as_current_span(f"kernel.{kind.value}") as span:
            # No await between send and register: the reply cannot be missed
            request_id = self.transport.send(msg_type, content)
            future = self.pending.register(request_id, kind, deadline)
            span.set_attribute("kernel.request_id", request_id)

            with bind_request(kind.value, request_id):
                logger.debug("Awaiting reply", msg_type=msg_type)
                try:
                    return await future
                except asyncio.CancelledError:
                    self.pending.discard(request_id)
                    raise

    async def evaluate(self, expression: str) -> Any:
        """
        Evaluate ``expression`` in the kernel and return its JSON-decoded value.

        Raises:
            EvalError: If the expression raised inside the kernel
        """
        message = await self._request(
            RequestKind.EVALUATE,
            "execute_request",
            silent_execute_content(eval_expressions(expression)),
        )
        return decode_expression(message.content, EVAL_EXPRESSION_KEY)

    async def get_status(self, fields: Iterable[str] = ()) -> Dict[str, Any]:
        """Working directory and bucketed namespace; empty ``fields`` means all."""
        fields = tuple(fields) or STATUS_FIELDS
        unknown = [f for f in fields if f not in STATUS_FIELDS]
        if unknown:
            raise ValueError(f"Unknown status fields: {', '.join(unknown)}")

        message = await self._request(
            RequestKind.STATUS, "execute_request", silent_execute_content(status_expressions())
        )
        raw = decode_expression(message.content, STATUS_EXPRESSION_KEY)

        reply = {}
        if "cwd" in fields:
            reply["cwd"] = raw.get("cwd")
        if "variables" in fields:
            reply["variables"] = VariableSnapshot(raw.get("variables")).to_dict()
        return StatusReply(**reply).model_dump(include=set(reply))

    async def get_auto_complete(self, code: str, cursor_pos: int) -> Dict[str, Any]:
        message = await self._request(
            RequestKind.AUTOCOMPLETE,
            "complete_request",
            {"code": code, "cursor_pos": cursor_pos},
        )
        return normalize_complete(message.content, cursor_pos)

    async def get_inspection(self, code: str, cursor_pos: int, detail_level: int = 0) -> Dict[str, Any]:
        message = await self._request(
            RequestKind.INSPECT,
            "inspect_request",
            {"code": code, "cursor_pos": cursor_pos, "detail_level": detail_level},
        )
        return normalize_inspect(message.content)

    async def is_complete(self, code: str) -> Dict[str, Any]:
        """Whether ``code`` can run as-is, needs more lines, or can never run."""
        if self.settings.COMPLETENESS_SOURCE == "local":
            self._ensure_ready()
            return check_complete(code).to_wire()

        message = await self._request(RequestKind.IS_COMPLETE, "is_complete_request", {"code": code})
        return normalize_kernel_reply(message.content).to_wire()

    async def execute(self, code: str) -> Dict[str, Any]:
        """
        Run ``code`` as a visible cell, after every execute submitted before it.

        User-code errors come back in the ``error`` shape, not as exceptions.
        """
        self._ensure_ready()
        return await self.scheduler.submit(code)

    async def _run_execute(self, code: str) -> Dict[str, Any]:
        message = await self._request(
            RequestKind.EXECUTE,
            "execute_request",
            execute_content(code),
            timeout=self.settings.EXECUTE_TIMEOUT,
        )
        return normalize_execute(message.content)

    async def supply_input(self, value: str, request_id: Optional[str] = None) -> bool:
        """
        Answer an outstanding input prompt (the oldest one by default).

        Returns:
            False if there is no matching prompt, True once the reply is sent
        """
        if request_id is None:
            request_id = next(iter(self._input_requests), None)
        request = self._input_requests.pop(request_id, None) if request_id else None
        if request is None or self.transport is None:
            logger.debug("No input prompt to answer", request_id=request_id)
            return False

        self.transport.input_reply(str(value))
        if request.parent_id is not None and self.settings.EXECUTE_TIMEOUT is not None:
            loop = asyncio.get_running_loop()
            self.pending.refresh(request.parent_id, loop.time() + self.settings.EXECUTE_TIMEOUT)
        return True

    async def check_python(self) -> Dict[str, Any]:
        """Describe this client's interpreter; the result is cached."""
        if self._environment is None:
            loop = asyncio.get_running_loop()
            self._environment = await loop.run_in_executor(
                None, functools.partial(probe, self.executable, self.settings.PROBE_TIMEOUT)
            )
        return self._environment.to_wire()


async def create(
    executable: Optional[str] = None,
    args: Optional[Sequence[str]] = None,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    env_provider: Optional[EnvProvider] = None,
    settings: Optional[BridgeSettings] = None,
) -> KernelClient:
    """Create a client and wait until its kernel is ready."""
    client = KernelClient(
        executable=executable,
        args=args,
        cwd=cwd,
        env=env,
        env_provider=env_provider,
        settings=settings,
    )
    await client.start()
    return client


async def check_python(executable: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
    """Describe an interpreter without starting a kernel."""
    loop = asyncio.get_running_loop()
    info = await loop.run_in_executor(None, functools.partial(probe, executable, timeout))
    return info.to_wire()
