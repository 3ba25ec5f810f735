"""
Kernel Process Supervisor
=========================

Spawns one IPython kernel subprocess, opens its ZMQ channels, waits for the
startup handshake, watches it for unexpected death and tears it down.

The launch command is always

    <executable> -m ipykernel_launcher -f <connection file> [args...]

handed to ``AsyncKernelManager`` through a kernel spec manager that knows only
that one command, so installed kernelspecs never influence which interpreter
runs.
"""

import asyncio
import inspect
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Union

from jupyter_client.kernelspec import KernelSpec, KernelSpecManager, NoSuchKernel
from jupyter_client.manager import AsyncKernelManager

from .errors import ProcessTerminated, SpawnError
from .observability import get_logger
from .processes import force_kill, is_in_tree
from .state import KernelEvent, KernelState, KernelStateMachine, Subscriptions

logger = get_logger(__name__)

KERNEL_NAME = "kernel-bridge"

EnvProvider = Callable[[], Union[Mapping[str, str], Awaitable[Mapping[str, str]]]]


def kernel_argv(executable: str, args: Sequence[str] = ()) -> List[str]:
    return [executable, "-m", "ipykernel_launcher", "-f", "{connection_file}", *args]


class LaunchSpecManager(KernelSpecManager):
    """Kernel spec manager serving a single spec built from an explicit argv."""

    def __init__(self, argv: Sequence[str], **kwargs):
        super().__init__(**kwargs)
        self._spec = KernelSpec(
            name=KERNEL_NAME,
            argv=list(argv),
            display_name=f"Python ({argv[0]})",
            language="python",
        )

    def find_kernel_specs(self):
        return {KERNEL_NAME: ""}

    def get_kernel_spec(self, kernel_name, *args, **kwargs):
        if kernel_name != KERNEL_NAME:
            raise NoSuchKernel(kernel_name)
        return self._spec


@dataclass
class KernelProcess:
    """One spawned kernel and everything needed to talk to it."""

    executable: str
    argv: List[str]
    km: Any
    machine: KernelStateMachine
    kc: Any = None
    pid: Optional[int] = None
    popen: Any = None
    exit_code: Optional[int] = None
    monitor: Optional[asyncio.Task] = field(default=None, repr=False)
    released: bool = False

    @property
    def state(self) -> KernelState:
        return self.machine.state

    def poll_exit_code(self) -> Optional[int]:
        if self.popen is None:
            return self.exit_code
        try:
            code = self.popen.poll()
        except Exception:
            code = getattr(self.popen, "returncode", None)
        return code if code is not None else self.exit_code


def _default_env() -> Mapping[str, str]:
    return os.environ.copy()


class ProcessSupervisor:
    """
    Starts, watches and stops kernel processes.

    Args:
        env_provider: Callable (sync or async) returning the kernel environment
        startup_timeout: Seconds allowed for the kernel_info handshake
        kill_timeout: Seconds allowed for a graceful shutdown before force-killing
        monitor_interval: Seconds between liveness polls
    """

    def __init__(
        self,
        env_provider: Optional[EnvProvider] = None,
        startup_timeout: float = 60.0,
        kill_timeout: float = 5.0,
        monitor_interval: float = 0.5,
    ):
        self.env_provider = env_provider or _default_env
        self.startup_timeout = startup_timeout
        self.kill_timeout = kill_timeout
        self.monitor_interval = monitor_interval

    async def resolve_env(self) -> dict:
        env = self.env_provider()
        if inspect.isawaitable(env):
            env = await env
        return dict(env)

    async def start(
        self,
        executable: str,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        subscriptions: Optional[Subscriptions] = None,
    ) -> KernelProcess:
        """
        Launch a kernel and open its channels. The process starts in ``starting``.

        Raises:
            SpawnError: If the subprocess cannot be launched
        """
        argv = kernel_argv(executable, args)
        if env is None:
            env = await self.resolve_env()

        km = AsyncKernelManager(
            kernel_name=KERNEL_NAME,
            kernel_spec_manager=LaunchSpecManager(argv),
        )
        try:
            await km.start_kernel(env=dict(env), cwd=cwd)
        except Exception as e:
            logger.error("Kernel launch failed", executable=executable, error=str(e))
            raise SpawnError(f"Failed to launch kernel with {executable}: {e}") from e

        popen = getattr(km.provisioner, "process", None) if km.provisioner else None
        process = KernelProcess(
            executable=executable,
            argv=argv,
            km=km,
            machine=KernelStateMachine(subscriptions),
            popen=popen,
            pid=getattr(popen, "pid", None),
        )

        try:
            process.kc = km.client()
            process.kc.start_channels()
        except Exception as e:
            logger.error("Could not open kernel channels", pid=process.pid, error=str(e))
            await self.kill(process)
            raise SpawnError(f"Failed to connect to kernel: {e}") from e

        logger.info("Kernel process started", pid=process.pid, executable=executable, cwd=cwd)
        return process

    async def handshake(self, process: KernelProcess, timeout: Optional[float] = None):
        """
        Wait until the kernel answers kernel_info.

        Raises:
            SpawnError: If the kernel dies or does not answer in time
        """
        timeout = timeout or self.startup_timeout
        try:
            await process.kc.wait_for_ready(timeout=timeout)
        except (RuntimeError, asyncio.TimeoutError) as e:
            logger.error("Kernel handshake failed", pid=process.pid, error=str(e))
            raise SpawnError(f"Kernel did not become ready: {e}") from e
        logger.debug("Kernel handshake complete", pid=process.pid)

    def watch(self, process: KernelProcess):
        """Start the liveness monitor for ``process``."""
        if process.monitor is None or process.monitor.done():
            process.monitor = asyncio.create_task(
                self._monitor(process), name=f"kernel-bridge-monitor-{process.pid}"
            )

    async def _monitor(self, process: KernelProcess):
        try:
            while not process.machine.has_exited:
                await asyncio.sleep(self.monitor_interval)
                try:
                    alive = await process.km.is_alive()
                except Exception as e:
                    logger.warning("Liveness check failed", pid=process.pid, error=str(e))
                    continue
                if not alive:
                    process.exit_code = process.poll_exit_code()
                    logger.warning(
                        "Kernel process exited unexpectedly",
                        pid=process.pid,
                        exit_code=process.exit_code,
                    )
                    process.machine.fire(KernelEvent.EXIT, process.exit_code)
                    break
        except asyncio.CancelledError:
            logger.debug("Kernel monitor cancelled", pid=process.pid)

    async def _stop_monitor(self, process: KernelProcess):
        task = process.monitor
        process.monitor = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def interrupt(self, process: KernelProcess):
        if process.machine.has_exited:
            raise ProcessTerminated("Kernel process has exited", exit_code=process.exit_code)
        await process.km.interrupt_kernel()
        logger.info("Interrupted kernel", pid=process.pid)

    def is_running(self, process: KernelProcess) -> bool:
        """True while the kernel pid is still a live child of this process."""
        return process.pid is not None and is_in_tree(process.pid)

    async def kill(self, process: KernelProcess):
        """
        Shut the kernel down and make sure its process is gone.

        Safe to call more than once; later calls do nothing.
        """
        if process.released:
            return
        process.released = True

        await self._stop_monitor(process)

        if process.kc is not None:
            try:
                process.kc.stop_channels()
            except Exception as e:
                logger.warning("Error closing kernel channels", pid=process.pid, error=str(e))

        try:
            await asyncio.wait_for(process.km.shutdown_kernel(now=True), self.kill_timeout)
        except Exception as e:
            logger.warning("Kernel shutdown did not complete", pid=process.pid, error=str(e))

        forced = None
        if self.is_running(process):
            logger.warning("Kernel survived shutdown, forcing kill", pid=process.pid)
            loop = asyncio.get_running_loop()
            forced = await loop.run_in_executor(None, force_kill, process.pid, self.kill_timeout)

        code = process.poll_exit_code()
        process.exit_code = code if code is not None else forced
        logger.info("Kernel process stopped", pid=process.pid, exit_code=process.exit_code)
        process.machine.fire(KernelEvent.EXIT, process.exit_code)
