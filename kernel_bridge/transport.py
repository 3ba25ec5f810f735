"""
Message Transport
=================

Moves Jupyter protocol messages between the client and one kernel.

Outbound: requests are built with the kernel client's ``Session`` and written
to the shell or stdin channel; the header ``msg_id`` is the correlation id.

Inbound: one listener task per channel (shell, iopub, stdin) receives fully
framed units (ZMQ multipart + Session deserialization buffer until a message
is complete), turns each into a typed :class:`Message`, classifies it, and
hands it to every registered handler. Units from one channel are delivered in
the order the kernel emitted them.

Malformed units are logged and dropped. A channel that keeps failing to
receive trips a circuit breaker and its listener stops.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import MalformedMessageError
from .observability import get_logger

logger = get_logger(__name__)

CHANNELS = ("shell", "iopub", "stdin")

OUTPUT_TYPES = frozenset(
    {
        "stream",
        "display_data",
        "update_display_data",
        "execute_result",
        "execute_input",
        "error",
        "clear_output",
    }
)


class MessageKind(str, Enum):
    REPLY = "reply"
    STATUS = "status"
    INPUT_REQUEST = "input_request"
    OUTPUT = "output"


def classify(channel: str, msg_type: str) -> Optional[MessageKind]:
    """Classify an inbound unit by channel and type; None for units nobody consumes."""
    if channel == "shell" and msg_type.endswith("_reply"):
        return MessageKind.REPLY
    if channel == "iopub":
        if msg_type == "status":
            return MessageKind.STATUS
        if msg_type in OUTPUT_TYPES:
            return MessageKind.OUTPUT
    if channel == "stdin" and msg_type == "input_request":
        return MessageKind.INPUT_REQUEST
    return None


@dataclass(frozen=True)
class Message:
    channel: str
    id: str
    msg_type: str
    kind: Optional[MessageKind]
    parent_id: Optional[str] = None
    timestamp: Any = None
    content: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, channel: str, raw: Any) -> "Message":
        """
        Build a Message from a deserialized Jupyter message dict.

        Raises:
            MalformedMessageError: If the unit lacks a header, msg_id or msg_type
        """
        if not isinstance(raw, dict):
            raise MalformedMessageError(f"Expected a message dict, got {type(raw).__name__}")

        header = raw.get("header")
        if not isinstance(header, dict):
            raise MalformedMessageError("Message has no header")

        msg_id = header.get("msg_id")
        msg_type = header.get("msg_type") or raw.get("msg_type")
        if not msg_id or not msg_type:
            raise MalformedMessageError("Message header lacks msg_id or msg_type")

        parent = raw.get("parent_header") or {}
        content = raw.get("content")
        if content is None:
            content = {}
        if not isinstance(content, dict):
            raise MalformedMessageError(f"Message content for {msg_type} is not a mapping")

        return cls(
            channel=channel,
            id=str(msg_id),
            msg_type=str(msg_type),
            kind=classify(channel, str(msg_type)),
            parent_id=parent.get("msg_id") if isinstance(parent, dict) else None,
            timestamp=header.get("date"),
            content=content,
        )


class MessageTransport:
    """
    Owns the channel listeners of one kernel client.

    Args:
        kc: A started ``jupyter_client.AsyncKernelClient``
        max_consecutive_errors: Receive failures in a row before a listener gives up
        on_channel_failure: Called with the channel name when its listener gives up
    """

    def __init__(
        self,
        kc,
        max_consecutive_errors: int = 5,
        on_channel_failure: Optional[Callable[[str], Any]] = None,
    ):
        self.kc = kc
        self.max_consecutive_errors = max_consecutive_errors
        self.on_channel_failure = on_channel_failure
        self.healthy = True
        self.failed_channels: List[str] = []
        self._handlers: List[Callable[[Message], Any]] = []
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    def send(self, msg_type: str, content: Dict[str, Any], channel: str = "shell") -> str:
        """Serialize and write a request; returns its correlation id."""
        msg = self.kc.session.msg(msg_type, content)
        getattr(self.kc, f"{channel}_channel").send(msg)
        msg_id = msg["header"]["msg_id"]
        logger.debug("Sent message", channel=channel, msg_type=msg_type, msg_id=msg_id)
        return msg_id

    def input_reply(self, value: str) -> str:
        """Answer the kernel's pending input_request on the stdin channel."""
        return self.send("input_reply", {"value": value}, channel="stdin")

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    def on_message(self, handler: Callable[[Message], Any]) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self):
        for channel in CHANNELS:
            task = self._tasks.get(channel)
            if task is None or task.done():
                self._tasks[channel] = asyncio.create_task(
                    self._listen(channel), name=f"kernel-bridge-{channel}-listener"
                )

    async def stop(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Listener ended with an error during stop", error=str(e))

    async def _listen(self, channel: str):
        receive = getattr(self.kc, f"get_{channel}_msg")
        consecutive_errors = 0
        logger.debug("Starting channel listener", channel=channel)

        try:
            while True:
                try:
                    raw = await receive()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Circuit breaker: prevent CPU spin on a broken socket
                    consecutive_errors += 1
                    logger.error(
                        "Dropped unreadable message",
                        channel=channel,
                        error=str(e),
                        consecutive_errors=consecutive_errors,
                    )
                    if consecutive_errors >= self.max_consecutive_errors:
                        logger.critical(
                            "[CIRCUIT BREAKER] Channel listener stopped after repeated errors",
                            channel=channel,
                        )
                        self.healthy = False
                        self.failed_channels.append(channel)
                        if self.on_channel_failure is not None:
                            try:
                                self.on_channel_failure(channel)
                            except Exception as cb_err:
                                logger.warning("Channel failure callback failed", channel=channel, error=str(cb_err))
                        break
                    await asyncio.sleep(min(0.01 * 2 ** (consecutive_errors - 1), 0.5))
                    continue

                consecutive_errors = 0
                self._deliver(channel, raw)
        except asyncio.CancelledError:
            logger.debug("Channel listener cancelled", channel=channel)

    def _deliver(self, channel: str, raw: Any):
        try:
            message = Message.from_wire(channel, raw)
        except MalformedMessageError as e:
            logger.warning("Dropped malformed message", channel=channel, error=str(e))
            return

        if message.kind is None:
            logger.debug("Ignoring unhandled message", channel=channel, msg_type=message.msg_type)
            return

        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception as e:
                logger.warning(
                    "Message handler failed",
                    channel=channel,
                    msg_type=message.msg_type,
                    error=str(e),
                )
