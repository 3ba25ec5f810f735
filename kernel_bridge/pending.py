"""
Pending Request Table
=====================

Maps a correlation id to the caller waiting for its reply.

Each entry owns an ``asyncio.Future``. Completion paths (reply, timeout,
process death, caller cancellation) all remove the entry, and every one of
them tolerates an id that is already gone: a late reply for a timed-out
request must never raise inside the transport listener.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import DuplicateRequestError, RequestTimeoutError
from .models import RequestKind
from .observability import get_logger

logger = get_logger(__name__)


@dataclass
class PendingRequest:
    id: str
    kind: RequestKind
    sequence: int
    future: asyncio.Future
    deadline: Optional[float] = None
    created_at: float = field(default=0.0)

    def overdue(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline


class PendingRequestTable:
    def __init__(self):
        self._entries: Dict[str, PendingRequest] = {}
        self._sequence = itertools.count(1)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._entries

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._entries.get(request_id)

    def ids(self) -> List[str]:
        return list(self._entries)

    def register(
        self, request_id: str, kind: RequestKind, deadline: Optional[float] = None
    ) -> asyncio.Future:
        """
        Register a waiting caller.

        Args:
            request_id: Correlation id of the outbound request
            kind: What was asked for (used in timeout errors and logs)
            deadline: Absolute event-loop time after which the request expires

        Returns:
            Future resolved with the reply or rejected with the failure

        Raises:
            DuplicateRequestError: If the id already has a live entry
        """
        if request_id in self._entries:
            raise DuplicateRequestError(f"Request id {request_id} is already pending")

        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            id=request_id,
            kind=RequestKind(kind),
            sequence=next(self._sequence),
            future=loop.create_future(),
            deadline=deadline,
            created_at=loop.time(),
        )
        self._entries[request_id] = entry
        return entry.future

    def resolve(self, request_id: str, value: Any) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            logger.debug("Reply for unknown request dropped", request_id=request_id)
            return False
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def discard(self, request_id: str) -> bool:
        """Forget an entry without completing it (its caller went away)."""
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.cancel()
        return True

    def refresh(self, request_id: str, deadline: Optional[float]) -> bool:
        """Replace the deadline of a live entry; ``None`` suspends expiry."""
        entry = self._entries.get(request_id)
        if entry is None:
            return False
        entry.deadline = deadline
        return True

    def expire_overdue(self, now: Optional[float] = None) -> List[str]:
        """Reject every entry past its deadline with RequestTimeoutError."""
        if now is None:
            now = asyncio.get_running_loop().time()

        expired = [entry for entry in self._entries.values() if entry.overdue(now)]
        for entry in expired:
            waited = now - entry.created_at
            logger.warning(
                "Request timed out",
                request_id=entry.id,
                kind=entry.kind.value,
                waited=round(waited, 3),
            )
            self.reject(
                entry.id,
                RequestTimeoutError(
                    f"{entry.kind.value} request {entry.id} timed out after {waited:.1f}s",
                    request_id=entry.id,
                    kind=entry.kind.value,
                ),
            )
        return [entry.id for entry in expired]

    def reject_all(self, error: BaseException) -> int:
        """Fail every outstanding entry with ``error``; returns how many were flushed."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(error)
        if entries:
            logger.info("Rejected pending requests", count=len(entries), error=str(error))
        return len(entries)
