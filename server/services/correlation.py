"""Request/response correlation over a streaming socket.

Tracks pending requests by a monotonically increasing id and matches replies
to them. Entries leave the table on response, on timeout, or on an explicit
expiry sweep, whichever comes first, so nothing dangles after a reconnect.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


class RequestTimeoutError(TimeoutError):
    """No reply arrived for a correlated request in time."""

    def __init__(self, request_id: int, timeout: float):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__("Request timeout")


@dataclass
class PendingRequest:
    """A request awaiting its reply."""
    id: int
    future: asyncio.Future
    deadline: float
    timeout: float


class CorrelationTable:
    """Pending-request map keyed by request id."""

    def __init__(self, default_timeout: float = 30.0, start_id: int = 1):
        self.default_timeout = default_timeout
        self._next_id = start_id
        self._pending: Dict[int, PendingRequest] = {}

    def next_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def create(self, timeout: Optional[float] = None) -> Tuple[int, asyncio.Future]:
        """Reserve a fresh id and the future its reply will resolve."""
        request_id = self.next_id()
        future = asyncio.get_running_loop().create_future()
        ttl = self.default_timeout if timeout is None else timeout
        self._pending[request_id] = PendingRequest(request_id, future, time.monotonic() + ttl, ttl)
        return request_id, future

    async def wait(self, request_id: int, future: asyncio.Future, timeout: Optional[float] = None) -> Any:
        """Wait for a reply; raises RequestTimeoutError when time runs out."""
        ttl = self.default_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, ttl)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(request_id, ttl) from None
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: Any, result: Any = None) -> bool:
        """Complete a pending request. Returns True if the id was pending."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, request_id: Any, error: BaseException) -> bool:
        """Fail a pending request. Returns True if the id was pending."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def reject_all(self, error: BaseException) -> int:
        """Fail every pending request, e.g. when the socket drops."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(error)
        return len(entries)

    def sweep_expired(self, now: Optional[float] = None) -> List[int]:
        """Reject entries past their deadline and return their ids."""
        now = time.monotonic() if now is None else now
        expired = [entry for entry in self._pending.values() if entry.deadline <= now]
        for entry in expired:
            self._pending.pop(entry.id, None)
            if not entry.future.done():
                entry.future.set_exception(RequestTimeoutError(entry.id, entry.timeout))
        return [entry.id for entry in expired]

    def __contains__(self, request_id: Any) -> bool:
        return request_id in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)
