"""Named, cancelable timers on the running event loop.

Each timer is an asyncio task plus a cancelled flag. The flag is checked after
the sleep, so a timer cancelled while its wake-up is already queued never runs
its callback.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.logging import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[..., Union[None, Awaitable[None]]]


class TimerHandle:
    """Handle for one scheduled timer."""

    def __init__(self, name: str, delay: float, repeat: bool = False):
        self.name = name
        self.delay = delay
        self.repeat = repeat
        self.cancelled = False
        self.task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self.cancelled = True
        # A callback cancelling its own timer must be allowed to finish
        if self.task and not self.task.done() and self.task is not asyncio.current_task():
            self.task.cancel()


class TimerRegistry:
    """Owns at most one live timer per name."""

    def __init__(self, owner: str = "timers"):
        self.owner = owner
        self._timers: Dict[str, TimerHandle] = {}

    def call_later(self, name: str, delay: float, callback: TimerCallback, *args: Any) -> TimerHandle:
        """Run callback once after delay seconds, replacing any timer of that name."""
        self.cancel(name)
        handle = TimerHandle(name, delay)
        handle.task = asyncio.create_task(self._run_once(handle, callback, args))
        self._timers[name] = handle
        return handle

    def call_every(self, name: str, interval: float, callback: TimerCallback, *args: Any) -> TimerHandle:
        """Run callback every interval seconds until cancelled."""
        self.cancel(name)
        handle = TimerHandle(name, interval, repeat=True)
        handle.task = asyncio.create_task(self._run_repeating(handle, callback, args))
        self._timers[name] = handle
        return handle

    def cancel(self, name: str) -> bool:
        handle = self._timers.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._timers):
            self.cancel(name)

    def is_active(self, name: str) -> bool:
        return name in self._timers

    def get(self, name: str) -> Optional[TimerHandle]:
        return self._timers.get(name)

    def active_names(self) -> List[str]:
        return sorted(self._timers)

    async def _invoke(self, handle: TimerHandle, callback: TimerCallback, args: tuple) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.owner}] Timer callback failed", timer=handle.name, error=str(e), exc_info=True)

    async def _run_once(self, handle: TimerHandle, callback: TimerCallback, args: tuple) -> None:
        try:
            await asyncio.sleep(handle.delay)
        except asyncio.CancelledError:
            return
        if handle.cancelled:
            return
        if self._timers.get(handle.name) is handle:
            del self._timers[handle.name]
        await self._invoke(handle, callback, args)

    async def _run_repeating(self, handle: TimerHandle, callback: TimerCallback, args: tuple) -> None:
        try:
            while not handle.cancelled:
                await asyncio.sleep(handle.delay)
                if handle.cancelled:
                    return
                await self._invoke(handle, callback, args)
        except asyncio.CancelledError:
            return
