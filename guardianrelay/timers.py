"""
Cancellable timers for response deadlines and escalation waves.

Every timer is an ``asyncio.Task`` that sleeps and then awaits a callback.
Timers are keyed by a structured ``TimerKey`` so that cancellation can
target one contact's deadline, one emergency's wave timer, or everything
belonging to an emergency.

Cancellation is idempotent: cancelling a key that already fired, was
already cancelled or never existed is a no-op.  A timer removes its own
key before running the callback, so a callback may freely re-arm the same
key or cancel its whole emergency without cancelling itself.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, NamedTuple, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerKind(str, enum.Enum):
    RESPONSE = "response"
    WAVE = "wave"


class TimerKey(NamedTuple):
    """Composite timer identity."""

    emergency_id: str
    contact_id: Optional[str]
    kind: TimerKind

    @classmethod
    def response(cls, emergency_id: str, contact_id: str) -> "TimerKey":
        return cls(emergency_id, contact_id, TimerKind.RESPONSE)

    @classmethod
    def wave(cls, emergency_id: str) -> "TimerKey":
        return cls(emergency_id, None, TimerKind.WAVE)


class TimerRegistry:
    """Owns every live timer of one escalation controller."""

    def __init__(self) -> None:
        self._timers: dict[TimerKey, asyncio.Task] = {}

    def schedule(self, key: TimerKey, delay: float, callback: TimerCallback) -> None:
        """Arm ``callback`` to run after ``delay`` seconds.

        An existing timer with the same key is cancelled first.  Must be
        called from within a running event loop.
        """
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(
            self._run(key, delay, callback),
            name=f"timer:{key.kind.value}:{key.emergency_id}:{key.contact_id or '-'}",
        )
        self._timers[key] = task
        logger.debug("Armed %s timer for %s in %.1fs", key.kind.value, key, delay)

    def cancel(self, key: TimerKey) -> bool:
        """Cancel one timer.  Returns True if a live timer was cancelled."""
        task = self._timers.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Cancelled timer %s", key)
        return True

    def cancel_emergency(self, emergency_id: str) -> int:
        """Cancel every timer of an emergency.  Returns how many were live."""
        keys = [k for k in self._timers if k.emergency_id == emergency_id]
        return sum(1 for k in keys if self.cancel(k))

    def is_armed(self, key: TimerKey) -> bool:
        task = self._timers.get(key)
        return task is not None and not task.done()

    def armed_keys(self, emergency_id: Optional[str] = None) -> list[TimerKey]:
        return [
            k for k, task in self._timers.items()
            if not task.done() and (emergency_id is None or k.emergency_id == emergency_id)
        ]

    async def shutdown(self) -> None:
        """Cancel all timers and wait for them to finish unwinding."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, key: TimerKey, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer callback for %s failed", key)

    def __len__(self) -> int:
        return len(self.armed_keys())
