from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class CancelHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Time source and alarm scheduler used by the session timer."""

    def monotonic(self) -> float: ...

    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> CancelHandle: ...


class LoopClock:
    """Clock backed by the running asyncio event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> CancelHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)


class TimerAlreadyArmed(RuntimeError):
    """Raised when ``start`` is called while a deadline is pending."""


@dataclass(slots=True, frozen=True)
class DeadlineHandle:
    generation: int
    started_at: float
    deadline: float
    duration: float


ExpiryCallback = Callable[[DeadlineHandle], None]


class SessionTimer:
    """Single-shot, restartable countdown.

    Remaining time is always derived from the absolute deadline on the
    clock's monotonic scale, so irregular polling never drifts. Once the
    alarm has fired the timer reports zero remaining time until ``cancel``
    is called.
    """

    _generations = itertools.count(1)

    def __init__(self, clock: Clock, on_expire: ExpiryCallback) -> None:
        self._clock = clock
        self._on_expire = on_expire
        self._handle: Optional[DeadlineHandle] = None
        self._alarm: Optional[CancelHandle] = None

    @property
    def armed(self) -> Optional[DeadlineHandle]:
        return self._handle

    def is_armed(self) -> bool:
        return self._handle is not None

    def start(self, duration: float) -> DeadlineHandle:
        if self._handle is not None:
            raise TimerAlreadyArmed("session timer already armed; use restart()")
        if duration <= 0:
            raise ValueError("duration must be positive")
        now = self._clock.monotonic()
        handle = DeadlineHandle(
            generation=next(self._generations),
            started_at=now,
            deadline=now + duration,
            duration=duration,
        )
        self._handle = handle
        self._alarm = self._clock.call_later(duration, lambda: self._fire(handle))
        logger.debug("Session timer #%d armed for %.1fs", handle.generation, duration)
        return handle

    def restart(self, duration: float) -> DeadlineHandle:
        self.cancel()
        return self.start(duration)

    def cancel(self) -> None:
        alarm, handle = self._alarm, self._handle
        self._alarm = None
        self._handle = None
        if alarm is not None:
            alarm.cancel()
        if handle is not None:
            logger.debug("Session timer #%d cancelled", handle.generation)

    def remaining(self) -> Optional[float]:
        if self._handle is None:
            return None
        return max(0.0, self._handle.deadline - self._clock.monotonic())

    def _fire(self, handle: DeadlineHandle) -> None:
        # The handle stays in place (remaining() == 0) until the owner cancels.
        if self._handle is handle:
            self._alarm = None
        try:
            self._on_expire(handle)
        except Exception:
            logger.exception("Session expiry callback failed for timer #%d", handle.generation)
