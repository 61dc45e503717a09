"""
Clock/timer source for session guards.

Guards never read time or schedule callbacks directly, so tests can drive
them with a manual clock.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Clock(ABC):
    @abstractmethod
    def time(self) -> float:
        """Wall-clock epoch seconds (comparable with token iat/exp)."""

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, for measuring short intervals."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` after `delay` seconds."""


class SystemClock(Clock):
    """Real time, with timers on the running asyncio loop."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)
