"""Deadline/interval bookkeeping for the poll loops of the terminal client.

Every wait in the protocol (pending acknowledgements, session readiness, file
channel status, output idle detection) is a bounded poll.  The loops share a
:class:`PollPolicy` record and read time through a :class:`Clock` so that the
tests can drive them with a fake clock instead of sleeping.
"""

from __future__ import annotations

import dataclasses
import time

__all__ = [
    "Clock",
    "SYSTEM_CLOCK",
    "PollPolicy",
]


class Clock:
    """Monotonic time source backed by :mod:`time`."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = Clock()


@dataclasses.dataclass
class PollPolicy:
    """State of one bounded poll loop.

    ``timeout`` and ``interval`` are expressed in seconds.  ``deadline`` and
    ``last_progress`` are absolute readings of ``clock``.
    """

    timeout: float
    interval: float
    clock: Clock = SYSTEM_CLOCK
    deadline: float = dataclasses.field(init=False)
    last_progress: float = dataclasses.field(init=False)

    def __post_init__(self) -> None:
        now = self.clock.monotonic()
        self.deadline = now + self.timeout
        self.last_progress = now

    def expired(self) -> bool:
        return self.clock.monotonic() >= self.deadline

    def mark_progress(self) -> None:
        self.last_progress = self.clock.monotonic()

    def idle_for(self) -> float:
        """Seconds elapsed since the last call to :meth:`mark_progress`."""

        return self.clock.monotonic() - self.last_progress

    def wait(self) -> None:
        self.clock.sleep(self.interval)
