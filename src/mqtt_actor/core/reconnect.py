"""
Reconnect Scheduling.

Arms a single, fixed-interval reconnect attempt after an unexpected
disconnect or a transient connect failure. The scheduler never fires a
callback directly: the timer posts a `ReconnectDue` message into the actor's
mailbox, and the actor claims it there. Each arm bumps a generation number,
so a timer that fires after `cancel()` or after being re-armed is stale and
gets ignored.
"""
import logging
from typing import Any, Callable, Optional, Protocol

from mqtt_actor.core.events import ReconnectDue

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


# schedule(delay_seconds, event) posts `event` to the mailbox after the delay
Schedule = Callable[[float, Any], TimerHandle]


class ReconnectScheduler:
    def __init__(self, schedule: Schedule):
        self._schedule = schedule
        self._timer: Optional[TimerHandle] = None
        self._generation = 0

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self, after: float) -> int:
        """Schedules one reconnect attempt, replacing any attempt already scheduled."""
        self.cancel()
        self._generation += 1
        self._timer = self._schedule(after, ReconnectDue(self._generation))
        logger.info(f"Reconnect attempt scheduled in {after}s")
        return self._generation

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.debug("Scheduled reconnect cancelled")
        self._generation += 1

    def claim(self, generation: int) -> bool:
        """Consumes a fired timer. Returns False for stale or cancelled ones."""
        if self._timer is None or generation != self._generation:
            return False
        self._timer = None
        return True
