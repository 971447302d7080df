"""Fixed-rate multi-cadence scheduler."""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

# Wake up this much before the next due time, then re-check
SLEEP_MARGIN = 0.002


@dataclass(slots=True)
class Cadence:
    """One independently timed recurring action."""

    name: str
    interval: float
    action: Callable[[], object]
    next_due: float
    fired: int = 0
    skipped: int = 0


class Scheduler:
    """
    Fires several cadences from one monotonic clock without drift.

    Due times only ever advance by whole intervals, so the k-th target of a
    cadence is ``first_due + k * interval`` no matter how late an action runs.
    Targets that have already passed are skipped, not replayed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cadences: dict[str, Cadence] = {}

    def now(self) -> float:
        return self._clock()

    def add(
        self,
        name: str,
        interval: float,
        action: Callable[[], object],
        first_due: float | None = None,
    ) -> Cadence:
        """
        Register a cadence.

        Args:
            name: Unique cadence name.
            interval: Seconds between firings.
            action: Callable run on each firing.
            first_due: Monotonic time of the first firing; ``now + interval``
                when omitted.
        """
        if interval <= 0:
            raise ValueError(f"interval for '{name}' must be positive")
        if name in self._cadences:
            raise ValueError(f"cadence '{name}' already registered")
        if first_due is None:
            first_due = self._clock() + interval
        cadence = Cadence(name=name, interval=interval, action=action, next_due=first_due)
        self._cadences[name] = cadence
        return cadence

    def cadence(self, name: str) -> Cadence:
        return self._cadences[name]

    def names(self) -> list[str]:
        return list(self._cadences)

    def set_interval(self, name: str, interval: float) -> None:
        """Change a cadence's interval and re-anchor it to ``now + interval``."""
        if interval <= 0:
            raise ValueError(f"interval for '{name}' must be positive")
        cadence = self._cadences[name]
        cadence.interval = interval
        cadence.next_due = self._clock() + interval
        log.info("interval_changed", cadence=name, interval=interval)

    def run_pending(self, now: float | None = None) -> list[str]:
        """
        Fire every cadence that is due.

        After an action runs, its due time advances by whole intervals until
        it lies in the future of the clock as read after the action.

        Args:
            now: Current monotonic time; read from the clock when omitted.

        Returns:
            Names of the cadences fired, in registration order.
        """
        if now is None:
            now = self._clock()
        fired: list[str] = []

        for cadence in self._cadences.values():
            if cadence.next_due > now:
                continue
            try:
                cadence.action()
            except Exception:
                log.exception("cadence_action_failed", cadence=cadence.name)
            cadence.fired += 1
            fired.append(cadence.name)

            after = max(now, self._clock())
            cadence.next_due += cadence.interval
            while cadence.next_due <= after:
                cadence.next_due += cadence.interval
                cadence.skipped += 1

        return fired

    def time_until_next(self, now: float | None = None) -> float:
        """Seconds until the earliest due cadence, 0.0 if one is already due."""
        if not self._cadences:
            return 0.0
        if now is None:
            now = self._clock()
        return max(0.0, min(c.next_due for c in self._cadences.values()) - now)

    def run(
        self,
        stop_event: threading.Event,
        before_each: Callable[[], None] | None = None,
    ) -> None:
        """
        Run until ``stop_event`` is set.

        Between firings the loop waits on the event for slightly less than the
        time to the next due cadence, so a stop request wakes it immediately.

        Args:
            stop_event: Cooperative cancellation flag.
            before_each: Called at the top of every iteration, e.g. to apply
                pending control commands.
        """
        while not stop_event.is_set():
            if before_each is not None:
                before_each()
            if not self._cadences:
                stop_event.wait(timeout=0.1)
                continue
            self.run_pending()
            wait = self.time_until_next()
            if wait > SLEEP_MARGIN:
                stop_event.wait(timeout=wait - SLEEP_MARGIN)
            elif wait > 0:
                stop_event.wait(timeout=wait)
