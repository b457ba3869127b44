"""
dkgincentives/chronos.py

Shared epoch clock.

Epochs are numbered from 1. Any timestamp before the start time belongs to
epoch 1, so callers never see epoch 0.
"""

import time
import logging
from typing import Callable, Optional

logger = logging.getLogger("dkgincentives.chronos")


class Chronos:
    """
    Monotonic, globally agreed epoch source.

    Usage:
        chronos = Chronos(start_time=1_700_000_000, epoch_length=3600)
        epoch = chronos.get_current_epoch()
    """

    def __init__(
        self,
        start_time: int,
        epoch_length: int,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize Chronos.

        Args:
            start_time: Unix timestamp at which epoch 1 begins
            epoch_length: Epoch length in seconds
            clock: Time source returning unix seconds (defaults to time.time)
        """
        if start_time <= 0:
            raise ValueError(f"Invalid start time: {start_time}")
        if epoch_length <= 0:
            raise ValueError(f"Invalid epoch length: {epoch_length}")
        self._start_time = int(start_time)
        self._epoch_length = int(epoch_length)
        self._clock = clock or time.time

    @property
    def start_time(self) -> int:
        return self._start_time

    @property
    def epoch_length(self) -> int:
        return self._epoch_length

    def now(self) -> int:
        """Current timestamp as an integer."""
        return int(self._clock())

    def epoch_at_timestamp(self, timestamp: int) -> int:
        """Epoch number containing the given timestamp."""
        if timestamp < self._start_time:
            return 1
        return (timestamp - self._start_time) // self._epoch_length + 1

    def get_current_epoch(self) -> int:
        """Epoch number containing the current time."""
        return self.epoch_at_timestamp(self.now())

    def timestamp_for_epoch(self, epoch: int) -> int:
        """Start timestamp of an epoch, 0 for epoch 0."""
        if epoch == 0:
            return 0
        return self._start_time + self._epoch_length * (epoch - 1)

    def time_until_next_epoch(self) -> int:
        """Seconds until the next epoch boundary."""
        now = self.now()
        if now < self._start_time:
            return self._start_time + self._epoch_length - now
        return self._epoch_length - (now - self._start_time) % self._epoch_length

    def has_epoch_elapsed(self, epoch: int) -> bool:
        return self.get_current_epoch() > epoch

    def elapsed_time_in_current_epoch(self) -> int:
        now = self.now()
        if now < self._start_time:
            return 0
        return (now - self._start_time) % self._epoch_length

    def total_elapsed_time(self) -> int:
        now = self.now()
        if now < self._start_time:
            return 0
        return now - self._start_time

    def is_active(self) -> bool:
        """True once the start time has passed."""
        return self.now() >= self._start_time


class ManualClock:
    """
    Settable time source for simulations and tests.

    Usage:
        clock = ManualClock(1_700_000_000)
        chronos = Chronos(1_700_000_000, 3600, clock=clock)
        clock.advance(1800)
    """

    def __init__(self, now: float = 0.0):
        self._now = float(now)

    def __call__(self) -> float:
        return self._now

    def set(self, now: float) -> None:
        if now < self._now:
            raise ValueError(f"Clock cannot move backwards: {now} < {self._now}")
        self._now = float(now)

    def advance(self, seconds: float) -> None:
        self.set(self._now + seconds)
