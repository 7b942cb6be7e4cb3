"""Exponential backoff shared by the upload and commit phases."""
import random
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass
class BackoffPolicy:
    """
    Capped exponential backoff.

    Delays never decrease between consecutive attempts, and a server
    supplied retry-after always wins when it is longer.
    """
    initial: float = 1.0
    factor: float = 2.0
    maximum: float = 60.0
    jitter: bool = False

    def __post_init__(self):
        self._last = 0.0
        self._next = self.initial

    def reset(self) -> None:
        self._last = 0.0
        self._next = self.initial

    def next_delay(self, minimum: Optional[float] = None, maximum: Optional[float] = None) -> float:
        """
        Next wait in seconds.

        ``maximum`` tightens the cap for this call only; it never takes the
        delay below the previous one.
        """
        cap = self.maximum if maximum is None else min(maximum, self.maximum)
        delay = self._next
        if self.jitter:
            # jitter only ever lengthens the wait
            delay += random.uniform(0, delay * 0.1)
        if minimum is not None:
            delay = max(delay, minimum)
        delay = max(min(delay, cap), self._last)
        self._last = delay
        self._next = min(self._next * self.factor, self.maximum)
        return delay

    def schedule(self, attempts: int) -> Iterator[float]:
        """Delays to wait before each retry after the first attempt."""
        for _ in range(max(attempts - 1, 0)):
            yield self.next_delay()

    @classmethod
    def from_config(cls, config, maximum: Optional[float] = None) -> "BackoffPolicy":
        return cls(
            initial=config.backoff_initial,
            factor=config.backoff_factor,
            maximum=maximum if maximum is not None else config.backoff_max,
            jitter=config.backoff_jitter,
        )
