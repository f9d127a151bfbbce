"""Retry schedule for uploads.

The upload handler retries a failed upload once per configured delay; the
delays are used in order and never repeat.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """Ordered backoff schedule.

    The number of retries equals the number of delays, so a file is
    attempted at most ``len(delays) + 1`` times.

    Attributes:
        delays: Delay in seconds before each retry, in order.
    """

    delays: tuple[float, ...]

    @classmethod
    def from_durations(cls, durations: Sequence[timedelta]) -> RetryPolicy:
        """Create a policy from configured durations."""
        return cls(tuple(d.total_seconds() for d in durations))

    @property
    def max_retries(self) -> int:
        """Get the number of retries allowed."""
        return len(self.delays)

    def delay_for(self, retry_index: int) -> float | None:
        """Get the delay before a retry.

        Args:
            retry_index: Zero-based index of the retry about to happen.

        Returns:
            Delay in seconds, or None if the schedule is exhausted.
        """
        if 0 <= retry_index < len(self.delays):
            return self.delays[retry_index]
        return None
