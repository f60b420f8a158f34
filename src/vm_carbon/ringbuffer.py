# src/vm_carbon/ringbuffer.py
"""Bounded usage history for one hypervisor process.

Stores the last 10 utilization samples (10 seconds at 1Hz). Only the newest
sample feeds the power model; the window is kept for smoothing.
"""

from collections import deque

DEFAULT_HISTORY_SIZE = 10


class UsageHistory:
    """Ring buffer of utilization samples, oldest evicted first.

    Stores up to max_samples (default 10 = 10 seconds at 1Hz).
    """

    def __init__(self, max_samples: int = DEFAULT_HISTORY_SIZE) -> None:
        if max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {max_samples}")
        self._samples: deque[float] = deque(maxlen=max_samples)

    def __len__(self) -> int:
        """Return number of samples in buffer."""
        return len(self._samples)

    @property
    def is_empty(self) -> bool:
        """Return True if buffer has no samples."""
        return len(self._samples) == 0

    @property
    def capacity(self) -> int:
        """Return maximum number of samples the buffer can hold."""
        return self._samples.maxlen or 0

    @property
    def samples(self) -> tuple[float, ...]:
        """Read-only copy of samples, oldest first."""
        return tuple(self._samples)

    @property
    def latest(self) -> float | None:
        """Most recent sample, or None if empty."""
        return self._samples[-1] if self._samples else None

    def mean(self) -> float | None:
        """Average over the retained window, or None if empty."""
        if not self._samples:
            return None
        return sum(self._samples) / len(self._samples)

    def push(self, rate: float) -> None:
        """Add a sample, evicting the oldest when full."""
        self._samples.append(rate)

    def clear(self) -> None:
        """Empty the buffer."""
        self._samples.clear()
