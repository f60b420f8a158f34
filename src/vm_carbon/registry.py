# src/vm_carbon/registry.py
"""Per-VM CPU usage registry.

Owns every piece of mutable sampling state:
- VM name -> PID and VM name -> vCPU count from the latest discovery pass
- PID -> bounded usage history
- PID -> last observed (counter, timestamp) pair for delta calculations

Mutated only through run_cycle(); every public method holds one lock, so
readers see either the state before a cycle or the state after it.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from vm_carbon.discovery import ProcessRecord, discover
from vm_carbon.procfs import read_cpu_time
from vm_carbon.ringbuffer import DEFAULT_HISTORY_SIZE, UsageHistory

log = structlog.get_logger()


@dataclass(frozen=True)
class CounterReading:
    """Last observed CPU-time counter for a PID."""

    ticks: int
    timestamp: float  # clock() value when read


@dataclass(frozen=True)
class CycleStats:
    """Outcome of one sampling cycle."""

    discovered: int  # Hypervisor processes found
    sampled: int  # PIDs whose CPU time could be read
    appended: int  # New usage samples recorded


@dataclass(frozen=True)
class VmUsage:
    """Read-only view of one VM's sampling state."""

    vm_name: str
    pid: int
    vcpu_count: int | None
    latest: float | None
    mean: float | None
    samples: tuple[float, ...]

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "vm": self.vm_name,
            "pid": self.pid,
            "vcpus": self.vcpu_count,
            "latest": self.latest,
            "mean": self.mean,
            "samples": list(self.samples),
        }


class UsageRegistry:
    """Thread-safe owner of per-VM utilization history.

    Per-PID progression: unseen -> seen once (no rate yet) -> seen twice or
    more (rate computable). VMs that vanish from discovery keep their last
    PID and history; nothing is evicted.
    """

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        discover_fn: Callable[[], list[ProcessRecord]] = discover,
        read_cpu_time_fn: Callable[[int], int | None] = read_cpu_time,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty registry.

        Args:
            history_size: Samples retained per PID
            discover_fn: Returns the hypervisor processes currently running
            read_cpu_time_fn: Returns cumulative CPU ticks for a PID, or None
            clock: Monotonic time source in seconds
        """
        self.history_size = history_size
        self._discover = discover_fn
        self._read_cpu_time = read_cpu_time_fn
        self._clock = clock

        self._lock = threading.Lock()
        self._vm_pids: dict[str, int] = {}
        self._vm_vcpus: dict[str, int] = {}
        self._history: dict[int, UsageHistory] = {}
        self._last_readings: dict[int, CounterReading] = {}

    def __len__(self) -> int:
        """Return number of known VM names."""
        with self._lock:
            return len(self._vm_pids)

    @property
    def vm_names(self) -> list[str]:
        """Known VM names, sorted."""
        with self._lock:
            return sorted(self._vm_pids)

    # ─────────────────────────────────────────────────────────────────────────
    # Mutation
    # ─────────────────────────────────────────────────────────────────────────

    def run_cycle(self) -> CycleStats:
        """Run one discovery + sampling pass under the registry lock.

        Returns:
            Counts of discovered processes, readable PIDs and appended samples.
        """
        with self._lock:
            records = self._discover()
            for record in records:
                self._vm_pids[record.vm_name] = record.pid
                self._vm_vcpus[record.vm_name] = record.vcpu_count

            sampled = 0
            appended = 0
            for record in records:
                ticks = self._read_cpu_time(record.pid)
                if ticks is None:
                    # Process exited between discovery and read; retry next cycle
                    continue
                sampled += 1
                if self._record_counter(record.pid, ticks, self._clock()):
                    appended += 1

        return CycleStats(discovered=len(records), sampled=sampled, appended=appended)

    def _record_counter(self, pid: int, ticks: int, now: float) -> bool:
        """Fold a new counter reading into the PID's history.

        Must be called with the lock held. Returns True if a sample was appended.
        """
        appended = False
        previous = self._last_readings.get(pid)
        if previous is not None:
            elapsed = now - previous.timestamp
            if elapsed > 0:
                # A decreasing counter means PID reuse; clamp instead of going negative
                delta = max(0, ticks - previous.ticks)
                history = self._history.get(pid)
                if history is None:
                    history = UsageHistory(self.history_size)
                    self._history[pid] = history
                history.push(delta / elapsed)
                appended = True

        self._last_readings[pid] = CounterReading(ticks=ticks, timestamp=now)
        return appended

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    def latest_usage(self, vm_name: str) -> float | None:
        """Most recent usage sample for a VM, or None if unknown or not yet sampled."""
        with self._lock:
            pid = self._vm_pids.get(vm_name)
            if pid is None:
                return None
            history = self._history.get(pid)
            return history.latest if history is not None else None

    def vcpu_count(self, vm_name: str) -> int | None:
        """vCPU count detected for a VM, or None if unknown."""
        with self._lock:
            return self._vm_vcpus.get(vm_name)

    def history(self, vm_name: str) -> tuple[float, ...] | None:
        """Retained usage window for a VM (oldest first), or None if unknown."""
        with self._lock:
            pid = self._vm_pids.get(vm_name)
            if pid is None:
                return None
            history = self._history.get(pid)
            return history.samples if history is not None else ()

    def usage(self, vm_name: str) -> VmUsage | None:
        """Consistent view of one VM, or None if unknown."""
        with self._lock:
            return self._usage_locked(vm_name)

    def snapshot(self) -> list[VmUsage]:
        """Consistent view of every known VM, sorted by name."""
        with self._lock:
            rows = [self._usage_locked(name) for name in sorted(self._vm_pids)]
        return [row for row in rows if row is not None]

    def _usage_locked(self, vm_name: str) -> VmUsage | None:
        pid = self._vm_pids.get(vm_name)
        if pid is None:
            return None
        history = self._history.get(pid)
        return VmUsage(
            vm_name=vm_name,
            pid=pid,
            vcpu_count=self._vm_vcpus.get(vm_name),
            latest=history.latest if history is not None else None,
            mean=history.mean() if history is not None else None,
            samples=history.samples if history is not None else (),
        )
