"""Background sampling loop feeding the usage registry."""

import asyncio
import resource
from dataclasses import dataclass
from datetime import datetime

import structlog

from vm_carbon.registry import CycleStats, UsageRegistry

log = structlog.get_logger()


@dataclass
class SamplerState:
    """Runtime state of the sampling loop."""

    running: bool = False
    cycle_count: int = 0
    last_cycle_time: datetime | None = None
    last_stats: CycleStats | None = None

    def update_cycle(self, stats: CycleStats) -> None:
        """Update state after a completed cycle."""
        self.cycle_count += 1
        self.last_stats = stats
        self.last_cycle_time = datetime.now()


class Sampler:
    """Drives UsageRegistry.run_cycle() at a fixed cadence.

    The loop is the registry's only writer. It runs until stop() is called;
    in the service that only happens at shutdown.
    """

    def __init__(
        self,
        registry: UsageRegistry,
        interval: float = 1.0,
        heartbeat_cycles: int = 60,
    ) -> None:
        self.registry = registry
        self.interval = interval
        self.heartbeat_cycles = heartbeat_cycles
        self.state = SamplerState()
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        """True once stop() has been requested."""
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request the loop to exit at its next wait."""
        self._stop_event.set()

    async def run_once(self) -> CycleStats:
        """Run a single registry cycle in the default executor (blocking file I/O)."""
        loop = asyncio.get_running_loop()
        stats = await loop.run_in_executor(None, self.registry.run_cycle)
        self.state.update_cycle(stats)
        return stats

    async def _wait_interval(self) -> bool:
        """Sleep for one interval. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> None:
        """Sample forever at the configured interval, until stop().

        Each iteration:
        1. Discover hypervisor processes and read their CPU counters
        2. Append usage rates to the registry
        3. Emit a heartbeat every heartbeat_cycles iterations
        4. Sleep one interval
        """
        self.state.running = True
        heartbeat_count = 0
        log.info("sampler_started", interval=self.interval)

        try:
            while not self._stop_event.is_set():
                try:
                    stats = await self.run_once()
                    log.debug(
                        "sample_cycle",
                        discovered=stats.discovered,
                        sampled=stats.sampled,
                        appended=stats.appended,
                    )

                    heartbeat_count += 1
                    if heartbeat_count >= self.heartbeat_cycles:
                        self._log_heartbeat(heartbeat_count)
                        heartbeat_count = 0
                except asyncio.CancelledError:
                    log.info("sampler_cancelled")
                    raise
                except Exception as e:
                    log.error("sample_failed", error=str(e))

                if await self._wait_interval():
                    break
        finally:
            self.state.running = False
            log.info("sampler_stopped", cycles=self.state.cycle_count)

    def _log_heartbeat(self, cycles: int) -> None:
        # ru_maxrss is KiB on Linux
        rss_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
        last = self.state.last_stats
        log.info(
            "sampler_heartbeat",
            cycles=cycles,
            total_cycles=self.state.cycle_count,
            vms=len(self.registry),
            discovered=last.discovered if last else 0,
            rss_mb=round(rss_mb, 1),
        )
