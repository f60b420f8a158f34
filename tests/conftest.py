"""Shared test fixtures for vm-carbon."""

from pathlib import Path

import pytest

from vm_carbon.config import Config
from vm_carbon.discovery import ProcessRecord
from vm_carbon.registry import UsageRegistry


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHost:
    """Scriptable stand-in for the hypervisor process table."""

    def __init__(self) -> None:
        self.records: list[ProcessRecord] = []
        self.counters: dict[int, int] = {}

    def add_vm(self, pid: int, name: str, vcpus: int = 1, ticks: int | None = None) -> None:
        self.records.append(ProcessRecord(pid=pid, vm_name=name, vcpu_count=vcpus))
        if ticks is not None:
            self.counters[pid] = ticks

    def remove_vm(self, name: str) -> None:
        self.records = [r for r in self.records if r.vm_name != name]

    def discover(self) -> list[ProcessRecord]:
        return list(self.records)

    def read_cpu_time(self, pid: int) -> int | None:
        return self.counters.get(pid)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def registry(fake_host: FakeHost, fake_clock: FakeClock) -> UsageRegistry:
    """Registry wired to the fake host and clock."""
    return UsageRegistry(
        discover_fn=fake_host.discover,
        read_cpu_time_fn=fake_host.read_cpu_time,
        clock=fake_clock,
    )


@pytest.fixture
def model_config() -> Config:
    """Valid config matching the reference calculation.

    coefficients [10, 5], 16 host cores, ratio 0.5, PUE 1.3, 50 gCO2eq/kWh.
    """
    config = Config()
    config.model.coefficients = [10.0, 5.0]
    config.model.server_cores = 16
    config.model.cinergy_ratio = 0.5
    config.carbon.dc_pue = 1.3
    config.carbon.emission_factor = 50.0
    return config


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove environment overrides that would leak into config loading."""
    for name in (
        "REG_COEFF",
        "CINERGY_RATIO",
        "SERVER_CORES",
        "DC_PUE",
        "EMISSION_FACTOR",
        "PORT",
        "VM_CARBON_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)


def write_proc_entry(
    proc_root: Path,
    pid: int,
    *,
    comm: str = "qemu-system-x86",
    utime: int = 0,
    stime: int = 0,
    cmdline: bytes | None = b"",
) -> None:
    """Create a fake /proc/<pid> directory with stat and cmdline files."""
    pid_dir = proc_root / str(pid)
    pid_dir.mkdir(parents=True, exist_ok=True)

    # Fields 4..13 are filler; utime and stime are fields 14 and 15
    filler = [str(n) for n in range(4, 14)]
    tail = ["0", "0", "20", "0", "1", "0", "12345"]
    fields = ["S", *filler, str(utime), str(stime), *tail]
    (pid_dir / "stat").write_text(f"{pid} ({comm}) {' '.join(fields)}\n")

    if cmdline is not None:
        (pid_dir / "cmdline").write_bytes(cmdline)
