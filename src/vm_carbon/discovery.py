"""Discovery of virtual machine processes on the host.

Each hypervisor process carries the VM identity in its argument vector
(``-name guest=<vm>,...``) along with the vCPU topology (``-smp ...``).
Parsing is split into pure functions so it can be tested without a live
process table.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import psutil
import structlog

from vm_carbon.procfs import PROC_ROOT, read_cmdline

log = structlog.get_logger()

DEFAULT_PROCESS_MATCH = "qemu"
UNKNOWN_VM = "Unknown"
DEFAULT_VCPUS = 1

_GUEST_RE = re.compile(r"guest=([^\s,]+)")
_SMP_RE = re.compile(r"-smp\s+(?:cpus=)?(\d+)")


@dataclass(frozen=True)
class ProcessRecord:
    """One hypervisor process seen during a discovery pass.

    Rebuilt every cycle; never stored beyond it.
    """

    pid: int
    vm_name: str
    vcpu_count: int


def _normalize_args(cmdline: str) -> str:
    """Treat NUL argument separators as whitespace."""
    return cmdline.replace("\0", " ")


def parse_vm_name(cmdline: str) -> str:
    """Extract the VM name from the first ``guest=`` token.

    The value ends at whitespace or a comma, so
    ``-name guest=web01,debug-threads=on`` yields ``web01``.
    Returns ``"Unknown"`` when no token is present.
    """
    match = _GUEST_RE.search(_normalize_args(cmdline))
    if match is None:
        return UNKNOWN_VM
    return match.group(1)


def parse_vcpu_count(cmdline: str) -> int:
    """Extract the vCPU count from the first ``-smp`` option.

    Accepts both ``-smp 4`` and ``-smp cpus=8,maxcpus=16``. Falls back to
    1 when the option is missing or gives zero.
    """
    match = _SMP_RE.search(_normalize_args(cmdline))
    if match is None:
        return DEFAULT_VCPUS
    count = int(match.group(1))
    return count if count > 0 else DEFAULT_VCPUS


def parse_process(pid: int, cmdline: str) -> ProcessRecord:
    """Build a ProcessRecord from a PID and its raw argument vector."""
    return ProcessRecord(
        pid=pid,
        vm_name=parse_vm_name(cmdline),
        vcpu_count=parse_vcpu_count(cmdline),
    )


def list_matching_pids(match: str = DEFAULT_PROCESS_MATCH) -> list[int]:
    """List PIDs whose executable name contains ``match``.

    Raises:
        psutil.Error / OSError if the process table cannot be listed.
    """
    pids = []
    for proc in psutil.process_iter(["name"]):
        name = proc.info.get("name") or ""
        if match in name:
            pids.append(proc.pid)
    return sorted(pids)


def discover(
    match: str = DEFAULT_PROCESS_MATCH,
    proc_root: Path = PROC_ROOT,
    list_pids: Callable[[str], list[int]] = list_matching_pids,
) -> list[ProcessRecord]:
    """Find hypervisor processes and extract VM identity from each.

    Never raises: an unavailable process listing yields an empty list, and a
    process that exits before its arguments are read yields the defaults.
    """
    try:
        pids = list_pids(match)
    except (psutil.Error, OSError) as e:
        log.warning("discovery_unavailable", match=match, error=str(e))
        return []

    records = []
    for pid in pids:
        cmdline = read_cmdline(pid, proc_root)
        if not cmdline:
            log.debug("discovery_cmdline_missing", pid=pid)
        records.append(parse_process(pid, cmdline))
    return records
