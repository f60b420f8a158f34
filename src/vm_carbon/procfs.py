"""Low-level /proc interface for per-process CPU time and arguments.

Reads the Linux process table directly - no subprocess overhead.

This module provides access to:
- /proc/<pid>/stat: cumulative user + system CPU time (clock ticks)
- /proc/<pid>/cmdline: raw NUL-separated argument vector
- SC_CLK_TCK: clock ticks per second

All functions handle process disappearance gracefully by returning None
(or an empty string for the argument vector).
"""

import os
from pathlib import Path

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

PROC_ROOT = Path("/proc")

# Field positions in /proc/<pid>/stat, counted from 1 as in proc(5).
# Fields are indexed after the closing paren of the comm field, which
# starts at field 3 (state).
STAT_FIRST_FIELD_AFTER_COMM = 3
STAT_UTIME_FIELD = 14
STAT_STIME_FIELD = 15

# Fallback when sysconf does not know the name (USER_HZ on every mainstream arch)
DEFAULT_CLK_TCK = 100


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def parse_stat_cpu_time(content: str) -> int | None:
    """Extract utime + stime from the text of a /proc/<pid>/stat record.

    The comm field is wrapped in parentheses and may itself contain spaces
    or parentheses, so fields are split only after the last ')'.

    Returns:
        Total consumed CPU time in clock ticks, or None if malformed.
    """
    _, sep, rest = content.rpartition(")")
    if not sep:
        return None

    fields = rest.split()
    utime_idx = STAT_UTIME_FIELD - STAT_FIRST_FIELD_AFTER_COMM
    stime_idx = STAT_STIME_FIELD - STAT_FIRST_FIELD_AFTER_COMM
    try:
        utime = int(fields[utime_idx])
        stime = int(fields[stime_idx])
    except (IndexError, ValueError):
        return None
    return utime + stime


def read_cpu_time(pid: int, proc_root: Path = PROC_ROOT) -> int | None:
    """Read cumulative CPU time for a process.

    Args:
        pid: Process ID
        proc_root: Mount point of the process table

    Returns:
        utime + stime in clock ticks, None if the process is gone or the
        record cannot be parsed.
    """
    try:
        content = (proc_root / str(pid) / "stat").read_text()
    except (OSError, UnicodeDecodeError):
        return None
    return parse_stat_cpu_time(content)


def read_cmdline(pid: int, proc_root: Path = PROC_ROOT) -> str:
    """Read the raw argument vector of a process.

    Arguments stay NUL-separated. Kernel threads and exited processes
    yield an empty string.
    """
    try:
        raw = (proc_root / str(pid) / "cmdline").read_bytes()
    except OSError:
        return ""
    return raw.decode("utf-8", errors="replace")


def clock_ticks_per_second() -> int:
    """Return the kernel clock tick rate used by /proc/<pid>/stat."""
    try:
        ticks = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError, AttributeError):
        return DEFAULT_CLK_TCK
    return ticks if ticks > 0 else DEFAULT_CLK_TCK
