"""Logging for vm-carbon.

Two audiences, two channels:

- People at a terminal get Rich-formatted one-liners from the console helpers
  (info/warn/error and the domain helpers built on them).
- The service writes structured events through structlog. configure() routes
  them, together with stdlib records from uvicorn and friends, to a rotating
  JSON Lines file and optionally to a colored stream on stderr.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from vm_carbon.config import Config

LOG_SOURCE = "service"

_console = Console(highlight=False)


class Icon:
    """Markers for console lines."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    POWER = "⚡"
    LEAF = "🌱"


_LEVEL_TAGS = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Console output
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one timestamped console line.

    Args:
        level: info, warn or error
        msg: Text, may contain Rich markup
        icon: Optional marker placed after the level tag
    """
    parts = [f"[dim]{datetime.now():%H:%M:%S}[/]", _LEVEL_TAGS.get(level, f"[{level}]")]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


def version_info(name: str, version: str) -> None:
    info(f"[bold cyan]{name}[/] v{version}", Icon.LEAF)


def model_loaded(coefficients: list[float]) -> None:
    """Show the host power polynomial in use."""
    terms = ", ".join(f"{c:g}" for c in coefficients)
    info(f"Loaded formula: [cyan]{terms}[/] [dim](degree {len(coefficients) - 1})[/]", Icon.POWER)


def config_summary(
    cinergy_ratio: float, server_cores: int, dc_pue: float, emission_factor: float
) -> None:
    """Show the attribution and carbon parameters in use."""
    settings = {
        "cinergy_ratio": cinergy_ratio,
        "server_cores": server_cores,
        "dc_pue": dc_pue,
        "emission_factor": emission_factor,
    }
    rendered = ", ".join(f"{key}=[cyan]{value}[/]" for key, value in settings.items())
    info(f"Config: {rendered} [dim](gCO2eq/kWh)[/]")


def config_invalid(message: str) -> None:
    error(f"Invalid configuration: {message}", Icon.FAIL)


def config_created(path: str) -> None:
    info(f"Created config at [cyan]{path}[/]")


def service_started(host: str, port: int) -> None:
    info(f"Starting server on [cyan]http://{host}:{port}[/]", Icon.OK)


def no_vms_found(match: str) -> None:
    warn(f"No [cyan]{match}[/] processes found")


# ─────────────────────────────────────────────────────────────────────────────
# Structured events
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Build a processor that stamps every event with its origin."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def _foreign_chain(timestamper: structlog.processors.TimeStamper) -> list:
    """Processors applied to records that did not come through structlog."""
    return [
        structlog.contextvars.merge_contextvars,
        timestamper,
        structlog.processors.add_log_level,
        _add_source(LOG_SOURCE),
        structlog.processors.format_exc_info,
    ]


def _file_handler(config: Config, level: int) -> logging.Handler:
    """Rotating JSON Lines file under the state directory."""
    config.state_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_foreign_chain(
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts")
            ),
        )
    )
    return handler


def _console_handler(level: int) -> logging.Handler:
    """Colored key=value lines on stderr."""
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
            foreign_pre_chain=_foreign_chain(
                structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False)
            ),
        )
    )
    return handler


def configure(config: Config, console: bool = True, level: int = logging.INFO) -> None:
    """Send structlog and stdlib records to the log file (and stderr).

    Replaces any handlers already attached to the root logger. Timestamps are
    local time.

    Args:
        config: Supplies the log path and rotation limits
        console: Also render events to stderr
        level: Minimum level for every handler
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(_file_handler(config, level))
    if console:
        root.addHandler(_console_handler(level))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.add_log_level,
            _add_source(LOG_SOURCE),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_structlog() -> structlog.stdlib.BoundLogger:
    """Logger for structured service events."""
    return structlog.get_logger()
