"""CLI commands for vm-carbon."""

from pathlib import Path

import click


def _load(
    ctx: click.Context,
    validate: bool = True,
    host: str | None = None,
    port: int | None = None,
):
    """Load config for a command, exiting with status 1 if it is invalid.

    host and port override server settings and are validated along with
    the rest of the file.
    """
    from vm_carbon import logging as vlog
    from vm_carbon.config import Config, load_config

    path = ctx.obj.get("config_path") if ctx.obj else None
    try:
        if not validate:
            return Config.load(path)
        config = load_config(path)
        if host is None and port is None:
            return config
        if host is not None:
            config.server.host = host
        if port is not None:
            config.server.port = port
        config.validate()
        return config
    except ValueError as e:
        vlog.config_invalid(str(e))
        raise SystemExit(1) from e


@click.group()
@click.version_option(package_name="vm-carbon")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $VM_CARBON_CONFIG or ~/.config/vm-carbon/config.toml)",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None) -> None:
    """Estimate per-VM power draw and carbon emissions from host CPU telemetry."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.option("--host", default=None, help="Bind address (overrides server.host)")
@click.option(
    "--port",
    "-p",
    default=None,
    type=click.IntRange(1, 65535),
    help="Port (overrides server.port / PORT)",
)
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the sampler and HTTP endpoints."""
    from importlib.metadata import version

    import uvicorn

    from vm_carbon import logging as vlog
    from vm_carbon.server import create_app

    config = _load(ctx, host=host, port=port)

    vlog.configure(config)
    vlog.version_info("vm-carbon", version("vm-carbon"))
    vlog.model_loaded(config.model.coefficients)
    vlog.config_summary(
        config.model.cinergy_ratio,
        config.model.server_cores,
        config.carbon.dc_pue,
        config.carbon.emission_factor,
    )

    app = create_app(config)
    vlog.service_started(config.server.host, config.server.port)
    # log_config=None keeps uvicorn on the root handlers set up above
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)


@main.command()
@click.option(
    "--interval",
    "-i",
    default=None,
    type=float,
    help="Take two samples this many seconds apart and show measured usage",
)
@click.pass_context
def scan(ctx: click.Context, interval: float | None) -> None:
    """List hypervisor processes and the VMs they run."""
    import functools
    import time

    from vm_carbon import logging as vlog
    from vm_carbon.discovery import discover
    from vm_carbon.procfs import read_cpu_time
    from vm_carbon.registry import UsageRegistry

    config = _load(ctx, validate=False)
    match = config.sampling.process_match

    if interval is None:
        records = discover(match=match)
        if not records:
            vlog.no_vms_found(match)
            return

        click.echo(f"{'PID':>7}  {'VM':30}  {'vCPUs':>5}")
        click.echo("-" * 46)
        for record in records:
            click.echo(f"{record.pid:>7}  {record.vm_name[:30]:30}  {record.vcpu_count:>5}")
        return

    if interval <= 0:
        raise click.BadParameter("must be > 0", param_hint="--interval")

    registry = UsageRegistry(
        history_size=config.sampling.history_size,
        discover_fn=functools.partial(discover, match=match),
        read_cpu_time_fn=read_cpu_time,
    )
    registry.run_cycle()
    time.sleep(interval)
    registry.run_cycle()

    rows = registry.snapshot()
    if not rows:
        vlog.no_vms_found(match)
        return

    click.echo(f"{'PID':>7}  {'VM':30}  {'vCPUs':>5}  {'Usage':>10}")
    click.echo("-" * 58)
    for row in rows:
        usage = f"{row.latest:.1f}" if row.latest is not None else "-"
        vcpus = row.vcpu_count if row.vcpu_count is not None else "?"
        click.echo(f"{row.pid:>7}  {row.vm_name[:30]:30}  {vcpus:>5}  {usage:>10}")


@main.command()
@click.argument("utilization", type=float)
@click.option("--vcpus", "-c", required=True, type=click.IntRange(min=1), help="vCPUs of the VM")
@click.option(
    "--ratio",
    "-r",
    default=None,
    type=click.FloatRange(0.0, 1.0),
    help="Cinergy ratio (overrides model.cinergy_ratio)",
)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def estimate(
    ctx: click.Context, utilization: float, vcpus: int, ratio: float | None, as_json: bool
) -> None:
    """Estimate power and carbon for a utilization value, without sampling."""
    import json

    from vm_carbon.model import PolynomialModel, carbon_rate, estimate_vm_power

    config = _load(ctx)
    cinergy_ratio = ratio if ratio is not None else config.model.cinergy_ratio

    model = PolynomialModel(config.model.coefficients)
    result = estimate_vm_power(
        model,
        utilization,
        vm_cores=vcpus,
        server_cores=config.model.server_cores,
        cinergy_ratio=cinergy_ratio,
    )
    gco2 = carbon_rate(result.total, config.carbon.dc_pue, config.carbon.emission_factor)

    if as_json:
        click.echo(json.dumps({**result.to_dict(), "gco2_per_hour": gco2}))
        return

    click.echo(f"Static:  {result.static:10.4f} W")
    click.echo(f"Dynamic: {result.dynamic:10.4f} W")
    click.echo(f"Total:   {result.total:10.4f} W")
    click.echo(f"Carbon:  {gco2:10.4f} gCO2eq/h")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Display current configuration."""
    from vm_carbon.config import Config

    path = ctx.obj.get("config_path") or Config.default_path()
    cfg = _load(ctx, validate=False)

    click.echo(f"Config file: {path}")
    click.echo(f"Exists: {path.exists()}")
    click.echo()
    click.echo("[model]")
    click.echo(f"  coefficients = {cfg.model.coefficients}")
    click.echo(f"  cinergy_ratio = {cfg.model.cinergy_ratio}")
    click.echo(f"  server_cores = {cfg.model.server_cores}")
    click.echo(f"  utilization_units = {cfg.model.utilization_units}")
    click.echo()
    click.echo("[carbon]")
    click.echo(f"  dc_pue = {cfg.carbon.dc_pue}")
    click.echo(f"  emission_factor = {cfg.carbon.emission_factor}")
    click.echo()
    click.echo("[sampling]")
    click.echo(f"  interval = {cfg.sampling.interval}")
    click.echo(f"  history_size = {cfg.sampling.history_size}")
    click.echo(f"  process_match = {cfg.sampling.process_match}")
    click.echo(f"  heartbeat_cycles = {cfg.sampling.heartbeat_cycles}")
    click.echo()
    click.echo("[server]")
    click.echo(f"  host = {cfg.server.host}")
    click.echo(f"  port = {cfg.server.port}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  log_max_bytes = {cfg.system.log_max_bytes}")
    click.echo(f"  log_backup_count = {cfg.system.log_backup_count}")


@config.command("edit")
@click.pass_context
def config_edit(ctx: click.Context) -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from vm_carbon import logging as vlog
    from vm_carbon.config import Config

    path = ctx.obj.get("config_path") or Config.default_path()
    if not path.exists():
        Config().save(path)
        vlog.config_created(str(path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
@click.pass_context
def config_reset(ctx: click.Context) -> None:
    """Reset configuration to defaults."""
    from vm_carbon.config import Config

    path = ctx.obj.get("config_path") or Config.default_path()
    Config().save(path)
    click.echo(f"Config reset to defaults at {path}")
