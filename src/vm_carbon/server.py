"""HTTP endpoints for per-VM power and carbon estimates.

Thin JSON layer over the registry and the model:
- GET /power?vm=<name>   static/dynamic/total watts
- GET /carbon?vm=<name>  power plus gCO2eq/h
- GET /usage?vm=<name>   raw usage window
- GET /vms               every known VM
- GET /health            liveness and sampler progress

Unknown VMs and VMs without a sample yet are 404; an empty name is 400.
"""

from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException, Query, Request

from vm_carbon.config import Config
from vm_carbon.discovery import discover
from vm_carbon.model import (
    PolynomialModel,
    carbon_rate,
    estimate_vm_power,
    to_utilization,
)
from vm_carbon.procfs import clock_ticks_per_second
from vm_carbon.registry import UsageRegistry
from vm_carbon.sampler import Sampler

log = structlog.get_logger()


def build_registry(config: Config) -> UsageRegistry:
    """Create the process-wide registry wired to live discovery."""
    return UsageRegistry(
        history_size=config.sampling.history_size,
        discover_fn=functools.partial(discover, match=config.sampling.process_match),
    )


def _require_vm_name(vm: str) -> str:
    name = vm.strip()
    if not name:
        raise HTTPException(status_code=400, detail="VM name cannot be empty")
    return name


def _not_found(vm: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"No CPU usage data available for '{vm}'")


def create_app(
    config: Config,
    registry: UsageRegistry | None = None,
    start_sampler: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Validated configuration
        registry: Registry to serve; a live one is built when omitted
        start_sampler: Run the background sampling loop for the app's lifetime
    """
    registry = registry if registry is not None else build_registry(config)
    model = PolynomialModel(config.model.coefficients)
    ticks_per_second = clock_ticks_per_second()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sampler: Sampler | None = None
        task: asyncio.Task | None = None
        if start_sampler:
            sampler = Sampler(
                registry,
                interval=config.sampling.interval,
                heartbeat_cycles=config.sampling.heartbeat_cycles,
            )
            task = asyncio.create_task(sampler.run())
        app.state.sampler = sampler
        try:
            yield
        finally:
            if sampler is not None and task is not None:
                sampler.stop()
                await task

    app = FastAPI(title="vm-carbon", lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.model = model
    app.state.sampler = None

    def _power_payload(vm: str) -> dict:
        # One locked read so rate and vCPUs come from the same cycle
        usage = registry.usage(vm)
        if usage is None or usage.latest is None or usage.vcpu_count is None:
            raise _not_found(vm)
        vcpus = usage.vcpu_count

        utilization = to_utilization(
            usage.latest, config.model.utilization_units, ticks_per_second
        )
        estimate = estimate_vm_power(
            model,
            utilization,
            vm_cores=vcpus,
            server_cores=config.model.server_cores,
            cinergy_ratio=config.model.cinergy_ratio,
        )
        if estimate.dynamic < 0:
            # Sampled utilization below the regression baseline
            log.debug("negative_dynamic_power", vm=vm, dynamic=estimate.dynamic)
        return {"vm": vm, "utilization": utilization, "vcpus": vcpus, **estimate.to_dict()}

    @app.get("/power")
    def get_power(vm: str = Query(...)) -> dict:
        """Estimated power draw of one VM, in watts."""
        return _power_payload(_require_vm_name(vm))

    @app.get("/carbon")
    def get_carbon(vm: str = Query(...)) -> dict:
        """Estimated emissions rate of one VM, in gCO2eq/h."""
        payload = _power_payload(_require_vm_name(vm))
        pue = config.carbon.dc_pue
        emission_factor = config.carbon.emission_factor
        payload.update(
            pue=pue,
            emission_factor=emission_factor,
            gco2_per_hour=carbon_rate(payload["total"], pue, emission_factor),
        )
        return payload

    @app.get("/usage")
    def get_usage(vm: str = Query(...)) -> dict:
        """Raw usage window for one VM."""
        name = _require_vm_name(vm)
        usage = registry.usage(name)
        if usage is None:
            raise _not_found(name)
        return usage.to_dict()

    @app.get("/vms")
    def list_vms() -> list[dict]:
        """Every VM seen since startup."""
        return [row.to_dict() for row in registry.snapshot()]

    @app.get("/health")
    def health(request: Request) -> dict:
        """Liveness and sampler progress."""
        sampler = request.app.state.sampler
        return {
            "status": "ok",
            "vms": len(registry),
            "cycles": sampler.state.cycle_count if sampler is not None else 0,
        }

    return app
