"""Power and carbon model for a single VM.

Host power is approximated by a polynomial of CPU utilization, fitted offline
against a metered host: ``P(u) = c0 + c1*u + c2*u^2 + ...``. A VM's share is
split into two parts:

- static: the idle baseline P(0), apportioned by the VM's share of cores
- dynamic: the swing P(u) - P(0), scaled by the configured cinergy ratio

The dynamic part is deliberately not clamped. When a sampled utilization sits
below the regression's fitting baseline, P(u) - P(0) can come out slightly
negative; that is model noise, not an error.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

UtilizationUnits = Literal["ticks", "cores"]
UTILIZATION_UNITS: tuple[str, ...] = ("ticks", "cores")


@dataclass(frozen=True)
class PolynomialModel:
    """Fixed polynomial of host power (watts) versus utilization.

    Coefficients are ordered by ascending degree: ``coefficients[i]``
    multiplies ``u**i``. The sequence is frozen at construction.

    Evaluation contract: estimate() uses Horner's method and
    estimate_power_sum() the direct sum; both agree within floating-point
    tolerance, and estimate(0) returns c0 exactly.
    """

    coefficients: Sequence[float]

    def __post_init__(self) -> None:
        coeffs = tuple(float(c) for c in self.coefficients)
        if not coeffs:
            raise ValueError("PolynomialModel needs at least one coefficient")
        object.__setattr__(self, "coefficients", coeffs)

    @property
    def degree(self) -> int:
        """Highest power of u in the polynomial."""
        return len(self.coefficients) - 1

    @property
    def idle_power(self) -> float:
        """Power at zero utilization (c0)."""
        return self.coefficients[0]

    def estimate(self, utilization: float) -> float:
        """Host power in watts at the given utilization (Horner's method)."""
        result = 0.0
        for coef in reversed(self.coefficients):
            result = result * utilization + coef
        return result

    def estimate_power_sum(self, utilization: float) -> float:
        """Host power in watts at the given utilization (direct power sum)."""
        return sum(coef * utilization**i for i, coef in enumerate(self.coefficients))


@dataclass(frozen=True)
class PowerEstimate:
    """Power attributed to one VM, in watts."""

    static: float
    dynamic: float
    total: float

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {"static": self.static, "dynamic": self.dynamic, "total": self.total}


def estimate_vm_power(
    model: PolynomialModel,
    utilization: float,
    vm_cores: int,
    server_cores: int,
    cinergy_ratio: float,
) -> PowerEstimate:
    """Split modelled host power into the VM's static and dynamic share.

    Args:
        model: Host power polynomial
        utilization: VM utilization sample
        vm_cores: vCPUs assigned to the VM
        server_cores: Physical cores on the host (> 0, checked at config load)
        cinergy_ratio: Share of the dynamic swing attributed to the VM, in [0, 1]

    Returns:
        PowerEstimate with static + dynamic = total.
    """
    f0 = model.estimate(0.0)
    fx = model.estimate(utilization)

    static = f0 * (vm_cores / server_cores)
    dynamic = (fx - f0) * cinergy_ratio
    return PowerEstimate(static=static, dynamic=dynamic, total=static + dynamic)


def carbon_rate(power_watts: float, pue: float, emission_factor: float) -> float:
    """Convert instantaneous power to an emissions rate.

    Formula: (power_watts / 1000) * pue * emission_factor

    Args:
        power_watts: IT power draw in watts
        pue: Facility power usage effectiveness (>= 1.0)
        emission_factor: Grid intensity in gCO2eq/kWh (>= 0)

    Returns:
        Emissions in gCO2eq per hour.
    """
    return (power_watts / 1000.0) * pue * emission_factor


def to_utilization(rate: float, units: UtilizationUnits, ticks_per_second: int) -> float:
    """Convert a measured tick rate into the model's utilization scale.

    "ticks" passes the raw CPU ticks per second through unchanged.
    "cores" divides by the kernel tick rate, so 1.0 means one saturated core.
    """
    if units == "ticks":
        return rate
    if units == "cores":
        return rate / ticks_per_second
    raise ValueError(f"Unknown utilization units: {units!r}. Valid units: {UTILIZATION_UNITS}")
