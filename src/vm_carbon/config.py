"""Configuration system for vm-carbon."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import psutil
import tomlkit

from vm_carbon.model import UTILIZATION_UNITS

CONFIG_ENV_VAR = "VM_CARBON_CONFIG"


def _default_server_cores() -> int:
    return psutil.cpu_count(logical=True) or 1


@dataclass
class ModelConfig:
    """Host power model and per-VM attribution.

    coefficients are the offline-fit polynomial of host power (W) versus
    utilization, lowest degree first.
    """

    coefficients: list[float] = field(default_factory=list)
    cinergy_ratio: float = 1.0  # Share of the dynamic power swing attributed to a VM
    server_cores: int = field(default_factory=_default_server_cores)
    utilization_units: str = "ticks"  # "ticks" (raw rate) or "cores" (rate / SC_CLK_TCK)


@dataclass
class CarbonConfig:
    """Facility and grid parameters for emissions."""

    dc_pue: float = 1.0  # Power usage effectiveness
    emission_factor: float = 475.0  # gCO2eq/kWh (global average grid)


@dataclass
class SamplingConfig:
    """Background sampling loop configuration."""

    interval: float = 1.0  # Seconds between cycles
    history_size: int = 10  # Samples kept per PID
    process_match: str = "qemu"  # Substring of hypervisor executable names
    heartbeat_cycles: int = 60  # Log heartbeat every N cycles (~1 minute at 1Hz)


@dataclass
class ServerConfig:
    """HTTP endpoint configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class SystemConfig:
    """Log file rotation."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def parse_coefficients(value: str) -> list[float]:
    """Parse a comma-separated coefficient list such as ``"10.0, 5.0"``."""
    try:
        return [float(part.strip()) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise ValueError(f"Invalid coefficient list {value!r}: {e}") from e


def _env_float(environ: Mapping[str, str], name: str) -> float | None:
    raw = environ.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a valid float, got {raw!r}") from e


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = environ.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a valid integer, got {raw!r}") from e


@dataclass
class Config:
    """Main configuration container."""

    model: ModelConfig = field(default_factory=ModelConfig)
    carbon: CarbonConfig = field(default_factory=CarbonConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "vm-carbon"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "vm-carbon"

    @property
    def log_path(self) -> Path:
        """Service log path (JSON Lines)."""
        return self.state_dir / "service.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("model", "carbon", "sampling", "server", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    def apply_env(self, environ: Mapping[str, str] | None = None) -> None:
        """Override values from environment variables.

        Recognized: REG_COEFF (comma-separated floats), CINERGY_RATIO,
        SERVER_CORES, DC_PUE, EMISSION_FACTOR, PORT.
        """
        env = os.environ if environ is None else environ

        if "REG_COEFF" in env:
            self.model.coefficients = parse_coefficients(env["REG_COEFF"])
        cinergy_ratio = _env_float(env, "CINERGY_RATIO")
        if cinergy_ratio is not None:
            self.model.cinergy_ratio = cinergy_ratio
        server_cores = _env_int(env, "SERVER_CORES")
        if server_cores is not None:
            self.model.server_cores = server_cores
        dc_pue = _env_float(env, "DC_PUE")
        if dc_pue is not None:
            self.carbon.dc_pue = dc_pue
        emission_factor = _env_float(env, "EMISSION_FACTOR")
        if emission_factor is not None:
            self.carbon.emission_factor = emission_factor
        port = _env_int(env, "PORT")
        if port is not None:
            self.server.port = port

    def validate(self) -> None:
        """Check every value the service depends on.

        Raises:
            ValueError: naming the first invalid setting.
        """
        model = self.model
        if not model.coefficients:
            raise ValueError("model.coefficients must be set (e.g. coefficients = [10.0, 5.0])")
        if not 0.0 <= model.cinergy_ratio <= 1.0:
            raise ValueError(
                f"model.cinergy_ratio must be between 0.0 and 1.0, got {model.cinergy_ratio}"
            )
        if model.server_cores <= 0:
            raise ValueError(f"model.server_cores must be greater than 0, got {model.server_cores}")
        if model.utilization_units not in UTILIZATION_UNITS:
            raise ValueError(
                f"Invalid model.utilization_units: {model.utilization_units!r}. "
                f"Must be one of {UTILIZATION_UNITS}"
            )

        if self.carbon.dc_pue < 1.0:
            raise ValueError(f"carbon.dc_pue must be >= 1.0, got {self.carbon.dc_pue}")
        if self.carbon.emission_factor < 0.0:
            raise ValueError(
                f"carbon.emission_factor must be >= 0.0, got {self.carbon.emission_factor}"
            )

        sampling = self.sampling
        if sampling.interval <= 0:
            raise ValueError(f"sampling.interval must be > 0, got {sampling.interval}")
        if sampling.history_size < 1:
            raise ValueError(f"sampling.history_size must be >= 1, got {sampling.history_size}")
        if not sampling.process_match:
            raise ValueError("sampling.process_match must not be empty")
        if sampling.heartbeat_cycles < 1:
            raise ValueError(
                f"sampling.heartbeat_cycles must be >= 1, got {sampling.heartbeat_cycles}"
            )

        if not self.server.host:
            raise ValueError("server.host must not be empty")
        if not 1 <= self.server.port <= 65535:
            raise ValueError(f"server.port must be between 1 and 65535, got {self.server.port}")

    @classmethod
    def default_path(cls, environ: Mapping[str, str] | None = None) -> Path:
        """Config path, honouring VM_CARBON_CONFIG."""
        env = os.environ if environ is None else environ
        override = env.get(CONFIG_ENV_VAR)
        return Path(override) if override else cls().config_path

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        This ensures Config() and Config.load() use identical defaults.
        Environment overrides are not applied here; see apply_env().
        """
        defaults = cls()
        path = path or cls.default_path()
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f).unwrap()
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            model=_load_model_config(data.get("model", {})),
            carbon=_load_carbon_config(data.get("carbon", {})),
            sampling=_load_sampling_config(data.get("sampling", {})),
            server=_load_server_config(data.get("server", {})),
            system=_load_system_config(data.get("system", {})),
        )


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> Config:
    """Load file, apply environment overrides, and validate.

    This is the startup path: any invalid value raises ValueError and the
    service must not start.
    """
    config = Config.load(path)
    config.apply_env(environ)
    config.validate()
    return config


def _get(data: dict, section: str, key: str, default, kind: type):
    """Read one TOML value, converting it to the field's type.

    Raises:
        ValueError: naming ``section.key`` if the value cannot be converted.
    """
    value = data.get(key, default)
    if kind is str:
        if not isinstance(value, str):
            raise ValueError(f"{section}.{key} must be a string, got {value!r}")
        return value
    if isinstance(value, bool) or (
        kind is int and isinstance(value, float) and not value.is_integer()
    ):
        raise ValueError(f"{section}.{key} must be a valid {kind.__name__}, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{section}.{key} must be a valid {kind.__name__}, got {value!r}") from e


def _load_model_config(data: dict) -> ModelConfig:
    """Load model config from TOML data."""
    d = ModelConfig()
    coefficients = data.get("coefficients", d.coefficients)
    if isinstance(coefficients, str):
        coefficients = parse_coefficients(coefficients)
    try:
        coefficients = [float(c) for c in coefficients]
    except (TypeError, ValueError) as e:
        raise ValueError(f"model.coefficients must be a list of numbers: {e}") from e

    return ModelConfig(
        coefficients=coefficients,
        cinergy_ratio=_get(data, "model", "cinergy_ratio", d.cinergy_ratio, float),
        server_cores=_get(data, "model", "server_cores", d.server_cores, int),
        utilization_units=_get(data, "model", "utilization_units", d.utilization_units, str),
    )


def _load_carbon_config(data: dict) -> CarbonConfig:
    """Load carbon config from TOML data."""
    d = CarbonConfig()
    return CarbonConfig(
        dc_pue=_get(data, "carbon", "dc_pue", d.dc_pue, float),
        emission_factor=_get(data, "carbon", "emission_factor", d.emission_factor, float),
    )


def _load_sampling_config(data: dict) -> SamplingConfig:
    """Load sampling config from TOML data."""
    d = SamplingConfig()
    return SamplingConfig(
        interval=_get(data, "sampling", "interval", d.interval, float),
        history_size=_get(data, "sampling", "history_size", d.history_size, int),
        process_match=_get(data, "sampling", "process_match", d.process_match, str),
        heartbeat_cycles=_get(data, "sampling", "heartbeat_cycles", d.heartbeat_cycles, int),
    )


def _load_server_config(data: dict) -> ServerConfig:
    """Load server config from TOML data."""
    d = ServerConfig()
    return ServerConfig(
        host=_get(data, "server", "host", d.host, str),
        port=_get(data, "server", "port", d.port, int),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        log_max_bytes=_get(data, "system", "log_max_bytes", d.log_max_bytes, int),
        log_backup_count=_get(data, "system", "log_backup_count", d.log_backup_count, int),
    )
