"""Runtime configuration for wattop."""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from wattop.errors import ConfigError
from wattop.models import MetricWeights
from wattop.telemetry import DEFAULT_RAPL_PATH

DEVICE_CHOICES = ("auto", "gpu", "cpu")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """
    Startup configuration.

    Every value is fixed for the run except the sampling intervals, which
    PowerMonitor.set_interval() can change while running.
    """

    devices: tuple[str, ...] = ("auto",)
    gpu_interval: float = 1.0  # Seconds
    cpu_interval: float = 1.0
    ui_interval: float = 0.5
    weights: MetricWeights = field(default_factory=MetricWeights)
    cache_capacity: int = 1024
    flush_every: int = 10
    max_samples: int = 3600
    output_dir: Path = Path("wattop-logs")
    baseline_samples: int = 50
    baseline_interval: float = 0.1
    telemetry_timeout: float = 5.0
    autoscale: bool = False
    nvidia_smi: str = "nvidia-smi"
    rapl_path: Path = Path(DEFAULT_RAPL_PATH)
    log_level: str = "INFO"
    log_file: Path | None = None

    def __post_init__(self) -> None:
        if not self.devices:
            raise ConfigError("at least one device must be selected")
        for device in self.devices:
            if device not in DEVICE_CHOICES:
                raise ConfigError(
                    f"unknown device '{device}', expected one of {', '.join(DEVICE_CHOICES)}"
                )
        for name in ("gpu_interval", "cpu_interval", "ui_interval", "telemetry_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.baseline_interval < 0:
            raise ConfigError("baseline_interval must not be negative")
        for name in ("cache_capacity", "flush_every", "max_samples", "baseline_samples"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"unknown log level '{self.log_level}'")

    def interval_for(self, label: str) -> float:
        """Sampling interval of a device class."""
        if label == "gpu":
            return self.gpu_interval
        if label == "cpu":
            return self.cpu_interval
        raise KeyError(label)

    def with_overrides(self, **overrides: Any) -> "MonitorConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(name: str, value: Any) -> Any:
    if name == "weights":
        if not isinstance(value, dict):
            raise ConfigError("weights must be a mapping with sm, mem, enc, dec")
        unknown = set(value) - {"sm", "mem", "enc", "dec"}
        if unknown:
            raise ConfigError(f"unknown weight(s): {', '.join(sorted(unknown))}")
        try:
            return MetricWeights(**{k: float(v) for k, v in value.items()})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid weights: {e}") from e
    if name == "devices":
        if isinstance(value, str):
            return (value,)
        return tuple(value)
    if name in ("output_dir", "rapl_path", "log_file"):
        return Path(value)
    return value


def config_from_dict(data: dict[str, Any]) -> MonitorConfig:
    """Build a MonitorConfig from a parsed mapping, rejecting unknown keys."""
    known = {f.name for f in fields(MonitorConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown config key(s): {', '.join(sorted(unknown))}")
    try:
        return MonitorConfig(**{k: _coerce(k, v) for k, v in data.items()})
    except TypeError as e:
        raise ConfigError(str(e)) from e


def load_config(path: str | Path | None = None) -> MonitorConfig:
    """
    Load configuration from a YAML file.

    Keys may sit at the top level or under a ``wattop:`` mapping. An empty
    file, like no path at all, gives the defaults.
    """
    if path is None:
        return MonitorConfig()
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping of settings")
    section = data.get("wattop", data)
    if not isinstance(section, dict):
        raise ConfigError(f"\"wattop\" in {path} must be a mapping")
    return config_from_dict(section)
