"""Data models for wattop."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True, frozen=True)
class Utilization:
    """Per-metric utilization of a device or process, each on a 0-100 scale."""

    sm: float = 0.0  # Compute (SM / CPU time)
    mem: float = 0.0  # Memory controller / resident memory
    enc: float = 0.0  # Encoder
    dec: float = 0.0  # Decoder

    def __add__(self, other: "Utilization") -> "Utilization":
        return Utilization(
            sm=self.sm + other.sm,
            mem=self.mem + other.mem,
            enc=self.enc + other.enc,
            dec=self.dec + other.dec,
        )


@dataclass(slots=True, frozen=True)
class MetricWeights:
    """Weights combining the four utilization metrics into one scalar."""

    sm: float = 1.0
    mem: float = 0.5
    enc: float = 0.25
    dec: float = 0.15

    def __post_init__(self) -> None:
        for name in ("sm", "mem", "enc", "dec"):
            if getattr(self, name) < 0:
                raise ValueError(f"metric weight '{name}' must be non-negative")

    def weigh(self, util: Utilization) -> float:
        """Return the weighted utilization ``a*sm + b*mem + c*enc + d*dec``."""
        return (
            self.sm * util.sm
            + self.mem * util.mem
            + self.enc * util.enc
            + self.dec * util.dec
        )


@dataclass(slots=True, frozen=True)
class DeviceReading:
    """Device-wide telemetry for one instant."""

    power_w: float
    utilization: Utilization
    temperature_c: float = 0.0
    fan_percent: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(slots=True, frozen=True)
class ProcessUsage:
    """One process as reported by a telemetry provider."""

    pid: int
    utilization: Utilization
    display_name: str = ""


@dataclass(slots=True, frozen=True)
class TelemetrySnapshot:
    """Device reading plus the processes visible on the device."""

    device: DeviceReading
    processes: tuple[ProcessUsage, ...] = ()


@dataclass(slots=True, frozen=True)
class IdleBaseline:
    """Power profile of the device while quiescent."""

    average_power: float = 0.0
    min_power: float = 0.0
    max_power: float = 0.0
    average_temperature: float = 0.0
    average_fan: float = 0.0
    idle_pids: frozenset[int] = frozenset()
    sample_count: int = 0

    @property
    def idle_pid_count(self) -> int:
        return len(self.idle_pids)

    @property
    def idle_share(self) -> float:
        """Baseline power charged to each idle-set member."""
        if self.idle_pid_count == 0:
            return 0.0
        return self.average_power / self.idle_pid_count


@dataclass(slots=True, frozen=True)
class DeviceSample:
    """Immutable record of one attribution tick for a device."""

    timestamp: datetime
    measured_power: float
    active_power: float
    excess_power: float
    utilization: Utilization
    weighted_capacity: float
    process_weight_total: float
    process_count: int
    attributed_power: float
    residual_power: float  # measured - attributed
    cumulative_energy: float  # Joules, integrated from measured power
    temperature: float
    fan_percent: float

    @property
    def attribution_error_percent(self) -> float:
        """Share of measured power not accounted for by the process split."""
        if self.measured_power == 0:
            return 0.0
        return 100.0 * self.residual_power / self.measured_power


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Attribution result for one process in one tick."""

    pid: int
    resolved_name: str
    utilization: Utilization
    weighted_utilization: float
    power: float
    energy_this_tick: float
    cumulative_energy: float
    is_idle_baseline_member: bool


@dataclass(slots=True, frozen=True)
class LedgerEntry:
    """Reporting view of one energy ledger entry."""

    pid: int
    name: str
    energy_j: float
    running: bool
