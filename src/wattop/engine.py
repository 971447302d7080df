"""Power attribution engine for wattop."""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from wattop.baseline import DEFAULT_SAMPLE_COUNT, DEFAULT_SAMPLE_INTERVAL, calibrate
from wattop.errors import ProviderFailure, TelemetryError
from wattop.models import (
    DeviceSample,
    IdleBaseline,
    LedgerEntry,
    MetricWeights,
    ProcessSample,
    ProcessUsage,
    TelemetrySnapshot,
)
from wattop.names import ProcessNameCache, exited_placeholder
from wattop.telemetry import DeviceTelemetryProvider, read_snapshot

log = structlog.get_logger()


class TickStatus(Enum):
    """Outcome of one engine tick."""

    RECORDED = "recorded"
    ANCHORED = "anchored"  # First tick, clock reference set
    NO_ELAPSED_TIME = "no_elapsed_time"
    NO_DATA = "no_data"  # Telemetry had nothing usable this tick
    PROVIDER_FAILED = "provider_failed"  # Telemetry collaborator is broken


@dataclass(slots=True)
class TickResult:
    """Result of AttributionEngine.tick()."""

    status: TickStatus
    sample: DeviceSample | None = None
    processes: dict[int, ProcessSample] = field(default_factory=dict)
    error: TelemetryError | None = None

    @property
    def recorded(self) -> bool:
        return self.status is TickStatus.RECORDED


@dataclass(slots=True, frozen=True)
class Attribution:
    """Intermediate per-tick quantities of the power split."""

    active_power: float
    weighted_capacity: float
    weight_total: float
    process_power: float
    excess_power: float
    idle_count: int
    active_count: int
    residual_share: float
    powers: dict[int, float]


def merge_processes(processes: tuple[ProcessUsage, ...]) -> dict[int, ProcessUsage]:
    """Merge duplicate pids (e.g. graphics and compute contexts) by summing."""
    merged: dict[int, ProcessUsage] = {}
    for proc in processes:
        existing = merged.get(proc.pid)
        if existing is None:
            merged[proc.pid] = proc
        else:
            merged[proc.pid] = ProcessUsage(
                pid=proc.pid,
                utilization=existing.utilization + proc.utilization,
                display_name=existing.display_name or proc.display_name,
            )
    return merged


def split_power(
    power: float,
    capacity: float,
    weights: dict[int, float],
    baseline: IdleBaseline,
) -> Attribution:
    """
    Split measured device power among the visible processes.

    Active power above the idle average is shared by weighted utilization;
    whatever the tracked processes do not explain is spread evenly over the
    processes that are not idle-set members sitting at zero. Idle-set
    members always carry their share of the baseline.

    Args:
        power: Measured device power P in watts.
        capacity: Weighted device utilization G.
        weights: Weighted utilization W_i per visible pid.
        baseline: Idle baseline of the device.
    """
    active_power = max(0.0, power - baseline.average_power)
    weight_total = sum(weights.values())

    # u is capped at 1 so the residual never goes negative when per-process
    # sampling overshoots the device counter
    utilization = min(weight_total / capacity, 1.0) if capacity > 0 else 0.0
    process_power = utilization * active_power
    excess_power = active_power - process_power

    count = len(weights)
    idle_count = sum(
        1 for pid, w in weights.items() if pid in baseline.idle_pids and w == 0
    )
    all_idle = idle_count == count
    active_count = count if all_idle else count - idle_count
    residual_share = excess_power / active_count if active_count > 0 else 0.0
    idle_share = baseline.idle_share

    powers: dict[int, float] = {}
    for pid, w in weights.items():
        fraction = w / weight_total if weight_total > 0 else 0.0
        if pid in baseline.idle_pids:
            if w > 0:
                p = idle_share + fraction * process_power + residual_share
            elif all_idle:
                p = idle_share + residual_share
            else:
                p = idle_share
        elif w > 0:
            p = fraction * process_power + residual_share
        else:
            p = residual_share
        powers[pid] = p

    return Attribution(
        active_power=active_power,
        weighted_capacity=capacity,
        weight_total=weight_total,
        process_power=process_power,
        excess_power=excess_power,
        idle_count=idle_count,
        active_count=active_count,
        residual_share=residual_share,
        powers=powers,
    )


class AttributionEngine:
    """
    Turns device telemetry into per-process power and energy.

    Owns the energy ledger (pid to cumulative joules), the bounded history of
    device samples and the most recent process samples. Not thread-safe:
    every method is meant to run on the scheduler thread.
    """

    def __init__(
        self,
        provider: DeviceTelemetryProvider,
        names: ProcessNameCache,
        baseline: IdleBaseline | None = None,
        weights: MetricWeights | None = None,
        max_samples: int = 3600,
        autoscale: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the AttributionEngine.

        Args:
            provider: Telemetry source for the device.
            names: Shared process name cache.
            baseline: Idle baseline; an all-zero baseline when omitted.
            weights: Metric weights; defaults to 1.0/0.5/0.25/0.15.
            max_samples: Number of device samples kept in memory.
            autoscale: Rescale process power so it sums to measured power.
            clock: Monotonic clock in seconds.
        """
        if max_samples < 1:
            raise ValueError("max_samples must be at least 1")
        self._provider = provider
        self._names = names
        self._baseline = baseline or IdleBaseline()
        self._weights = weights or MetricWeights()
        self._autoscale = autoscale
        self._clock = clock
        self._last_tick: float | None = None
        self._device_energy = 0.0
        self._ledger: dict[int, float] = {}
        self._last_names: dict[int, str] = {}
        self._visible: frozenset[int] = frozenset()
        self._samples: deque[DeviceSample] = deque(maxlen=max_samples)
        self._latest: dict[int, ProcessSample] = {}
        self._failing = False

    @property
    def label(self) -> str:
        return self._provider.label

    @property
    def baseline(self) -> IdleBaseline:
        return self._baseline

    @property
    def weights(self) -> MetricWeights:
        return self._weights

    @property
    def ledger(self) -> dict[int, float]:
        """Copy of the energy ledger in joules."""
        return dict(self._ledger)

    @property
    def samples(self) -> list[DeviceSample]:
        """Retained device samples, oldest first."""
        return list(self._samples)

    @property
    def latest_sample(self) -> DeviceSample | None:
        return self._samples[-1] if self._samples else None

    @property
    def latest_processes(self) -> dict[int, ProcessSample]:
        return dict(self._latest)

    @property
    def device_energy(self) -> float:
        """Joules integrated from measured device power."""
        return self._device_energy

    @property
    def total_energy(self) -> float:
        """Joules attributed to processes."""
        return sum(self._ledger.values())

    def calibrate(
        self,
        sample_count: int = DEFAULT_SAMPLE_COUNT,
        sample_interval: float = DEFAULT_SAMPLE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> IdleBaseline:
        """Measure a new idle baseline and use it from the next tick on."""
        self._baseline = calibrate(self._provider, sample_count, sample_interval, sleep)
        return self._baseline

    def tick(self, now: float | None = None) -> TickResult:
        """
        Run one attribution step.

        The first successful reading only anchors the clock. Later ticks
        integrate power over the time elapsed since the previous tick; a
        tick with no elapsed time changes nothing.

        Args:
            now: Monotonic time of the tick; read from the clock when omitted.
        """
        if now is None:
            now = self._clock()
        if self._last_tick is not None and now - self._last_tick <= 0:
            return TickResult(TickStatus.NO_ELAPSED_TIME)

        try:
            snapshot = read_snapshot(self._provider)
        except TelemetryError as e:
            # Gap energy is not integrated
            if self._last_tick is not None:
                self._last_tick = now
            return self._record_failure(e)

        self._record_recovery()
        previous, self._last_tick = self._last_tick, now
        if previous is None:
            self._resolve_names(merge_processes(snapshot.processes))
            return TickResult(TickStatus.ANCHORED)

        return self._apply(snapshot, now - previous)

    def _apply(self, snapshot: TelemetrySnapshot, dt: float) -> TickResult:
        """Attribute one snapshot over ``dt`` seconds and update the ledger."""
        device = snapshot.device
        processes = merge_processes(snapshot.processes)
        names = self._resolve_names(processes)

        weights = {
            pid: self._weights.weigh(proc.utilization)
            for pid, proc in processes.items()
        }
        capacity = self._weights.weigh(device.utilization)
        split = split_power(device.power_w, capacity, weights, self._baseline)

        powers = split.powers
        attributed = sum(powers.values())
        if self._autoscale and attributed > 0 and device.power_w >= 0:
            scale = device.power_w / attributed
            powers = {pid: p * scale for pid, p in powers.items()}
            attributed = device.power_w

        self._device_energy += device.power_w * dt

        process_samples: dict[int, ProcessSample] = {}
        for pid, proc in processes.items():
            energy = powers[pid] * dt
            self._ledger[pid] = self._ledger.get(pid, 0.0) + energy
            process_samples[pid] = ProcessSample(
                pid=pid,
                resolved_name=names[pid],
                utilization=proc.utilization,
                weighted_utilization=weights[pid],
                power=powers[pid],
                energy_this_tick=energy,
                cumulative_energy=self._ledger[pid],
                is_idle_baseline_member=pid in self._baseline.idle_pids,
            )

        sample = DeviceSample(
            timestamp=device.timestamp,
            measured_power=device.power_w,
            active_power=split.active_power,
            excess_power=split.excess_power,
            utilization=device.utilization,
            weighted_capacity=capacity,
            process_weight_total=split.weight_total,
            process_count=len(processes),
            attributed_power=attributed,
            residual_power=device.power_w - attributed,
            cumulative_energy=self._device_energy,
            temperature=device.temperature_c,
            fan_percent=device.fan_percent,
        )
        self._samples.append(sample)
        self._latest = process_samples
        return TickResult(TickStatus.RECORDED, sample, process_samples)

    def _resolve_names(self, processes: dict[int, ProcessUsage]) -> dict[int, str]:
        fallbacks = {pid: proc.display_name for pid, proc in processes.items()}
        names = self._names.resolve(processes.keys(), fallbacks)
        self._last_names.update(names)
        self._visible = frozenset(processes)
        return names

    def _record_failure(self, error: TelemetryError) -> TickResult:
        if isinstance(error, ProviderFailure):
            status = TickStatus.PROVIDER_FAILED
        else:
            status = TickStatus.NO_DATA
        if not self._failing:
            self._failing = True
            log.warning(
                "telemetry_failed",
                device=self.label,
                status=status.value,
                error=str(error),
            )
        return TickResult(status, error=error)

    def _record_recovery(self) -> None:
        if self._failing:
            self._failing = False
            log.info("telemetry_recovered", device=self.label)

    def energy_report(self) -> list[LedgerEntry]:
        """Ledger entries sorted by energy, highest first."""
        entries = []
        for pid, energy in self._ledger.items():
            running = pid in self._visible
            name = self._last_names.get(pid, "")
            if not running and not name.startswith("[exited]"):
                name = f"[exited] {name}" if name else exited_placeholder(pid)
            entries.append(LedgerEntry(pid=pid, name=name, energy_j=energy, running=running))
        entries.sort(key=lambda e: e.energy_j, reverse=True)
        return entries

