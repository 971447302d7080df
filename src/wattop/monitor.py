"""Sampling engine host for wattop."""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from queue import Empty, Queue

import structlog

from wattop.config import MonitorConfig
from wattop.engine import AttributionEngine, TickStatus
from wattop.errors import ConfigError
from wattop.models import DeviceSample, IdleBaseline, LedgerEntry, ProcessSample
from wattop.names import ProcessNameCache, PsutilNameResolver
from wattop.persistence import SamplePersistence
from wattop.scheduler import Scheduler
from wattop.telemetry import DeviceTelemetryProvider, NvidiaSmiProvider, RaplCpuProvider

log = structlog.get_logger()

UI_CADENCE = "ui"


def sample_cadence(label: str) -> str:
    return f"sample-{label}"


@dataclass(slots=True, frozen=True)
class DeviceView:
    """Read-only view of one device handed to the UI thread."""

    label: str
    interval: float
    baseline: IdleBaseline
    status: str
    latest: DeviceSample | None
    processes: tuple[ProcessSample, ...]
    ledger: tuple[LedgerEntry, ...]
    memory_only: bool


@dataclass(slots=True, frozen=True)
class MonitorUpdate:
    """Snapshot of every device, pushed on each UI refresh."""

    devices: tuple[DeviceView, ...]
    created: datetime = field(default_factory=datetime.now)


@dataclass(slots=True)
class DeviceChannel:
    """Everything owned by the scheduler thread for one device class."""

    engine: AttributionEngine
    interval: float
    persistence: SamplePersistence | None = None
    status: str = "starting"

    @property
    def label(self) -> str:
        return self.engine.label


def build_providers(config: MonitorConfig) -> list[DeviceTelemetryProvider]:
    """
    Instantiate the telemetry providers selected by the configuration.

    Raises:
        ConfigError: An explicitly requested device is unavailable, or
            auto-detection found none.
    """
    gpu = NvidiaSmiProvider(config.nvidia_smi, timeout=config.telemetry_timeout)
    cpu = RaplCpuProvider(config.rapl_path)
    candidates = {"gpu": gpu, "cpu": cpu}

    if "auto" in config.devices:
        providers = [p for p in candidates.values() if p.available()]
        if not providers:
            raise ConfigError(
                f"no power telemetry found: {config.nvidia_smi} is not installed "
                f"and {config.rapl_path} is not readable"
            )
        return providers

    providers = []
    for label in dict.fromkeys(config.devices):
        provider = candidates[label]
        if not provider.available():
            raise ConfigError(f"requested device '{label}' has no readable telemetry")
        providers.append(provider)
    return providers


class PowerMonitor:
    """
    Runs sampling, attribution and logging on a single scheduler thread.

    The engines, ledgers and CSV writers are touched only by that thread.
    Other threads talk to it through two queues: control commands in,
    MonitorUpdate snapshots out. Stopping always flushes and closes every
    writer, however the loop ends.
    """

    def __init__(
        self,
        channels: list[DeviceChannel],
        update_queue: Queue[MonitorUpdate] | None = None,
        ui_interval: float = 0.5,
        baseline_samples: int = 50,
        baseline_interval: float = 0.1,
        calibrate: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the PowerMonitor.

        Args:
            channels: One channel per sampled device class.
            update_queue: Queue receiving a MonitorUpdate every ui_interval
                seconds; no UI cadence runs when None.
            ui_interval: UI refresh interval in seconds.
            baseline_samples: Readings taken per idle calibration.
            baseline_interval: Seconds between calibration readings.
            calibrate: Measure idle baselines before sampling starts.
            clock: Monotonic clock shared by scheduler and engines.
        """
        if not channels:
            raise ValueError("at least one device channel is required")
        self._channels = {channel.label: channel for channel in channels}
        self._queue = update_queue
        self._ui_interval = ui_interval
        self._baseline_samples = baseline_samples
        self._baseline_interval = baseline_interval
        self._calibrate = calibrate
        self._scheduler = Scheduler(clock=clock)
        self._commands: Queue[tuple[str, str, float]] = Queue()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(
        cls,
        config: MonitorConfig,
        update_queue: Queue[MonitorUpdate] | None = None,
        providers: list[DeviceTelemetryProvider] | None = None,
    ) -> "PowerMonitor":
        """Build a monitor, its providers, engines and writers from configuration."""
        if providers is None:
            providers = build_providers(config)
        names = ProcessNameCache(PsutilNameResolver(), capacity=config.cache_capacity)
        channels = [
            DeviceChannel(
                engine=AttributionEngine(
                    provider,
                    names,
                    weights=config.weights,
                    max_samples=config.max_samples,
                    autoscale=config.autoscale,
                ),
                interval=config.interval_for(provider.label),
                persistence=SamplePersistence(
                    config.output_dir, provider.label, config.flush_every
                ),
            )
            for provider in providers
        ]
        return cls(
            channels,
            update_queue,
            ui_interval=config.ui_interval,
            baseline_samples=config.baseline_samples,
            baseline_interval=config.baseline_interval,
        )

    @property
    def labels(self) -> list[str]:
        return list(self._channels)

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def engine(self, label: str) -> AttributionEngine:
        return self._channels[label].engine

    def interval(self, label: str) -> float:
        """Current sampling interval of a device in seconds."""
        return self._channels[label].interval

    def set_interval(self, label: str, seconds: float) -> None:
        """
        Change a device's sampling interval while running.

        Applied on the scheduler thread at its next wake-up.
        """
        if label not in self._channels:
            raise KeyError(label)
        if seconds <= 0:
            raise ValueError("interval must be positive")
        self._commands.put(("interval", label, seconds))

    def request_calibration(self, label: str) -> None:
        """Re-measure a device's idle baseline on the scheduler thread."""
        if label not in self._channels:
            raise KeyError(label)
        self._commands.put(("calibrate", label, 0.0))

    def start(self) -> None:
        """Start the scheduler thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run,
            daemon=True,
            name="PowerMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        """
        Stop the scheduler thread, waiting for the final flush.

        Args:
            timeout: How long to wait for the thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def request_stop(self) -> None:
        """Ask the loop to end without waiting, e.g. from a signal handler."""
        self._stop_event.set()

    def run(self) -> None:
        """
        Run the sampling loop on the calling thread until stopped.

        Writers are flushed and closed on every exit path.
        """
        log.info("monitor_starting", devices=self.labels)
        try:
            for channel in self._channels.values():
                if channel.persistence is not None:
                    channel.persistence.open()
            if self._calibrate:
                for channel in self._channels.values():
                    if self._stop_event.is_set():
                        break
                    self._run_calibration(channel)
            self._schedule()
            self._scheduler.run(self._stop_event, before_each=self._apply_commands)
        finally:
            self._close_writers()
            log.info("monitor_stopped")

    def _schedule(self) -> None:
        now = self._scheduler.now()
        for channel in self._channels.values():
            # Anchor the engine clock so the first cadence already records
            channel.engine.tick(now)
            self._scheduler.add(
                sample_cadence(channel.label),
                channel.interval,
                lambda channel=channel: self._sample(channel),
                first_due=now + channel.interval,
            )
        if self._queue is not None:
            self._scheduler.add(UI_CADENCE, self._ui_interval, self._publish, first_due=now)

    def _sample(self, channel: DeviceChannel) -> None:
        result = channel.engine.tick(self._scheduler.now())
        channel.status = result.status.value
        if result.status is TickStatus.RECORDED and channel.persistence is not None:
            channel.persistence.record(result.sample, result.processes.values())

    def _run_calibration(self, channel: DeviceChannel) -> None:
        channel.status = "calibrating"
        self._publish()
        channel.engine.calibrate(
            self._baseline_samples,
            self._baseline_interval,
            sleep=self._stop_event.wait,
        )
        channel.status = "calibrated"

    def _apply_commands(self) -> None:
        """Drain control commands; runs on the scheduler thread."""
        while True:
            try:
                command, label, value = self._commands.get_nowait()
            except Empty:
                break
            channel = self._channels[label]
            if command == "interval":
                self._scheduler.set_interval(sample_cadence(label), value)
                channel.interval = value
            elif command == "calibrate":
                self._run_calibration(channel)

    def _publish(self) -> None:
        if self._queue is not None:
            self._queue.put(self.snapshot())

    def snapshot(self) -> MonitorUpdate:
        """Build a MonitorUpdate from the current state of every channel."""
        views = []
        for channel in self._channels.values():
            engine = channel.engine
            processes = sorted(
                engine.latest_processes.values(), key=lambda p: p.power, reverse=True
            )
            views.append(
                DeviceView(
                    label=channel.label,
                    interval=channel.interval,
                    baseline=engine.baseline,
                    status=channel.status,
                    latest=engine.latest_sample,
                    processes=tuple(processes),
                    ledger=tuple(engine.energy_report()),
                    memory_only=(
                        channel.persistence is None or channel.persistence.memory_only
                    ),
                )
            )
        return MonitorUpdate(devices=tuple(views))

    def _close_writers(self) -> None:
        for channel in self._channels.values():
            if channel.persistence is None:
                continue
            try:
                channel.persistence.close()
            except OSError as e:
                log.warning("writer_close_failed", device=channel.label, error=str(e))
