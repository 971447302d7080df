"""wattop - Textual application and command line entry point."""

import argparse
import asyncio
import signal
import sys
import threading
from enum import Enum
from pathlib import Path
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from wattop.config import DEVICE_CHOICES, MonitorConfig, load_config
from wattop.errors import ConfigError
from wattop.logs import close_logging, configure_logging
from wattop.models import ProcessSample
from wattop.monitor import DeviceView, MonitorUpdate, PowerMonitor
from wattop.telemetry import DeviceTelemetryProvider

MIN_INTERVAL = 0.1
INTERVAL_STEP = 0.25


class SortKey(Enum):
    """Sort keys for the process table."""

    POWER = "power"
    ENERGY = "energy"
    PID = "pid"
    NAME = "name"


def format_energy(joules: float) -> str:
    """Format joules as a human-readable string."""
    if joules >= 3_600_000:
        return f"{joules / 3_600_000:6.2f}kWh"
    if joules >= 3600:
        return f"{joules / 3600:6.2f}Wh"
    return f"{joules:6.1f}J"


class DeviceStats(Static):
    """Header widget showing one line of power statistics per device."""

    DEFAULT_CSS = """
    DeviceStats {
        height: auto;
        min-height: 3;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize DeviceStats."""
        super().__init__(*args, **kwargs)
        self._devices: tuple[DeviceView, ...] = ()

    def on_mount(self) -> None:
        self.update(self._get_stats())

    def update_stats(self, update: MonitorUpdate) -> None:
        """Update the statistics from a monitor update."""
        self._devices = update.devices
        self.update(self._get_stats())

    def _get_stats(self) -> str:
        """Get the stats display."""
        if not self._devices:
            return "Waiting for telemetry..."
        return "\n".join(self._device_line(view) for view in self._devices)

    @staticmethod
    def _device_line(view: DeviceView) -> str:
        label = view.label.upper()
        sample = view.latest
        if sample is None:
            return f"[b]{label}[/b] {view.status}  (every {view.interval:.2f}s)"
        error_pct = sample.attribution_error_percent
        log_state = " [yellow]memory-only[/yellow]" if view.memory_only else ""
        return (
            f"[b]{label}[/b] {sample.measured_power:6.1f}W  "
            f"active {sample.active_power:6.1f}W  "
            f"idle {view.baseline.average_power:5.1f}W  "
            f"energy {format_energy(sample.cumulative_energy)}  "
            f"{sample.temperature:3.0f}°C fan {sample.fan_percent:3.0f}%  "
            f"unattributed {error_pct:5.1f}%  "
            f"every {view.interval:.2f}s{log_state}"
        )


class ProcessTable(Container):
    """Container for the per-process power table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._current_keys: set[str] = set()
        self._sort_key: SortKey = SortKey.POWER
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        current_index = keys.index(self._sort_key)
        self._sort_key = keys[(current_index + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.POWER, SortKey.ENERGY)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("DEV", key="device", width=4)
        table.add_column("PID", key="pid", width=8)
        table.add_column("POWER", key="power", width=8)
        table.add_column("ENERGY", key="energy", width=10)
        table.add_column("WUTIL", key="wutil", width=7)
        table.add_column("SM%", key="sm", width=6)
        table.add_column("MEM%", key="mem", width=6)
        table.add_column("IDLE", key="idle", width=4)
        table.add_column("Process", key="name")

    def update_processes(self, devices: tuple[DeviceView, ...]) -> None:
        """
        Update the table with the latest process samples of every device.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#process-table", DataTable)

        rows = [
            (view.label, proc)
            for view in devices
            for proc in self._sort_processes(view.processes)
        ]
        new_keys = {f"{label}:{proc.pid}" for label, proc in rows}

        for row_key in self._current_keys - new_keys:
            try:
                table.remove_row(row_key)
            except Exception:
                pass  # Row may not exist

        for label, proc in rows:
            row_key = f"{label}:{proc.pid}"
            if row_key in self._current_keys:
                self._update_row(table, row_key, proc)
            else:
                self._add_row(table, row_key, label, proc)

        self._current_keys = new_keys

    def _sort_processes(self, processes: tuple[ProcessSample, ...]) -> list[ProcessSample]:
        """Sort processes based on the current sort key."""
        key_func = {
            SortKey.POWER: lambda p: p.power,
            SortKey.ENERGY: lambda p: p.cumulative_energy,
            SortKey.PID: lambda p: p.pid,
            SortKey.NAME: lambda p: p.resolved_name.lower(),
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)

    def _update_row(self, table: DataTable, row_key: str, proc: ProcessSample) -> None:
        """Update an existing row using update_cell for performance."""
        try:
            table.update_cell(row_key, "power", f"{proc.power:6.2f}W")
            table.update_cell(row_key, "energy", format_energy(proc.cumulative_energy))
            table.update_cell(row_key, "wutil", f"{proc.weighted_utilization:6.1f}")
            table.update_cell(row_key, "sm", f"{proc.utilization.sm:5.1f}")
            table.update_cell(row_key, "mem", f"{proc.utilization.mem:5.1f}")
            table.update_cell(row_key, "name", proc.resolved_name[:50])
        except Exception:
            pass  # Row may have been removed

    def _add_row(
        self, table: DataTable, row_key: str, label: str, proc: ProcessSample
    ) -> None:
        """Add a new row to the table."""
        try:
            table.add_row(
                label,
                str(proc.pid),
                f"{proc.power:6.2f}W",
                format_energy(proc.cumulative_energy),
                f"{proc.weighted_utilization:6.1f}",
                f"{proc.utilization.sm:5.1f}",
                f"{proc.utilization.mem:5.1f}",
                "*" if proc.is_idle_baseline_member else "",
                proc.resolved_name[:50],
                key=row_key,
            )
        except Exception:
            pass  # Row may already exist


class WattopApp(App):
    """Main wattop application."""

    TITLE = "wattop"
    SUB_TITLE = "Per-process power attribution"

    CSS = """
    Screen {
        layout: vertical;
    }

    #device-stats {
        dock: top;
        height: auto;
        min-height: 3;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("plus", "slower", "Interval +"),
        ("minus", "faster", "Interval -"),
        ("b", "calibrate", "Recalibrate"),
    ]

    def __init__(
        self,
        config: MonitorConfig | None = None,
        providers: list[DeviceTelemetryProvider] | None = None,
        handle_signals: bool = False,
    ) -> None:
        """
        Initialize the WattopApp.

        Args:
            config: Startup configuration; defaults when omitted.
            providers: Telemetry providers; detected from config when omitted.
            handle_signals: Quit cleanly on SIGTERM. Needs the main thread.
        """
        super().__init__()
        self._config = config or MonitorConfig()
        self._handle_signals = handle_signals
        self._update_queue: Queue[MonitorUpdate] = Queue()
        self._monitor = PowerMonitor.from_config(
            self._config, self._update_queue, providers=providers
        )

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield DeviceStats(id="device-stats")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the power monitor when the app is mounted."""
        self._monitor.start()
        self.set_interval(self._config.ui_interval, self._check_for_updates)
        if self._handle_signals:
            asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, self.action_quit)

    def on_unmount(self) -> None:
        if self._handle_signals:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM)

    def _check_for_updates(self) -> None:
        """Drain the queue and render the most recent update."""
        update = None
        while True:
            try:
                update = self._update_queue.get_nowait()
            except Empty:
                break

        if update is not None:
            self._update_ui(update)

    def _update_ui(self, update: MonitorUpdate) -> None:
        """Update the UI with a monitor update."""
        try:
            self.query_one("#device-stats", DeviceStats).update_stats(update)
            self.query_one(ProcessTable).update_processes(update.devices)
        except Exception:
            # The UI must never take the sampler down with it
            pass

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        process_table = self.query_one(ProcessTable)
        new_sort_key = process_table.cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def _step_interval(self, delta: float) -> None:
        for label in self._monitor.labels:
            interval = max(MIN_INTERVAL, self._monitor.interval(label) + delta)
            self._monitor.set_interval(label, interval)
        self.notify(f"Sampling interval {'+' if delta > 0 else '-'}{abs(delta):.2f}s")

    def action_slower(self) -> None:
        """Lengthen the sampling interval of every device."""
        self._step_interval(INTERVAL_STEP)

    def action_faster(self) -> None:
        """Shorten the sampling interval of every device."""
        self._step_interval(-INTERVAL_STEP)

    def action_calibrate(self) -> None:
        """Re-measure the idle baseline of every device."""
        for label in self._monitor.labels:
            self._monitor.request_calibration(label)
        self.notify("Recalibrating idle baseline, keep the device quiet")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wattop",
        description="Attribute GPU/CPU power draw to the processes using it.",
    )
    parser.add_argument("-c", "--config", type=Path, help="YAML configuration file")
    parser.add_argument(
        "-d",
        "--device",
        action="append",
        choices=DEVICE_CHOICES,
        help="device class to sample (repeatable, default: auto)",
    )
    parser.add_argument("-i", "--interval", type=float, help="sampling interval for all devices (s)")
    parser.add_argument("--gpu-interval", type=float, help="GPU sampling interval (s)")
    parser.add_argument("--cpu-interval", type=float, help="CPU sampling interval (s)")
    parser.add_argument("-o", "--output-dir", type=Path, help="directory for CSV logs")
    parser.add_argument("--baseline-samples", type=int, help="idle calibration readings")
    parser.add_argument("--flush-every", type=int, help="rows between CSV flushes")
    parser.add_argument(
        "--autoscale",
        action="store_true",
        default=None,
        help="rescale process power so it sums to measured power",
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--headless",
        action="store_true",
        help="log samples without the interactive UI",
    )
    parser.add_argument(
        "--duration",
        type=float,
        help="stop after this many seconds (headless mode)",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> MonitorConfig:
    """Combine the configuration file with command line overrides."""
    config = load_config(args.config)
    return config.with_overrides(
        devices=tuple(args.device) if args.device else None,
        gpu_interval=args.gpu_interval or args.interval,
        cpu_interval=args.cpu_interval or args.interval,
        output_dir=args.output_dir,
        baseline_samples=args.baseline_samples,
        flush_every=args.flush_every,
        autoscale=args.autoscale,
        log_level=args.log_level,
    )


def print_report(monitor: PowerMonitor, limit: int = 15) -> None:
    """Print the top energy consumers of every device."""
    for label in monitor.labels:
        engine = monitor.engine(label)
        print(
            f"{label.upper()}: measured {format_energy(engine.device_energy).strip()}, "
            f"attributed {format_energy(engine.total_energy).strip()}"
        )
        for entry in engine.energy_report()[:limit]:
            print(f"  {entry.pid:>8}  {format_energy(entry.energy_j)}  {entry.name}")


def run_headless(config: MonitorConfig, duration: float | None = None) -> PowerMonitor:
    """Run the monitor on the main thread until a signal or the duration ends."""
    monitor = PowerMonitor.from_config(config)

    def handle_signal(signum, frame) -> None:
        monitor.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    timer = None
    if duration is not None:
        timer = threading.Timer(duration, monitor.request_stop)
        timer.daemon = True
        timer.start()
    try:
        monitor.run()
    finally:
        if timer is not None:
            timer.cancel()
    return monitor


def main(argv: list[str] | None = None) -> None:
    """Entry point for the wattop application."""
    args = build_parser().parse_args(argv)
    try:
        config = resolve_config(args)
        if args.headless:
            configure_logging(config.log_level, config.log_file)
            try:
                print_report(run_headless(config, args.duration))
            finally:
                close_logging()
        else:
            configure_logging(
                config.log_level, config.log_file or config.output_dir / "wattop.log"
            )
            try:
                app = WattopApp(config, handle_signals=True)
                try:
                    app.run()
                finally:
                    app._monitor.stop()
            finally:
                close_logging()
    except ConfigError as e:
        print(f"wattop: {e}", file=sys.stderr)
        raise SystemExit(2) from e


if __name__ == "__main__":
    main()
