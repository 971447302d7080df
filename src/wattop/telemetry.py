"""Telemetry providers that supply raw device and per-process readings."""

import shutil
import subprocess
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil
import structlog

from wattop.errors import ProviderFailure, TelemetryUnavailable
from wattop.models import DeviceReading, ProcessUsage, TelemetrySnapshot, Utilization

log = structlog.get_logger()

DEFAULT_RAPL_PATH = "/sys/class/powercap/intel-rapl"

GPU_QUERY_FIELDS = (
    "timestamp",
    "power.draw",
    "utilization.gpu",
    "utilization.memory",
    "utilization.encoder",
    "utilization.decoder",
    "temperature.gpu",
    "fan.speed",
)

# Column layout of `nvidia-smi pmon -s u` when no header line is present
DEFAULT_PMON_COLUMNS = ("gpu", "pid", "type", "sm", "mem", "enc", "dec", "command")

NVIDIA_TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S.%f"


@runtime_checkable
class DeviceTelemetryProvider(Protocol):
    """
    Source of raw readings for one device class.

    Both calls are synchronous. Implementations raise TelemetryUnavailable
    when there is no usable data this instant and ProviderFailure when the
    underlying tool or sensor is broken.
    """

    label: str

    def read_device(self) -> DeviceReading:
        """Return the device-wide reading for this instant."""
        ...

    def read_processes(self) -> list[ProcessUsage]:
        """Return the processes currently using the device."""
        ...


def read_snapshot(provider: DeviceTelemetryProvider) -> TelemetrySnapshot:
    """
    Take one combined snapshot from a provider.

    A failed device reading propagates. A process list that is unavailable
    is treated as empty so the device reading still counts.
    """
    device = provider.read_device()
    try:
        processes = provider.read_processes()
    except TelemetryUnavailable as e:
        log.debug("process_list_unavailable", device=provider.label, error=str(e))
        processes = []
    return TelemetrySnapshot(device=device, processes=tuple(processes))


def parse_float(value: str) -> float:
    """Parse a numeric field, defaulting to 0.0 for '-', '[N/A]' and garbage."""
    try:
        return float(value.strip())
    except (ValueError, AttributeError):
        return 0.0


def _parse_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except (ValueError, AttributeError):
        return None


def parse_gpu_query(text: str) -> DeviceReading:
    """
    Parse one line of `nvidia-smi --query-gpu` CSV output (noheader, nounits).

    Only the power field is mandatory; every other field defaults to 0.0.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise TelemetryUnavailable("empty nvidia-smi query output")

    # Only the first GPU is sampled
    fields = [f.strip() for f in lines[0].split(",")]
    if len(fields) < 2:
        raise TelemetryUnavailable(f"malformed nvidia-smi query line: {lines[0]!r}")
    fields += [""] * (len(GPU_QUERY_FIELDS) - len(fields))

    try:
        power = float(fields[1])
    except ValueError:
        raise TelemetryUnavailable(f"unreadable power field: {fields[1]!r}") from None

    try:
        timestamp = datetime.strptime(fields[0], NVIDIA_TIMESTAMP_FORMAT)
    except ValueError:
        timestamp = datetime.now()

    return DeviceReading(
        power_w=power,
        utilization=Utilization(
            sm=parse_float(fields[2]),
            mem=parse_float(fields[3]),
            enc=parse_float(fields[4]),
            dec=parse_float(fields[5]),
        ),
        temperature_c=parse_float(fields[6]),
        fan_percent=parse_float(fields[7]),
        timestamp=timestamp,
    )


def parse_pmon(text: str) -> list[ProcessUsage]:
    """
    Parse `nvidia-smi pmon -c 1 -s u` output.

    Column positions come from the first '#' header line, so driver versions
    that add columns (jpg, ofa) are handled. Rows without a numeric pid
    (an idle GPU prints '-') are skipped.
    """
    columns: list[str] | None = None
    processes: list[ProcessUsage] = []

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            if columns is None:
                columns = line.lstrip("#").split()
            continue

        cols = columns or list(DEFAULT_PMON_COLUMNS)
        if "pid" not in cols:
            continue
        fields = line.split()
        name_index = cols.index("command") if "command" in cols else len(cols) - 1
        if len(fields) <= cols.index("pid"):
            continue

        pid = _parse_int(fields[cols.index("pid")])
        if pid is None:
            continue

        def metric(name: str) -> float:
            if name not in cols:
                return 0.0
            index = cols.index(name)
            return parse_float(fields[index]) if index < len(fields) else 0.0

        processes.append(
            ProcessUsage(
                pid=pid,
                utilization=Utilization(
                    sm=metric("sm"),
                    mem=metric("mem"),
                    enc=metric("enc"),
                    dec=metric("dec"),
                ),
                display_name=" ".join(fields[name_index:]),
            )
        )

    return processes


class NvidiaSmiProvider:
    """GPU telemetry through the nvidia-smi command line tool."""

    label = "gpu"

    def __init__(self, executable: str = "nvidia-smi", timeout: float = 5.0) -> None:
        """
        Initialize the provider.

        Args:
            executable: Name or path of the nvidia-smi binary.
            timeout: Upper bound in seconds for a single invocation.
        """
        self._executable = executable
        self._timeout = timeout

    def available(self) -> bool:
        """Check whether the nvidia-smi binary can be found."""
        return shutil.which(self._executable) is not None

    def read_device(self) -> DeviceReading:
        query = ",".join(GPU_QUERY_FIELDS)
        output = self._run("--query-gpu=" + query, "--format=csv,noheader,nounits")
        return parse_gpu_query(output)

    def read_processes(self) -> list[ProcessUsage]:
        output = self._run("pmon", "-c", "1", "-s", "u")
        return parse_pmon(output)

    def _run(self, *args: str) -> str:
        """Run nvidia-smi and return its stdout."""
        try:
            result = subprocess.run(
                [self._executable, *args],
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError:
            raise ProviderFailure(f"{self._executable} not found") from None
        except subprocess.TimeoutExpired:
            raise ProviderFailure(
                f"{self._executable} timed out after {self._timeout}s"
            ) from None
        except OSError as e:
            raise ProviderFailure(f"{self._executable} failed: {e}") from e

        if result.returncode != 0:
            raise ProviderFailure(
                f"{self._executable} exited with {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        if not result.stdout.strip():
            raise TelemetryUnavailable(f"{self._executable} returned no output")
        return result.stdout


class RaplCpuProvider:
    """
    CPU package telemetry from the Linux RAPL powercap interface.

    Power is derived from the delta of the cumulative energy counter between
    two reads, so the first read only primes the counter.
    """

    label = "cpu"

    def __init__(
        self,
        rapl_path: str | Path = DEFAULT_RAPL_PATH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._domain = Path(rapl_path) / "intel-rapl:0"
        self._clock = clock
        self._last: tuple[int, float] | None = None
        self._max_energy_uj = self._read_max_range()
        self._cpu_count = psutil.cpu_count() or 1
        # Initialize CPU percent (first call returns 0.0)
        psutil.cpu_percent()

    def available(self) -> bool:
        """Check whether the package energy counter is readable."""
        try:
            self._read_energy_uj()
        except (ProviderFailure, TelemetryUnavailable):
            return False
        return True

    def _read_max_range(self) -> int:
        try:
            return int((self._domain / "max_energy_range_uj").read_text().strip())
        except (OSError, ValueError):
            return 2**32

    def _read_energy_uj(self) -> int:
        path = self._domain / "energy_uj"
        try:
            return int(path.read_text().strip())
        except ValueError:
            raise TelemetryUnavailable(f"unreadable RAPL counter at {path}") from None
        except OSError as e:
            raise ProviderFailure(f"cannot read {path}: {e}") from e

    def read_device(self) -> DeviceReading:
        energy_uj = self._read_energy_uj()
        now = self._clock()
        previous, self._last = self._last, (energy_uj, now)
        if previous is None:
            raise TelemetryUnavailable("RAPL counter primed")

        delta_uj = energy_uj - previous[0]
        if delta_uj < 0:
            delta_uj += self._max_energy_uj
        elapsed = now - previous[1]
        if elapsed <= 0:
            raise TelemetryUnavailable("no time elapsed since previous RAPL read")

        return DeviceReading(
            power_w=delta_uj / 1_000_000 / elapsed,
            utilization=Utilization(
                sm=psutil.cpu_percent(),
                mem=psutil.virtual_memory().percent,
            ),
            temperature_c=_package_temperature(),
            fan_percent=0.0,
        )

    def read_processes(self) -> list[ProcessUsage]:
        """
        Collect CPU and memory utilization of all running processes.

        Per-process CPU percent is normalized to a 0-100 device scale.
        """
        processes: list[ProcessUsage] = []
        attrs = ["pid", "name", "cpu_percent", "memory_percent"]

        for proc in psutil.process_iter(attrs=attrs):
            try:
                info = proc.info
                processes.append(
                    ProcessUsage(
                        pid=info["pid"],
                        utilization=Utilization(
                            sm=(info.get("cpu_percent") or 0.0) / self._cpu_count,
                            mem=info.get("memory_percent") or 0.0,
                        ),
                        display_name=info.get("name") or "",
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                # Process died mid-poll
                continue

        return processes


def _package_temperature() -> float:
    """Best-effort CPU package temperature, 0.0 when no sensor is exposed."""
    sensors = getattr(psutil, "sensors_temperatures", None)
    if sensors is None:
        return 0.0
    try:
        readings = sensors()
    except OSError:
        return 0.0

    for chip in ("coretemp", "k10temp", "zenpower", "cpu_thermal"):
        entries = readings.get(chip)
        if entries:
            for entry in entries:
                if entry.label.startswith(("Package", "Tctl", "Tdie")):
                    return entry.current
            return entries[0].current
    return 0.0
