"""Append-only CSV logging of device and process samples."""

import csv
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import IO

import structlog

from wattop.errors import PersistenceError
from wattop.models import DeviceSample, ProcessSample

log = structlog.get_logger()

DEVICE_HEADER = (
    "Timestamp",
    "PowerW",
    "ActivePowerW",
    "ExcessPowerW",
    "UtilSM",
    "UtilMem",
    "UtilEnc",
    "UtilDec",
    "WeightTotalDevice",
    "WeightTotalProcess",
    "ProcessCount",
    "AttributedPowerW",
    "ResidualPowerW",
    "AccumulatedEnergyJ",
    "TemperatureC",
    "FanPercent",
)

PROCESS_HEADER = (
    "Timestamp",
    "PID",
    "ProcessName",
    "UtilSM",
    "UtilMem",
    "UtilEnc",
    "UtilDec",
    "PowerW",
    "EnergyJ",
    "AccumulatedEnergyJ",
    "WeightedUtil",
    "IsIdleBaselineMember",
)

DEFAULT_FLUSH_EVERY = 10


def _num(value: float) -> str:
    return f"{value:.4f}"


def device_row(sample: DeviceSample) -> list[str]:
    """Format a device sample as a CSV row."""
    util = sample.utilization
    return [
        sample.timestamp.isoformat(timespec="milliseconds"),
        _num(sample.measured_power),
        _num(sample.active_power),
        _num(sample.excess_power),
        _num(util.sm),
        _num(util.mem),
        _num(util.enc),
        _num(util.dec),
        _num(sample.weighted_capacity),
        _num(sample.process_weight_total),
        str(sample.process_count),
        _num(sample.attributed_power),
        _num(sample.residual_power),
        _num(sample.cumulative_energy),
        _num(sample.temperature),
        _num(sample.fan_percent),
    ]


def process_row(sample: DeviceSample, proc: ProcessSample) -> list[str]:
    """Format a process sample as a CSV row stamped with its device sample."""
    util = proc.utilization
    return [
        sample.timestamp.isoformat(timespec="milliseconds"),
        str(proc.pid),
        proc.resolved_name,
        _num(util.sm),
        _num(util.mem),
        _num(util.enc),
        _num(util.dec),
        _num(proc.power),
        _num(proc.energy_this_tick),
        _num(proc.cumulative_energy),
        _num(proc.weighted_utilization),
        "true" if proc.is_idle_baseline_member else "false",
    ]


class CsvSampleLog:
    """
    One append-only CSV file.

    The header is written only when the file is new or empty. Rows are
    flushed to the OS every ``flush_every`` appends and on close. After any
    I/O error the log warns once and continues in memory-only mode, dropping
    further rows.
    """

    def __init__(
        self,
        path: str | Path,
        header: Sequence[str],
        flush_every: int = DEFAULT_FLUSH_EVERY,
    ) -> None:
        if flush_every < 1:
            raise ValueError("flush_every must be at least 1")
        self._path = Path(path)
        self._header = list(header)
        self._flush_every = flush_every
        self._file: IO[str] | None = None
        self._writer = None
        self._pending = 0
        self._rows_written = 0
        self._memory_only = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    @property
    def rows_written(self) -> int:
        """Data rows handed to the file, header excluded."""
        return self._rows_written

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self, strict: bool = False) -> bool:
        """
        Open the file for appending, writing the header if it is new or empty.

        Args:
            strict: Raise PersistenceError instead of degrading to memory-only.

        Returns:
            True when the file is open for writing.
        """
        if self._file is not None:
            return True
        if self._memory_only:
            return False
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            needs_header = not self._path.exists() or self._path.stat().st_size == 0
            self._file = open(self._path, "a", newline="", encoding="utf-8")
            self._writer = csv.writer(self._file)
            if needs_header:
                self._writer.writerow(self._header)
                self._file.flush()
        except OSError as e:
            if strict:
                raise PersistenceError(f"cannot open {self._path}: {e}") from e
            self._degrade("open", e)
            return False
        return True

    def append(self, row: Sequence[str]) -> None:
        """Append one data row."""
        if self._memory_only:
            return
        if self._file is None and not self.open():
            return
        try:
            self._writer.writerow(row)
            self._rows_written += 1
            self._pending += 1
            if self._pending >= self._flush_every:
                self._file.flush()
                self._pending = 0
        except OSError as e:
            self._degrade("write", e)

    def flush(self) -> None:
        if self._file is None:
            return
        try:
            self._file.flush()
            self._pending = 0
        except OSError as e:
            self._degrade("flush", e)

    def close(self) -> None:
        """Flush and close. Safe to call more than once."""
        if self._file is None:
            return
        self.flush()
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                log.warning("sample_log_close_failed", path=str(self._path), error=str(e))
        self._file = None
        self._writer = None

    def _degrade(self, operation: str, error: OSError) -> None:
        log.warning(
            "sample_log_memory_only",
            path=str(self._path),
            operation=operation,
            error=str(error),
        )
        self._memory_only = True
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
        self._file = None
        self._writer = None


class SamplePersistence:
    """The device log and process log of one device class."""

    def __init__(
        self,
        directory: str | Path,
        label: str,
        flush_every: int = DEFAULT_FLUSH_EVERY,
    ) -> None:
        directory = Path(directory)
        self.device_log = CsvSampleLog(
            directory / f"{label}_device.csv", DEVICE_HEADER, flush_every
        )
        self.process_log = CsvSampleLog(
            directory / f"{label}_processes.csv", PROCESS_HEADER, flush_every
        )

    @property
    def memory_only(self) -> bool:
        return self.device_log.memory_only and self.process_log.memory_only

    def open(self) -> bool:
        device_ok = self.device_log.open()
        process_ok = self.process_log.open()
        return device_ok and process_ok

    def record(self, sample: DeviceSample, processes: Iterable[ProcessSample]) -> None:
        """Append one device row and one row per process."""
        self.device_log.append(device_row(sample))
        for proc in processes:
            self.process_log.append(process_row(sample, proc))

    def flush(self) -> None:
        self.device_log.flush()
        self.process_log.flush()

    def close(self) -> None:
        try:
            self.device_log.close()
        finally:
            self.process_log.close()

    def __enter__(self) -> "SamplePersistence":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
