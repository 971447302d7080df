"""Idle baseline calibration."""

import time
from collections.abc import Callable

import structlog

from wattop.errors import TelemetryError
from wattop.models import IdleBaseline
from wattop.telemetry import DeviceTelemetryProvider, read_snapshot

log = structlog.get_logger()

DEFAULT_SAMPLE_COUNT = 50
DEFAULT_SAMPLE_INTERVAL = 0.1


def calibrate(
    provider: DeviceTelemetryProvider,
    sample_count: int = DEFAULT_SAMPLE_COUNT,
    sample_interval: float = DEFAULT_SAMPLE_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> IdleBaseline:
    """
    Measure the device while it is expected to be quiescent.

    Takes ``sample_count`` readings spaced ``sample_interval`` seconds apart.
    Failed readings are skipped rather than counted as zero. The process set
    visible in the last successful reading becomes the idle set, so a process
    that exits during the window is not kept. If no reading succeeds the
    default all-zero baseline is returned.

    Args:
        provider: Telemetry source for the device.
        sample_count: Number of readings to attempt.
        sample_interval: Spacing between readings in seconds.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The measured IdleBaseline.
    """
    if sample_count < 1:
        raise ValueError("sample_count must be at least 1")

    powers: list[float] = []
    temperatures: list[float] = []
    fans: list[float] = []
    idle_pids: frozenset[int] = frozenset()

    for i in range(sample_count):
        try:
            snapshot = read_snapshot(provider)
        except TelemetryError as e:
            log.debug("baseline_reading_skipped", device=provider.label, error=str(e))
        else:
            powers.append(snapshot.device.power_w)
            temperatures.append(snapshot.device.temperature_c)
            fans.append(snapshot.device.fan_percent)
            idle_pids = frozenset(proc.pid for proc in snapshot.processes)

        if i < sample_count - 1:
            sleep(sample_interval)

    if not powers:
        log.warning(
            "baseline_unavailable", device=provider.label, attempts=sample_count
        )
        return IdleBaseline()

    baseline = IdleBaseline(
        average_power=sum(powers) / len(powers),
        min_power=min(powers),
        max_power=max(powers),
        average_temperature=sum(temperatures) / len(temperatures),
        average_fan=sum(fans) / len(fans),
        idle_pids=idle_pids,
        sample_count=len(powers),
    )
    log.info(
        "baseline_calibrated",
        device=provider.label,
        average_power=round(baseline.average_power, 2),
        min_power=baseline.min_power,
        max_power=baseline.max_power,
        idle_pids=baseline.idle_pid_count,
        samples=baseline.sample_count,
    )
    return baseline
