"""Tests for idle baseline calibration."""

import pytest

from conftest import FakeProvider, proc
from wattop.baseline import calibrate
from wattop.errors import ProviderFailure, TelemetryUnavailable
from wattop.models import IdleBaseline


def no_sleep(seconds: float) -> None:
    pass


def test_calibrate_statistics():
    """Test mean, min and max power plus mean temperature and fan."""
    provider = FakeProvider(power=0.0, temperature=45.0, fan=30.0)
    provider.script = [18.0, 20.0, 22.0, 20.0]

    baseline = calibrate(provider, sample_count=4, sample_interval=0.0, sleep=no_sleep)

    assert baseline.average_power == pytest.approx(20.0)
    assert baseline.min_power == 18.0
    assert baseline.max_power == 22.0
    assert baseline.average_temperature == pytest.approx(45.0)
    assert baseline.average_fan == pytest.approx(30.0)
    assert baseline.sample_count == 4


def test_calibrate_records_idle_pids():
    provider = FakeProvider(power=20.0, processes=[proc(100), proc(101)])

    baseline = calibrate(provider, sample_count=3, sample_interval=0.0, sleep=no_sleep)

    assert baseline.idle_pids == frozenset({100, 101})
    assert baseline.idle_pid_count == 2
    assert baseline.idle_share == pytest.approx(10.0)


def test_short_lived_process_not_idle_member():
    """Only processes visible at the end of the window join the idle set."""

    class ChurningProvider(FakeProvider):
        def read_processes(self):
            if self.device_calls == 1:
                return [proc(100), proc(555, sm=30.0)]
            return [proc(100), proc(101)]

    baseline = calibrate(
        ChurningProvider(power=20.0), sample_count=3, sample_interval=0.0, sleep=no_sleep
    )

    assert baseline.idle_pids == frozenset({100, 101})
    assert 555 not in baseline.idle_pids


def test_idle_set_from_last_successful_reading():
    class GrowingProvider(FakeProvider):
        def read_processes(self):
            return [proc(pid) for pid in range(100, 100 + self.device_calls)]

    provider = GrowingProvider(power=20.0)
    provider.script = [20.0, 20.0, ProviderFailure("gone")]

    baseline = calibrate(provider, sample_count=3, sample_interval=0.0, sleep=no_sleep)

    assert baseline.idle_pids == frozenset({100, 101})
    assert baseline.sample_count == 2


def test_calibrate_skips_failed_readings():
    """Failed readings are skipped, not averaged in as zero."""
    provider = FakeProvider(power=0.0)
    provider.script = [
        TelemetryUnavailable("garbled"),
        30.0,
        ProviderFailure("timeout"),
        10.0,
    ]

    baseline = calibrate(provider, sample_count=4, sample_interval=0.0, sleep=no_sleep)

    assert baseline.average_power == pytest.approx(20.0)
    assert baseline.min_power == 10.0
    assert baseline.sample_count == 2


def test_calibrate_all_failures_returns_zero_baseline():
    provider = FakeProvider()
    provider.fail = TelemetryUnavailable("no data")

    baseline = calibrate(provider, sample_count=5, sample_interval=0.0, sleep=no_sleep)

    assert baseline == IdleBaseline()
    assert baseline.idle_pid_count == 0


def test_calibrate_sleeps_between_readings():
    sleeps: list[float] = []
    provider = FakeProvider(power=20.0)

    calibrate(provider, sample_count=5, sample_interval=0.2, sleep=sleeps.append)

    assert sleeps == [0.2] * 4
    assert provider.device_calls == 5


def test_calibrate_requires_samples():
    with pytest.raises(ValueError):
        calibrate(FakeProvider(), sample_count=0)
