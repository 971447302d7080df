"""Shared fakes for wattop tests."""

import pytest

from wattop.errors import TelemetryError
from wattop.models import DeviceReading, ProcessUsage, Utilization


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeProvider:
    """Telemetry provider driven by test-controlled values."""

    def __init__(
        self,
        label: str = "gpu",
        power: float = 20.0,
        device_util: Utilization | None = None,
        processes: list[ProcessUsage] | None = None,
        temperature: float = 40.0,
        fan: float = 30.0,
    ) -> None:
        self.label = label
        self.power = power
        self.device_util = device_util or Utilization()
        self.processes = processes or []
        self.temperature = temperature
        self.fan = fan
        self.fail: TelemetryError | None = None
        self.script: list[float | TelemetryError] = []
        self.device_calls = 0

    def available(self) -> bool:
        return True

    def read_device(self) -> DeviceReading:
        self.device_calls += 1
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, TelemetryError):
                raise item
            self.power = item
        if self.fail is not None:
            raise self.fail
        return DeviceReading(
            power_w=self.power,
            utilization=self.device_util,
            temperature_c=self.temperature,
            fan_percent=self.fan,
        )

    def read_processes(self) -> list[ProcessUsage]:
        return list(self.processes)


class FakeResolver:
    """Name resolver backed by a dict, recording every batch it receives."""

    def __init__(self, names: dict[int, str] | None = None) -> None:
        self.names = names or {}
        self.calls: list[set[int]] = []

    def resolve(self, pids: set[int]) -> dict[int, str]:
        self.calls.append(set(pids))
        return {pid: self.names[pid] for pid in pids if pid in self.names}


def proc(pid: int, sm: float = 0.0, mem: float = 0.0, name: str = "") -> ProcessUsage:
    return ProcessUsage(pid=pid, utilization=Utilization(sm=sm, mem=mem), display_name=name)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver({100: "Xorg", 101: "gnome-shell", 200: "python", 300: "ffmpeg"})
