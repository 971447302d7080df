"""Tests for telemetry parsing and providers."""

import subprocess
from datetime import datetime

import pytest

from conftest import FakeClock, FakeProvider
from wattop.errors import ProviderFailure, TelemetryUnavailable
from wattop.models import Utilization
from wattop.telemetry import (
    DeviceTelemetryProvider,
    NvidiaSmiProvider,
    RaplCpuProvider,
    parse_float,
    parse_gpu_query,
    parse_pmon,
    read_snapshot,
)

PMON_OUTPUT = """\
# gpu         pid   type     sm    mem    enc    dec    command
# Idx           #    C/G      %      %      %      %    name
    0        1234     G      5      2      -      -    Xorg
    0        5678     C     87     40      0      0    python
    0        5678     G      3      1      -      -    python
"""

PMON_OUTPUT_WIDE = """\
# gpu         pid   type     sm    mem    enc    dec    jpg    ofa    command
# Idx           #    C/G      %      %      %      %      %      %    name
    0        4321     C     50     20     10      5      -      -    ffmpeg -i in.mp4
"""

PMON_IDLE = """\
# gpu         pid   type     sm    mem    enc    dec    command
# Idx           #    C/G      %      %      %      %    name
    0           -     -      -      -      -      -    -
"""


class TestParsers:
    """Tests for nvidia-smi output parsing."""

    def test_parse_float_defaults_to_zero(self):
        assert parse_float("12.5") == 12.5
        assert parse_float("-") == 0.0
        assert parse_float("[N/A]") == 0.0
        assert parse_float("[Not Supported]") == 0.0

    def test_parse_gpu_query(self):
        reading = parse_gpu_query("2024/05/01 12:00:00.123, 85.34, 67, 21, 3, 0, 63, 45\n")

        assert reading.power_w == pytest.approx(85.34)
        assert reading.utilization == Utilization(sm=67.0, mem=21.0, enc=3.0, dec=0.0)
        assert reading.temperature_c == 63.0
        assert reading.fan_percent == 45.0
        assert reading.timestamp == datetime(2024, 5, 1, 12, 0, 0, 123000)

    def test_parse_gpu_query_unsupported_fields_default(self):
        reading = parse_gpu_query("garbage, 30.0, [N/A], 5, [N/A], [N/A], 40, [N/A]")

        assert reading.power_w == 30.0
        assert reading.utilization.sm == 0.0
        assert reading.utilization.mem == 5.0
        assert reading.fan_percent == 0.0
        assert isinstance(reading.timestamp, datetime)

    def test_parse_gpu_query_short_line(self):
        reading = parse_gpu_query("2024/05/01 12:00:00.123, 30.0")

        assert reading.power_w == 30.0
        assert reading.temperature_c == 0.0

    def test_parse_gpu_query_uses_first_gpu(self):
        text = "t, 10.0, 1, 1, 0, 0, 30, 0\nt, 99.0, 1, 1, 0, 0, 30, 0\n"

        assert parse_gpu_query(text).power_w == 10.0

    def test_parse_gpu_query_unreadable_power(self):
        with pytest.raises(TelemetryUnavailable):
            parse_gpu_query("2024/05/01 12:00:00.123, [N/A], 0, 0, 0, 0, 30, 0")

    def test_parse_gpu_query_empty(self):
        with pytest.raises(TelemetryUnavailable):
            parse_gpu_query("\n\n")

    def test_parse_pmon(self):
        processes = parse_pmon(PMON_OUTPUT)

        assert [p.pid for p in processes] == [1234, 5678, 5678]
        assert processes[0].utilization == Utilization(sm=5.0, mem=2.0)
        assert processes[0].display_name == "Xorg"
        assert processes[1].utilization.sm == 87.0

    def test_parse_pmon_extra_columns(self):
        processes = parse_pmon(PMON_OUTPUT_WIDE)

        assert len(processes) == 1
        assert processes[0].utilization == Utilization(sm=50.0, mem=20.0, enc=10.0, dec=5.0)
        assert processes[0].display_name == "ffmpeg -i in.mp4"

    def test_parse_pmon_idle_gpu(self):
        assert parse_pmon(PMON_IDLE) == []

    def test_parse_pmon_without_header(self):
        processes = parse_pmon("0 42 C 10 5 0 0 train\n")

        assert processes[0].pid == 42
        assert processes[0].utilization.sm == 10.0

    def test_parse_pmon_skips_short_rows(self):
        assert parse_pmon("# gpu pid type sm mem enc dec command\n 0\n") == []


class TestReadSnapshot:
    """Tests for combining device and process readings."""

    def test_snapshot_combines_readings(self):
        provider = FakeProvider(power=50.0)

        snapshot = read_snapshot(provider)

        assert snapshot.device.power_w == 50.0
        assert snapshot.processes == ()

    def test_unavailable_process_list_is_empty(self):
        class NoProcesses(FakeProvider):
            def read_processes(self):
                raise TelemetryUnavailable("pmon unsupported")

        snapshot = read_snapshot(NoProcesses(power=50.0))

        assert snapshot.processes == ()

    def test_device_failure_propagates(self):
        provider = FakeProvider()
        provider.fail = ProviderFailure("gone")

        with pytest.raises(ProviderFailure):
            read_snapshot(provider)

    def test_fake_satisfies_protocol(self):
        assert isinstance(FakeProvider(), DeviceTelemetryProvider)


class TestNvidiaSmiProvider:
    """Tests for the nvidia-smi provider with a stubbed subprocess."""

    def _completed(self, stdout: str, returncode: int = 0, stderr: str = ""):
        return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)

    def test_reads_device_and_processes(self, monkeypatch):
        outputs = {
            "--query-gpu": "2024/05/01 12:00:00.000, 120.5, 80, 30, 0, 0, 70, 55",
            "pmon": PMON_OUTPUT,
        }
        calls = []

        def fake_run(args, **kwargs):
            calls.append((args, kwargs))
            key = "pmon" if args[1] == "pmon" else "--query-gpu"
            return self._completed(outputs[key])

        monkeypatch.setattr(subprocess, "run", fake_run)
        provider = NvidiaSmiProvider(timeout=2.0)

        assert provider.read_device().power_w == 120.5
        assert len(provider.read_processes()) == 3
        assert calls[0][1]["timeout"] == 2.0
        assert calls[0][0][0] == "nvidia-smi"

    def test_missing_binary(self, monkeypatch):
        def fake_run(args, **kwargs):
            raise FileNotFoundError(args[0])

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(ProviderFailure):
            NvidiaSmiProvider().read_device()

    def test_timeout(self, monkeypatch):
        def fake_run(args, **kwargs):
            raise subprocess.TimeoutExpired(args, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(ProviderFailure, match="timed out"):
            NvidiaSmiProvider(timeout=0.5).read_device()

    def test_nonzero_exit(self, monkeypatch):
        monkeypatch.setattr(
            subprocess, "run", lambda args, **kw: self._completed("", 9, "driver mismatch")
        )

        with pytest.raises(ProviderFailure, match="driver mismatch"):
            NvidiaSmiProvider().read_device()

    def test_empty_output(self, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda args, **kw: self._completed("  \n"))

        with pytest.raises(TelemetryUnavailable):
            NvidiaSmiProvider().read_processes()

    def test_unavailable_binary(self):
        assert not NvidiaSmiProvider("definitely-not-nvidia-smi").available()


class TestRaplCpuProvider:
    """Tests for the RAPL provider against a fake powercap tree."""

    @pytest.fixture
    def rapl(self, tmp_path):
        domain = tmp_path / "intel-rapl:0"
        domain.mkdir()
        (domain / "energy_uj").write_text("1000000\n")
        (domain / "max_energy_range_uj").write_text("5000000\n")
        return tmp_path

    def test_first_read_primes_counter(self, rapl):
        provider = RaplCpuProvider(rapl, clock=FakeClock())

        with pytest.raises(TelemetryUnavailable):
            provider.read_device()

    def test_power_from_counter_delta(self, rapl):
        clock = FakeClock()
        provider = RaplCpuProvider(rapl, clock=clock)
        provider.read_device()
        (rapl / "intel-rapl:0" / "energy_uj").write_text("3000000\n")
        clock.advance(0.5)

        reading = provider.read_device()

        # 2 J over 0.5 s
        assert reading.power_w == pytest.approx(4.0)
        assert 0.0 <= reading.utilization.sm <= 100.0
        assert reading.utilization.enc == 0.0

    def test_counter_wraparound(self, rapl):
        clock = FakeClock()
        (rapl / "intel-rapl:0" / "energy_uj").write_text("4500000\n")
        provider = RaplCpuProvider(rapl, clock=clock)
        provider.read_device()
        (rapl / "intel-rapl:0" / "energy_uj").write_text("500000\n")
        clock.advance(1.0)

        assert provider.read_device().power_w == pytest.approx(1.0)

    def test_garbled_counter(self, rapl):
        (rapl / "intel-rapl:0" / "energy_uj").write_text("garbage")

        with pytest.raises(TelemetryUnavailable):
            RaplCpuProvider(rapl).read_device()

    def test_missing_counter(self, tmp_path):
        provider = RaplCpuProvider(tmp_path)

        assert not provider.available()
        with pytest.raises(ProviderFailure):
            provider.read_device()

    def test_available(self, rapl):
        assert RaplCpuProvider(rapl).available()

    def test_read_processes(self, rapl):
        processes = RaplCpuProvider(rapl).read_processes()

        assert len(processes) > 0
        for process in processes[:5]:
            assert process.pid >= 0
            assert 0.0 <= process.utilization.sm
            assert isinstance(process.display_name, str)
