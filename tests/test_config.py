"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from wattop.config import MonitorConfig, config_from_dict, load_config
from wattop.errors import ConfigError
from wattop.models import MetricWeights


def test_defaults():
    config = MonitorConfig()

    assert config.devices == ("auto",)
    assert config.weights == MetricWeights(1.0, 0.5, 0.25, 0.15)
    assert config.cache_capacity == 1024
    assert config.flush_every == 10
    assert config.baseline_samples == 50
    assert config.autoscale is False


def test_load_without_path_returns_defaults():
    assert load_config(None) == MonitorConfig()


def test_load_yaml(tmp_path):
    path = tmp_path / "wattop.yaml"
    path.write_text(
        """
wattop:
  devices: [gpu]
  gpu_interval: 0.5
  output_dir: /var/log/wattop
  autoscale: true
  weights:
    sm: 1.0
    mem: 0.25
    enc: 0
    dec: 0
"""
    )

    config = load_config(path)

    assert config.devices == ("gpu",)
    assert config.gpu_interval == 0.5
    assert config.output_dir == Path("/var/log/wattop")
    assert config.autoscale is True
    assert config.weights == MetricWeights(1.0, 0.25, 0.0, 0.0)


def test_load_top_level_keys(tmp_path):
    path = tmp_path / "wattop.yaml"
    path.write_text("devices: cpu\nflush_every: 5\n")

    config = load_config(path)

    assert config.devices == ("cpu",)
    assert config.flush_every == 5


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("devices: [gpu\n")

    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(path)


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_config(path) == MonitorConfig()


def test_non_mapping_document(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- gpu\n- cpu\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(path)


def test_unknown_key():
    with pytest.raises(ConfigError, match="poll_rate"):
        config_from_dict({"poll_rate": 2.0})


def test_unknown_weight():
    with pytest.raises(ConfigError, match="gfx"):
        config_from_dict({"weights": {"gfx": 1.0}})


def test_negative_weight():
    with pytest.raises(ConfigError):
        config_from_dict({"weights": {"sm": -1.0}})


@pytest.mark.parametrize(
    "overrides",
    [
        {"gpu_interval": 0.0},
        {"ui_interval": -1.0},
        {"cache_capacity": 0},
        {"flush_every": 0},
        {"max_samples": 0},
        {"baseline_samples": 0},
        {"devices": ()},
        {"devices": ("tpu",)},
        {"log_level": "LOUD"},
    ],
)
def test_validation(overrides):
    with pytest.raises(ConfigError):
        MonitorConfig(**overrides)


def test_with_overrides_skips_none():
    config = MonitorConfig().with_overrides(gpu_interval=0.25, cpu_interval=None)

    assert config.gpu_interval == 0.25
    assert config.cpu_interval == 1.0


def test_interval_for():
    config = MonitorConfig(gpu_interval=0.5, cpu_interval=2.0)

    assert config.interval_for("gpu") == 0.5
    assert config.interval_for("cpu") == 2.0
    with pytest.raises(KeyError):
        config.interval_for("npu")
