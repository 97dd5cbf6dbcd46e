"""Configuration loading."""

import pytest

from fieldgate.common.config import BusyPolicy, load_config_file, load_gateway_config
from fieldgate.common.exceptions import ConfigError


def test_defaults(monkeypatch):
    monkeypatch.delenv("FIELDGATE_STATE_DIR", raising=False)
    config = load_gateway_config({})

    assert config.modbus.default_port == 502
    assert config.modbus.busy_policy == BusyPolicy.QUEUE
    assert config.scan.slave_timeout_ms == 500
    assert config.scan.network_ports == [502, 503]
    assert config.scan.network_timeout_ms == 1000
    assert config.scan.network_concurrency == 50
    assert config.logging.format == "json"
    assert config.state_dir is None
    assert config.equipment == []


def test_state_dir_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("FIELDGATE_STATE_DIR", str(tmp_path))

    assert load_gateway_config({}).state_dir == str(tmp_path)


def test_invalid_values_are_listed_together():
    with pytest.raises(ConfigError) as exc:
        load_gateway_config({
            "modbus": {"timeout_s": 0, "retries": 0},
            "logging": {"format": "xml"},
        })

    message = exc.value.message
    assert "modbus.timeout_s" in message
    assert "modbus.retries" in message
    assert "logging.format" in message
    assert exc.value.recoverable is False


def test_invalid_busy_policy():
    with pytest.raises(ConfigError):
        load_gateway_config({"modbus": {"busy_policy": "drop"}})


def test_non_mapping_config():
    with pytest.raises(ConfigError):
        load_gateway_config(["modbus"])


def test_load_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "modbus:\n"
        "  busy_policy: reject\n"
        "logging:\n"
        "  level: debug\n"
        "  format: text\n"
        "equipment:\n"
        "  - name: Relay board\n"
        "    address: 10.0.0.5:502\n",
        encoding="utf-8",
    )

    config = load_config_file(path)

    assert config.modbus.busy_policy == BusyPolicy.REJECT
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "text"
    assert config.equipment[0]["name"] == "Relay board"


def test_missing_and_broken_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("modbus: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(broken)


def test_config_path_from_environment(monkeypatch, tmp_path):
    path = tmp_path / "gateway.yaml"
    path.write_text("scan:\n  slave_timeout_ms: 800\n", encoding="utf-8")
    monkeypatch.setenv("FIELDGATE_CONFIG", str(path))

    assert load_config_file().scan.slave_timeout_ms == 800


def test_polling_section():
    config = load_gateway_config({"polling": {"enabled": False, "max_backoff_ms": 30000, "error_threshold": 5}})

    assert config.polling.enabled is False
    assert config.polling.base_backoff_ms == 1000
    assert config.polling.max_backoff_ms == 30000
    assert config.polling.error_threshold == 5
    assert load_gateway_config({}).polling.refresh_interval_s == 30.0


def test_invalid_polling_backoff():
    with pytest.raises(ConfigError) as exc:
        load_gateway_config({"polling": {"base_backoff_ms": 5000, "max_backoff_ms": 1000, "error_threshold": 0}})

    assert "base_backoff_ms" in exc.value.message
    assert "polling.error_threshold" in exc.value.message
