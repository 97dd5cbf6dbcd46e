"""
Configuration Dataclasses

Type-safe configuration structures for the gateway core.
Loaded from a YAML file (see load_config_file) with defaults for every key.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError


class RegisterType(str, Enum):
    """Modbus data model tables"""
    COIL = "coil"
    DISCRETE = "discrete"
    HOLDING = "holding"
    INPUT = "input"


class RegisterDataType(str, Enum):
    """Register data types"""
    BOOL = "bool"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"


class AccessMode(str, Enum):
    """Register access modes"""
    READ = "read"
    WRITE = "write"
    READWRITE = "readwrite"


class Protocol(str, Enum):
    """Equipment protocols (only modbus is driven by this package)"""
    MODBUS = "modbus"
    MQTT = "mqtt"
    ZIGBEE = "zigbee"
    ZWAVE = "zwave"


class BusyPolicy(str, Enum):
    """What to do with a request while the device is busy"""
    QUEUE = "queue"
    REJECT = "reject"


# Modbus addressing limits
MIN_SLAVE_ID = 1
MAX_SLAVE_ID = 247
MIN_POLLING_INTERVAL_MS = 100
MAX_POLLING_INTERVAL_MS = 60000


@dataclass
class ModbusSettings:
    """Modbus client behaviour for control traffic"""
    default_port: int = 502
    timeout_s: float = 5.0
    retries: int = 3
    retry_delay_s: float = 1.0
    idle_timeout_s: float = 60.0
    busy_policy: BusyPolicy = BusyPolicy.QUEUE


@dataclass
class ScanSettings:
    """Defaults for slave and network discovery"""
    slave_timeout_ms: int = 500
    slave_concurrency: int = 1
    sample_size: int = 8
    network_ports: list[int] = field(default_factory=lambda: [502, 503])
    network_timeout_ms: int = 1000
    network_concurrency: int = 50


@dataclass
class PollingSettings:
    """Background register polling"""
    enabled: bool = True
    refresh_interval_s: float = 30.0  # how often the equipment list is re-read
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 60000
    error_threshold: int = 3  # consecutive failures before status "error"


@dataclass
class LoggingSettings:
    """Log level and output format"""
    level: str = "INFO"
    format: str = "json"  # json, text


@dataclass
class HealthSettings:
    """Health server binding"""
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class GatewayConfig:
    """Complete gateway core configuration"""
    modbus: ModbusSettings = field(default_factory=ModbusSettings)
    scan: ScanSettings = field(default_factory=ScanSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    health: HealthSettings = field(default_factory=HealthSettings)

    # Directory for persisted write-only command state (None = memory only)
    state_dir: str | None = None

    # Equipment records used to seed the in-memory equipment store
    equipment: list[dict[str, Any]] = field(default_factory=list)


def load_gateway_config(data: dict | None) -> GatewayConfig:
    """Load GatewayConfig from dictionary (e.g., from a YAML file)"""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("Top-level configuration must be a mapping")

    modbus_data = data.get("modbus", {}) or {}
    try:
        busy_policy = BusyPolicy(modbus_data.get("busy_policy", "queue"))
    except ValueError:
        raise ConfigError(
            f"Invalid busy_policy: {modbus_data.get('busy_policy')!r} "
            f"(expected one of {[p.value for p in BusyPolicy]})"
        )

    modbus = ModbusSettings(
        default_port=int(modbus_data.get("default_port", 502)),
        timeout_s=float(modbus_data.get("timeout_s", 5.0)),
        retries=int(modbus_data.get("retries", 3)),
        retry_delay_s=float(modbus_data.get("retry_delay_s", 1.0)),
        idle_timeout_s=float(modbus_data.get("idle_timeout_s", 60.0)),
        busy_policy=busy_policy,
    )

    scan_data = data.get("scan", {}) or {}
    scan = ScanSettings(
        slave_timeout_ms=int(scan_data.get("slave_timeout_ms", 500)),
        slave_concurrency=int(scan_data.get("slave_concurrency", 1)),
        sample_size=int(scan_data.get("sample_size", 8)),
        network_ports=[int(p) for p in scan_data.get("network_ports", [502, 503])],
        network_timeout_ms=int(scan_data.get("network_timeout_ms", 1000)),
        network_concurrency=int(scan_data.get("network_concurrency", 50)),
    )

    polling_data = data.get("polling", {}) or {}
    polling = PollingSettings(
        enabled=bool(polling_data.get("enabled", True)),
        refresh_interval_s=float(polling_data.get("refresh_interval_s", 30.0)),
        base_backoff_ms=int(polling_data.get("base_backoff_ms", 1000)),
        max_backoff_ms=int(polling_data.get("max_backoff_ms", 60000)),
        error_threshold=int(polling_data.get("error_threshold", 3)),
    )

    logging_data = data.get("logging", {}) or {}
    logging_settings = LoggingSettings(
        level=str(logging_data.get("level", "INFO")).upper(),
        format=str(logging_data.get("format", "json")).lower(),
    )

    health_data = data.get("health", {}) or {}
    health = HealthSettings(
        host=health_data.get("host", "127.0.0.1"),
        port=int(health_data.get("port", 8090)),
    )

    equipment = data.get("equipment", []) or []
    if not isinstance(equipment, list):
        raise ConfigError("'equipment' must be a list")

    config = GatewayConfig(
        modbus=modbus,
        scan=scan,
        polling=polling,
        logging=logging_settings,
        health=health,
        state_dir=data.get("state_dir") or os.environ.get("FIELDGATE_STATE_DIR"),
        equipment=equipment,
    )
    _validate(config)
    return config


def _validate(config: GatewayConfig) -> None:
    """Raise ConfigError listing every invalid value"""
    errors: list[str] = []

    if config.modbus.timeout_s <= 0:
        errors.append("modbus.timeout_s must be > 0")
    if config.modbus.retries < 1:
        errors.append("modbus.retries must be >= 1")
    if not 1 <= config.modbus.default_port <= 65535:
        errors.append("modbus.default_port must be between 1 and 65535")
    if config.scan.slave_timeout_ms <= 0:
        errors.append("scan.slave_timeout_ms must be > 0")
    if not 1 <= config.scan.slave_concurrency <= 50:
        errors.append("scan.slave_concurrency must be between 1 and 50")
    if config.scan.network_timeout_ms <= 0:
        errors.append("scan.network_timeout_ms must be > 0")
    if config.scan.network_concurrency < 1:
        errors.append("scan.network_concurrency must be >= 1")
    if config.polling.refresh_interval_s <= 0:
        errors.append("polling.refresh_interval_s must be > 0")
    if not 0 < config.polling.base_backoff_ms <= config.polling.max_backoff_ms:
        errors.append("polling backoff must satisfy 0 < base_backoff_ms <= max_backoff_ms")
    if config.polling.error_threshold < 1:
        errors.append("polling.error_threshold must be >= 1")
    if config.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"logging.level is invalid: {config.logging.level}")
    if config.logging.format not in ("json", "text"):
        errors.append(f"logging.format is invalid: {config.logging.format}")

    if errors:
        raise ConfigError("; ".join(errors))


def find_config_path() -> Path | None:
    """Find configuration file"""
    env_path = os.environ.get("FIELDGATE_CONFIG")
    possible_paths = [
        env_path,
        "/etc/fieldgate/config.yaml",
        Path.cwd() / "config.yaml",
    ]

    for path in possible_paths:
        if path and Path(path).exists():
            return Path(path)

    return None


def load_config_file(path: str | Path | None = None) -> GatewayConfig:
    """
    Load configuration from a YAML file.

    Without a path, the standard locations are searched; if nothing is
    found, defaults are returned.
    """
    config_path = Path(path) if path else find_config_path()
    if config_path is None:
        return load_gateway_config({})

    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    return load_gateway_config(data)
