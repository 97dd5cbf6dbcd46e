"""
Common Utilities

Shared modules used across all services:
- state.py - JSON state files with atomic rename
- config.py - Configuration dataclasses and enums
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
"""

from .state import StateFileStore
from .config import (
    GatewayConfig,
    ModbusSettings,
    PollingSettings,
    ScanSettings,
    LoggingSettings,
    HealthSettings,
    RegisterType,
    RegisterDataType,
    AccessMode,
    Protocol,
    BusyPolicy,
    load_gateway_config,
    load_config_file,
)
from .exceptions import (
    FieldGateError,
    ConfigError,
    ValidationError,
    EquipmentNotFoundError,
    DeviceError,
    CommunicationError,
    ProtocolError,
    DeviceBusyError,
    WriteError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    configure_all,
    log_coil_read,
    log_coil_write,
    log_scan_progress,
)

__all__ = [
    # State
    "StateFileStore",
    # Config
    "GatewayConfig",
    "ModbusSettings",
    "PollingSettings",
    "ScanSettings",
    "LoggingSettings",
    "HealthSettings",
    "RegisterType",
    "RegisterDataType",
    "AccessMode",
    "Protocol",
    "BusyPolicy",
    "load_gateway_config",
    "load_config_file",
    # Exceptions
    "FieldGateError",
    "ConfigError",
    "ValidationError",
    "EquipmentNotFoundError",
    "DeviceError",
    "CommunicationError",
    "ProtocolError",
    "DeviceBusyError",
    "WriteError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "configure_all",
    "log_coil_read",
    "log_coil_write",
    "log_scan_progress",
]
