"""
Discovery Service - finding field devices

Responsibilities:
- Probe unit ids behind a Modbus TCP gateway
- Sweep IPv4 networks for Modbus TCP endpoints and read their identification
- Turn discovered slaves into equipment records
"""

from .network_scanner import (
    DiscoveredNetworkDevice,
    NetworkScanner,
    NetworkScanResult,
    get_local_networks,
    parse_quick_target,
)
from .provisioning import ProvisionResult, create_equipment_from_slaves
from .service import DiscoveryService
from .slave_scanner import (
    DiscoveredSlave,
    ScanConfig,
    ScanProgress,
    SlaveScanner,
    SlaveScanResult,
    parse_scan_config,
)

__all__ = [
    "DiscoveredNetworkDevice",
    "NetworkScanner",
    "NetworkScanResult",
    "get_local_networks",
    "parse_quick_target",
    "ProvisionResult",
    "create_equipment_from_slaves",
    "DiscoveryService",
    "DiscoveredSlave",
    "ScanConfig",
    "ScanProgress",
    "SlaveScanner",
    "SlaveScanResult",
    "parse_scan_config",
]
