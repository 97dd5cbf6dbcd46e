"""
Network Device Scanner

Sweeps IPv4 hosts for Modbus TCP endpoints on the common ports and reads
their identification objects (FC43 / MEI 14) when they support it.
"""

import asyncio
import ipaddress
import socket
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import psutil

from fieldgate.common.exceptions import ValidationError
from fieldgate.common.logging_setup import get_service_logger, log_scan_progress
from fieldgate.services.device.modbus_client import KIND_EXCEPTION, KIND_PROTOCOL, ModbusClient
from .slave_scanner import ScanProgress

logger = get_service_logger("discovery.network")

MODBUS_PORTS = (502, 503)
SCAN_TIMEOUT_MS = 1000
MAX_CONCURRENT = 50
MAX_HOSTS_PER_NETWORK = 254

# Basic device identification object ids
IDENTIFICATION_OBJECTS = {
    0x00: "VendorName",
    0x01: "ProductCode",
    0x02: "MajorMinorRevision",
    0x03: "VendorUrl",
    0x04: "ProductName",
    0x05: "ModelName",
    0x06: "UserApplicationName",
}

NOTE_EXCEPTION = "Device responded with Modbus exception (Function code not supported)"
NOTE_NO_RESPONSE = "TCP port open but no Modbus response (gateway/converter with no active slaves)"
NOTE_MALFORMED = "Device identification response could not be parsed"


@dataclass(frozen=True)
class LocalNetwork:
    interface: str
    address: str
    netmask: str

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(f"{self.address}/{self.netmask}", strict=False)

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.network.prefixlen}"


def get_local_networks() -> list[LocalNetwork]:
    """Non-loopback IPv4 interface addresses of this host"""
    networks = []
    for name, addresses in psutil.net_if_addrs().items():
        for addr in addresses:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if ipaddress.IPv4Address(addr.address).is_loopback:
                continue
            networks.append(LocalNetwork(interface=name, address=addr.address, netmask=addr.netmask))
    return networks


def hosts_for_network(network: str | ipaddress.IPv4Network, limit: int = MAX_HOSTS_PER_NETWORK) -> list[str]:
    """Host addresses of a network, at most `limit` of them"""
    try:
        net = ipaddress.IPv4Network(str(network), strict=False)
    except ValueError as e:
        raise ValidationError(f"Invalid subnet {network!r}: {e}")

    hosts = []
    for host in net.hosts():
        hosts.append(str(host))
        if len(hosts) >= limit:
            break
    if not hosts:
        # /32 and /31
        hosts = [str(net.network_address)]
    return hosts


def parse_quick_target(target: str) -> list[str]:
    """
    Expand "a.b.c.d" or "a.b.c.d-e" into host addresses.

    Raises:
        ValidationError: malformed target
    """
    target = (target or "").strip()
    base, sep, end = target.partition("-")
    try:
        first = ipaddress.IPv4Address(base.strip())
    except ValueError:
        raise ValidationError(f"Invalid scan target {target!r}")

    if not sep:
        return [str(first)]

    octets = str(first).split(".")
    start_num = int(octets[3])
    try:
        end_num = int(end.strip())
    except ValueError:
        raise ValidationError(f"Invalid range end in scan target {target!r}")
    if not start_num <= end_num <= 255:
        raise ValidationError(f"Range end must be between {start_num} and 255 in {target!r}")

    prefix = ".".join(octets[:3])
    return [f"{prefix}.{i}" for i in range(start_num, end_num + 1)]


@dataclass
class DiscoveredNetworkDevice:
    ip: str
    port: int
    device_info: dict[str, str | int] = field(default_factory=dict)
    responsive: bool = True

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    @property
    def suggested_name(self) -> str:
        return (
            self.device_info.get("ProductName")
            or self.device_info.get("VendorName")
            or f"Modbus Device ({self.ip})"
        )

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "port": self.port,
            "address": self.address,
            "protocol": "modbus",
            "responsive": self.responsive,
            "deviceInfo": dict(self.device_info),
            "suggestedName": self.suggested_name,
        }


@dataclass
class NetworkScanResult:
    discovered: list[DiscoveredNetworkDevice] = field(default_factory=list)
    existing_devices_found: int = 0
    scan_info: dict = field(default_factory=dict)
    cancelled: bool = False

    @property
    def total_found(self) -> int:
        return len(self.discovered) + self.existing_devices_found

    def to_dict(self) -> dict:
        return {
            "message": f"Scan completed. Found {self.total_found} Modbus device(s).",
            "discovered": [d.to_dict() for d in self.discovered],
            "existingDevicesFound": self.existing_devices_found,
            "scanInfo": self.scan_info,
            "totalFound": self.total_found,
            "cancelled": self.cancelled,
        }


ClientFactory = Callable[[str, int, float], ModbusClient]
ProgressCallback = Callable[[ScanProgress], None]


def default_client_factory(host: str, port: int, timeout: float) -> ModbusClient:
    return ModbusClient(host=host, port=port, timeout=timeout, retries=1)


class NetworkScanner:
    """Modbus TCP endpoint sweep with bounded concurrency"""

    def __init__(
        self,
        ports: Iterable[int] = MODBUS_PORTS,
        timeout_ms: int = SCAN_TIMEOUT_MS,
        concurrency: int = MAX_CONCURRENT,
        client_factory: ClientFactory | None = None,
        networks_provider: Callable[[], list[LocalNetwork]] = get_local_networks,
        cancel_event: asyncio.Event | None = None,
    ):
        self.ports = tuple(int(p) for p in ports) or MODBUS_PORTS
        if timeout_ms <= 0:
            raise ValidationError("Network scan timeout must be > 0")
        self.timeout_ms = timeout_ms
        self.concurrency = max(1, int(concurrency))
        self._client_factory = client_factory or default_client_factory
        self._networks_provider = networks_provider
        self._cancel = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def resolve_targets(self, subnet: str | None = None, target: str | None = None) -> tuple[list[str], dict]:
        """Hosts to probe and the scan_info describing them"""
        if target:
            return parse_quick_target(target), {"type": "quick", "target": target}

        if subnet:
            return hosts_for_network(subnet), {"type": "subnet", "subnet": subnet}

        networks = self._networks_provider()
        hosts: list[str] = []
        for network in networks:
            for host in hosts_for_network(network.network):
                if host not in hosts:
                    hosts.append(host)
        return hosts, {"type": "network", "networks": [n.cidr for n in networks]}

    async def probe(self, ip: str, port: int) -> Optional[DiscoveredNetworkDevice]:
        """
        Probe one endpoint.

        Returns None when the port is closed or the host is unreachable.
        An open port is reported even if the identification request fails.
        """
        timeout = self.timeout_ms / 1000
        client = self._client_factory(ip, port, timeout)
        try:
            if not await client.connect():
                return None
            info = await client.read_device_information(
                slave_id=1, read_code=1, object_id=0, timeout=timeout
            )
        finally:
            await client.disconnect()

        if info.success:
            device_info = {
                IDENTIFICATION_OBJECTS.get(code, f"Object_{code}"): value
                for code, value in info.objects.items()
            }
        elif info.kind == KIND_EXCEPTION:
            device_info = {"note": NOTE_EXCEPTION}
        elif info.kind == KIND_PROTOCOL:
            device_info = {"note": NOTE_MALFORMED}
        else:
            device_info = {"note": NOTE_NO_RESPONSE}

        logger.debug(f"Found Modbus endpoint {ip}:{port}", extra={"device_info": device_info})
        return DiscoveredNetworkDevice(ip=ip, port=port, device_info=device_info)

    async def scan(
        self,
        subnet: str | None = None,
        target: str | None = None,
        existing_addresses: Iterable[str] = (),
        on_progress: ProgressCallback | None = None,
    ) -> NetworkScanResult:
        """
        Sweep the selected hosts.

        Targets: `target` ("a.b.c.d" or "a.b.c.d-e"), else `subnet`
        ("a.b.c.d/nn"), else every local IPv4 network. Endpoints whose
        "ip:port" is in existing_addresses are only counted.
        """
        hosts, scan_info = self.resolve_targets(subnet=subnet, target=target)
        probes = [(ip, port) for ip in hosts for port in self.ports]
        total = len(probes)
        existing = {a.strip() for a in existing_addresses if a}

        logger.info(
            f"Starting network scan of {len(hosts)} hosts on ports {list(self.ports)}",
            extra={"scan_info": scan_info, "total": total},
        )

        found: dict[str, DiscoveredNetworkDevice] = {}
        completed = 0
        semaphore = asyncio.Semaphore(self.concurrency)
        label = scan_info.get("target") or scan_info.get("subnet") or "local networks"

        def emit(done: bool = False) -> None:
            finished = done or completed >= total
            event = ScanProgress(
                scanned=completed,
                total=total,
                discovered=len(found),
                percentage=100 if finished else completed * 100 // total,
                done=finished,
                cancelled=finished and completed < total,
            )
            log_scan_progress(logger, label, completed, total, len(found))
            if on_progress:
                on_progress(event)

        async def run_probe(ip: str, port: int) -> None:
            nonlocal completed
            async with semaphore:
                if self._cancel.is_set():
                    return
                device = await self.probe(ip, port)
                completed += 1
                if device:
                    found.setdefault(device.address, device)
                emit()

        await asyncio.gather(*(run_probe(ip, port) for ip, port in probes))

        if total == 0 or completed < total:
            emit(done=True)

        discovered = [d for d in found.values() if d.address not in existing]
        result = NetworkScanResult(
            discovered=sorted(discovered, key=lambda d: (ipaddress.IPv4Address(d.ip), d.port)),
            existing_devices_found=len(found) - len(discovered),
            scan_info=scan_info,
            cancelled=completed < total,
        )

        logger.info(
            f"Network scan complete. Found {result.total_found} Modbus device(s), "
            f"{result.existing_devices_found} already registered"
        )
        return result
