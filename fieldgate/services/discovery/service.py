"""
Discovery Service

Entry point for slave scans, network sweeps and bulk provisioning of
discovered devices into the equipment store.
"""

import asyncio
from typing import Any, AsyncIterator, Iterable

from fieldgate.common.config import ScanSettings
from fieldgate.common.exceptions import ValidationError
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.equipment.store import EquipmentStore
from .network_scanner import NetworkScanner, NetworkScanResult
from .provisioning import DEFAULT_NAME_PREFIX, ProvisionResult, create_equipment_from_slaves
from .slave_scanner import (
    ProgressCallback,
    ScanConfig,
    ScanProgress,
    SlaveScanner,
    SlaveScanResult,
    parse_scan_config,
)

logger = get_service_logger("discovery")


class DiscoveryService:
    """
    Discovery operations.

    Scanners are created per request; cancel_all() stops every running scan.
    """

    def __init__(
        self,
        store: EquipmentStore,
        settings: ScanSettings | None = None,
        client_factory=None,
        networks_provider=None,
    ):
        self._store = store
        self._settings = settings or ScanSettings()
        self._client_factory = client_factory
        self._networks_provider = networks_provider
        self._active: set[Any] = set()

    @property
    def active_scans(self) -> int:
        return len(self._active)

    def cancel_all(self) -> None:
        for scanner in list(self._active):
            scanner.cancel()

    def slave_scanner(
        self,
        config: ScanConfig | dict,
        cancel_event: asyncio.Event | None = None,
    ) -> SlaveScanner:
        """Build a scanner; dict configs get the configured timeout/concurrency defaults"""
        if isinstance(config, dict):
            config = dict(config)
            if "timeoutMs" not in config and "timeout_ms" not in config:
                config["timeoutMs"] = self._settings.slave_timeout_ms
            config.setdefault("concurrency", self._settings.slave_concurrency)
        return SlaveScanner(
            parse_scan_config(config),
            client_factory=self._client_factory,
            sample_size=self._settings.sample_size,
            cancel_event=cancel_event,
        )

    async def scan_slave_ids(
        self,
        config: ScanConfig | dict,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SlaveScanResult:
        """Probe a unit id range behind a gateway"""
        scanner = self.slave_scanner(config, cancel_event)
        self._active.add(scanner)
        try:
            return await scanner.run(on_progress=on_progress)
        finally:
            self._active.discard(scanner)

    async def stream_slave_scan(
        self,
        config: ScanConfig | dict,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ScanProgress | SlaveScanResult]:
        """Yield progress events, then the final SlaveScanResult"""
        scanner = self.slave_scanner(config, cancel_event)
        self._active.add(scanner)
        try:
            async for event in scanner.stream():
                yield event
            yield scanner.result
        finally:
            self._active.discard(scanner)

    async def create_equipment_from_slaves(
        self,
        host: str,
        port: int,
        slaves: Iterable[Any],
        name_prefix: str = DEFAULT_NAME_PREFIX,
    ) -> ProvisionResult:
        return await create_equipment_from_slaves(self._store, host, port, slaves, name_prefix)

    async def scan_network(
        self,
        subnet: str | None = None,
        target: str | None = None,
        ports: Iterable[int] | None = None,
        timeout_ms: int | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> NetworkScanResult:
        """Sweep for Modbus TCP endpoints, excluding known equipment addresses"""
        kwargs = {}
        if self._networks_provider is not None:
            kwargs["networks_provider"] = self._networks_provider

        scanner = NetworkScanner(
            ports=ports or self._settings.network_ports,
            timeout_ms=timeout_ms or self._settings.network_timeout_ms,
            concurrency=self._settings.network_concurrency,
            client_factory=self._client_factory,
            cancel_event=cancel_event,
            **kwargs,
        )
        existing = []
        for equipment in await self._store.list():
            try:
                host, port = equipment.endpoint
            except ValidationError:
                continue
            existing.append(f"{host}:{port}")

        self._active.add(scanner)
        try:
            return await scanner.scan(
                subnet=subnet,
                target=target,
                existing_addresses=existing,
                on_progress=on_progress,
            )
        finally:
            self._active.discard(scanner)
