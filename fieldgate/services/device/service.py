"""
Device Service - Modbus control and measurement

Responsible for:
- Coil control sessions per equipment (normal and write-only)
- Single point reads with calibration
- Background register polling with backoff
- Delayed starts and auto-offs for coil channels
- Calibration updates
- Discovery and register map operations for the outer API layer
- Health endpoints
"""

import asyncio
import signal
from datetime import datetime, timezone
from typing import Any, Iterable

from aiohttp import web

from fieldgate.common.config import GatewayConfig, Protocol
from fieldgate.common.exceptions import DeviceBusyError, DeviceError, ValidationError
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.common.state import StateFileStore
from fieldgate.services.discovery.service import DiscoveryService
from fieldgate.services.equipment.store import Equipment, EquipmentStore, InMemoryEquipmentStore
from fieldgate.services.registers.mapping import RegisterMap, controllable_channels
from fieldgate.services.registers.presets import expand_preset, list_presets, load_preset
from fieldgate.services.registers.transfer import export_register_map, import_register_map

from .calibration import coerce_calibration
from .coil_controller import CoilControlSession, CoilSnapshot
from .coil_transport import create_transport, read_failure
from .command_cache import CommandCache
from .connection_pool import ConnectionPool
from .poller import RegisterPoller, read_mapping, reading_values
from .relay_timers import RelayTimers

logger = get_service_logger("device")


class DeviceService:
    """
    Device Service

    Operations exposed to the outer HTTP/WebSocket layer. Equipment is
    resolved through an EquipmentStore; status, last communication and
    calibration are written back to it.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        store: EquipmentStore | None = None,
        connection_pool: ConnectionPool | None = None,
        command_cache: CommandCache | None = None,
        discovery: DiscoveryService | None = None,
        poller: RegisterPoller | None = None,
        verify_writes: bool = True,
    ):
        self.config = config or GatewayConfig()
        self.store = store or InMemoryEquipmentStore(self.config.equipment)

        modbus = self.config.modbus
        self.connection_pool = connection_pool or ConnectionPool(
            max_idle_seconds=modbus.idle_timeout_s,
            connection_timeout=modbus.timeout_s,
            retries=modbus.retries,
            retry_delay=modbus.retry_delay_s,
        )

        if command_cache is None:
            state_store = StateFileStore(self.config.state_dir) if self.config.state_dir else None
            command_cache = CommandCache(state_store)
        self.command_cache = command_cache

        self.discovery = discovery or DiscoveryService(self.store, self.config.scan)
        self.poller = poller or RegisterPoller(self.store, self.connection_pool, self.config.polling)
        self.timers = RelayTimers()
        self._verify_writes = verify_writes

        self._sessions: dict[int, tuple[tuple, CoilControlSession]] = {}
        self._sessions_lock = asyncio.Lock()
        self._start_time = datetime.now(timezone.utc)

        # Health server
        self._health_runner: web.AppRunner | None = None

        self._running = False
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Coil control
    # ------------------------------------------------------------------

    @staticmethod
    def _session_signature(equipment: Equipment) -> tuple:
        return (
            equipment.address,
            equipment.slave_id,
            equipment.write_only,
            tuple(controllable_channels(equipment.register_mappings)),
        )

    async def session_for(self, equipment_ref: int | str) -> CoilControlSession:
        """
        Control session of an equipment, created on first use.

        A session is rebuilt when the record's address, slave id, write-only
        flag or coil channels changed and the old session is idle.
        """
        equipment = await self.store.get(equipment_ref)
        if equipment.protocol != Protocol.MODBUS:
            raise ValidationError(
                f"{equipment.name} uses protocol '{equipment.protocol.value}', coil control needs modbus"
            )
        host, port = equipment.endpoint
        signature = self._session_signature(equipment)

        async with self._sessions_lock:
            existing = self._sessions.get(equipment.id)
            if existing and (existing[0] == signature or existing[1].busy):
                return existing[1]

            transport = create_transport(
                write_only=equipment.write_only,
                pool=self.connection_pool,
                cache=self.command_cache,
                host=host,
                port=port,
                slave_id=equipment.slave_id,
                channels=controllable_channels(equipment.register_mappings),
                equipment_id=equipment.id,
                equipment_name=equipment.name,
                verify=self._verify_writes,
            )
            session = CoilControlSession(
                transport,
                busy_policy=self.config.modbus.busy_policy,
                write_only=equipment.write_only,
            )
            self._sessions[equipment.id] = (signature, session)
            logger.debug(
                f"Created coil session for {equipment.name} "
                f"({'write-only' if equipment.write_only else 'normal'}, "
                f"{len(transport.channels)} channels)"
            )
            return session

    async def _record_outcome(self, session: CoilControlSession, ok: bool) -> None:
        snapshot = session.snapshot
        if snapshot.equipment_id is None:
            return
        changes: dict[str, Any] = {"status": "online" if ok else "error"}
        if ok and snapshot.last_communication:
            changes["last_communication"] = snapshot.last_communication
        await self.store.update(snapshot.equipment_id, **changes)

    async def _run(self, session: CoilControlSession, operation) -> CoilSnapshot:
        try:
            snapshot = await operation()
        except DeviceBusyError:
            raise
        except DeviceError:
            await self._record_outcome(session, ok=False)
            raise
        if snapshot.connected:
            await self._record_outcome(session, ok=True)
        return snapshot

    async def read_coils(self, equipment_ref: int | str) -> CoilSnapshot:
        """Read every controllable coil (cached commands for write-only equipment)"""
        session = await self.session_for(equipment_ref)
        if session.snapshot.write_only:
            return await session.read_all()
        return await self._run(session, session.read_all)

    async def write_coil(self, equipment_ref: int | str, address: int, value: bool) -> CoilSnapshot:
        session = await self.session_for(equipment_ref)
        return await self._run(session, lambda: session.write_one(int(address), bool(value)))

    async def write_all_coils(self, equipment_ref: int | str, value: bool) -> CoilSnapshot:
        session = await self.session_for(equipment_ref)
        return await self._run(session, lambda: session.write_all(bool(value)))

    def snapshots(self) -> list[CoilSnapshot]:
        return [session.snapshot for _, session in self._sessions.values()]

    async def schedule_coil(
        self,
        equipment_ref: int | str,
        address: int,
        value: bool,
        delay_s: float | None = None,
        duration_s: float | None = None,
    ) -> dict[str, Any]:
        """
        Switch a coil now or after delay_s seconds.

        When switching on with duration_s, an auto-off is scheduled once
        the switch-on write succeeded. A new delay or auto-off for the same
        channel replaces the pending one.

        Returns:
            status "executed" (with the snapshot) or "scheduled"
        """
        equipment = await self.store.get(equipment_ref)
        session = await self.session_for(equipment.id)
        address, value = int(address), bool(value)
        if address not in session.snapshot.states():
            raise ValidationError(
                f"Coil address {address} is not a controllable channel of {equipment.name}"
            )

        async def switch_off() -> CoilSnapshot:
            return await self.write_coil(equipment.id, address, False)

        async def execute() -> CoilSnapshot:
            snapshot = await self.write_coil(equipment.id, address, value)
            if value and duration_s:
                self.timers.schedule_off(equipment.id, address, duration_s, switch_off)
            return snapshot

        result: dict[str, Any] = {
            "equipment_id": equipment.id,
            "equipment": equipment.name,
            "channel": address,
            "value": value,
            "delay_s": delay_s or None,
            "duration_s": duration_s or None,
        }
        if delay_s:
            self.timers.schedule_delayed_start(equipment.id, address, delay_s, execute)
            return {"status": "scheduled", **result}

        snapshot = await execute()
        return {"status": "executed", **result, "snapshot": snapshot.to_dict()}

    async def cancel_coil_timers(self, equipment_ref: int | str, address: int | None = None) -> int:
        """Cancel pending delayed starts and auto-offs. Returns how many were cancelled."""
        equipment = await self.store.get(equipment_ref)
        cancelled = self.timers.cancel_channel(equipment.id, address)
        if cancelled:
            logger.info(f"Cancelled {cancelled} timer(s) for {equipment.name}")
        return cancelled

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_equipment(self, equipment_ref: int | str) -> dict | None:
        """Poll one device now, outside its schedule"""
        return await self.poller.force_poll(equipment_ref)

    def polling_status(self) -> dict:
        return self.poller.get_status()

    # ------------------------------------------------------------------
    # Calibration and point reads
    # ------------------------------------------------------------------

    async def apply_calibration(self, equipment_ref: int | str, offset: Any, scale: Any) -> dict[str, float]:
        """Store a calibration; non-numeric input falls back to offset 0 / scale 1"""
        equipment = await self.store.get(equipment_ref)
        calibration = coerce_calibration(offset, scale)
        await self.store.update(
            equipment.id,
            calibration_offset=calibration["offset"],
            calibration_scale=calibration["scale"],
        )
        logger.info(
            f"Calibration for {equipment.name}: scale={calibration['scale']} offset={calibration['offset']}",
            extra={"equipment_id": equipment.id, **calibration},
        )
        return calibration

    async def read_point(self, equipment_ref: int | str, mapping_name: str) -> dict[str, Any]:
        """
        Read one mapping from the device.

        Returns raw and calibrated values. Coils and discrete inputs are
        returned as booleans without calibration.
        """
        equipment = await self.store.get(equipment_ref)
        if equipment.write_only:
            raise ValidationError(f"{equipment.name} is write-only and cannot be read")

        mapping = next(
            (m for m in equipment.register_mappings if mapping_name in (m.name, m.label)),
            None,
        )
        if mapping is None:
            raise ValidationError(f"{equipment.name} has no mapping named {mapping_name!r}")

        host, port = equipment.endpoint
        client, lock = await self.connection_pool.get_connection(host, port)
        async with lock:
            result = await read_mapping(client, mapping, equipment.slave_id)

        timestamp = datetime.now(timezone.utc).isoformat()
        if not result.success:
            await self.store.update(equipment.id, status="error")
            raise read_failure(result, equipment.id, equipment.name, host, port)

        await self.store.update(equipment.id, status="online", last_communication=timestamp)

        raw, value = reading_values(result, mapping, equipment)

        return {
            "equipment_id": equipment.id,
            "name": mapping.display_name,
            "register": mapping.register,
            "type": mapping.type.value,
            "raw": raw,
            "value": value,
            "unit": mapping.unit,
            "timestamp": timestamp,
        }

    # ------------------------------------------------------------------
    # Discovery and register maps
    # ------------------------------------------------------------------

    async def scan_slave_ids(self, config, on_progress=None, cancel_event=None):
        return await self.discovery.scan_slave_ids(config, on_progress, cancel_event)

    async def create_equipment_from_slaves(
        self,
        host: str,
        port: int,
        slaves: Iterable[Any],
        name_prefix: str = "Modbus Device",
    ):
        return await self.discovery.create_equipment_from_slaves(host, port, slaves, name_prefix)

    async def scan_network(self, subnet=None, target=None, ports=None, timeout_ms=None, on_progress=None):
        return await self.discovery.scan_network(
            subnet=subnet,
            target=target,
            ports=ports,
            timeout_ms=timeout_ms,
            on_progress=on_progress,
        )

    @staticmethod
    def expand_preset(preset: int | str) -> RegisterMap:
        """Channel count -> relay map; any other key -> catalog template"""
        if isinstance(preset, int) and not isinstance(preset, bool):
            return expand_preset(preset)
        return load_preset(str(preset))

    @staticmethod
    def load_preset(key: str) -> RegisterMap:
        return load_preset(key)

    @staticmethod
    def list_presets(category: str | None = None) -> list[dict]:
        return list_presets(category)

    @staticmethod
    def import_register_map(payload: Any) -> RegisterMap:
        return import_register_map(payload)

    @staticmethod
    def export_register_map(mappings: RegisterMap) -> dict:
        return export_register_map(mappings)

    # ------------------------------------------------------------------
    # Lifecycle and health
    # ------------------------------------------------------------------

    async def start(self, health_server: bool = True) -> None:
        """Start the connection pool, poller and health server"""
        logger.info("Starting Device Service")
        self._running = True
        await self.connection_pool.start()
        if self.config.polling.enabled:
            await self.poller.start()
        if health_server:
            await self._start_health_server()

        equipment = await self.store.list()
        logger.info(
            f"Device Service started ({len(equipment)} equipment)",
            extra={"equipment_count": len(equipment)},
        )

    async def stop(self) -> None:
        """Stop scans, timers, polling, the pool and the health server"""
        logger.info("Stopping Device Service")
        self._running = False
        self.discovery.cancel_all()
        await self.timers.shutdown()
        await self.poller.stop()
        await self.connection_pool.stop()
        await self._stop_health_server()
        logger.info("Device Service stopped")

    async def serve(self) -> None:
        """Run until SIGINT/SIGTERM"""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def create_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/sessions", self._sessions_handler)
        app.router.add_get("/polling", self._polling_handler)
        app.router.add_get("/timers", self._timers_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_runner = web.AppRunner(self.create_health_app())
        await self._health_runner.setup()

        health = self.config.health
        site = web.TCPSite(self._health_runner, health.host, health.port)
        await site.start()

        logger.info(f"Health server started on {health.host}:{health.port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "device",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessions": len(self._sessions),
            "active_scans": self.discovery.active_scans,
            "polled_devices": len(self.poller.get_status()["devices"]),
            "pending_timers": len(self.timers),
            "connections": self.connection_pool.get_stats(),
        })

    async def _sessions_handler(self, request: web.Request) -> web.Response:
        return web.json_response([s.to_dict() for s in self.snapshots()])

    async def _polling_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.polling_status())

    async def _timers_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.timers.active_timers())
