"""
Register Poller

Polls every enabled, readable Modbus equipment at its polling_interval_ms.
Each device runs in its own task. Consecutive failures back off
exponentially (base doubling up to a cap); the wait before the next poll
is max(polling interval, backoff).

A successful poll stores the calibrated primary reading, status "online"
and last_communication. A failed poll stores "warning", or "error" once
the failure count reaches the configured threshold.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from fieldgate.common.config import PollingSettings, Protocol, RegisterType
from fieldgate.common.exceptions import DeviceError, ValidationError
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.equipment.store import Equipment, EquipmentStore
from fieldgate.services.registers.mapping import RegisterMapping
from .calibration import apply_reading_calibration, register_count
from .connection_pool import ConnectionPool
from .modbus_client import ModbusClient, ReadResult

logger = get_service_logger("device.poller")


async def read_mapping(client: ModbusClient, mapping: RegisterMapping, slave_id: int) -> ReadResult:
    """Read one mapped point with the function code its register type implies"""
    if mapping.type == RegisterType.COIL:
        return await client.read_coils(mapping.register, 1, slave_id=slave_id)
    if mapping.type == RegisterType.DISCRETE:
        return await client.read_discrete_inputs(mapping.register, 1, slave_id=slave_id)
    if mapping.type == RegisterType.HOLDING:
        return await client.read_holding_registers(
            mapping.register,
            register_count(mapping.data_type),
            slave_id=slave_id,
            datatype=mapping.data_type,
        )
    return await client.read_input_registers(
        mapping.register,
        register_count(mapping.data_type),
        slave_id=slave_id,
        datatype=mapping.data_type,
    )


def reading_values(result: ReadResult, mapping: RegisterMapping, equipment: Equipment) -> tuple[Any, Any]:
    """(raw, value) of a successful read. Bits are not calibrated."""
    if result.bits is not None:
        bit = result.bits[0] if result.bits else None
        return bit, bit
    raw = result.value
    if raw is None:
        return None, None
    return raw, apply_reading_calibration(raw, mapping, equipment)


@dataclass
class DevicePollState:
    """Polling bookkeeping for one equipment"""
    equipment_id: int
    name: str
    interval_ms: int
    signature: tuple
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 60000

    consecutive_errors: int = 0
    last_poll: str | None = None
    last_error: str | None = None
    polling: bool = False
    task: asyncio.Task | None = field(default=None, repr=False, compare=False)

    @property
    def backoff_ms(self) -> int:
        if self.consecutive_errors == 0:
            return 0
        return min(self.base_backoff_ms * 2 ** (self.consecutive_errors - 1), self.max_backoff_ms)

    @property
    def effective_interval_ms(self) -> int:
        return max(self.interval_ms, self.backoff_ms)

    @property
    def backing_off(self) -> bool:
        return self.consecutive_errors > 0

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.last_error = None

    def record_error(self, error: str) -> None:
        self.consecutive_errors += 1
        self.last_error = error

    def to_dict(self) -> dict:
        return {
            "equipment_id": self.equipment_id,
            "name": self.name,
            "polling_interval_ms": self.interval_ms,
            "effective_interval_ms": self.effective_interval_ms,
            "consecutive_errors": self.consecutive_errors,
            "backing_off": self.backing_off,
            "last_poll": self.last_poll,
            "last_error": self.last_error,
            "polling": self.polling,
        }


PollListener = Callable[[dict], None]


class RegisterPoller:
    """
    Background polling of equipment registers.

    The equipment list is re-read every refresh_interval_s; added devices
    start polling, removed or disabled ones stop, and changed ones restart
    with their failure count carried over.
    """

    def __init__(
        self,
        store: EquipmentStore,
        connection_pool: ConnectionPool,
        settings: PollingSettings | None = None,
    ):
        self._store = store
        self._pool = connection_pool
        self._settings = settings or PollingSettings()
        self._states: dict[int, DevicePollState] = {}
        self._readings: dict[int, dict[str, dict]] = {}
        self._listeners: list[PollListener] = []
        self._refresh_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: PollListener) -> Callable[[], None]:
        """Register a listener for poll results. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def pollable(equipment: Equipment) -> bool:
        if equipment.protocol != Protocol.MODBUS or not equipment.enabled or equipment.write_only:
            return False
        try:
            equipment.endpoint
        except ValidationError:
            return False
        return True

    @staticmethod
    def _signature(equipment: Equipment) -> tuple:
        return (
            equipment.address,
            equipment.slave_id,
            equipment.polling_interval_ms,
            tuple(equipment.register_mappings),
        )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info(f"Register poller started ({len(self._states)} devices)")

    async def stop(self) -> None:
        self._running = False

        tasks = [t for t in [self._refresh_task] if t]
        tasks += [s.task for s in self._states.values() if s.task]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._refresh_task = None
        for state in self._states.values():
            state.task = None
        logger.info("Register poller stopped")

    async def refresh(self) -> None:
        """Sync polled devices with the equipment store"""
        equipment = [e for e in await self._store.list() if self.pollable(e)]
        current = {e.id for e in equipment}

        for equipment_id in list(self._states):
            if equipment_id not in current:
                logger.info(f"Removing device {equipment_id} from polling")
                self._cancel(self._states.pop(equipment_id))
                self._readings.pop(equipment_id, None)

        for item in equipment:
            signature = self._signature(item)
            existing = self._states.get(item.id)
            if existing and existing.signature == signature:
                if self._running and existing.task is None:
                    existing.task = asyncio.create_task(self._poll_loop(item.id))
                continue

            state = DevicePollState(
                equipment_id=item.id,
                name=item.name,
                interval_ms=item.polling_interval_ms,
                signature=signature,
                base_backoff_ms=self._settings.base_backoff_ms,
                max_backoff_ms=self._settings.max_backoff_ms,
            )
            if existing:
                logger.info(f"Updating polling configuration of {item.name}")
                state.consecutive_errors = existing.consecutive_errors
                self._cancel(existing)
            else:
                logger.debug(f"Adding {item.name} to polling every {item.polling_interval_ms}ms")

            self._states[item.id] = state
            if self._running:
                state.task = asyncio.create_task(self._poll_loop(item.id))

    @staticmethod
    def _cancel(state: DevicePollState) -> None:
        if state.task and state.task is not asyncio.current_task():
            state.task.cancel()
        state.task = None

    async def _refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.refresh_interval_s)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Error refreshing polled devices: {e}")

    async def _poll_loop(self, equipment_id: int) -> None:
        while self._running:
            state = self._states.get(equipment_id)
            if state is None:
                return
            await asyncio.sleep(state.effective_interval_ms / 1000)
            try:
                await self.poll_device(equipment_id)
            except Exception as e:
                logger.error(f"Error polling device {equipment_id}: {e}")

    async def poll_device(self, equipment_id: int) -> dict | None:
        """
        Read every mapping of one device and store the outcome.

        Devices without mappings get a single holding register read; any
        reply, including an exception response, counts as reachable.

        Returns:
            Poll result, or None if a poll of this device is already running
        """
        state = self._states.get(equipment_id)
        if state is None:
            raise ValidationError(f"Equipment {equipment_id} is not polled")
        if state.polling:
            return None

        equipment = await self._store.get(equipment_id)
        host, port = equipment.endpoint
        timestamp = datetime.now(timezone.utc).isoformat()

        state.polling = True
        state.last_poll = timestamp
        readings: list[dict] = []
        errors: list[str] = []
        try:
            client, lock = await self._pool.get_connection(host, port)
            async with lock:
                if equipment.register_mappings:
                    for mapping in equipment.register_mappings:
                        result = await read_mapping(client, mapping, equipment.slave_id)
                        if not result.success:
                            errors.append(f"{mapping.display_name}: {result.error}")
                            continue
                        raw, value = reading_values(result, mapping, equipment)
                        readings.append({
                            "name": mapping.display_name,
                            "register": mapping.register,
                            "type": mapping.type.value,
                            "raw": raw,
                            "value": value,
                            "unit": mapping.unit,
                        })
                else:
                    result = await client.read_holding_registers(0, 1, slave_id=equipment.slave_id)
                    if not result.device_answered:
                        errors.append(result.error or "No response")
        except DeviceError as e:
            errors.append(e.message)
        finally:
            state.polling = False

        reachable = bool(readings) or (not equipment.register_mappings and not errors)
        if reachable:
            return await self._record_success(equipment, state, readings, errors, timestamp)
        return await self._record_failure(equipment, state, errors)

    async def _record_success(
        self,
        equipment: Equipment,
        state: DevicePollState,
        readings: list[dict],
        errors: list[str],
        timestamp: str,
    ) -> dict:
        state.record_success()
        primary = readings[0]["value"] if readings else equipment.last_reading
        await self._store.update(
            equipment.id,
            status="online",
            last_communication=timestamp,
            last_reading=primary,
            last_error=None,
        )
        self._readings[equipment.id] = {
            r["name"]: {**r, "timestamp": timestamp} for r in readings
        }
        for error in errors:
            logger.debug(f"Partial poll of {equipment.name}: {error}")

        result = {
            "equipment_id": equipment.id,
            "name": equipment.name,
            "success": True,
            "status": "online",
            "readings": readings,
            "timestamp": timestamp,
        }
        self._notify(result)
        return result

    async def _record_failure(self, equipment: Equipment, state: DevicePollState, errors: list[str]) -> dict:
        message = "; ".join(errors) or "No readings obtained from device"
        state.record_error(message)
        status = "error" if state.consecutive_errors >= self._settings.error_threshold else "warning"
        await self._store.update(equipment.id, status=status, last_error=message)

        logger.warning(
            f"Poll of {equipment.name} failed ({state.consecutive_errors} consecutive), "
            f"next poll in {state.effective_interval_ms}ms: {message}",
            extra={
                "equipment_id": equipment.id,
                "consecutive_errors": state.consecutive_errors,
                "backoff_ms": state.backoff_ms,
            },
        )

        result = {
            "equipment_id": equipment.id,
            "name": equipment.name,
            "success": False,
            "status": status,
            "error": message,
            "consecutive_errors": state.consecutive_errors,
            "backoff_ms": state.backoff_ms,
        }
        self._notify(result)
        return result

    def _notify(self, result: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as e:
                logger.warning(f"Poll listener failed: {e}")

    async def force_poll(self, equipment_ref: int | str) -> dict | None:
        """Poll one device now, clearing its backoff first"""
        equipment = await self._store.get(equipment_ref)
        if equipment.id not in self._states:
            await self.refresh()
        state = self._states.get(equipment.id)
        if state is None:
            raise ValidationError(
                f"{equipment.name} is not polled (needs enabled, readable modbus equipment)"
            )
        state.record_success()
        return await self.poll_device(equipment.id)

    def state(self, equipment_id: int) -> DevicePollState | None:
        return self._states.get(equipment_id)

    def readings(self, equipment_id: int) -> dict[str, dict]:
        return dict(self._readings.get(equipment_id, {}))

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "device_count": len(self._states),
            "devices": [s.to_dict() for s in self._states.values()],
        }
