"""
Coil Control Session

One session per equipment. Holds the last known coil states, serializes
reads and writes for the device, and publishes an immutable snapshot after
every phase change:

    IDLE -> READING -> READY <-> WRITING -> READY
    READING / WRITING -> ERROR on failure (read_all may be retried)
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from fieldgate.common.config import BusyPolicy
from fieldgate.common.exceptions import DeviceBusyError, DeviceError, ProtocolError, ValidationError
from fieldgate.common.logging_setup import get_service_logger, log_coil_read, log_coil_write
from .coil_transport import CoilTransport

logger = get_service_logger("device.coil_controller")


class SessionPhase(str, Enum):
    IDLE = "idle"
    READING = "reading"
    READY = "ready"
    WRITING = "writing"
    ERROR = "error"


@dataclass(frozen=True)
class CoilState:
    address: int
    name: str
    state: bool


@dataclass(frozen=True)
class CoilSnapshot:
    """Immutable view of a control session"""
    equipment_id: int | str | None
    equipment_name: str
    phase: SessionPhase
    channels: tuple[CoilState, ...]
    connected: bool | None  # None until the first device exchange
    confirmed: bool
    write_only: bool
    last_communication: str | None = None
    last_error: str | None = None
    note: str | None = None
    last_write_started: float | None = None
    last_write_finished: float | None = None

    def states(self) -> dict[int, bool]:
        return {c.address: c.state for c in self.channels}

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["channels"] = [asdict(c) for c in self.channels]
        return data


SnapshotListener = Callable[[CoilSnapshot], None]


class CoilControlSession:
    """
    Coil read/write session for one piece of equipment.

    Only one read or write runs at a time. With BusyPolicy.QUEUE later
    calls wait their turn; with BusyPolicy.REJECT they raise DeviceBusyError.
    """

    def __init__(
        self,
        transport: CoilTransport,
        busy_policy: BusyPolicy = BusyPolicy.QUEUE,
        write_only: bool = False,
    ):
        self._transport = transport
        self._busy_policy = BusyPolicy(busy_policy)
        self._write_only = write_only
        self._lock = asyncio.Lock()
        self._listeners: list[SnapshotListener] = []

        self._names = {c.address: c.name for c in transport.channels}
        self._states = {c.address: False for c in transport.channels}
        self._snapshot = CoilSnapshot(
            equipment_id=transport.equipment_id,
            equipment_name=transport.equipment_name,
            phase=SessionPhase.IDLE,
            channels=self._channel_tuple(),
            connected=None,
            confirmed=False,
            write_only=write_only,
        )

    @property
    def snapshot(self) -> CoilSnapshot:
        return self._snapshot

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def equipment_name(self) -> str:
        return self._transport.equipment_name

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener for snapshot changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _channel_tuple(self) -> tuple[CoilState, ...]:
        return tuple(
            CoilState(address=address, name=self._names[address], state=self._states[address])
            for address in self._names
        )

    def _publish(self, **changes) -> CoilSnapshot:
        fields = {
            "equipment_id": self._snapshot.equipment_id,
            "equipment_name": self._snapshot.equipment_name,
            "phase": self._snapshot.phase,
            "channels": self._channel_tuple(),
            "connected": self._snapshot.connected,
            "confirmed": self._snapshot.confirmed,
            "write_only": self._write_only,
            "last_communication": self._snapshot.last_communication,
            "last_error": self._snapshot.last_error,
            "note": self._snapshot.note,
            "last_write_started": self._snapshot.last_write_started,
            "last_write_finished": self._snapshot.last_write_finished,
        }
        fields.update(changes)
        self._snapshot = CoilSnapshot(**fields)

        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.warning(f"Snapshot listener failed for {self.equipment_name}: {e}")

        return self._snapshot

    async def _acquire(self) -> None:
        if self._busy_policy == BusyPolicy.REJECT and self._lock.locked():
            raise DeviceBusyError(self._transport.equipment_id, self.equipment_name)
        await self._lock.acquire()

    def _as_device_error(self, error: Exception) -> DeviceError:
        if isinstance(error, DeviceError):
            return error
        return ProtocolError(
            f"Unexpected {type(error).__name__}: {error}",
            equipment_id=self._transport.equipment_id,
            equipment_name=self.equipment_name,
        )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def read_all(self) -> CoilSnapshot:
        """
        Refresh every channel.

        On failure the last known states are kept, the session reports
        connected=False and the error is re-raised.
        """
        await self._acquire()
        try:
            previous = self._snapshot.phase
            self._publish(phase=SessionPhase.READING)
            try:
                states = await self._transport.read_all()
            except ValidationError:
                self._publish(phase=previous)
                raise
            except Exception as exc:
                e = self._as_device_error(exc)
                log_coil_read(logger, self.equipment_name, self._states, success=False)
                self._publish(
                    phase=SessionPhase.ERROR,
                    connected=False,
                    confirmed=False,
                    last_error=f"Could not verify current state: {e.message}",
                )
                if e is exc:
                    raise
                raise e from exc

            self._states.update(states)
            log_coil_read(logger, self.equipment_name, states, confirmed=self._transport.confirmed)

            if self._transport.confirmed:
                return self._publish(
                    phase=SessionPhase.READY,
                    connected=True,
                    confirmed=True,
                    last_communication=self._now(),
                    last_error=None,
                    note=None,
                )
            # Cached commands only; no device exchange happened
            return self._publish(
                phase=SessionPhase.READY,
                confirmed=False,
                last_error=None,
                note="Last commanded state, not read from device",
            )
        finally:
            self._lock.release()

    async def write_one(self, address: int, value: bool) -> CoilSnapshot:
        """Switch one channel"""
        if address not in self._names:
            raise ValidationError(
                f"Coil address {address} is not a controllable channel of {self.equipment_name}"
            )
        return await self._write(
            lambda: self._transport.write_one(address, bool(value)),
            address,
            bool(value),
        )

    async def write_all(self, value: bool) -> CoilSnapshot:
        """Switch every channel with a single multi-coil write"""
        if not self._names:
            raise ValidationError(f"{self.equipment_name} has no controllable coils")
        start = min(self._names)
        return await self._write(
            lambda: self._transport.write_all(bool(value)),
            start,
            bool(value),
        )

    async def _write(self, send, address: int, value: bool) -> CoilSnapshot:
        await self._acquire()
        try:
            started = max(time.monotonic(), self._snapshot.last_write_finished or 0.0)
            previous = self._snapshot.phase
            previous_started = self._snapshot.last_write_started
            self._publish(phase=SessionPhase.WRITING, last_write_started=started)
            try:
                changes = await send()
            except ValidationError:
                self._publish(phase=previous, last_write_started=previous_started)
                raise
            except Exception as exc:
                e = self._as_device_error(exc)
                log_coil_write(
                    logger, self.equipment_name, address, value,
                    confirmed=self._transport.confirmed, success=False,
                )
                self._publish(
                    phase=SessionPhase.ERROR,
                    connected=False,
                    last_error=f"Command failed: {e.message}",
                    last_write_finished=max(time.monotonic(), started),
                )
                if e is exc:
                    raise
                raise e from exc

            self._states.update(changes)
            confirmed = self._transport.confirmed
            log_coil_write(logger, self.equipment_name, address, value, confirmed=confirmed)

            if confirmed:
                # A write before the first read only confirms the written channels
                all_confirmed = self._snapshot.confirmed or set(changes) >= set(self._names)
            else:
                all_confirmed = False

            return self._publish(
                phase=SessionPhase.READY,
                connected=True,
                confirmed=all_confirmed,
                last_communication=self._now(),
                last_error=None,
                note=None if confirmed else "Command sent, state unconfirmed",
                last_write_finished=max(time.monotonic(), started),
            )
        finally:
            self._lock.release()
