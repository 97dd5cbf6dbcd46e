"""
Relay Timers

Delayed starts and auto-offs for coil channels. Timers are keyed by
kind:equipment:channel; scheduling on a key that already has a pending
timer cancels the previous one. A timer that has started firing is no
longer pending and cannot be cancelled by a reschedule.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from fieldgate.common.exceptions import ValidationError
from fieldgate.common.logging_setup import get_service_logger

logger = get_service_logger("device.timers")

TimerAction = Callable[[], Awaitable[Any]]


class TimerKind(str, Enum):
    DELAYED_START = "delay"
    AUTO_OFF = "off"


@dataclass
class PendingTimer:
    key: str
    kind: TimerKind
    equipment_id: int | str
    channel: int
    fires_at: datetime
    task: asyncio.Task | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "type": self.kind.value,
            "equipment_id": self.equipment_id,
            "channel": self.channel,
            "fires_at": self.fires_at.isoformat(),
        }


class RelayTimers:
    """In-memory timers for delayed coil actions"""

    def __init__(self):
        self._timers: dict[str, PendingTimer] = {}
        self._firing: set[asyncio.Task] = set()

    @staticmethod
    def timer_key(kind: TimerKind, equipment_id: int | str, channel: int) -> str:
        return f"{TimerKind(kind).value}:{equipment_id}:{channel}"

    def __len__(self) -> int:
        return len(self._timers)

    def schedule_delayed_start(
        self,
        equipment_id: int | str,
        channel: int,
        delay_s: float,
        action: TimerAction,
    ) -> PendingTimer:
        """Run `action` after delay_s seconds"""
        return self._schedule(TimerKind.DELAYED_START, equipment_id, channel, delay_s, action)

    def schedule_off(
        self,
        equipment_id: int | str,
        channel: int,
        duration_s: float,
        action: TimerAction,
    ) -> PendingTimer:
        """Run the switch-off `action` after duration_s seconds"""
        return self._schedule(TimerKind.AUTO_OFF, equipment_id, channel, duration_s, action)

    def _schedule(
        self,
        kind: TimerKind,
        equipment_id: int | str,
        channel: int,
        seconds: float,
        action: TimerAction,
    ) -> PendingTimer:
        try:
            seconds = float(seconds)
        except (TypeError, ValueError):
            raise ValidationError(f"Timer duration must be a number, got {seconds!r}")
        if not math.isfinite(seconds) or seconds <= 0:
            raise ValidationError(f"Timer duration must be > 0 seconds, got {seconds}")

        key = self.timer_key(kind, equipment_id, channel)
        if self.cancel(kind, equipment_id, channel):
            logger.info(f"Replaced pending timer {key}")

        timer = PendingTimer(
            key=key,
            kind=kind,
            equipment_id=equipment_id,
            channel=channel,
            fires_at=datetime.now(timezone.utc) + timedelta(seconds=seconds),
        )
        timer.task = asyncio.create_task(self._fire(timer, seconds, action))
        self._timers[key] = timer

        logger.info(
            f"Scheduled {kind.name.lower().replace('_', ' ')} for equipment {equipment_id} "
            f"channel {channel} in {seconds:g}s",
            extra={"timer": key},
        )
        return timer

    async def _fire(self, timer: PendingTimer, seconds: float, action: TimerAction) -> None:
        await asyncio.sleep(seconds)

        if self._timers.get(timer.key) is timer:
            del self._timers[timer.key]
        task = asyncio.current_task()
        self._firing.add(task)

        logger.info(f"Timer {timer.key} firing")
        try:
            await action()
        except Exception as e:
            logger.error(f"Timer {timer.key} failed: {e}", extra={"timer": timer.key})
        finally:
            self._firing.discard(task)

    def cancel(self, kind: TimerKind, equipment_id: int | str, channel: int) -> bool:
        """Cancel a pending timer. Returns False if none was pending."""
        timer = self._timers.pop(self.timer_key(kind, equipment_id, channel), None)
        if timer is None:
            return False
        if timer.task:
            timer.task.cancel()
        return True

    def cancel_channel(self, equipment_id: int | str, channel: int | None = None) -> int:
        """Cancel pending timers of an equipment (optionally one channel)"""
        cancelled = 0
        for timer in list(self._timers.values()):
            if timer.equipment_id != equipment_id:
                continue
            if channel is not None and timer.channel != channel:
                continue
            cancelled += self.cancel(timer.kind, timer.equipment_id, timer.channel)
        return cancelled

    def active_timers(self) -> list[dict]:
        return [t.to_dict() for t in self._timers.values()]

    async def wait(self) -> None:
        """Wait until no timer is pending or firing"""
        while self._timers or self._firing:
            tasks = [t.task for t in self._timers.values() if t.task] + list(self._firing)
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every pending timer"""
        if self._timers:
            logger.info(f"Clearing {len(self._timers)} pending timer(s)")
        tasks = []
        for timer in list(self._timers.values()):
            if timer.task:
                timer.task.cancel()
                tasks.append(timer.task)
        self._timers.clear()
        await asyncio.gather(*tasks, return_exceptions=True)
