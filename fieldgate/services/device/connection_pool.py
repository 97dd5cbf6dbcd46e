"""
Modbus Connection Pool

Reuses one connection per gateway host:port. All slaves behind a gateway
share that connection, so each pooled entry carries a lock that callers
hold for the duration of a request sequence.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fieldgate.common.logging_setup import get_service_logger
from .modbus_client import ModbusClient

logger = get_service_logger("device.pool")


@dataclass
class PooledConnection:
    """A pooled Modbus TCP connection with its transport mutex"""
    client: ModbusClient
    lock: asyncio.Lock
    last_used: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    use_count: int = 0


class ConnectionPool:
    """
    Modbus connection pool.

    - Reuses existing connections to the same host:port
    - Per-connection mutex serializes access to the shared transport
    - Closes connections idle longer than max_idle_seconds
    """

    def __init__(
        self,
        max_idle_seconds: float = 60.0,
        connection_timeout: float = 5.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        cleanup_interval: float = 30.0,
    ):
        self._connections: dict[str, PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._max_idle_seconds = max_idle_seconds
        self._connection_timeout = connection_timeout
        self._retries = retries
        self._retry_delay = retry_delay
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the idle connection cleanup loop"""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Connection pool started")

    async def stop(self) -> None:
        """Stop the pool and close all connections"""
        self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        async with self._lock:
            for pooled in self._connections.values():
                await pooled.client.disconnect()
            self._connections.clear()

        logger.info("Connection pool stopped")

    def _create_client(self, host: str, port: int) -> ModbusClient:
        return ModbusClient(
            host=host,
            port=port,
            timeout=self._connection_timeout,
            retries=self._retries,
            retry_delay=self._retry_delay,
        )

    async def get_connection(self, host: str, port: int) -> tuple[ModbusClient, asyncio.Lock]:
        """
        Get or create the connection for a gateway.

        Returns:
            Tuple of (ModbusClient, asyncio.Lock to hold while using it)
        """
        key = f"{host}:{port}"

        async with self._lock:
            pooled = self._connections.get(key)
            if pooled is None:
                pooled = PooledConnection(
                    client=self._create_client(host, port),
                    lock=asyncio.Lock(),
                )
                self._connections[key] = pooled
                logger.debug(f"Created new connection: {key}")

            pooled.last_used = datetime.now(timezone.utc)
            pooled.use_count += 1
            return pooled.client, pooled.lock

    async def close_connection(self, host: str, port: int) -> None:
        """Force close a specific connection"""
        key = f"{host}:{port}"

        async with self._lock:
            pooled = self._connections.pop(key, None)
            if pooled:
                await pooled.client.disconnect()
                logger.debug(f"Closed connection: {key}")

    async def _cleanup_loop(self) -> None:
        """Periodic cleanup of idle connections"""
        while self._running:
            await asyncio.sleep(self._cleanup_interval)

            try:
                await self.cleanup_idle_connections()
            except Exception as e:
                logger.warning(f"Error in cleanup loop: {e}")

    async def cleanup_idle_connections(self) -> int:
        """Close connections idle too long. Returns how many were closed."""
        now = datetime.now(timezone.utc)
        removed = []

        async with self._lock:
            for key, pooled in list(self._connections.items()):
                if pooled.lock.locked():
                    continue
                idle_seconds = (now - pooled.last_used).total_seconds()
                if idle_seconds > self._max_idle_seconds:
                    removed.append(key)
                    del self._connections[key]
                    await pooled.client.disconnect()
                    logger.debug(f"Closed idle connection: {key}")

        if removed:
            logger.info(f"Cleaned up {len(removed)} idle connections")
        return len(removed)

    def get_stats(self) -> dict:
        """Get connection pool statistics"""
        return {
            "total_connections": len(self._connections),
            "connections": {
                key: {
                    "use_count": pooled.use_count,
                    "connected": pooled.client.is_connected,
                    "busy": pooled.lock.locked(),
                    "last_used": pooled.last_used.isoformat(),
                }
                for key, pooled in self._connections.items()
            },
        }
