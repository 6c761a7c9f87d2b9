"""
core/event_bus.py
─────────────────
Publish/subscribe channel used for the copy-trade request/ack handshake.

    EventBus           PostgreSQL LISTEN/NOTIFY, for initializer and filler
                       running as separate processes
    InProcessEventBus  asyncio-only, for single-process runs and tests

Both deliver a JSON-serialisable dict to every callback subscribed to the
channel; callbacks may be plain functions or coroutines and run as tasks so
they never block the publisher.  Delivery is at-most-once: a message
published while nobody listens is lost.

Buses are constructed by the caller and passed in; there is no module-level
instance.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, List

import asyncpg

logger = logging.getLogger(__name__)

Callback = Callable[[dict], Any]


class BaseEventBus:
    def __init__(self) -> None:
        self._callbacks: Dict[str, List[Callback]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def subscribe(self, channel: str, callback: Callback) -> None:
        raise NotImplementedError

    async def publish(self, channel: str, payload: dict) -> None:
        raise NotImplementedError

    def _require_running(self) -> None:
        if not self._running:
            raise RuntimeError(f"{type(self).__name__} is not running. Call start() first.")

    def _deliver(self, channel: str, data: dict) -> None:
        for callback in self._callbacks.get(channel, []):
            # scheduled, not awaited: the listener must not block
            task = asyncio.get_running_loop().create_task(self._invoke_callback(channel, callback, data))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _invoke_callback(self, channel: str, callback: Callback, data: dict) -> None:
        try:
            result = callback(data)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error in callback for channel %s", channel)


class EventBus(BaseEventBus):
    """Event bus over PostgreSQL LISTEN/NOTIFY."""

    def __init__(self, dsn: str) -> None:
        super().__init__()
        self.dsn = dsn
        self._conn: asyncpg.Connection | None = None
        self._pool: asyncpg.Pool | None = None

    async def start(self) -> None:
        """Open the listener connection and the publishing pool."""
        if self._running:
            return
        self._pool = await asyncpg.create_pool(self.dsn)
        self._conn = await asyncpg.connect(self.dsn)
        await super().start()
        logger.info("EventBus started.")

    async def stop(self) -> None:
        await super().stop()
        if self._conn:
            for channel in self._callbacks:
                await self._conn.remove_listener(channel, self._on_notify)
            await self._conn.close()
            self._conn = None
        if self._pool:
            await self._pool.close()
            self._pool = None
        logger.info("EventBus stopped.")

    async def subscribe(self, channel: str, callback: Callback) -> None:
        self._require_running()
        if channel not in self._callbacks:
            self._callbacks[channel] = []
            await self._conn.add_listener(channel, self._on_notify)
            logger.info("Subscribed to channel: %s", channel)
        self._callbacks[channel].append(callback)

    async def publish(self, channel: str, payload: dict) -> None:
        self._require_running()
        payload_str = json.dumps(payload)
        async with self._pool.acquire() as conn:
            await conn.execute("SELECT pg_notify($1, $2)", channel, payload_str)
        logger.debug("Published to %s: %s", channel, payload_str)

    def _on_notify(self, conn: asyncpg.Connection, pid: int, channel: str, payload: str) -> None:
        try:
            data = json.loads(payload) if payload else {}
        except json.JSONDecodeError:
            logger.error("Failed to decode payload on channel %s: %s", channel, payload)
            return
        self._deliver(channel, data)


class InProcessEventBus(BaseEventBus):
    """Same contract as :class:`EventBus`, delivered inside the running loop."""

    async def subscribe(self, channel: str, callback: Callback) -> None:
        self._require_running()
        self._callbacks.setdefault(channel, []).append(callback)
        logger.debug("Subscribed to channel: %s", channel)

    async def publish(self, channel: str, payload: dict) -> None:
        self._require_running()
        # round-trip through JSON so subscribers see what a NOTIFY would carry
        self._deliver(channel, json.loads(json.dumps(payload)))
        logger.debug("Published to %s", channel)
