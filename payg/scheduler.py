"""
Periodic full reconciliation against the network indexer.

Every ``interval`` seconds the scheduler compares the network indexer's
list of this indexer's channels with the locally alive rows and re-syncs
whatever differs. A tick that fires while the previous one is still
running is dropped, not queued.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .logs import log
from .models import Channel, NetworkChannel, is_canonical_channel_id, to_channel_id

DEFAULT_SYNC_INTERVAL = 60
DEFAULT_BATCH_SIZE = 10


def channel_unchanged(local: Channel, remote: NetworkChannel) -> bool:
    """True when the local row already matches the network record."""
    return (
        local.status == remote.status
        and local.agent == remote.agent
        and local.total == remote.total
        and local.onchain == remote.spent
        and local.price == remote.price
    )


class PeriodicTask:
    """Runs an async callable every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self.func = func
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.func()
            except Exception as e:
                log(f"payg: {self.name}: unhandled error: {e}", level="error")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> bool:
        if self._task and not self._task.done():
            return False
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"payg-{self.name}")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())


class SyncScheduler:
    """One-minute reconciliation pass with a drop-not-queue guard."""

    def __init__(self, reconciler, network, identity, database,
                 interval: float = DEFAULT_SYNC_INTERVAL,
                 batch_size: int = DEFAULT_BATCH_SIZE):
        self.reconciler = reconciler
        self.network = network
        self.identity = identity
        self.db = database
        self.batch_size = batch_size
        self._in_flight = False
        self._last_run = 0
        self._stats = {"ticks": 0, "skipped": 0, "synced": 0, "removed": 0, "errors": 0}
        self._periodic = PeriodicTask("sync", interval, self.tick)

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: sync: {msg}", level=level)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def tick(self, now: Optional[int] = None) -> bool:
        """
        Run one reconciliation pass.

        Returns:
            False if the pass was dropped because another one is running
        """
        if self._in_flight:
            self._stats["skipped"] += 1
            self._log("previous pass still running, tick dropped", level="debug")
            return False

        self._in_flight = True
        try:
            self._stats["ticks"] += 1
            await self._run_pass(int(time.time()) if now is None else now)
        except Exception as e:
            self._stats["errors"] += 1
            self._log(f"pass failed: {e}", level="error")
        finally:
            self._in_flight = False
            self._last_run = int(time.time())
        return True

    async def _run_pass(self, now: int) -> None:
        indexer = self.identity.current_indexer()
        if not indexer:
            self._log("no indexer configured, nothing to sync", level="debug")
            return

        remote_channels = await self.network.list_channels_by_indexer(indexer)
        remote_by_id: Dict[str, NetworkChannel] = {c.id: c for c in remote_channels}

        for local in self.db.get_alive_channels(now):
            if local.id in remote_by_id:
                continue
            if not is_canonical_channel_id(local.id):
                self.db.delete_channel(local.id)
                self._stats["removed"] += 1
                self._log(f"removed malformed channel id {local.id}", level="debug")
                continue
            try:
                await self._sync(local.id)
            except Exception as e:
                self._stats["errors"] += 1
                self._log(f"sync of {local.id} failed: {e}", level="warn")

        pending: List[NetworkChannel] = []
        for remote in remote_by_id.values():
            local = self.db.get_channel(to_channel_id(remote.id))
            if local is not None and channel_unchanged(local, remote):
                continue
            pending.append(remote)

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self._sync(r.id, r.price, r) for r in batch),
                return_exceptions=True,
            )
            for remote, result in zip(batch, results):
                if isinstance(result, Exception):
                    self._stats["errors"] += 1
                    self._log(f"sync of {remote.id} failed: {result}", level="warn")

    async def _sync(self, channel_id: str, alt_price: Optional[int] = None,
                    alt_channel_data: Optional[NetworkChannel] = None) -> Optional[Channel]:
        channel = await self.reconciler.sync_channel(channel_id, alt_price, alt_channel_data)
        self._stats["synced"] += 1
        return channel

    def start(self) -> bool:
        return self._periodic.start()

    async def stop(self) -> None:
        await self._periodic.stop()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._periodic.running,
            "in_flight": self._in_flight,
            "last_run": self._last_run,
            **self._stats,
        }
