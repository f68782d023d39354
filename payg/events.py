"""
State channel events.

Contract logs are decoded into typed domain events and pushed onto an
asyncio queue; a consumer drains the queue and hands each event to the
reconciler's targeted handler. Decoding and handling are separate so a
log that fails to decode never blocks the queue.

The subscriber polls logs from the last processed block, which is kept in
the store so a restart resumes where it stopped. Events missed during
downtime beyond that cursor are covered by the periodic sync pass.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .logs import log
from .models import bytes32_to_cid, normalize_address, to_channel_id

EVENT_CURSOR_KEY = "events:last_block"


# =============================================================================
# DOMAIN EVENTS
# =============================================================================

@dataclass
class ChannelOpened:
    channel_id: str
    indexer: str
    consumer: str
    total: int
    price: int
    expired_at: int
    deployment_id: str
    callback: bytes
    block_number: int = 0


@dataclass
class ChannelExtended:
    channel_id: str
    expired_at: int
    block_number: int = 0


@dataclass
class ChannelFunded:
    channel_id: str
    total: int
    block_number: int = 0


@dataclass
class ChannelCheckpointed:
    channel_id: str
    spent: int
    block_number: int = 0


@dataclass
class ChannelTerminated:
    channel_id: str
    spent: int
    terminated_at: int
    terminate_by_indexer: bool
    block_number: int = 0


@dataclass
class ChannelFinalized:
    channel_id: str
    total: int
    remain: int
    block_number: int = 0


@dataclass
class ChannelLaborRecorded:
    deployment_id: str
    indexer: str
    amount: int
    block_number: int = 0


ChannelEvent = Union[
    ChannelOpened,
    ChannelExtended,
    ChannelFunded,
    ChannelCheckpointed,
    ChannelTerminated,
    ChannelFinalized,
    ChannelLaborRecorded,
]


def decode_event(raw: Dict[str, Any]) -> Optional[ChannelEvent]:
    """
    Convert a decoded contract log into a domain event.

    Args:
        raw: ``{"event": name, "args": {...}, "blockNumber": n}``

    Returns:
        The domain event, or None for events the engine does not track

    Raises:
        KeyError, ValueError: if the log is missing or has malformed fields
    """
    name = raw["event"]
    args = raw["args"]
    block = int(raw.get("blockNumber") or 0)

    if name == "ChannelOpen":
        return ChannelOpened(
            channel_id=to_channel_id(args["channelId"]),
            indexer=normalize_address(args["indexer"]),
            consumer=normalize_address(args["consumer"]),
            total=int(args["total"]),
            price=int(args["price"]),
            expired_at=int(args["expiredAt"]),
            deployment_id=bytes32_to_cid(args["deploymentId"]),
            callback=bytes(args.get("callback") or b""),
            block_number=block,
        )
    if name == "ChannelExtend":
        return ChannelExtended(
            channel_id=to_channel_id(args["channelId"]),
            expired_at=int(args["expiredAt"]),
            block_number=block,
        )
    if name == "ChannelFund":
        return ChannelFunded(
            channel_id=to_channel_id(args["channelId"]),
            total=int(args["total"]),
            block_number=block,
        )
    if name == "ChannelCheckpoint":
        return ChannelCheckpointed(
            channel_id=to_channel_id(args["channelId"]),
            spent=int(args["spent"]),
            block_number=block,
        )
    if name == "ChannelTerminate":
        return ChannelTerminated(
            channel_id=to_channel_id(args["channelId"]),
            spent=int(args["spent"]),
            terminated_at=int(args["terminatedAt"]),
            terminate_by_indexer=bool(args["terminateByIndexer"]),
            block_number=block,
        )
    if name == "ChannelFinalize":
        return ChannelFinalized(
            channel_id=to_channel_id(args["channelId"]),
            total=int(args["total"]),
            remain=int(args["remain"]),
            block_number=block,
        )
    if name == "ChannelLabor":
        return ChannelLaborRecorded(
            deployment_id=bytes32_to_cid(args["deploymentId"]),
            indexer=normalize_address(args["indexer"]),
            amount=int(args["amount"]),
            block_number=block,
        )
    return None


# =============================================================================
# SUBSCRIBER
# =============================================================================

class EventSubscriber:
    """Polls contract logs into a typed event queue and dispatches them."""

    QUEUE_MAX_ITEMS = 2000

    def __init__(self, chain, reconciler, database,
                 poll_interval: float = 5, block_range: int = 2000,
                 start_block: int = 0):
        self.chain = chain
        self.reconciler = reconciler
        self.db = database
        self.poll_interval = poll_interval
        self.block_range = block_range
        self.start_block = start_block

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.QUEUE_MAX_ITEMS)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stats = {"decoded": 0, "dropped": 0, "processed": 0, "failed": 0}

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: events: {msg}", level=level)

    # -------------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------------

    def last_block(self) -> Optional[int]:
        value = self.db.get_state(EVENT_CURSOR_KEY)
        return int(value) if value is not None else None

    def _set_last_block(self, block: int) -> None:
        self.db.set_state(EVENT_CURSOR_KEY, str(block))

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def inject_event(self, event: ChannelEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            self._log(f"event queue full, dropping {type(event).__name__}", level="warn")
            return False

    async def poll_once(self) -> int:
        """
        Fetch new logs and queue their domain events.

        Returns number of queued events.
        """
        head = await self.chain.block_number()
        if head is None:
            return 0

        cursor = self.last_block()
        if cursor is None:
            cursor = self.start_block - 1 if self.start_block > 0 else head
            self._set_last_block(cursor)

        queued = 0
        while cursor < head:
            to_block = min(cursor + self.block_range, head)
            raw_events = await self.chain.get_events(cursor + 1, to_block)
            if raw_events is None:
                break
            for raw in raw_events:
                try:
                    event = decode_event(raw)
                except (KeyError, ValueError, TypeError) as e:
                    self._log(f"skipping malformed {raw.get('event')} log: {e}", level="warn")
                    continue
                if event is None:
                    continue
                self._stats["decoded"] += 1
                if self.inject_event(event):
                    queued += 1
            cursor = to_block
            self._set_last_block(cursor)
        return queued

    async def process_inbound(self, max_events: int = 100) -> int:
        """
        Drain the event queue into the reconciler.

        Returns number of processed events.
        """
        processed = 0
        while processed < max_events:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            processed += 1
            try:
                await self.reconciler.apply_event(event)
                self._stats["processed"] += 1
            except Exception as e:
                self._stats["failed"] += 1
                self._log(f"{type(event).__name__} handler error: {e}", level="warn")
        return processed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Poll/dispatch loop until stop() is called."""
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
                while await self.process_inbound() > 0:
                    pass
            except Exception as e:
                self._log(f"poll loop error: {e}", level="error")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> bool:
        if self._task and not self._task.done():
            return False
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="payg-events")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": bool(self._task and not self._task.done()),
            "last_block": self.last_block(),
            "queue_size": self._queue.qsize(),
            **self._stats,
        }
