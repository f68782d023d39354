"""
Channel reconciliation.

Merges the contract view, the network indexer view and the local ledger
into one channel row, and applies the targeted updates carried by chain
events.

Merge rules:
- Ownership: a source reporting a different indexer than the current one
  deletes the local row
- Price: contract price, then the caller's alternate price, then the
  network price; a channel without a resolvable price is not written
- Status only moves forward (OPEN -> TERMINATING -> FINALIZED)
- expired_at only grows; price is set once
- remote is raised to onchain if a merge would leave it below
- A failed contract read or network outage skips the merge; only a
  source that answers can finalize or delete a row
"""

import time
from typing import Dict, List, Optional, Tuple

from .chain import ChainReadError, decode_open_callback
from .events import (
    ChannelCheckpointed,
    ChannelEvent,
    ChannelExtended,
    ChannelFinalized,
    ChannelFunded,
    ChannelLaborRecorded,
    ChannelOpened,
    ChannelTerminated,
)
from .logs import log
from .models import (
    Channel,
    ChannelLabor,
    ChannelStatus,
    NetworkChannel,
    PaygEvent,
    advance_status,
    to_channel_id,
)
from .network import NetworkQueryError


class ChannelReconciler:
    """Keeps local channel rows consistent with chain and network sources."""

    def __init__(self, database, identity, chain, network, publisher):
        self.db = database
        self.identity = identity
        self.chain = chain
        self.network = network
        self.publisher = publisher

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: reconciler: {msg}", level=level)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def channel(self, channel_id: str) -> Optional[Channel]:
        """Local row for ``channel_id``, syncing it first if missing."""
        try:
            cid = to_channel_id(channel_id)
        except ValueError:
            self._log(f"invalid channel id {channel_id!r}", level="debug")
            return None
        existing = self.db.get_channel(cid)
        if existing:
            return existing
        return await self.sync_channel(cid)

    def alive_channels(self, now: Optional[int] = None) -> List[Channel]:
        return self.db.get_alive_channels(now)

    def _remove(self, channel_id: str, reason: str) -> None:
        if self.db.delete_channel(channel_id):
            self._log(f"removed channel {channel_id}: {reason}", level="debug")

    # =========================================================================
    # FULL SYNC
    # =========================================================================

    async def sync_channel(self, channel_id: str, alt_price: Optional[int] = None,
                           alt_channel_data: Optional[NetworkChannel] = None) -> Optional[Channel]:
        """
        Rebuild a channel row from the contract, falling back to the network.

        Args:
            channel_id: channel id (any accepted spelling)
            alt_price: price to use when the contract reports none
            alt_channel_data: network record already fetched by the caller

        Returns:
            The stored channel, or None if it was removed or not written
        """
        cid = to_channel_id(channel_id)
        indexer = self.identity.current_indexer()
        if not indexer:
            self._log(f"no indexer configured, skipping sync of {cid}", level="debug")
            return None

        try:
            onchain = await self.chain.read_channel(cid)
        except ChainReadError as e:
            self._log(f"chain read failed, keeping stored {cid}: {e}", level="warn")
            return self.db.get_channel(cid)
        if onchain is None or onchain.indexer != indexer:
            return await self.update_channel_from_network(cid, alt_channel_data, is_final=True)

        price = await self.chain.read_price(cid)
        if not price and alt_price:
            price = int(alt_price)
        if not price:
            record = await self.network.get_channel(cid)
            price = record.price if record else 0
        if not price:
            self._log(f"price unresolved for {cid}, sync aborted", level="debug")
            return None

        parties = await self._resolve_parties(cid, onchain.consumer)
        return self._merge(
            cid,
            status=onchain.status,
            indexer=onchain.indexer,
            party=onchain.consumer,
            parties=parties,
            total=onchain.total,
            onchain=onchain.spent,
            price=price,
            expired_at=onchain.expired_at,
            terminated_at=onchain.terminated_at,
            terminate_by_indexer=onchain.terminate_by_indexer,
            deployment_id=onchain.deployment_id,
        )

    async def update_channel_from_network(self, channel_id: str,
                                          data: Optional[NetworkChannel] = None,
                                          is_final: bool = False,
                                          now: Optional[int] = None) -> Optional[Channel]:
        """
        Rebuild a channel row from the network indexer's record.

        ``is_final`` marks the channel FINALIZED once its ``terminated_at``
        has passed; it is used when the contract no longer knows the channel.
        A network outage leaves the stored row untouched.
        """
        cid = to_channel_id(channel_id)
        indexer = self.identity.current_indexer()
        if not indexer:
            return None
        if data is None:
            try:
                data = await self.network.get_channel(cid, strict=True)
            except NetworkQueryError as e:
                self._log(f"network unavailable, keeping stored {cid}: {e}", level="warn")
                return self.db.get_channel(cid)
        if data is None:
            self._remove(cid, "unknown on chain and network")
            return None
        if data.indexer != indexer:
            self._remove(cid, f"owned by {data.indexer}")
            return None

        if data.agent:
            parties = (data.agent, data.consumer)
        else:
            parties = ("", data.consumer)
        now = int(time.time()) if now is None else now
        if is_final and data.terminated_at < now:
            status, last_final = ChannelStatus.FINALIZED, True
        else:
            status, last_final = data.status, data.is_final
        return self._merge(
            cid,
            status=status,
            indexer=data.indexer,
            party=data.agent or data.consumer,
            parties=parties,
            total=data.total,
            onchain=data.spent,
            price=data.price,
            expired_at=data.expired_at,
            terminated_at=data.terminated_at,
            terminate_by_indexer=data.terminate_by_indexer,
            deployment_id=data.deployment_id,
            last_final=last_final,
        )

    async def _resolve_parties(self, channel_id: str, party: str) -> Optional[Tuple[str, str]]:
        """
        Split the contract's consumer into (agent, consumer).

        Returns None when the party is not a known agent contract, so the
        merge can keep an agent learned earlier from the Open event.
        """
        try:
            consumer = await self.chain.resolve_agent_consumer(channel_id, party)
        except LookupError as e:
            self._log(f"agent lookup failed for {channel_id}, treating as direct: {e}", level="debug")
            return ("", party)
        if consumer:
            return (party, consumer)
        return None

    def _merge(self, channel_id: str, *, status: ChannelStatus, indexer: str, party: str,
               parties: Optional[Tuple[str, str]], total: int, onchain: int, price: int,
               expired_at: int, terminated_at: int, terminate_by_indexer: bool,
               deployment_id: str, last_final: bool = False) -> Channel:
        channel = self.db.get_channel(channel_id)
        if channel is None:
            channel = Channel(id=channel_id, status=status)
        else:
            channel.status = advance_status(channel.status, status)

        if parties is None:
            if channel.agent and channel.agent == party and channel.consumer:
                parties = (channel.agent, channel.consumer)
            else:
                parties = ("", party)

        channel.agent, channel.consumer = parties
        channel.indexer = indexer
        channel.total = total
        channel.onchain = onchain
        if deployment_id:
            channel.deployment_id = deployment_id
        if not channel.price:
            channel.price = price
        if expired_at > channel.expired_at:
            channel.expired_at = expired_at
        channel.terminated_at = terminated_at
        channel.terminate_by_indexer = terminate_by_indexer
        if last_final:
            channel.last_final = True
        if channel.remote < channel.onchain:
            channel.remote = channel.onchain

        self.db.save_channel(channel)
        self._log(f"synced {channel_id} status={channel.status.name} onchain={channel.onchain}",
                  level="debug")
        return channel

    # =========================================================================
    # EVENT HANDLERS
    # =========================================================================

    async def apply_event(self, event: ChannelEvent) -> Optional[Channel]:
        handler = self._handlers().get(type(event))
        if handler is None:
            self._log(f"no handler for {type(event).__name__}", level="debug")
            return None
        return await handler(event)

    def _handlers(self) -> Dict[type, object]:
        return {
            ChannelOpened: self.on_open,
            ChannelExtended: self.on_extend,
            ChannelFunded: self.on_fund,
            ChannelCheckpointed: self.on_checkpoint,
            ChannelTerminated: self.on_terminate,
            ChannelFinalized: self.on_finalize,
            ChannelLaborRecorded: self.on_labor,
        }

    async def _save_publish(self, channel: Channel, kind: PaygEvent) -> Channel:
        self.db.save_channel(channel)
        await self.publisher.notify(kind, channel.to_dict())
        return channel

    async def _owned_row(self, channel_id: str) -> Optional[Channel]:
        """
        Stored row for an event, re-checking ownership.

        Unknown ids fall back to a full sync; rows owned by another indexer
        are deleted.
        """
        channel = self.db.get_channel(channel_id)
        if channel is None:
            await self.sync_channel(channel_id)
            return None
        if not self.identity.is_own(channel.indexer):
            self._remove(channel_id, f"owned by {channel.indexer}")
            return None
        return channel

    async def on_open(self, event: ChannelOpened) -> Optional[Channel]:
        decoded = decode_open_callback(event.callback)
        if decoded:
            agent, consumer = event.consumer, decoded
        else:
            self._log(f"channel {event.channel_id} opened by consumer {event.consumer}", level="debug")
            agent, consumer = "", event.consumer

        channel = self.db.get_channel(event.channel_id)
        if not self.identity.is_own(event.indexer):
            if channel is not None:
                self._remove(event.channel_id, f"opened for {event.indexer}")
            return None

        if channel is None:
            channel = Channel(
                id=event.channel_id,
                status=ChannelStatus.OPEN,
                deployment_id=event.deployment_id,
                indexer=event.indexer,
                consumer=consumer,
                agent=agent,
                total=event.total,
                price=event.price,
                expired_at=event.expired_at,
                terminated_at=event.expired_at,
            )
            self._log(f"channel {event.channel_id} opened, total={event.total} price={event.price}")
            return await self._save_publish(channel, PaygEvent.OPENED)

        # Existing row: refresh identity fields, keep price and finality
        channel.indexer = event.indexer
        channel.consumer = consumer
        channel.agent = agent
        channel.total = event.total
        channel.deployment_id = event.deployment_id
        if event.expired_at > channel.expired_at:
            channel.expired_at = event.expired_at
            channel.terminated_at = event.expired_at
        return await self._save_publish(channel, PaygEvent.STATE)

    async def on_extend(self, event: ChannelExtended) -> Optional[Channel]:
        channel = await self._owned_row(event.channel_id)
        if channel is None:
            return None
        if event.expired_at > channel.expired_at:
            channel.expired_at = event.expired_at
            channel.terminated_at = event.expired_at
            self.db.save_channel(channel)
        return channel

    async def on_fund(self, event: ChannelFunded) -> Optional[Channel]:
        channel = await self._owned_row(event.channel_id)
        if channel is None:
            return None
        channel.total = event.total
        return await self._save_publish(channel, PaygEvent.STATE)

    async def on_checkpoint(self, event: ChannelCheckpointed) -> Optional[Channel]:
        channel = await self._owned_row(event.channel_id)
        if channel is None:
            return None
        channel.onchain = event.spent
        if channel.remote < channel.onchain:
            channel.remote = channel.onchain
        self.db.save_channel(channel)
        return channel

    async def on_terminate(self, event: ChannelTerminated) -> Optional[Channel]:
        channel = await self._owned_row(event.channel_id)
        if channel is None:
            return None
        channel.onchain = event.spent
        if channel.remote < channel.onchain:
            channel.remote = channel.onchain
        channel.status = advance_status(channel.status, ChannelStatus.TERMINATING)
        channel.terminated_at = event.terminated_at
        channel.terminate_by_indexer = event.terminate_by_indexer
        channel.last_final = True
        return await self._save_publish(channel, PaygEvent.STATE)

    async def on_finalize(self, event: ChannelFinalized) -> Optional[Channel]:
        channel = await self._owned_row(event.channel_id)
        if channel is None:
            return None
        channel.onchain = event.total - event.remain
        if channel.remote < channel.onchain:
            channel.remote = channel.onchain
        channel.status = ChannelStatus.FINALIZED
        channel.last_final = True
        self._log(f"channel {channel.id} finalized, onchain={channel.onchain}")
        return await self._save_publish(channel, PaygEvent.STOPPED)

    async def on_labor(self, event: ChannelLaborRecorded) -> Optional[ChannelLabor]:
        if not self.identity.is_own(event.indexer):
            return None
        labor = ChannelLabor(
            deployment_id=event.deployment_id,
            indexer=event.indexer,
            total=event.amount,
            created_at=event.block_number,
        )
        self.db.add_channel_labor(labor)
        return labor

    def get_status(self, now: Optional[int] = None) -> Dict[str, int]:
        now = int(time.time()) if now is None else now
        channels = self.db.list_channels()
        counts = {status.name.lower(): 0 for status in ChannelStatus}
        for channel in channels:
            counts[channel.status.name.lower()] += 1
        counts["alive"] = len([c for c in channels if c.is_alive(now)])
        return counts
