"""
Channel ledger: local accounting and settlement of payment channels.

Each metered request arrives as a signed state update; the ledger debits
one price unit per update and keeps the best consumer-signed state, which
is later settled on chain through checkpoint, terminate or respond.

Settlement actions only touch the row after the transaction has been
confirmed; a failed transaction leaves the row exactly as it was.
"""

import time
from typing import Callable, Optional

from .contracts import QueryState
from .logs import log
from .models import Channel, ChannelStatus, PaygEvent, advance_status
from .transactions import TransactionError, TxRequest

CheckpointPolicy = Callable[[Channel], bool]


class ChannelNotFoundError(LookupError):
    """No channel with the given id exists locally or upstream."""


def never_checkpoint(channel: Channel) -> bool:
    return False


def threshold_checkpoint_policy(threshold: int) -> CheckpointPolicy:
    """Checkpoint once more than ``threshold`` price units are unsettled."""
    def policy(channel: Channel) -> bool:
        if threshold <= 0 or channel.price <= 0:
            return False
        return channel.unclaimed() // channel.price > threshold
    return policy


class ChannelLedger:
    """Applies signed updates and settles channel state on chain."""

    def __init__(self, database, reconciler, sender, contracts, publisher,
                 checkpoint_policy: Optional[CheckpointPolicy] = None):
        self.db = database
        self.reconciler = reconciler
        self.sender = sender
        self.contracts = contracts
        self.publisher = publisher
        self.checkpoint_policy = checkpoint_policy or never_checkpoint

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: ledger: {msg}", level=level)

    async def _require(self, channel_id: str) -> Channel:
        channel = await self.reconciler.channel(channel_id)
        if channel is None:
            raise ChannelNotFoundError(f"channel not exist: {channel_id}")
        return channel

    async def _submit(self, request: TxRequest):
        if self.sender is None:
            raise TransactionError(request.action, "no controller account configured")
        return await self.sender.submit(request)

    async def _save_publish(self, channel: Channel) -> Channel:
        self.db.save_channel(channel)
        await self.publisher.notify(PaygEvent.STATE, channel.to_dict())
        return channel

    # =========================================================================
    # OFF-CHAIN UPDATES
    # =========================================================================

    async def update(self, channel_id: str, remote_spent: int, is_final: bool,
                     indexer_sign: str, consumer_sign: str) -> Channel:
        """
        Record one metered request against a channel.

        ``spent`` always advances by one price unit; the signed remote state
        is adopted only when it is newer than the stored one, within the
        channel total, and the channel has not already received its final state.

        Raises:
            ChannelNotFoundError: if the channel cannot be found or synced
        """
        channel = await self._require(channel_id)
        remote_spent = int(remote_spent)

        channel.spent += channel.price
        if remote_spent > channel.total:
            self._log(f"rejected remote state for {channel.id}: spent {remote_spent} "
                      f"exceeds total {channel.total}", level="warn")
        elif remote_spent > channel.remote and not channel.last_final:
            channel.remote = remote_spent
            channel.last_final = bool(is_final)
            channel.last_indexer_sign = indexer_sign
            channel.last_consumer_sign = consumer_sign

        await self._save_publish(channel)

        if self.checkpoint_policy(channel):
            try:
                channel = await self.checkpoint(channel.id)
            except Exception as e:
                self._log(f"auto checkpoint of {channel.id} failed: {e}", level="warn")
        return channel

    async def extend(self, channel_id: str, expiration: int,
                     price: Optional[int] = None) -> Channel:
        """
        Push out a channel's expiry and optionally change its price.

        Raises:
            ChannelNotFoundError: if the channel cannot be found or synced
        """
        channel = await self._require(channel_id)
        changed = False
        if int(expiration) > channel.expired_at:
            channel.expired_at = int(expiration)
            changed = True
        if price and int(price) != channel.price:
            channel.price = int(price)
            changed = True
        if not changed:
            return channel
        return await self._save_publish(channel)

    # =========================================================================
    # ON-CHAIN SETTLEMENT
    # =========================================================================

    async def checkpoint(self, channel_id: str) -> Channel:
        """
        Settle the latest signed state on chain without closing the channel.

        Raises:
            ChannelNotFoundError: if the channel cannot be found or synced
            TransactionError: if the checkpoint transaction fails
        """
        channel = await self._require(channel_id)
        if channel.onchain == channel.remote:
            return channel

        settled = channel.remote
        state = QueryState.from_channel(channel, spent=settled)
        await self._submit(TxRequest(
            action="checkpoint",
            execute=self.contracts.checkpoint_tx(state),
            desc=f"{channel.id} spent={settled}",
        ))

        channel = self.db.get_channel(channel.id) or channel
        channel.onchain = settled
        channel.spent = settled
        if channel.remote < settled:
            channel.remote = settled
        return await self._save_publish(channel)

    async def terminate(self, channel_id: str) -> Channel:
        """
        Start closing the channel with the latest signed state.

        Raises:
            ChannelNotFoundError: if the channel cannot be found or synced
            TransactionError: if the terminate transaction fails
        """
        channel = await self._require(channel_id)
        if channel.onchain == channel.remote:
            return channel

        settled = channel.remote
        state = QueryState.from_channel(channel, spent=settled)
        await self._submit(TxRequest(
            action="terminate",
            execute=self.contracts.terminate_tx(state),
            desc=f"{channel.id} spent={settled}",
        ))

        channel = self.db.get_channel(channel.id) or channel
        channel.onchain = settled
        channel.spent = settled
        if channel.remote < settled:
            channel.remote = settled
        channel.status = advance_status(channel.status, ChannelStatus.TERMINATING)
        channel.last_final = True
        return await self._save_publish(channel)

    async def respond(self, channel_id: str) -> Channel:
        """
        Answer a consumer-initiated termination with the local spent amount.

        Raises:
            ChannelNotFoundError: if the channel cannot be found or synced
            TransactionError: if the respond transaction fails
        """
        channel = await self._require(channel_id)
        if channel.onchain == channel.remote:
            return channel

        spent = channel.spent
        state = QueryState.from_channel(channel, spent=spent)
        await self._submit(TxRequest(
            action="respond",
            execute=self.contracts.respond_tx(state),
            desc=f"{channel.id} spent={spent}",
        ))

        channel = self.db.get_channel(channel.id) or channel
        channel.onchain = spent
        channel.spent = channel.remote
        channel.last_final = True
        return await self._save_publish(channel)

    async def claim(self, channel_id: str, now: Optional[int] = None) -> bool:
        """
        Claim a terminating channel whose termination window has passed.

        Returns:
            True if a claim transaction was settled

        Raises:
            ChannelNotFoundError: if the channel cannot be found or synced
            TransactionError: if the claim transaction fails
        """
        now = int(time.time()) if now is None else now
        channel = await self._require(channel_id)
        if channel.status != ChannelStatus.TERMINATING or channel.terminated_at >= now:
            return False
        await self._submit(TxRequest(
            action="claim",
            execute=self.contracts.claim_tx(channel.id),
            desc=channel.id,
        ))
        self._log(f"claimed channel {channel.id}")
        return True
