"""
Read-only access to the settlement chain.

Every call is bounded by ``call_timeout``; a timeout or RPC failure is
logged and reported as absent (None) so callers fall through to their
next data source. ``read_channel`` and ``resolve_agent_consumer`` are the
exceptions: they raise so the reconciler can tell "read failed" from
"unknown channel" and "no agent".
"""

import asyncio
from typing import Any, Awaitable, Dict, List, Optional

from eth_abi import decode as abi_decode
from web3 import Web3

from .contracts import STATE_CHANNEL_EVENTS, NetworkContracts
from .logs import log
from .models import (
    ChannelStatus,
    OnchainChannel,
    RunnerAllocation,
    bytes32_to_cid,
    normalize_address,
    to_channel_id,
)

DEFAULT_CALL_TIMEOUT = 15


class ChainReadError(Exception):
    """A contract read failed or timed out."""


def decode_open_callback(callback: bytes) -> Optional[str]:
    """
    Decode a ChannelOpen callback as an ABI-encoded address.

    Channels opened through an agent carry the real consumer address in the
    callback; direct opens carry arbitrary or empty bytes.

    Returns:
        Lowercased consumer address, or None when the payload is not an address
    """
    if not callback:
        return None
    try:
        (address,) = abi_decode(["address"], bytes(callback))
    except Exception:
        return None
    return normalize_address(address) or None


class ChainReader:
    """Timeout-bounded reads against the state channel contracts."""

    def __init__(self, contracts: NetworkContracts, call_timeout: float = DEFAULT_CALL_TIMEOUT):
        self.contracts = contracts
        self.web3 = contracts.web3
        self.call_timeout = call_timeout

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: chain: {msg}", level=level)

    async def _bounded(self, awaitable: Awaitable[Any], desc: str) -> Optional[Any]:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            self._log(f"{desc} timed out after {self.call_timeout}s", level="warn")
        except Exception as e:
            self._log(f"{desc} failed: {e}", level="warn")
        return None

    async def read_channel(self, channel_id: str) -> Optional[OnchainChannel]:
        """
        Channel state from the contract.

        Returns None when the contract reports a zero indexer (unknown channel).

        Raises:
            ChainReadError: if the read fails or times out
        """
        fn = self.contracts.state_channel.functions.channel(int(channel_id, 16))
        try:
            state = await asyncio.wait_for(fn.call(), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise ChainReadError(
                f"channel({channel_id}) timed out after {self.call_timeout}s"
            ) from e
        except Exception as e:
            raise ChainReadError(f"channel({channel_id}) failed: {e}") from e
        status, indexer, consumer, _real_total, total, spent, expired_at, \
            terminated_at, deployment_id, terminate_by_indexer = state
        indexer = normalize_address(indexer)
        if not indexer:
            return None
        return OnchainChannel(
            id=to_channel_id(channel_id),
            status=ChannelStatus(status),
            indexer=indexer,
            consumer=normalize_address(consumer),
            total=int(total),
            spent=int(spent),
            expired_at=int(expired_at),
            terminated_at=int(terminated_at),
            deployment_id=bytes32_to_cid(deployment_id),
            terminate_by_indexer=bool(terminate_by_indexer),
        )

    async def read_price(self, channel_id: str) -> Optional[int]:
        fn = self.contracts.state_channel.functions.channelPrice(int(channel_id, 16))
        price = await self._bounded(fn.call(), f"channelPrice({channel_id})")
        return int(price) if price is not None else None

    async def resolve_agent_consumer(self, channel_id: str, party: str) -> Optional[str]:
        """
        Resolve the real consumer behind an agent-opened channel.

        Returns None when ``party`` is not the configured agent contract.

        Raises:
            LookupError: if the agent lookup fails or times out
        """
        if not self.contracts.consumer_host_matches(party):
            return None
        fn = self.contracts.consumer_host.functions.channelConsumer(int(channel_id, 16))
        try:
            consumer = await asyncio.wait_for(fn.call(), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise LookupError(f"agent lookup for {channel_id} timed out") from e
        except Exception as e:
            raise LookupError(f"agent lookup for {channel_id} failed: {e}") from e
        consumer = normalize_address(consumer)
        if not consumer:
            raise LookupError(f"agent has no consumer for {channel_id}")
        return consumer

    async def runner_allocation(self, runner: str) -> Optional[RunnerAllocation]:
        if self.contracts.staking_allocation is None:
            return None
        fn = self.contracts.staking_allocation.functions.runnerAllocation(
            Web3.to_checksum_address(runner)
        )
        result = await self._bounded(fn.call(), f"runnerAllocation({runner})")
        if result is None:
            return None
        return RunnerAllocation(total=int(result[0]), used=int(result[1]))

    async def block_number(self) -> Optional[int]:
        return await self._bounded(self.web3.eth.block_number, "block_number")

    async def get_events(self, from_block: int, to_block: int) -> Optional[List[Dict[str, Any]]]:
        """
        Decoded state channel events in ``[from_block, to_block]``.

        Returns a list of ``{"event", "args", "blockNumber", "logIndex"}``
        dicts in chain order, or None if the range could not be fetched.
        """
        contract = self.contracts.state_channel
        raw_logs = await self._bounded(
            self.web3.eth.get_logs({
                "address": contract.address,
                "fromBlock": from_block,
                "toBlock": to_block,
            }),
            f"get_logs({from_block}-{to_block})",
        )
        if raw_logs is None:
            return None

        topics = {}
        for name in STATE_CHANNEL_EVENTS:
            event = getattr(contract.events, name)()
            abi = event.abi
            signature = f"{name}({','.join(i['type'] for i in abi['inputs'])})"
            topics[bytes(Web3.keccak(text=signature))] = event

        decoded = []
        for entry in raw_logs:
            entry_topics = entry.get("topics") or []
            if not entry_topics:
                continue
            event = topics.get(bytes(entry_topics[0]))
            if event is None:
                continue
            try:
                processed = event.process_log(entry)
            except Exception as e:
                self._log(f"undecodable log at block {entry.get('blockNumber')}: {e}", level="warn")
                continue
            decoded.append({
                "event": processed["event"],
                "args": dict(processed["args"]),
                "blockNumber": int(processed["blockNumber"]),
                "logIndex": int(processed.get("logIndex", 0)),
            })
        decoded.sort(key=lambda d: (d["blockNumber"], d["logIndex"]))
        return decoded
