"""
Contract bindings for the state channel and staking allocation contracts.

Holds the ABI fragments the engine needs, builds web3 contract objects and
turns ledger intents into transaction builders (``execute(overrides)``)
that the TransactionSender signs and submits.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from web3 import AsyncWeb3, Web3

from .models import Channel, cid_to_bytes32


# =============================================================================
# ABI FRAGMENTS
# =============================================================================

QUERY_STATE_COMPONENTS = [
    {"name": "channelId", "type": "uint256"},
    {"name": "spent", "type": "uint256"},
    {"name": "isFinal", "type": "bool"},
    {"name": "indexerSign", "type": "bytes"},
    {"name": "consumerSign", "type": "bytes"},
]


def _query_state_fn(name: str) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "nonpayable",
        "inputs": [{"name": "query", "type": "tuple", "components": QUERY_STATE_COMPONENTS}],
        "outputs": [],
    }


def _event(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg, "type": typ, "indexed": indexed}
            for arg, typ, indexed in inputs
        ],
    }


STATE_CHANNEL_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "channel",
        "stateMutability": "view",
        "inputs": [{"name": "channelId", "type": "uint256"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "status", "type": "uint8"},
                {"name": "indexer", "type": "address"},
                {"name": "consumer", "type": "address"},
                {"name": "realTotal", "type": "uint256"},
                {"name": "total", "type": "uint256"},
                {"name": "spent", "type": "uint256"},
                {"name": "expiredAt", "type": "uint256"},
                {"name": "terminatedAt", "type": "uint256"},
                {"name": "deploymentId", "type": "bytes32"},
                {"name": "terminateByIndexer", "type": "bool"},
            ],
        }],
    },
    {
        "type": "function",
        "name": "channelPrice",
        "stateMutability": "view",
        "inputs": [{"name": "channelId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "claim",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "channelId", "type": "uint256"}],
        "outputs": [],
    },
    _query_state_fn("checkpoint"),
    _query_state_fn("terminate"),
    _query_state_fn("respond"),
    _event("ChannelOpen", [
        ("channelId", "uint256", True),
        ("indexer", "address", False),
        ("consumer", "address", False),
        ("total", "uint256", False),
        ("price", "uint256", False),
        ("expiredAt", "uint256", False),
        ("deploymentId", "bytes32", False),
        ("callback", "bytes", False),
    ]),
    _event("ChannelExtend", [
        ("channelId", "uint256", True),
        ("expiredAt", "uint256", False),
    ]),
    _event("ChannelFund", [
        ("channelId", "uint256", True),
        ("realTotal", "uint256", False),
        ("total", "uint256", False),
    ]),
    _event("ChannelCheckpoint", [
        ("channelId", "uint256", True),
        ("spent", "uint256", False),
        ("isFinal", "bool", False),
    ]),
    _event("ChannelTerminate", [
        ("channelId", "uint256", True),
        ("spent", "uint256", False),
        ("terminatedAt", "uint256", False),
        ("terminateByIndexer", "bool", False),
    ]),
    _event("ChannelFinalize", [
        ("channelId", "uint256", True),
        ("total", "uint256", False),
        ("remain", "uint256", False),
    ]),
    _event("ChannelLabor", [
        ("deploymentId", "bytes32", False),
        ("indexer", "address", False),
        ("amount", "uint256", False),
    ]),
]

STATE_CHANNEL_EVENTS = (
    "ChannelOpen",
    "ChannelExtend",
    "ChannelFund",
    "ChannelCheckpoint",
    "ChannelTerminate",
    "ChannelFinalize",
    "ChannelLabor",
)

STAKING_ALLOCATION_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "runnerAllocation",
        "stateMutability": "view",
        "inputs": [{"name": "runner", "type": "address"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "total", "type": "uint256"},
                {"name": "used", "type": "uint256"},
                {"name": "overflowTime", "type": "uint256"},
                {"name": "overflowAt", "type": "uint256"},
            ],
        }],
    },
    {
        "type": "function",
        "name": "removeAllocation",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "deploymentId", "type": "bytes32"},
            {"name": "runner", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
]

# Agent contract that opens channels on behalf of its signers
CONSUMER_HOST_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "channelConsumer",
        "stateMutability": "view",
        "inputs": [{"name": "channelId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]


# =============================================================================
# QUERY STATE PAYLOAD
# =============================================================================

def _sign_bytes(signature: str) -> bytes:
    if not signature:
        return b""
    return bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)


@dataclass
class QueryState:
    """Signed channel state submitted to checkpoint/terminate/respond."""
    channel_id: int
    spent: int
    is_final: bool
    indexer_sign: str
    consumer_sign: str

    @classmethod
    def from_channel(cls, channel: Channel, spent: int) -> 'QueryState':
        return cls(
            channel_id=int(channel.id, 16),
            spent=spent,
            is_final=channel.last_final,
            indexer_sign=channel.last_indexer_sign,
            consumer_sign=channel.last_consumer_sign,
        )

    def as_tuple(self) -> tuple:
        return (
            self.channel_id,
            self.spent,
            self.is_final,
            _sign_bytes(self.indexer_sign),
            _sign_bytes(self.consumer_sign),
        )


TxBuilder = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


# =============================================================================
# CONTRACT SET
# =============================================================================

class NetworkContracts:
    """web3 contract objects for the configured network."""

    def __init__(self, web3: AsyncWeb3, state_channel_address: str,
                 staking_allocation_address: str = "",
                 consumer_host_address: str = ""):
        self.web3 = web3
        self.state_channel = web3.eth.contract(
            address=Web3.to_checksum_address(state_channel_address),
            abi=STATE_CHANNEL_ABI,
        )
        self.staking_allocation = None
        if staking_allocation_address:
            self.staking_allocation = web3.eth.contract(
                address=Web3.to_checksum_address(staking_allocation_address),
                abi=STAKING_ALLOCATION_ABI,
            )
        self.consumer_host = None
        self.consumer_host_address = ""
        if consumer_host_address:
            self.consumer_host_address = consumer_host_address.lower()
            self.consumer_host = web3.eth.contract(
                address=Web3.to_checksum_address(consumer_host_address),
                abi=CONSUMER_HOST_ABI,
            )

    # Transaction builders: each returns an ``execute(overrides)`` coroutine
    # function producing an unsigned transaction dict.

    def _query_state_builder(self, method: str, state: QueryState) -> TxBuilder:
        async def execute(overrides: Dict[str, Any]) -> Dict[str, Any]:
            fn = getattr(self.state_channel.functions, method)(state.as_tuple())
            return await fn.build_transaction(overrides)
        return execute

    def checkpoint_tx(self, state: QueryState) -> TxBuilder:
        return self._query_state_builder("checkpoint", state)

    def terminate_tx(self, state: QueryState) -> TxBuilder:
        return self._query_state_builder("terminate", state)

    def respond_tx(self, state: QueryState) -> TxBuilder:
        return self._query_state_builder("respond", state)

    def claim_tx(self, channel_id: str) -> TxBuilder:
        async def execute(overrides: Dict[str, Any]) -> Dict[str, Any]:
            fn = self.state_channel.functions.claim(int(channel_id, 16))
            return await fn.build_transaction(overrides)
        return execute

    def remove_allocation_tx(self, deployment_id: str, runner: str, amount: int) -> TxBuilder:
        if self.staking_allocation is None:
            raise ValueError("staking allocation contract not configured")

        async def execute(overrides: Dict[str, Any]) -> Dict[str, Any]:
            fn = self.staking_allocation.functions.removeAllocation(
                cid_to_bytes32(deployment_id),
                Web3.to_checksum_address(runner),
                amount,
            )
            return await fn.build_transaction(overrides)
        return execute

    def remove_allocation_gas(self, deployment_id: str, runner: str,
                              amount: int) -> Callable[[Dict[str, Any]], Awaitable[int]]:
        async def estimate(overrides: Dict[str, Any]) -> int:
            fn = self.staking_allocation.functions.removeAllocation(
                cid_to_bytes32(deployment_id),
                Web3.to_checksum_address(runner),
                amount,
            )
            return await fn.estimate_gas(overrides)
        return estimate

    def consumer_host_matches(self, party: Optional[str]) -> bool:
        return bool(self.consumer_host_address) and (party or "").lower() == self.consumer_host_address
