"""
Data models for the payg state channel engine.

Channel rows, on-chain and network views of a channel, labor records and
the helpers that normalise channel ids, addresses and deployment ids.

Amounts (total, spent, onchain, remote, price) are uint256 on chain and
are kept as Python ints here; the store persists them as decimal text.
"""

import re
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union

import base58


# =============================================================================
# CONSTANTS
# =============================================================================

ZERO_ADDRESS = "0x" + "0" * 40

# Canonical channel id: 0x-prefixed lowercase hex without leading zeros
CANONICAL_CHANNEL_ID = re.compile(r"^0x(0|[1-9a-f][0-9a-f]*)$")

# multihash prefix (sha2-256, 32 bytes) used by deployment CIDs
CID_PREFIX = bytes.fromhex("1220")


# =============================================================================
# ENUMS
# =============================================================================

class ChannelStatus(IntEnum):
    """State channel status, numbered as the contract encodes it."""
    FINALIZED = 0
    OPEN = 1
    TERMINATING = 2

    @classmethod
    def from_name(cls, name: str) -> 'ChannelStatus':
        return cls[str(name).strip().upper()]


# Lifecycle order: OPEN -> TERMINATING -> FINALIZED
STATUS_RANK = {
    ChannelStatus.OPEN: 0,
    ChannelStatus.TERMINATING: 1,
    ChannelStatus.FINALIZED: 2,
}


def advance_status(current: ChannelStatus, incoming: ChannelStatus) -> ChannelStatus:
    """Return the later of two statuses in the channel lifecycle."""
    if STATUS_RANK[incoming] > STATUS_RANK[current]:
        return incoming
    return current


class PaygEvent(str, Enum):
    """Notification kinds emitted towards the metered-service layer."""
    OPENED = "channel_opened"
    STATE = "channel_state"
    STOPPED = "channel_stopped"


class ReduceStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# =============================================================================
# ID / ADDRESS HELPERS
# =============================================================================

def is_canonical_channel_id(channel_id: str) -> bool:
    return bool(channel_id) and bool(CANONICAL_CHANNEL_ID.match(channel_id))


def to_channel_id(value: Union[int, str]) -> str:
    """
    Normalise a channel id to canonical lowercase hex.

    Accepts ints, decimal strings and hex strings (with or without
    leading zeros).

    Raises:
        ValueError: if the value is not a non-negative integer id
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid channel id: {value!r}")
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip().lower()
        if text.startswith("0x"):
            number = int(text[2:], 16)
        else:
            number = int(text, 10)
    if number < 0:
        raise ValueError(f"invalid channel id: {value!r}")
    return hex(number)


def normalize_address(address: Optional[str]) -> str:
    """Lowercase an address; the zero address and None become ''."""
    if not address:
        return ""
    address = str(address).lower()
    if address == ZERO_ADDRESS:
        return ""
    return address


def bytes32_to_cid(value: Union[bytes, str]) -> str:
    """Convert a bytes32 deployment id into its base58 CID form."""
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return base58.b58encode(CID_PREFIX + bytes(value)).decode()


def cid_to_bytes32(cid: str) -> bytes:
    raw = base58.b58decode(cid)
    if len(raw) != 34 or raw[:2] != CID_PREFIX:
        raise ValueError(f"not a sha2-256 CID: {cid}")
    return raw[2:]


def parse_timestamp(value: Any) -> int:
    """Parse a unix timestamp or ISO-8601 date into unix seconds."""
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


# =============================================================================
# CHANNEL
# =============================================================================

@dataclass
class Channel:
    """Local ledger row for one payment channel."""
    id: str
    status: ChannelStatus = ChannelStatus.OPEN
    deployment_id: str = ""
    indexer: str = ""
    consumer: str = ""
    agent: str = ""
    total: int = 0
    spent: int = 0
    onchain: int = 0
    remote: int = 0
    price: int = 0
    expired_at: int = 0
    terminated_at: int = 0
    terminate_by_indexer: bool = False
    last_final: bool = False
    last_indexer_sign: str = ""
    last_consumer_sign: str = ""

    def is_alive(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.status != ChannelStatus.FINALIZED or self.expired_at > now

    def unclaimed(self) -> int:
        return self.remote - self.onchain

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for notifications; amounts become decimal strings."""
        data = asdict(self)
        data["status"] = self.status.name
        for key in ("total", "spent", "onchain", "remote", "price"):
            data[key] = str(data[key])
        return data


@dataclass
class ChannelLabor:
    """Append-only record of cumulative earnings for a deployment."""
    deployment_id: str
    indexer: str
    total: int
    created_at: int  # block number of the Labor event


@dataclass
class OnchainChannel:
    """Channel as reported by the state channel contract."""
    id: str
    status: ChannelStatus
    indexer: str
    consumer: str
    total: int
    spent: int
    expired_at: int
    terminated_at: int
    deployment_id: str
    terminate_by_indexer: bool


@dataclass
class NetworkChannel:
    """Channel as reported by the network indexer's GraphQL API."""
    id: str
    status: ChannelStatus
    indexer: str
    consumer: str
    agent: str
    total: int
    spent: int
    price: int
    expired_at: int
    terminated_at: int
    deployment_id: str
    terminate_by_indexer: bool
    is_final: bool

    @classmethod
    def from_graphql(cls, node: Dict[str, Any]) -> 'NetworkChannel':
        """
        Parse a ``stateChannels`` node.

        Raises:
            ValueError, KeyError: on malformed nodes
        """
        deployment = node.get("deployment") or {}
        return cls(
            id=to_channel_id(node["id"]),
            status=ChannelStatus.from_name(node["status"]),
            indexer=normalize_address(node.get("indexer")),
            consumer=normalize_address(node.get("consumer")),
            agent=normalize_address(node.get("agent")),
            total=int(node.get("total") or 0),
            spent=int(node.get("spent") or 0),
            price=int(node.get("price") or 0),
            expired_at=parse_timestamp(node.get("expiredAt")),
            terminated_at=parse_timestamp(node.get("terminatedAt")),
            deployment_id=deployment.get("id", ""),
            terminate_by_indexer=bool(node.get("terminateByIndexer")),
            is_final=bool(node.get("isFinal")),
        )


@dataclass
class AllocationSummary:
    deployment_id: str
    amount: int


@dataclass
class RunnerAllocation:
    total: int
    used: int


@dataclass
class DeploymentReduce:
    deployment_id: str
    to_reduce: int
    status: ReduceStatus = ReduceStatus.PENDING
