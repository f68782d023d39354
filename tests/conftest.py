"""Shared fixtures and in-memory fakes for the payg test suite."""

from typing import Any, Dict, List, Optional

import pytest

from payg.account import IndexerIdentity
from payg.chain import ChainReadError
from payg.database import PaygDatabase
from payg.ledger import ChannelLedger
from payg.models import (
    Channel,
    ChannelStatus,
    NetworkChannel,
    OnchainChannel,
    bytes32_to_cid,
)
from payg.network import NetworkQueryError
from payg.publisher import ChannelPublisher
from payg.reconciler import ChannelReconciler
from payg.transactions import TransactionError

INDEXER = "0x" + "a1" * 20
OTHER_INDEXER = "0x" + "b2" * 20
CONSUMER = "0x" + "c3" * 20
AGENT_HOST = "0x" + "d4" * 20
DEPLOYMENT = bytes32_to_cid(bytes(range(32)))


# =============================================================================
# FAKES
# =============================================================================

class RecordingPublisher(ChannelPublisher):
    """Publisher that keeps every notification."""

    def __init__(self):
        super().__init__()
        self.records: List[tuple] = []

    async def notify(self, kind, payload):
        self.records.append((kind, payload))
        return await super().notify(kind, payload)


class FakeChainReader:
    def __init__(self):
        self.channels: Dict[str, OnchainChannel] = {}
        self.prices: Dict[str, int] = {}
        self.agents: Dict[str, str] = {}
        self.read_errors = set()
        self.agent_errors = set()
        self.allocation = None
        self.head: Optional[int] = 0
        self.logs: List[Dict[str, Any]] = []
        self.event_queries: List[tuple] = []

    async def read_channel(self, channel_id):
        if channel_id in self.read_errors:
            raise ChainReadError(f"channel({channel_id}) failed")
        return self.channels.get(channel_id)

    async def read_price(self, channel_id):
        return self.prices.get(channel_id)

    async def resolve_agent_consumer(self, channel_id, party):
        if channel_id in self.agent_errors:
            raise LookupError(f"agent lookup for {channel_id} failed")
        return self.agents.get(channel_id)

    async def runner_allocation(self, runner):
        return self.allocation

    async def block_number(self):
        return self.head

    async def get_events(self, from_block, to_block):
        self.event_queries.append((from_block, to_block))
        return [e for e in self.logs if from_block <= e["blockNumber"] <= to_block]


class FakeNetworkClient:
    def __init__(self):
        self.channels: Dict[str, NetworkChannel] = {}
        self.summaries = []
        self.summary_calls = 0
        self.fail_listing = False
        self.fail_lookup = False

    async def list_channels_by_indexer(self, indexer):
        if self.fail_listing:
            raise RuntimeError("network down")
        return [c for c in self.channels.values() if c.indexer == indexer]

    async def get_channel(self, channel_id, strict=False):
        if self.fail_lookup:
            if strict:
                raise NetworkQueryError(f"stateChannel({channel_id}) timed out")
            return None
        return self.channels.get(channel_id)

    async def allocation_summaries(self, indexer):
        self.summary_calls += 1
        return list(self.summaries)


class FakeSender:
    def __init__(self):
        self.requests = []
        self.fail_actions = set()
        self.fail_descs = set()

    async def submit(self, request):
        self.requests.append(request)
        if request.action in self.fail_actions or any(d in request.desc for d in self.fail_descs):
            raise TransactionError(request.action, "execution reverted")
        return {"status": 1, "blockNumber": 1}


class FakeContracts:
    """Records the payloads the ledger and reducer ask to build."""

    def __init__(self):
        self.calls: List[tuple] = []

    def _builder(self, name, *args):
        self.calls.append((name,) + args)

        async def execute(overrides):
            return {"method": name}
        return execute

    def checkpoint_tx(self, state):
        return self._builder("checkpoint", state)

    def terminate_tx(self, state):
        return self._builder("terminate", state)

    def respond_tx(self, state):
        return self._builder("respond", state)

    def claim_tx(self, channel_id):
        return self._builder("claim", channel_id)

    def remove_allocation_tx(self, deployment_id, runner, amount):
        return self._builder("removeAllocation", deployment_id, runner, amount)

    def remove_allocation_gas(self, deployment_id, runner, amount):
        async def estimate(overrides):
            return 100000
        return estimate


# =============================================================================
# BUILDERS
# =============================================================================

def make_channel(channel_id="0x1", **kwargs) -> Channel:
    values = dict(
        id=channel_id,
        status=ChannelStatus.OPEN,
        deployment_id=DEPLOYMENT,
        indexer=INDEXER,
        consumer=CONSUMER,
        total=1000,
        price=100,
        expired_at=2_000_000_000,
        terminated_at=2_000_000_000,
    )
    values.update(kwargs)
    return Channel(**values)


def make_onchain(channel_id="0x1", **kwargs) -> OnchainChannel:
    values = dict(
        id=channel_id,
        status=ChannelStatus.OPEN,
        indexer=INDEXER,
        consumer=CONSUMER,
        total=1000,
        spent=0,
        expired_at=2_000_000_000,
        terminated_at=0,
        deployment_id=DEPLOYMENT,
        terminate_by_indexer=False,
    )
    values.update(kwargs)
    return OnchainChannel(**values)


def make_network(channel_id="0x1", **kwargs) -> NetworkChannel:
    values = dict(
        id=channel_id,
        status=ChannelStatus.OPEN,
        indexer=INDEXER,
        consumer=CONSUMER,
        agent="",
        total=1000,
        spent=0,
        price=100,
        expired_at=2_000_000_000,
        terminated_at=0,
        deployment_id=DEPLOYMENT,
        terminate_by_indexer=False,
        is_final=False,
    )
    values.update(kwargs)
    return NetworkChannel(**values)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def database(tmp_path):
    db = PaygDatabase(str(tmp_path / "payg_test.db"))
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def identity(database):
    ident = IndexerIdentity(database)
    ident.set_indexer(INDEXER)
    return ident


@pytest.fixture
def chain():
    return FakeChainReader()


@pytest.fixture
def network():
    return FakeNetworkClient()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def contracts():
    return FakeContracts()


@pytest.fixture
def reconciler(database, identity, chain, network, publisher):
    return ChannelReconciler(database, identity, chain, network, publisher)


@pytest.fixture
def ledger(database, reconciler, sender, contracts, publisher):
    return ChannelLedger(database, reconciler, sender, contracts, publisher)
