"""Tests for contract bindings and coordinator wiring."""

import pytest
from web3 import AsyncHTTPProvider, AsyncWeb3

from conftest import AGENT_HOST, CONSUMER, INDEXER, make_channel
from payg import coordinator as coordinator_module
from payg.config import PaygConfig
from payg.contracts import NetworkContracts, QueryState
from payg.coordinator import Coordinator
from payg.ledger import ChannelLedger

STATE_CHANNEL = "0x" + "12" * 20
CONTROLLER_KEY = "0x" + "11" * 32


@pytest.fixture
def web3():
    return AsyncWeb3(AsyncHTTPProvider("http://127.0.0.1:8545"))


class TestQueryState:

    def test_from_channel(self):
        channel = make_channel("0xab12", last_final=True,
                               last_indexer_sign="0x0a0b", last_consumer_sign="0c0d")

        state = QueryState.from_channel(channel, spent=600)

        assert state.as_tuple() == (0xab12, 600, True, b"\x0a\x0b", b"\x0c\x0d")

    def test_unsigned_state(self):
        state = QueryState.from_channel(make_channel(), spent=0)
        assert state.as_tuple()[3:] == (b"", b"")


class TestNetworkContracts:

    def test_optional_contracts(self, web3):
        contracts = NetworkContracts(web3, STATE_CHANNEL)

        assert contracts.staking_allocation is None
        assert contracts.consumer_host is None
        assert contracts.consumer_host_matches(AGENT_HOST) is False
        with pytest.raises(ValueError):
            contracts.remove_allocation_tx("QmA", INDEXER, 1)

    def test_consumer_host_match_ignores_case(self, web3):
        contracts = NetworkContracts(web3, STATE_CHANNEL, consumer_host_address="0x" + "D4" * 20)

        assert contracts.consumer_host_matches(AGENT_HOST) is True
        assert contracts.consumer_host_matches(CONSUMER) is False
        assert contracts.consumer_host_matches(None) is False


def _config(tmp_path, **overrides):
    values = {
        "db_path": str(tmp_path / "payg.db"),
        "network_endpoint": "http://127.0.0.1:8545",
        "network_query_url": "http://127.0.0.1:3000/graphql",
        "state_channel_address": STATE_CHANNEL,
        "indexer": "0x" + "A1" * 20,
        "checkpoint_threshold": 5,
    }
    values.update(overrides)
    return PaygConfig.from_dict(values)


class TestCoordinator:

    def test_wires_components(self, tmp_path, web3):
        coordinator = Coordinator(_config(tmp_path, controller_private_key=CONTROLLER_KEY), web3=web3)

        assert isinstance(coordinator.ledger, ChannelLedger)
        assert coordinator.sender is not None
        assert coordinator.ledger.sender is coordinator.sender
        assert coordinator.identity.current_indexer() == INDEXER
        assert coordinator.ledger.checkpoint_policy(make_channel(price=1, remote=6)) is True

        status = coordinator.get_status()
        assert status["account"]["indexer"] == INDEXER
        assert status["tx"]["address"] == coordinator.identity.controller.address
        assert status["channels"]["alive"] == 0
        coordinator.db.close()

    def test_read_only_without_controller_key(self, tmp_path):
        coordinator = Coordinator(_config(tmp_path))

        assert coordinator.sender is None
        assert coordinator.get_status()["tx"] is None
        coordinator.db.close()


def test_main_rejects_invalid_config(monkeypatch):
    for key in ("PAYG_CONFIG", "PAYG_NETWORK_ENDPOINT", "PAYG_NETWORK_QUERY_URL",
                "PAYG_STATE_CHANNEL_ADDRESS"):
        monkeypatch.delenv(key, raising=False)

    assert coordinator_module.main() == 2
