"""Tests for channel models and id/address helpers."""

import pytest

from conftest import DEPLOYMENT, make_channel
from payg.models import (
    ZERO_ADDRESS,
    ChannelStatus,
    NetworkChannel,
    advance_status,
    bytes32_to_cid,
    cid_to_bytes32,
    is_canonical_channel_id,
    normalize_address,
    parse_timestamp,
    to_channel_id,
)


class TestChannelIds:

    @pytest.mark.parametrize("value,expected", [
        ("0x1", "0x1"),
        ("0x0001", "0x1"),
        ("0xAB12", "0xab12"),
        ("43794", "0xab12"),
        (255, "0xff"),
        (0, "0x0"),
    ])
    def test_normalizes(self, value, expected):
        assert to_channel_id(value) == expected

    @pytest.mark.parametrize("value", ["", "0xzz", "channel", -1, True])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            to_channel_id(value)

    def test_canonical_form(self):
        assert is_canonical_channel_id("0xab12")
        assert is_canonical_channel_id("0x0")
        assert not is_canonical_channel_id("0x01")
        assert not is_canonical_channel_id("0xAB")
        assert not is_canonical_channel_id("12")
        assert not is_canonical_channel_id("")


class TestHelpers:

    def test_normalize_address(self):
        assert normalize_address("0x" + "AB" * 20) == "0x" + "ab" * 20
        assert normalize_address(ZERO_ADDRESS) == ""
        assert normalize_address(None) == ""

    def test_cid_conversion(self):
        assert DEPLOYMENT.startswith("Qm")
        assert cid_to_bytes32(DEPLOYMENT) == bytes(range(32))
        assert bytes32_to_cid("0x" + bytes(range(32)).hex()) == DEPLOYMENT

    def test_cid_rejects_other_hashes(self):
        with pytest.raises(ValueError):
            cid_to_bytes32("3mJr7AoUXx2Wqd")

    def test_parse_timestamp(self):
        assert parse_timestamp(None) == 0
        assert parse_timestamp(1700000000) == 1700000000
        assert parse_timestamp("1700000000") == 1700000000
        assert parse_timestamp("2033-05-18T03:33:20Z") == 2_000_000_000
        assert parse_timestamp("2033-05-18T03:33:20+00:00") == 2_000_000_000

    def test_status_only_advances(self):
        assert advance_status(ChannelStatus.OPEN, ChannelStatus.TERMINATING) == ChannelStatus.TERMINATING
        assert advance_status(ChannelStatus.FINALIZED, ChannelStatus.OPEN) == ChannelStatus.FINALIZED
        assert advance_status(ChannelStatus.TERMINATING, ChannelStatus.OPEN) == ChannelStatus.TERMINATING

    def test_status_from_name(self):
        assert ChannelStatus.from_name("terminating") == ChannelStatus.TERMINATING
        with pytest.raises(KeyError):
            ChannelStatus.from_name("closed")


class TestChannel:

    def test_alive(self):
        assert make_channel(status=ChannelStatus.OPEN, expired_at=10).is_alive(now=100)
        assert make_channel(status=ChannelStatus.FINALIZED, expired_at=200).is_alive(now=100)
        assert not make_channel(status=ChannelStatus.FINALIZED, expired_at=50).is_alive(now=100)

    def test_to_dict_uses_decimal_strings(self):
        big = 2 ** 255
        data = make_channel(total=big, remote=600).to_dict()

        assert data["total"] == str(big)
        assert data["remote"] == "600"
        assert data["status"] == "OPEN"
        assert data["id"] == "0x1"

    def test_unclaimed(self):
        assert make_channel(onchain=200, remote=500).unclaimed() == 300

    def test_network_channel_from_graphql(self):
        channel = NetworkChannel.from_graphql({
            "id": "0x0A",
            "status": "FINALIZED",
            "indexer": "0x" + "A1" * 20,
            "consumer": None,
            "total": "5",
            "spent": None,
            "deployment": None,
        })

        assert channel.id == "0xa"
        assert channel.status == ChannelStatus.FINALIZED
        assert channel.consumer == ""
        assert channel.spent == 0
        assert channel.deployment_id == ""

