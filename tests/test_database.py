"""Tests for the payg SQLite store."""

import pytest

from conftest import DEPLOYMENT, INDEXER, make_channel
from payg.database import PaygDatabase
from payg.models import ChannelLabor, ChannelStatus


class TestChannels:

    def test_round_trip_preserves_large_amounts(self, database):
        big = 2 ** 256 - 1
        channel = make_channel(total=big, spent=big - 1, remote=big - 2, onchain=7,
                               last_final=True, terminate_by_indexer=True,
                               last_indexer_sign="0xaa", last_consumer_sign="0xbb")
        database.save_channel(channel)

        stored = database.get_channel("0x1")

        assert stored == channel
        assert stored.total == big

    def test_save_replaces(self, database):
        database.save_channel(make_channel(spent=1))
        database.save_channel(make_channel(spent=2))
        assert database.get_channel("0x1").spent == 2
        assert len(database.list_channels()) == 1

    def test_delete(self, database):
        database.save_channel(make_channel())
        assert database.delete_channel("0x1") is True
        assert database.delete_channel("0x1") is False
        assert database.get_channel("0x1") is None

    def test_list_by_status(self, database):
        database.save_channel(make_channel("0x1", status=ChannelStatus.OPEN))
        database.save_channel(make_channel("0x2", status=ChannelStatus.TERMINATING))
        assert [c.id for c in database.list_channels(ChannelStatus.TERMINATING)] == ["0x2"]

    def test_alive_channels(self, database):
        database.save_channel(make_channel("0x1", status=ChannelStatus.OPEN, expired_at=10))
        database.save_channel(make_channel("0x2", status=ChannelStatus.FINALIZED, expired_at=500))
        database.save_channel(make_channel("0x3", status=ChannelStatus.FINALIZED, expired_at=50))

        assert [c.id for c in database.get_alive_channels(now=100)] == ["0x1", "0x2"]


class TestLaborAndState:

    def test_labor_is_append_only(self, database):
        database.add_channel_labor(ChannelLabor(DEPLOYMENT, INDEXER, 10, 100))
        database.add_channel_labor(ChannelLabor(DEPLOYMENT, INDEXER, 25, 101))
        database.add_channel_labor(ChannelLabor("QmOther", INDEXER, 5, 102))

        assert [labor.total for labor in database.list_channel_labor(DEPLOYMENT)] == [10, 25]
        assert len(database.list_channel_labor()) == 3

    def test_state(self, database):
        assert database.get_state("k") is None
        database.set_state("k", "v1")
        database.set_state("k", "v2")
        assert database.get_state("k") == "v2"
        assert database.get_all_state() == {"k": "v2"}
        database.delete_state("k")
        assert database.get_state("k") is None


def test_in_memory_database():
    db = PaygDatabase(":memory:")
    db.initialize()
    db.save_channel(make_channel())
    assert db.get_channel("0x1") is not None
    db.close()


def test_creates_parent_directory(tmp_path):
    db = PaygDatabase(str(tmp_path / "nested" / "dir" / "payg.db"))
    db.initialize()
    assert (tmp_path / "nested" / "dir" / "payg.db").exists()
    db.close()


@pytest.mark.parametrize("status", list(ChannelStatus))
def test_status_round_trip(database, status):
    database.save_channel(make_channel(status=status))
    assert database.get_channel("0x1").status is status
