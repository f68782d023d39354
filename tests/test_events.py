"""Tests for event decoding and the polling subscriber."""

import asyncio

import pytest
from eth_abi import encode as abi_encode

from conftest import CONSUMER, DEPLOYMENT, INDEXER
from payg.chain import decode_open_callback
from payg.events import (
    EVENT_CURSOR_KEY,
    ChannelExtended,
    ChannelFinalized,
    ChannelLaborRecorded,
    ChannelOpened,
    ChannelTerminated,
    EventSubscriber,
    decode_event,
)
from payg.models import ChannelStatus

CHECKSUM_INDEXER = "0x" + "A1" * 20


def _open_log(block, channel_id=5, indexer=CHECKSUM_INDEXER):
    return {
        "event": "ChannelOpen",
        "blockNumber": block,
        "args": {
            "channelId": channel_id,
            "indexer": indexer,
            "consumer": CONSUMER,
            "total": 1000,
            "price": 10,
            "expiredAt": 5000,
            "deploymentId": bytes(range(32)),
            "callback": b"",
        },
    }


# =============================================================================
# DECODING
# =============================================================================

class TestDecodeEvent:

    def test_channel_open(self):
        event = decode_event(_open_log(12))

        assert isinstance(event, ChannelOpened)
        assert event.channel_id == "0x5"
        assert event.indexer == INDEXER
        assert event.deployment_id == DEPLOYMENT
        assert event.callback == b""
        assert event.block_number == 12

    def test_terminate_and_finalize(self):
        terminated = decode_event({
            "event": "ChannelTerminate",
            "blockNumber": 3,
            "args": {"channelId": 16, "spent": 400, "terminatedAt": 9000, "terminateByIndexer": True},
        })
        finalized = decode_event({
            "event": "ChannelFinalize",
            "blockNumber": 4,
            "args": {"channelId": 16, "total": 1000, "remain": 600},
        })

        assert terminated == ChannelTerminated("0x10", 400, 9000, True, 3)
        assert finalized == ChannelFinalized("0x10", 1000, 600, 4)

    def test_extend_and_labor(self):
        extended = decode_event({
            "event": "ChannelExtend", "blockNumber": 1,
            "args": {"channelId": 1, "expiredAt": 7000},
        })
        labor = decode_event({
            "event": "ChannelLabor", "blockNumber": 2,
            "args": {"deploymentId": bytes(range(32)), "indexer": CHECKSUM_INDEXER, "amount": 77},
        })

        assert extended == ChannelExtended("0x1", 7000, 1)
        assert labor == ChannelLaborRecorded(DEPLOYMENT, INDEXER, 77, 2)

    def test_untracked_event(self):
        assert decode_event({"event": "ChannelPriceChanged", "args": {}}) is None

    def test_malformed_event_raises(self):
        with pytest.raises(KeyError):
            decode_event({"event": "ChannelFund", "args": {"channelId": 1}})


class TestOpenCallback:

    def test_agent_callback_carries_consumer(self):
        callback = abi_encode(["address"], [CONSUMER])
        assert decode_open_callback(callback) == CONSUMER

    def test_empty_or_garbage_callback(self):
        assert decode_open_callback(b"") is None
        assert decode_open_callback(b"\x01\x02\x03") is None


# =============================================================================
# SUBSCRIBER
# =============================================================================

class StubReconciler:
    def __init__(self, fail=False):
        self.applied = []
        self.fail = fail

    async def apply_event(self, event):
        self.applied.append(event)
        if self.fail:
            raise RuntimeError("handler blew up")


class TestPolling:

    def test_first_poll_starts_at_head(self, chain, database):
        chain.head = 500
        subscriber = EventSubscriber(chain, StubReconciler(), database)

        assert asyncio.run(subscriber.poll_once()) == 0
        assert subscriber.last_block() == 500
        assert chain.event_queries == []

    def test_start_block_is_scanned_in_chunks(self, chain, database):
        chain.head = 4500
        chain.logs = [_open_log(150), _open_log(4200, channel_id=6)]
        subscriber = EventSubscriber(chain, StubReconciler(), database,
                                     block_range=2000, start_block=100)

        queued = asyncio.run(subscriber.poll_once())

        assert queued == 2
        assert chain.event_queries == [(100, 2099), (2100, 4099), (4100, 4500)]
        assert database.get_state(EVENT_CURSOR_KEY) == "4500"

    def test_cursor_resumes_after_restart(self, chain, database):
        database.set_state(EVENT_CURSOR_KEY, "900")
        chain.head = 950
        subscriber = EventSubscriber(chain, StubReconciler(), database)

        asyncio.run(subscriber.poll_once())

        assert chain.event_queries == [(901, 950)]
        assert subscriber.last_block() == 950

    def test_failed_range_keeps_cursor(self, chain, database):
        database.set_state(EVENT_CURSOR_KEY, "10")
        chain.head = 20

        async def unavailable(from_block, to_block):
            return None

        chain.get_events = unavailable
        subscriber = EventSubscriber(chain, StubReconciler(), database)

        assert asyncio.run(subscriber.poll_once()) == 0
        assert subscriber.last_block() == 10

    def test_unreachable_head(self, chain, database):
        chain.head = None
        subscriber = EventSubscriber(chain, StubReconciler(), database)
        assert asyncio.run(subscriber.poll_once()) == 0
        assert subscriber.last_block() is None

    def test_malformed_logs_are_skipped(self, chain, database):
        database.set_state(EVENT_CURSOR_KEY, "0")
        chain.head = 10
        chain.logs = [
            {"event": "ChannelFund", "blockNumber": 2, "args": {}},
            _open_log(3),
        ]
        subscriber = EventSubscriber(chain, StubReconciler(), database)

        assert asyncio.run(subscriber.poll_once()) == 1


class TestDispatch:

    def test_queued_events_reach_the_reconciler(self, chain, database, reconciler):
        database.set_state(EVENT_CURSOR_KEY, "0")
        chain.head = 10
        chain.logs = [_open_log(3)]
        subscriber = EventSubscriber(chain, reconciler, database)

        async def scenario():
            await subscriber.poll_once()
            return await subscriber.process_inbound()

        assert asyncio.run(scenario()) == 1
        stored = database.get_channel("0x5")
        assert stored.status == ChannelStatus.OPEN
        assert stored.total == 1000
        assert subscriber.get_status()["processed"] == 1

    def test_handler_failures_are_counted(self, chain, database):
        subscriber = EventSubscriber(chain, StubReconciler(fail=True), database)
        subscriber.inject_event(ChannelExtended("0x1", 10))
        subscriber.inject_event(ChannelExtended("0x2", 10))

        assert asyncio.run(subscriber.process_inbound()) == 2
        status = subscriber.get_status()
        assert status["failed"] == 2
        assert status["queue_size"] == 0

    def test_full_queue_drops_events(self, chain, database):
        class SmallSubscriber(EventSubscriber):
            QUEUE_MAX_ITEMS = 2

        subscriber = SmallSubscriber(chain, StubReconciler(), database)

        results = [subscriber.inject_event(ChannelExtended(hex(i), 10)) for i in range(3)]

        assert results == [True, True, False]
        assert subscriber.get_status()["dropped"] == 1

    def test_process_inbound_respects_limit(self, chain, database):
        reconciler = StubReconciler()
        subscriber = EventSubscriber(chain, reconciler, database)
        for i in range(5):
            subscriber.inject_event(ChannelExtended(hex(i), 10))

        assert asyncio.run(subscriber.process_inbound(max_events=3)) == 3
        assert len(reconciler.applied) == 3

    def test_start_and_stop(self, chain, database):
        chain.head = 0
        subscriber = EventSubscriber(chain, StubReconciler(), database, poll_interval=0.01)

        async def scenario():
            assert subscriber.start() is True
            await asyncio.sleep(0.03)
            running = subscriber.get_status()["running"]
            await subscriber.stop()
            return running

        assert asyncio.run(scenario()) is True
        assert subscriber.get_status()["running"] is False
