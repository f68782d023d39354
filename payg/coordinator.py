#!/usr/bin/env python3
"""
payg coordinator

Wires the channel engine together and runs its background loops:
- event subscriber (contract logs -> reconciler)
- one-minute sync scheduler
- allocation reducer (every 5 minutes, optional)
- channel reward collector (daily)

Usage:
    PAYG_CONFIG=/path/to/payg.json payg-coordinator

    # or entirely from the environment
    PAYG_NETWORK_ENDPOINT=https://... \\
    PAYG_NETWORK_QUERY_URL=https://... \\
    PAYG_STATE_CHANNEL_ADDRESS=0x... \\
    PAYG_INDEXER=0x... \\
    payg-coordinator
"""

import asyncio
import signal
from typing import Any, Dict, List, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3

from .account import IndexerIdentity
from .chain import ChainReader
from .config import PaygConfig, load_config
from .contracts import NetworkContracts
from .database import PaygDatabase
from .events import EventSubscriber
from .ledger import ChannelLedger, threshold_checkpoint_policy
from .logs import configure_logging, log
from .network import NetworkQueryClient
from .publisher import ChannelPublisher
from .reconciler import ChannelReconciler
from .rewards import ChannelRewardCollector, RewardReducer
from .scheduler import PeriodicTask, SyncScheduler
from .transactions import TransactionSender


class Coordinator:
    """Owns every engine component for one process."""

    def __init__(self, config: PaygConfig, web3: Optional[AsyncWeb3] = None):
        self.config = config
        self.db = PaygDatabase(config.db_path)
        self.db.initialize()

        self.identity = IndexerIdentity(self.db, config.controller_private_key)
        if config.indexer:
            self.identity.set_indexer(config.indexer)

        self.web3 = web3 or AsyncWeb3(AsyncHTTPProvider(config.network_endpoint))
        self.contracts = NetworkContracts(
            self.web3,
            config.state_channel_address,
            config.staking_allocation_address,
            config.consumer_host_address,
        )
        self.chain = ChainReader(self.contracts, call_timeout=config.chain_call_timeout_seconds)
        self.network = NetworkQueryClient(config.network_query_url, timeout=config.query_timeout_seconds)
        self.publisher = ChannelPublisher()

        self.sender: Optional[TransactionSender] = None
        if self.identity.controller is not None:
            self.sender = TransactionSender(
                self.web3,
                self.identity.controller,
                confirmations=config.tx_confirmations,
                max_retries=config.tx_max_retries,
                backoff_seconds=config.tx_backoff_seconds,
                receipt_timeout=config.tx_receipt_timeout_seconds,
                gas_limit=config.tx_gas_limit,
            )

        self.reconciler = ChannelReconciler(
            self.db, self.identity, self.chain, self.network, self.publisher
        )
        self.ledger = ChannelLedger(
            self.db,
            self.reconciler,
            self.sender,
            self.contracts,
            self.publisher,
            checkpoint_policy=threshold_checkpoint_policy(config.checkpoint_threshold),
        )
        self.events = EventSubscriber(
            self.chain,
            self.reconciler,
            self.db,
            poll_interval=config.event_poll_interval_seconds,
            block_range=config.event_block_range,
            start_block=config.event_start_block,
        )
        self.scheduler = SyncScheduler(
            self.reconciler,
            self.network,
            self.identity,
            self.db,
            interval=config.sync_interval_seconds,
            batch_size=config.sync_batch_size,
        )
        self.reducer = RewardReducer(
            self.identity, self.chain, self.network, self.sender, self.contracts
        )
        self.collector = ChannelRewardCollector(
            self.db,
            self.ledger,
            threshold=config.channel_reward_threshold,
            bypass_seconds=config.reward_bypass_seconds,
        )
        self._tasks: List[PeriodicTask] = []

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: coordinator: {msg}", level=level)

    async def start(self) -> None:
        await self.network.connect()
        self.events.start()
        self.scheduler.start()

        if self.sender is None:
            self._log("no controller key configured, settlement loops disabled", level="warn")
            return
        if self.config.auto_reduce_allocation:
            self._tasks.append(PeriodicTask(
                "reducer", self.config.reduce_interval_seconds, self.reducer.run_once
            ))
        self._tasks.append(PeriodicTask(
            "collector", self.config.reward_collect_interval_seconds, self.collector.run_once
        ))
        for task in self._tasks:
            task.start()
        self._log(f"started for indexer {self.identity.current_indexer() or 'unset'}")

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._tasks = []
        await self.scheduler.stop()
        await self.events.stop()
        await self.network.close()
        self.db.close()
        self._log("stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "account": self.identity.get_info(),
            "channels": self.reconciler.get_status(),
            "events": self.events.get_status(),
            "sync": self.scheduler.get_status(),
            "publisher": self.publisher.get_status(),
            "tx": self.sender.get_status() if self.sender else None,
            "reducer": self.reducer.get_status(),
        }


# =============================================================================
# Main
# =============================================================================

async def run(config: PaygConfig) -> None:
    """Run the coordinator until SIGINT/SIGTERM."""
    coordinator = Coordinator(config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await coordinator.start()
    try:
        await stop_event.wait()
    finally:
        await coordinator.stop()


def main() -> int:
    config = load_config()
    configure_logging(config.log_level)
    errors = config.validate()
    if errors:
        for error in errors:
            log(f"payg: config: {error}", level="error")
        return 2
    log(f"payg: config: {config.to_dict()}", level="debug")
    asyncio.run(run(config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
