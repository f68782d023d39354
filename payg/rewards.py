"""
Reward-side maintenance: allocation reduction and channel reward collection.

RewardReducer
    When a runner's allocated stake (``used``) exceeds its stake
    (``total``), the excess is taken back from each deployment in
    proportion to its allocation. Integer shares are floored and the
    remainder is pushed onto the largest allocations, so the shares always
    sum to the target exactly and no deployment gives up more than it holds.
    The plan survives between passes: a partially applied plan is resumed
    instead of recomputed while the remaining target is unchanged.

ChannelRewardCollector
    Checkpoints open channels whose unsettled amount exceeds a threshold
    (or has been pending too long) and claims terminating channels whose
    termination window has passed.
"""

import time
from typing import Any, Dict, List, Optional

from .logs import log
from .models import AllocationSummary, ChannelStatus, DeploymentReduce, ReduceStatus
from .transactions import TxRequest

DEFAULT_REWARD_BYPASS_SECONDS = 3 * 86400


def compute_reduction_plan(allocations: List[AllocationSummary], used: int,
                           target: int) -> List[DeploymentReduce]:
    """
    Split ``target`` across deployments in proportion to their allocation.

    Args:
        allocations: per-deployment allocated amounts
        used: total allocated amount of the runner
        target: amount to take back (used - total)

    Returns:
        Steps ordered smallest allocation first

    Raises:
        ValueError: if the allocations cannot cover the target
    """
    if target <= 0:
        return []
    if used <= 0:
        raise ValueError("runner has no allocation to reduce")

    ordered = sorted(allocations, key=lambda a: (a.amount, a.deployment_id))
    plan = [
        DeploymentReduce(deployment_id=a.deployment_id, to_reduce=target * a.amount // used)
        for a in ordered
    ]

    rest = target - sum(step.to_reduce for step in plan)
    for i in range(len(ordered) - 1, -1, -1):
        if rest == 0:
            break
        room = ordered[i].amount - plan[i].to_reduce
        if room >= rest:
            plan[i].to_reduce += rest
            rest = 0
            break
        if room > 0:
            plan[i].to_reduce += room
            rest -= room

    if rest != 0:
        raise ValueError(f"allocations cannot cover reduction of {target} ({rest} left)")
    return plan


class RewardReducer:
    """Brings a runner's allocation back under its stake."""

    def __init__(self, identity, chain, network, sender, contracts):
        self.identity = identity
        self.chain = chain
        self.network = network
        self.sender = sender
        self.contracts = contracts

        self.last_plan: List[DeploymentReduce] = []
        self.last_target = 0

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: reducer: {msg}", level=level)

    async def _remove_allocation(self, step: DeploymentReduce, runner: str) -> bool:
        try:
            await self.sender.submit(TxRequest(
                action="remove allocation",
                execute=self.contracts.remove_allocation_tx(step.deployment_id, runner, step.to_reduce),
                estimate_gas=self.contracts.remove_allocation_gas(step.deployment_id, runner, step.to_reduce),
                desc=f"{step.deployment_id} amount={step.to_reduce}",
            ))
            return True
        except Exception as e:
            self._log(f"remove allocation {step.deployment_id} failed: {e}", level="warn")
            return False

    async def reduce_allocation(self) -> Optional[List[DeploymentReduce]]:
        """
        Run one reduction pass.

        Returns:
            The plan that was worked on, or None when nothing had to be done
        """
        indexer = self.identity.current_indexer()
        if not indexer:
            return None
        allocation = await self.chain.runner_allocation(indexer)
        if allocation is None:
            return None

        target = allocation.used - allocation.total
        if target <= 0:
            return None

        if target == self.last_target and self.last_plan:
            plan = self.last_plan
            self._log(f"resuming plan for target {target}", level="debug")
        else:
            summaries = await self.network.allocation_summaries(indexer)
            plan = compute_reduction_plan(summaries, allocation.used, target)
            self._log(
                f"new plan for target {target}: "
                + ", ".join(f"{s.deployment_id}:{s.to_reduce}" for s in plan),
                level="debug",
            )

        self.last_plan = plan
        self.last_target = target

        for step in plan:
            if step.status == ReduceStatus.SUCCESS:
                continue
            if step.to_reduce == 0:
                step.status = ReduceStatus.SUCCESS
                continue
            if not await self._remove_allocation(step, indexer):
                step.status = ReduceStatus.FAILED
                break
            step.status = ReduceStatus.SUCCESS
            self.last_target -= step.to_reduce

        return plan

    async def run_once(self) -> None:
        try:
            await self.reduce_allocation()
        except Exception as e:
            self._log(f"reduction pass failed: {e}", level="error")

    def get_status(self) -> Dict[str, Any]:
        return {
            "last_target": self.last_target,
            "plan": [
                {"deployment_id": s.deployment_id, "to_reduce": str(s.to_reduce), "status": s.status.value}
                for s in self.last_plan
            ],
        }


class ChannelRewardCollector:
    """Settles earned channel rewards on chain."""

    def __init__(self, database, ledger, threshold: int = 0,
                 bypass_seconds: int = DEFAULT_REWARD_BYPASS_SECONDS):
        self.db = database
        self.ledger = ledger
        self.threshold = threshold
        self.bypass_seconds = bypass_seconds
        # channel id -> first time it was seen with unsettled rewards
        self._pending_since: Dict[str, int] = {}

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: collector: {msg}", level=level)

    async def collect_channel_rewards(self, now: Optional[int] = None) -> List[str]:
        """
        Checkpoint open channels with unsettled rewards.

        Returns ids of the channels that were checkpointed.
        """
        now = int(time.time()) if now is None else now
        checkpointed = []
        for channel in self.db.list_channels(ChannelStatus.OPEN):
            unclaimed = channel.unclaimed()
            if unclaimed <= 0:
                self._pending_since.pop(channel.id, None)
                continue

            since = self._pending_since.setdefault(channel.id, now)
            if unclaimed <= self.threshold and now - since < self.bypass_seconds:
                self._log(
                    f"bypassed {unclaimed} on {channel.id} "
                    f"({(now - since) / 86400:.2f}/{self.bypass_seconds / 86400:.2f} days)",
                    level="debug",
                )
                continue

            try:
                await self.ledger.checkpoint(channel.id)
                self._pending_since.pop(channel.id, None)
                checkpointed.append(channel.id)
            except Exception as e:
                self._log(f"checkpoint of {channel.id} failed: {e}", level="error")
        return checkpointed

    async def close_expired_channels(self, now: Optional[int] = None) -> List[str]:
        """Claim terminating channels past their termination window."""
        now = int(time.time()) if now is None else now
        claimed = []
        for channel in self.db.list_channels(ChannelStatus.TERMINATING):
            if channel.terminated_at >= now:
                continue
            try:
                if await self.ledger.claim(channel.id, now=now):
                    claimed.append(channel.id)
            except Exception as e:
                self._log(f"claim of {channel.id} failed: {e}", level="error")
        return claimed

    async def run_once(self, now: Optional[int] = None) -> Dict[str, List[str]]:
        result = {"checkpointed": [], "claimed": []}
        try:
            result["checkpointed"] = await self.collect_channel_rewards(now)
            result["claimed"] = await self.close_expired_channels(now)
        except Exception as e:
            self._log(f"collection pass failed: {e}", level="error")
        return result
