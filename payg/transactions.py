"""
Serialized transaction submission.

All settlement transactions of one process go through a single
TransactionSender: the per-instance asyncio.Lock keeps one transaction in
flight at a time (nonces stay ordered), each submission is retried a
bounded number of times with exponential backoff, and success means the
receipt is buried under the configured confirmation depth.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3

from .logs import log

DEFAULT_CONFIRMATIONS = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 60.0
DEFAULT_GAS_LIMIT = 1000000
CONFIRMATION_POLL_SECONDS = 2.0


class TransactionError(RuntimeError):
    """A transaction could not be settled after all retries."""

    def __init__(self, action: str, message: str):
        super().__init__(f"{action}: {message}")
        self.action = action


@dataclass
class TxRequest:
    """
    One settlement action.

    ``execute(overrides)`` builds the unsigned transaction; the optional
    ``estimate_gas(overrides)`` replaces the default gas limit.
    """
    action: str
    execute: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
    estimate_gas: Optional[Callable[[Dict[str, Any]], Awaitable[int]]] = None
    confirmations: Optional[int] = None
    desc: str = ""


class TransactionSender:
    """Signs, submits and confirms transactions one at a time."""

    def __init__(self, web3: AsyncWeb3, account: LocalAccount,
                 confirmations: int = DEFAULT_CONFIRMATIONS,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
                 receipt_timeout: float = 300,
                 gas_limit: int = DEFAULT_GAS_LIMIT,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.web3 = web3
        self.account = account
        self.confirmations = confirmations
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.receipt_timeout = receipt_timeout
        self.gas_limit = gas_limit
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._stats = {"submitted": 0, "succeeded": 0, "failed": 0, "retries": 0}

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: tx: {msg}", level=level)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.backoff_seconds * (2 ** attempt), MAX_BACKOFF_SECONDS)

    async def submit(self, request: TxRequest) -> Dict[str, Any]:
        """
        Submit a transaction and wait for it to settle.

        Returns:
            The transaction receipt

        Raises:
            TransactionError: after ``max_retries`` failed retries
        """
        async with self._lock:
            self._stats["submitted"] += 1
            attempt = 0
            while True:
                try:
                    self._log(f"{request.action}: PROCESSING {request.desc}".rstrip())
                    receipt = await self._send_once(request)
                    self._log(f"{request.action}: SUCCEED")
                    self._stats["succeeded"] += 1
                    return receipt
                except Exception as e:
                    if attempt >= self.max_retries:
                        self._stats["failed"] += 1
                        self._log(f"{request.action}: FAILED {e}", level="warn")
                        raise TransactionError(request.action, str(e)) from e
                    delay = self.backoff_delay(attempt)
                    self._stats["retries"] += 1
                    self._log(f"{request.action}: RETRY in {delay:.1f}s ({e})", level="warn")
                    await self._sleep(delay)
                    attempt += 1

    async def get_overrides(self) -> Dict[str, Any]:
        gas_price = await self.web3.eth.gas_price
        nonce = await self.web3.eth.get_transaction_count(self.account.address, "pending")
        return {
            "from": self.account.address,
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": self.gas_limit,
        }

    async def _send_once(self, request: TxRequest) -> Dict[str, Any]:
        overrides = await self.get_overrides()
        if request.estimate_gas is not None:
            overrides["gas"] = int(await request.estimate_gas(overrides))
        tx = await request.execute(overrides)
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self.web3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout
        )
        if receipt.get("status") == 0:
            raise TransactionError(request.action, f"reverted in block {receipt.get('blockNumber')}")
        confirmations = self.confirmations if request.confirmations is None else request.confirmations
        await self._wait_confirmations(receipt["blockNumber"], confirmations)
        return receipt

    async def _wait_confirmations(self, block_number: int, confirmations: int) -> None:
        if confirmations <= 1:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        while True:
            head = await self.web3.eth.block_number
            if head - block_number + 1 >= confirmations:
                return
            if loop.time() >= deadline:
                raise asyncio.TimeoutError(
                    f"{confirmations} confirmations not reached for block {block_number}"
                )
            await self._sleep(CONFIRMATION_POLL_SECONDS)

    def get_status(self) -> Dict[str, Any]:
        return {
            "locked": self._lock.locked(),
            "address": self.account.address,
            **self._stats,
        }
