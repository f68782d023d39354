"""
Indexer identity for the payg engine.

The indexer address can change at runtime (the operator re-registers or
switches accounts), so it is read from the store on every call and never
cached by consumers. The controller account signs settlement transactions
on the indexer's behalf.
"""

from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .database import PaygDatabase
from .logs import log
from .models import normalize_address

INDEXER_STATE_KEY = "account:indexer"


class IndexerIdentity:
    """Current indexer address plus the controller signing account."""

    def __init__(self, database: PaygDatabase, controller_key: str = ""):
        self.db = database
        self._controller: Optional[LocalAccount] = None
        if controller_key:
            self._controller = Account.from_key(controller_key)

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: account: {msg}", level=level)

    def current_indexer(self) -> Optional[str]:
        value = self.db.get_state(INDEXER_STATE_KEY)
        return value or None

    def set_indexer(self, indexer: str) -> str:
        address = normalize_address(indexer)
        if not address:
            raise ValueError(f"invalid indexer address: {indexer!r}")
        previous = self.current_indexer()
        self.db.set_state(INDEXER_STATE_KEY, address)
        if previous != address:
            self._log(f"indexer set to {address} (was {previous or 'unset'})")
        return address

    def clear_indexer(self) -> None:
        self.db.delete_state(INDEXER_STATE_KEY)
        self._log("indexer cleared")

    def is_own(self, indexer: Optional[str]) -> bool:
        """True when ``indexer`` is the current indexer address."""
        current = self.current_indexer()
        return bool(current) and normalize_address(indexer) == current

    @property
    def controller(self) -> Optional[LocalAccount]:
        return self._controller

    def get_info(self) -> Dict[str, Any]:
        return {
            "indexer": self.current_indexer(),
            "controller": self._controller.address if self._controller else None,
        }
