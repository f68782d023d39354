"""
Channel notification publisher.

Fans ``notify(kind, payload)`` out to subscribers (the metered-service
layer, tests). Subscribers may be plain callables or coroutine functions;
a failing subscriber is logged and does not affect the others.
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, Iterable, Optional, Set

from .logs import log
from .models import PaygEvent


class ChannelPublisher:
    """In-process publish/subscribe for channel notifications."""

    def __init__(self):
        self._subscriptions: Dict[str, Dict[str, Any]] = {}
        self._published = 0

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: publisher: {msg}", level=level)

    def subscribe(self, callback: Callable, kinds: Optional[Iterable[PaygEvent]] = None) -> str:
        sub_id = str(uuid.uuid4())
        self._subscriptions[sub_id] = {
            "callback": callback,
            "kinds": set(PaygEvent(k) for k in kinds) if kinds else None,
        }
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        return self._subscriptions.pop(sub_id, None) is not None

    async def notify(self, kind: PaygEvent, payload: Dict[str, Any]) -> int:
        """Deliver a notification; returns the number of subscribers reached."""
        kind = PaygEvent(kind)
        self._published += 1
        delivered = 0
        for sub_id, sub in list(self._subscriptions.items()):
            kinds: Optional[Set[PaygEvent]] = sub["kinds"]
            if kinds is not None and kind not in kinds:
                continue
            try:
                result = sub["callback"](kind, payload)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                self._log(f"subscriber {sub_id[:8]} failed on {kind.value}: {e}", level="warn")
        self._log(f"{kind.value} {payload.get('id', '')} -> {delivered} subscriber(s)", level="debug")
        return delivered

    def get_status(self) -> Dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "published": self._published,
        }
