"""
GraphQL client for the network indexer.

The network indexer exposes an eventually consistent view of state channels
and allocations. Every query is bounded by ``timeout`` (20 s by default);
errors and timeouts are logged and degrade to an empty result. Only a
``strict`` channel lookup raises, for callers that must not mistake an
outage for a missing record.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from .logs import log
from .models import AllocationSummary, NetworkChannel

DEFAULT_QUERY_TIMEOUT = 20.0

CHANNEL_FIELDS = """
    id
    status
    indexer
    consumer
    agent
    total
    spent
    price
    expiredAt
    terminatedAt
    terminateByIndexer
    isFinal
    deployment { id }
"""

GET_STATE_CHANNELS_BY_INDEXER = """
query GetStateChannels($indexer: String!, $status: [ChannelStatus!]) {
  stateChannels(filter: { indexer: { equalTo: $indexer }, status: { in: $status } }) {
    totalCount
    nodes {%s}
  }
}
""" % CHANNEL_FIELDS

GET_STATE_CHANNEL = """
query GetStateChannel($id: String!) {
  stateChannel(id: $id) {%s}
}
""" % CHANNEL_FIELDS

GET_INDEXER_ALLOCATION_SUMMARIES = """
query GetIndexerAllocationSummaries($indexer: String!) {
  indexerAllocationSummaries(filter: { indexerId: { equalTo: $indexer } }) {
    nodes {
      deploymentId
      totalAmount
    }
  }
}
"""

ALIVE_STATUSES = ["OPEN", "TERMINATING"]


class NetworkQueryError(Exception):
    """GraphQL response carried errors or no data."""


class NetworkQueryClient:
    """Time-bounded GraphQL queries with empty fallbacks."""

    def __init__(self, url: str, timeout: float = DEFAULT_QUERY_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self.client = client

    def _log(self, msg: str, level: str = "info") -> None:
        log(f"payg: network: {msg}", level=level)

    async def connect(self):
        """Initialize the HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if not self.client:
            await self.connect()
        response = await self.client.post(
            self.url,
            json={"query": query, "variables": variables},
        )
        response.raise_for_status()
        body = response.json()
        if body.get("errors"):
            raise NetworkQueryError(str(body["errors"]))
        data = body.get("data")
        if data is None:
            raise NetworkQueryError("response has no data")
        return data

    async def _bounded_query(self, query: str, variables: Dict[str, Any],
                             desc: str, strict: bool = False) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(self._query(query, variables), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            failure, reason = e, f"timed out after {self.timeout}s"
        except httpx.HTTPError as e:
            failure, reason = e, f"http error: {e}"
        except (NetworkQueryError, ValueError) as e:
            failure, reason = e, f"bad response: {e}"
        self._log(f"{desc} {reason}", level="warn")
        if strict:
            raise NetworkQueryError(f"{desc} {reason}") from failure
        return None

    @staticmethod
    def _parse_channel(node: Dict[str, Any]) -> Optional[NetworkChannel]:
        try:
            return NetworkChannel.from_graphql(node)
        except (KeyError, ValueError, TypeError):
            return None

    async def list_channels_by_indexer(self, indexer: str) -> List[NetworkChannel]:
        """OPEN and TERMINATING channels reported for ``indexer``."""
        data = await self._bounded_query(
            GET_STATE_CHANNELS_BY_INDEXER,
            {"indexer": indexer, "status": ALIVE_STATUSES},
            f"stateChannels({indexer})",
        )
        if not data:
            return []
        nodes = ((data.get("stateChannels") or {}).get("nodes")) or []
        channels = []
        for node in nodes:
            channel = self._parse_channel(node)
            if channel is None:
                self._log(f"skipping malformed channel node: {node.get('id')}", level="debug")
                continue
            channels.append(channel)
        return channels

    async def get_channel(self, channel_id: str, strict: bool = False) -> Optional[NetworkChannel]:
        """
        Network record for ``channel_id``; None if the indexer has none.

        With ``strict`` a failed query raises NetworkQueryError instead of
        reading as a missing record.
        """
        data = await self._bounded_query(
            GET_STATE_CHANNEL, {"id": channel_id}, f"stateChannel({channel_id})", strict=strict
        )
        if not data or not data.get("stateChannel"):
            return None
        return self._parse_channel(data["stateChannel"])

    async def allocation_summaries(self, indexer: str) -> List[AllocationSummary]:
        data = await self._bounded_query(
            GET_INDEXER_ALLOCATION_SUMMARIES,
            {"indexer": indexer},
            f"indexerAllocationSummaries({indexer})",
        )
        if not data:
            return []
        nodes = ((data.get("indexerAllocationSummaries") or {}).get("nodes")) or []
        summaries = []
        for node in nodes:
            try:
                summaries.append(AllocationSummary(
                    deployment_id=node["deploymentId"],
                    amount=int(node["totalAmount"]),
                ))
            except (KeyError, ValueError, TypeError):
                self._log(f"skipping malformed allocation node: {node}", level="debug")
        return summaries
