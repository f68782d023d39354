"""
payg - pay-as-you-go state channel engine for network indexers.

Keeps the local channel ledger consistent with the state channel contract,
the network indexer's GraphQL view and the signed off-chain updates
received from consumers, and trims runner allocations that exceed stake.
"""

__version__ = "0.1.0"
