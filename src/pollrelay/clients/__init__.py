"""
Client module for the poll relay.

Signs votes and claims locally with the voter's key and submits them to a
relay server, so the voter never needs gas.
"""

from .http_client import RelayClient, RelayClientError

__all__ = ["RelayClient", "RelayClientError"]
