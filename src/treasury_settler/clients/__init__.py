from __future__ import annotations

from .quorum import (
    Confirmation,
    ConnectionState,
    Endpoint,
    EndpointPool,
    EndpointResponse,
    FeeEstimate,
    QuorumClient,
    TransactionHandle,
    resolve_quorum,
)

__all__ = [
    "Confirmation",
    "ConnectionState",
    "Endpoint",
    "EndpointPool",
    "EndpointResponse",
    "FeeEstimate",
    "QuorumClient",
    "TransactionHandle",
    "resolve_quorum",
]
