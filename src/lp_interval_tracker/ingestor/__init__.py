"""Ingestion layer - Ledger events and entity metadata at the engine boundary."""

from lp_interval_tracker.ingestor.chain import ChainClient, ChainClientError, RPCError
from lp_interval_tracker.ingestor.models import (
    Amounts,
    EventKind,
    LedgerEvent,
    MalformedEventError,
)
from lp_interval_tracker.ingestor.resolver import (
    CachedMetadataResolver,
    ChainMetadataResolver,
    MetadataResolutionError,
    MetadataResolver,
    StaticMetadataResolver,
)
from lp_interval_tracker.ingestor.source import JsonlEventSource

__all__ = [
    "Amounts",
    "CachedMetadataResolver",
    "ChainClient",
    "ChainClientError",
    "ChainMetadataResolver",
    "EventKind",
    "JsonlEventSource",
    "LedgerEvent",
    "MalformedEventError",
    "MetadataResolutionError",
    "MetadataResolver",
    "RPCError",
    "StaticMetadataResolver",
]
