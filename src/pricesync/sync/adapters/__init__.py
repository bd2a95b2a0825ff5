"""Adapters for the two systems being kept in sync.

Provides abstract interfaces with concrete implementations:
- RemoteAdapter / RestletRemoteAdapter: Remote ERP record updates over HTTP
- SourceStore / SqlSourceStore: Source catalog reads, writes and entity links
"""

from src.pricesync.sync.adapters.remote import RemoteAdapter, RemoteUpdateResult, UpdateChannel
from src.pricesync.sync.adapters.restlet import RestletRemoteAdapter
from src.pricesync.sync.adapters.source import SourceStore
from src.pricesync.sync.adapters.sql import SqlSourceStore

__all__ = [
    "RemoteAdapter",
    "RemoteUpdateResult",
    "UpdateChannel",
    "RestletRemoteAdapter",
    "SourceStore",
    "SqlSourceStore",
]
