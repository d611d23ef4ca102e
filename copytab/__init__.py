"""Copytab offline-first client.

Reads and writes projects, documents and knowledge-base entries locally
and reconciles them with the remote store when connectivity returns.
"""

from copytab._network import NetworkObserver
from copytab._sync import SyncEngine, SyncResult, SyncState, SyncStats
from copytab.completion import CompletionCache, CompletionClient, CompletionRequest
from copytab.errors import (
    CompletionError,
    ConfigurationError,
    CopytabError,
    GatewayError,
    GatewayRejected,
    GatewayUnreachable,
    StorageUnavailable,
)
from copytab.gateway import HttpGateway, RemoteGateway
from copytab.local_store import LocalStore
from copytab.models import QueueOperation, SyncStatus
from copytab.offline_manager import OfflineManager

__version__ = "0.1.0"
__all__ = [
    "CompletionCache",
    "CompletionClient",
    "CompletionError",
    "CompletionRequest",
    "ConfigurationError",
    "CopytabError",
    "GatewayError",
    "GatewayRejected",
    "GatewayUnreachable",
    "HttpGateway",
    "LocalStore",
    "NetworkObserver",
    "OfflineManager",
    "QueueOperation",
    "RemoteGateway",
    "StorageUnavailable",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "SyncStats",
    "SyncStatus",
]
