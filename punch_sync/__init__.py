"""Offline punch queue and synchronization for the employee portal."""

from .channel import ChannelMessage, ChannelPort, ControlChannel
from .config import CONFIG_SCHEMA, SyncConfig, SyncConfigError, load_config
from .connectivity import ConnectivityMonitor, ConnectivityProbe
from .facade import OfflineSyncFacade, SyncNotification, SyncState, describe_sync_result
from .models import PortalResponse, QueueItem, SyncResult, generate_item_id
from .queue_store import QueueStorageError, QueueStore
from .sync_engine import SyncEngine
from .worker import SyncWorker

__all__ = [
    "CONFIG_SCHEMA",
    "ChannelMessage",
    "ChannelPort",
    "ConnectivityMonitor",
    "ConnectivityProbe",
    "ControlChannel",
    "OfflineSyncFacade",
    "PortalResponse",
    "QueueItem",
    "QueueStorageError",
    "QueueStore",
    "SyncConfig",
    "SyncConfigError",
    "SyncEngine",
    "SyncNotification",
    "SyncResult",
    "SyncState",
    "SyncWorker",
    "describe_sync_result",
    "generate_item_id",
    "load_config",
]
