"""Client package for the WorkforceOne offline sync core.

Provides the outbox, connectivity monitoring, the sync engine and patrol tracking.
"""
from .connectivity import ConnectivityMonitor
from .outbox import OutboxQueue
from .patrol_service import PatrolService
from .remote_api import RemoteApiError, SupabaseClient
from .sync_service import SyncService, load_config, save_config

__all__ = [
    "ConnectivityMonitor", "OutboxQueue", "PatrolService", "RemoteApiError",
    "SupabaseClient", "SyncService", "load_config", "save_config",
]
