"""
Outbox sync service for the WorkforceOne offline client.
Drains queued mutations against the remote API in an offline-first manner.
"""

import json
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from wfo_client.connectivity import ConnectivityMonitor
from wfo_client.handlers import ActionDispatcher, HandlerResult
from wfo_client.outbox import OutboxQueue
from wfo_client.remote_api import RemoteApiError, SupabaseClient
from wfo_shared.local_store import LocalStore, StorageError
from wfo_shared.logging_config import get_sync_logger
from wfo_shared.models import (ActionType, OutboxAction, StorageStats,
                               SyncConfig, SyncResult, SyncStatus)
from wfo_shared.utils import isoformat, to_int_optional, utc_now

logger = get_sync_logger()

SKIPPED_MESSAGE = 'Sync already in progress or offline'

# settings key -> SyncConfig field
CONFIG_KEYS = (
    'supabase_url', 'api_key', 'access_token', 'sync_interval', 'timeout',
    'max_retries', 'connection_check_interval', 'location_interval', 'location_queue_limit',
)


def run_in_thread(target: Callable[[], Any]) -> threading.Thread:
    """Default background runner: a daemon thread per trigger"""
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def load_config(store: LocalStore) -> SyncConfig:
    """Load sync configuration from the settings table"""
    defaults = SyncConfig()
    values: Dict[str, Any] = {}
    for key in CONFIG_KEYS:
        default = getattr(defaults, key)
        raw = store.get_setting(key)
        if isinstance(default, int):
            parsed = to_int_optional(raw)
            values[key] = default if parsed is None else parsed
        else:
            values[key] = raw if raw is not None else default
    return SyncConfig.from_dict(values)


def save_config(store: LocalStore, config: SyncConfig):
    for key in CONFIG_KEYS:
        store.set_setting(key, str(getattr(config, key)))


class SyncService(QObject):
    """
    Sync engine that handles:
    - Draining the outbox sequentially, one pass at a time
    - Retry bookkeeping per action
    - Periodic and connectivity-triggered passes
    - Reference data download for offline use
    """

    sync_status_changed = pyqtSignal(dict)  # Emits SyncStatus dicts
    sync_finished = pyqtSignal(dict)        # Emits SyncResult dicts after each pass

    def __init__(self, store: LocalStore, api: Optional[SupabaseClient] = None,
                 monitor: Optional[ConnectivityMonitor] = None,
                 config: Optional[SyncConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 background_runner: Optional[Callable[[Callable[[], Any]], Any]] = None,
                 parent=None):
        super().__init__(parent)

        self.store = store
        self.config = config or load_config(store)
        self.api = api or SupabaseClient(self.config)
        self._clock = clock or utc_now
        self._run_in_background = background_runner or run_in_thread

        self.monitor = monitor or ConnectivityMonitor(
            probe=self._probe_backend,
            check_interval=self.config.connection_check_interval
        )
        self.outbox = OutboxQueue(store, max_retries=self.config.max_retries, clock=self._clock)
        self.dispatcher = ActionDispatcher(self.api, clock=self._clock)

        self.is_running = False
        self.is_syncing = False
        self.last_error: Optional[str] = None

        # Single-flight gate for sync passes
        self._sync_lock = threading.Lock()

        self.sync_timer = QTimer(self)
        self.sync_timer.timeout.connect(self._trigger_periodic_sync)

        self.monitor.went_online.connect(self._on_went_online)
        self.monitor.online_changed.connect(lambda _online: self._emit_status())

    # Configuration and lifecycle
    def _probe_backend(self) -> bool:
        if not self.is_configured():
            return False
        return self.api.health()

    def is_configured(self) -> bool:
        """Check if sync service is properly configured"""
        return bool(self.config.supabase_url and self.config.api_key)

    def update_config(self, config: SyncConfig):
        """Persist new configuration and restart if the service was running"""
        was_running = self.is_running
        if was_running:
            self.stop()

        self.config = config
        save_config(self.store, config)
        self.outbox.max_retries = config.max_retries
        if hasattr(self.api, 'apply_credentials'):
            self.api.apply_credentials(config)
        self.monitor.set_check_interval(config.connection_check_interval)

        logger.info(f"Sync configuration updated: {config.supabase_url}")

        if was_running:
            self.start()

    def start(self) -> bool:
        """Start periodic syncing and connectivity monitoring"""
        if not self.is_configured():
            logger.info("Supabase URL or API key not configured, sync service not started")
            return False

        self._recover_interrupted()
        self.is_running = True

        self.sync_timer.start(self.config.sync_interval * 1000)
        self.monitor.start()

        if self.monitor.is_online:
            self._run_in_background(self._background_sync)

        logger.info("Sync service started")
        return True

    def _recover_interrupted(self):
        """Reset actions stranded in `syncing`, unless a live pass owns them"""
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Sync pass in progress, skipping interrupted-action recovery")
            return
        try:
            self.outbox.recover_interrupted()
        finally:
            self._sync_lock.release()

    def stop(self):
        """Stop timers; a pass already running finishes its snapshot"""
        self.is_running = False
        self.sync_timer.stop()
        self.monitor.stop()
        logger.info("Sync service stopped")

    # Triggers
    def _trigger_periodic_sync(self):
        if self.monitor.is_online and not self.is_syncing:
            self._run_in_background(self._background_sync)

    def _on_went_online(self):
        logger.info("Device came online, triggering sync...")
        self._run_in_background(self._background_sync)

    def _background_sync(self):
        try:
            self.sync_data()
        except Exception as e:
            logger.error(f"Background sync error: {e}")

    # Sync pass
    def sync_data(self) -> SyncResult:
        """Run one sync pass over the current pending snapshot.

        Returns immediately with a skipped result when offline or when another
        pass holds the gate. Only a failure to read the queue itself raises.
        """
        if not self.monitor.is_online:
            logger.debug("sync_data: offline, skipping")
            return SyncResult(errors=[SKIPPED_MESSAGE], skipped=True)

        if not self._sync_lock.acquire(blocking=False):
            logger.debug("sync_data: already syncing")
            return SyncResult(errors=[SKIPPED_MESSAGE], skipped=True)

        result = SyncResult()
        try:
            self.is_syncing = True
            self._emit_status()
            logger.info("Starting sync process...")

            actions = self.outbox.pending_and_failed()
            logger.info(f"Found {len(actions)} pending actions to sync")

            for action in actions:
                self._sync_action(action, result)

            pruned = self.outbox.prune_completed()
            logger.debug(f"Pruned {pruned} completed actions")

            self.store.set_last_sync_time(isoformat(self._clock()))
            self.last_error = None

            logger.info(f"Sync completed: {result.success} success, {result.failed} failed")
            self.sync_finished.emit(result.to_dict())
            return result

        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Sync process error: {e}")
            raise

        finally:
            self.is_syncing = False
            self._sync_lock.release()
            self._emit_status()

    def _sync_action(self, action: OutboxAction, result: SyncResult):
        """Process one action; every outcome is folded into result"""
        try:
            self.outbox.mark_syncing(action.id)
        except StorageError as e:
            logger.error(f"Could not mark action {action.id} as syncing: {e}")
            self._count_failure(action, str(e), result)
            return

        logger.info(f"Syncing action {action.id} ({action.type.value})...")
        outcome: HandlerResult = self.dispatcher.dispatch(action)

        try:
            if outcome.success:
                self.outbox.mark_completed(action.id)
                result.success += 1
                logger.info(f"Successfully synced action: {action.id}")
                return

            logger.error(f"Sync failed for action {action.id}: {outcome.error}")
            logger.debug(f"Action data: {json.dumps(action.data, default=str)}")
            self.outbox.record_failure(action, outcome.error or 'Unknown sync error')
            error = outcome.error

        except StorageError as e:
            # Status stays as last persisted; the next pass or restart picks it up
            logger.error(f"Could not record outcome of action {action.id}: {e}")
            error = outcome.error or str(e)

        self._count_failure(action, error, result)

    @staticmethod
    def _count_failure(action: OutboxAction, error: Optional[str], result: SyncResult):
        result.failed += 1
        result.errors.append(f"{action.type.value} ({action.id}): {error}")

    def force_sync(self) -> bool:
        """User-initiated pass; True when nothing failed"""
        if not self.monitor.is_online:
            logger.info("Cannot force sync while offline")
            return False

        result = self.sync_data()
        return result.failed == 0

    # Reference data
    def download_fresh_data(self, user_id: str, organization_id: str) -> bool:
        """Replace cached forms, outlets and routes with the server's current set"""
        if not self.monitor.is_online:
            logger.info("Cannot download data while offline")
            return False

        if self.is_syncing:
            logger.info("Sync already in progress, skipping data download")
            return False

        try:
            logger.info(f"Downloading fresh data for user {user_id}...")

            forms = self.api.select(
                'forms',
                filters={'organization_id': organization_id},
                in_filters={'status': ['active', 'draft']}
            )
            if not forms.ok:
                raise RemoteApiError(f"Error downloading forms: {forms.error}", forms.status_code)
            self.store.store_forms(forms.data or [])
            logger.info(f"Downloaded {len(forms.data or [])} forms")

            outlets = self.api.select('outlets', filters={'organization_id': organization_id})
            if not outlets.ok:
                raise RemoteApiError(f"Error downloading outlets: {outlets.error}", outlets.status_code)
            self.store.store_outlets(outlets.data or [])
            logger.info(f"Downloaded {len(outlets.data or [])} outlets")

            routes = self.api.select(
                'routes',
                columns='*, route_stops(*, outlet:outlets(*))',
                filters={'organization_id': organization_id},
                in_filters={'status': ['active', 'draft']}
            )
            if not routes.ok:
                raise RemoteApiError(f"Error downloading routes: {routes.error}", routes.status_code)
            self.store.store_routes(routes.data or [])
            logger.info(f"Downloaded {len(routes.data or [])} routes")

            logger.info("Fresh data downloaded successfully")
            return True

        except Exception as e:
            logger.error(f"Error downloading fresh data: {e}")
            return False

    # UI-facing surface
    def enqueue(self, action_type: ActionType, data: Dict[str, Any],
                user_id: str, organization_id: str) -> OutboxAction:
        return self.outbox.enqueue(action_type, data, user_id, organization_id)

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(is_online=self.monitor.is_online, is_syncing=self.is_syncing)

    def get_storage_stats(self) -> StorageStats:
        return self.store.get_storage_stats()

    def clear_completed(self) -> int:
        return self.outbox.prune_completed()

    def clear_failed(self) -> int:
        return self.outbox.prune_failed()

    def clear_all(self) -> int:
        return self.outbox.prune_all()

    def clear_all_data(self):
        """Wipe everything cached offline, e.g. on sign-out"""
        self.store.clear_all_data()

    def retry_failed(self) -> int:
        """Reset failed actions and kick off a pass if online"""
        count = self.outbox.retry_failed()
        if count and self.monitor.is_online:
            self._run_in_background(self._background_sync)
        return count

    def _emit_status(self):
        self.sync_status_changed.emit(self.get_sync_status().to_dict())
