"""
Patrol session and location tracking for security guards.
Location pings that cannot reach the server are queued locally and uploaded
in a batch once connectivity returns.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from wfo_client.connectivity import ConnectivityMonitor
from wfo_client.remote_api import RemoteApiError, SupabaseClient
from wfo_shared.local_store import LocalStore
from wfo_shared.logging_config import get_patrol_logger
from wfo_shared.models import LocationUpdate, PatrolSession, SyncConfig
from wfo_shared.utils import isoformat, utc_now

logger = get_patrol_logger()

CURRENT_SESSION_KEY = 'current_patrol_session'


class PatrolService(QObject):
    """Tracks the active patrol and funnels its location pings to the server"""

    session_changed = pyqtSignal(dict)  # Emits the session dict, or {} when ended

    def __init__(self, store: LocalStore, api: SupabaseClient,
                 config: Optional[SyncConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 battery_level: Optional[Callable[[], Optional[int]]] = None,
                 parent=None):
        super().__init__(parent)
        self.store = store
        self.api = api
        self.config = config or SyncConfig()
        self._clock = clock or utc_now
        self._battery_level = battery_level or (lambda: None)
        self._upload_lock = threading.Lock()
        self.last_location_update: Optional[datetime] = None
        self.current_session: Optional[PatrolSession] = self.load_current_session()

    def attach(self, monitor: ConnectivityMonitor):
        """Upload queued pings on every offline -> online transition"""
        monitor.went_online.connect(self._on_went_online)

    def _on_went_online(self):
        def background_upload():
            try:
                self.upload_queued_locations()
            except Exception as e:
                logger.error(f"Background location upload error: {e}")

        threading.Thread(target=background_upload, daemon=True).start()

    # Session persistence
    def load_current_session(self) -> Optional[PatrolSession]:
        stored = self.store.get_json_setting(CURRENT_SESSION_KEY)
        if not stored:
            return None
        session = PatrolSession.from_dict(stored)
        logger.info(f"Loaded existing patrol session: {session.id}")
        return session

    def _save_session(self):
        if self.current_session is None:
            self.store.delete_setting(CURRENT_SESSION_KEY)
            self.session_changed.emit({})
        else:
            self.store.set_json_setting(CURRENT_SESSION_KEY, self.current_session.to_dict())
            self.session_changed.emit(self.current_session.to_dict())

    def get_current_session(self) -> Optional[PatrolSession]:
        return self.current_session

    # Session lifecycle
    def start_patrol(self, route_id: str, guard_id: str, organization_id: str,
                     latitude: float, longitude: float, accuracy: float = 0.0,
                     assignment_id: Optional[str] = None) -> PatrolSession:
        """Create a patrol session on the server and make it current.

        Raises:
            RemoteApiError: the session could not be created
        """
        if self.current_session:
            self.end_patrol(latitude, longitude, accuracy)

        now = isoformat(self._clock())
        session_row = {
            'guard_id': guard_id,
            'organization_id': organization_id,
            'route_id': route_id,
            'assignment_id': assignment_id,
            'start_time': now,
            'status': 'active',
            'current_latitude': latitude,
            'current_longitude': longitude,
            'last_location_update': now,
            'device_battery_level': self._battery_level(),
        }

        result = self.api.insert('patrol_sessions', session_row, returning=True)
        rows = result.data if result.ok else None
        if not rows:
            raise RemoteApiError(f"Failed to create patrol session: {result.error}", result.status_code)

        self.current_session = PatrolSession.from_dict(rows[0] if isinstance(rows, list) else rows)
        self._save_session()

        self.log_location(self._make_update(latitude, longitude, accuracy, now))

        logger.info(f"Patrol session started: {self.current_session.id}")
        return self.current_session

    def end_patrol(self, latitude: float, longitude: float, accuracy: float = 0.0,
                   notes: Optional[str] = None):
        if not self.current_session:
            return

        now = isoformat(self._clock())
        result = self.api.update('patrol_sessions', {
            'end_time': now,
            'status': 'completed',
            'current_latitude': latitude,
            'current_longitude': longitude,
            'end_notes': notes,
            'device_battery_level': self._battery_level(),
        }, {'id': self.current_session.id})
        if not result.ok:
            logger.error(f"Error closing patrol session {self.current_session.id}: {result.error}")

        self.log_location(self._make_update(latitude, longitude, accuracy, now))
        self.upload_queued_locations()

        logger.info(f"Patrol session ended: {self.current_session.id}")
        self.current_session = None
        self.last_location_update = None
        self._save_session()

    def _set_status(self, status: str):
        if not self.current_session:
            return

        result = self.api.update('patrol_sessions', {'status': status}, {'id': self.current_session.id})
        if not result.ok:
            raise RemoteApiError(f"Failed to set patrol status to {status}: {result.error}", result.status_code)

        self.current_session.status = status
        self._save_session()
        logger.info(f"Patrol {status}")

    def pause_patrol(self):
        self._set_status('paused')

    def resume_patrol(self):
        self._set_status('active')

    def trigger_panic_button(self, latitude: float, longitude: float, accuracy: float = 0.0):
        """Flag the session and log the guard's position immediately"""
        if not self.current_session:
            return

        now = isoformat(self._clock())
        result = self.api.update('patrol_sessions', {
            'panic_button_pressed': True,
            'panic_time': now,
            'current_latitude': latitude,
            'current_longitude': longitude,
        }, {'id': self.current_session.id})
        if not result.ok:
            raise RemoteApiError(f"Failed to raise panic alert: {result.error}", result.status_code)

        self.log_location(self._make_update(latitude, longitude, accuracy, now))
        logger.critical(f"PANIC BUTTON ACTIVATED for session {self.current_session.id}")

    # Location pings
    def _make_update(self, latitude: float, longitude: float, accuracy: float, timestamp: str,
                     checkpoint_id: Optional[str] = None) -> LocationUpdate:
        return LocationUpdate(
            session_id=self.current_session.id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy or 0.0,
            timestamp=timestamp,
            battery_level=self._battery_level(),
            is_checkpoint_scan=checkpoint_id is not None,
            checkpoint_id=checkpoint_id,
        )

    def handle_background_location(self, latitude: float, longitude: float, accuracy: float = 0.0,
                                   timestamp: Optional[str] = None) -> bool:
        """Record a background fix at most once per location interval.

        Returns True if the fix was recorded.
        """
        if not self.current_session or self.current_session.status != 'active':
            return False

        now = self._clock()
        if self.last_location_update is not None:
            if now - self.last_location_update < timedelta(seconds=self.config.location_interval):
                return False

        update = self._make_update(latitude, longitude, accuracy, timestamp or isoformat(now))
        self.queue_location(update)
        self.upload_queued_locations()
        self.last_location_update = now
        return True

    def record_checkpoint_scan(self, checkpoint_id: str, latitude: float, longitude: float,
                               accuracy: float = 0.0) -> bool:
        if not self.current_session:
            return False
        update = self._make_update(latitude, longitude, accuracy, isoformat(self._clock()), checkpoint_id)
        return self.log_location(update)

    def log_location(self, update: LocationUpdate) -> bool:
        """Send one ping; queue it locally if the server write fails"""
        try:
            result = self.api.insert('patrol_locations', update.to_row())
        except Exception as e:
            logger.error(f"Error in log_location: {e}")
            self.queue_location(update)
            return False

        if not result.ok:
            logger.error(f"Error logging location: {result.error}")
            self.queue_location(update)
            return False

        logger.debug("Location logged successfully")
        return True

    def queue_location(self, update: LocationUpdate):
        self.store.append_location(update, self.config.location_queue_limit)

    def upload_queued_locations(self) -> int:
        """Batch-upload queued pings; the queue is cleared only on success"""
        with self._upload_lock:
            queued = self.store.get_queued_locations()
            if not queued:
                return 0

            rows: List[Dict[str, Any]] = [update.to_row() for _, update in queued]
            try:
                result = self.api.insert('patrol_locations', rows)
            except Exception as e:
                logger.error(f"Error in upload_queued_locations: {e}")
                return 0

            if not result.ok:
                logger.error(f"Error uploading queued locations: {result.error}")
                return 0

            self.store.clear_locations_through(queued[-1][0])
            logger.info(f"Uploaded {len(queued)} queued locations")
            return len(queued)

    # Reference data
    def get_patrol_routes(self, organization_id: str) -> List[Dict[str, Any]]:
        """Active routes with checkpoints in patrol order"""
        result = self.api.select(
            'patrol_routes',
            columns="""*, patrol_checkpoints(id, name, latitude, longitude, radius_meters,
                       qr_code, order_sequence, is_mandatory, requires_photo, photo_instructions)""",
            filters={'organization_id': organization_id, 'is_active': 'true'},
            order='name'
        )
        if not result.ok:
            raise RemoteApiError(f"Error fetching patrol routes: {result.error}", result.status_code)

        routes = []
        for route in result.data or []:
            checkpoints = sorted(route.get('patrol_checkpoints') or [],
                                 key=lambda c: c.get('order_sequence') or 0)
            routes.append({
                'id': route.get('id'),
                'name': route.get('name'),
                'description': route.get('description'),
                'estimated_duration': route.get('estimated_duration'),
                'boundary_coords': route.get('boundary_coords'),
                'checkpoints': checkpoints,
            })
        return routes
