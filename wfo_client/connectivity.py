"""
Connectivity monitor for the offline sync client.
Tracks reachability of the backend and signals online/offline edges.
"""

import threading
from typing import Callable, Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from wfo_shared.logging_config import get_sync_logger

logger = get_sync_logger()


class ConnectivityMonitor(QObject):
    """
    Two-state (offline/online) monitor.

    State is fed either by the platform (set_online) or by polling a probe
    on a timer. Signals fire only on transitions.
    """

    online_changed = pyqtSignal(bool)  # Emits on every transition
    went_online = pyqtSignal()          # Emits on offline -> online only

    def __init__(self, probe: Optional[Callable[[], bool]] = None,
                 check_interval: int = 30, initial_online: bool = False, parent=None):
        super().__init__(parent)
        self._probe = probe
        self._check_interval = check_interval
        self._is_online = initial_online
        self._state_lock = threading.Lock()

        self.check_timer = QTimer(self)
        self.check_timer.timeout.connect(self._trigger_background_check)

    @property
    def is_online(self) -> bool:
        return self._is_online

    def set_online(self, online: bool) -> bool:
        """Apply a reachability reading; return True if it was a transition"""
        online = bool(online)
        with self._state_lock:
            was_online = self._is_online
            self._is_online = online

        if was_online == online:
            return False

        logger.info(f"Network state changed: {'online' if online else 'offline'}")
        self.online_changed.emit(online)
        if online:
            self.went_online.emit()
        return True

    def check_connection(self) -> bool:
        """Run the probe once and apply the result"""
        if self._probe is None:
            return self._is_online

        try:
            online = bool(self._probe())
        except Exception as e:
            logger.debug(f"Connection check failed: {e}")
            online = False

        self.set_online(online)
        return online

    def _trigger_background_check(self):
        """Run the probe off the event loop thread"""
        def background_check():
            try:
                self.check_connection()
            except Exception as e:
                logger.debug(f"Background connection check error: {e}")

        threading.Thread(target=background_check, daemon=True).start()

    def set_check_interval(self, seconds: int):
        self._check_interval = seconds
        if self.check_timer.isActive():
            self.check_timer.start(seconds * 1000)

    def start(self):
        """Start polling the probe (no-op without one)"""
        if self._probe is None:
            return
        self.check_timer.start(self._check_interval * 1000)
        self._trigger_background_check()

    def stop(self):
        self.check_timer.stop()
