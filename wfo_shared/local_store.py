"""
Durable local store for the WorkforceOne offline sync client.
Persists the outbox, cached reference data, cached form responses, the patrol
location queue and small settings in a local SQLite database.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from wfo_shared.logging_config import get_client_logger
from wfo_shared.models import (ActionStatus, LocationUpdate, OutboxAction,
                               StorageStats)
from wfo_shared.utils import get_data_path, isoformat, utc_now

logger = get_client_logger()

LAST_SYNC_KEY = 'last_sync'

# Cached reference collections (whole-collection replace)
FORMS = 'forms'
OUTLETS = 'outlets'
ROUTES = 'routes'
USER_DATA = 'user_data'
CACHED_RESOURCES = (FORMS, OUTLETS, ROUTES, USER_DATA)

# Fields the sync engine may change on an existing action
UPDATABLE_FIELDS = {'status', 'retry_count', 'last_error'}


class StorageError(Exception):
    """Raised when a local persistence operation fails"""
    pass


class NotFoundError(StorageError):
    """Raised when an outbox action id does not exist"""
    pass


class InvalidTransitionError(StorageError):
    """Raised when a status update breaks the action lifecycle"""
    pass


def get_db_path() -> Path:
    """Default database file in the per-user data directory"""
    return get_data_path('workforceone_offline.db')


class LocalStore:
    """SQLite-backed store; every successful write is committed before returning."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else get_db_path()
        self.init_database()

    def init_database(self):
        """Initialize the database with required tables"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS outbox (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    type TEXT NOT NULL,
                    data TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    organization_id TEXT,
                    client_generated_id TEXT,
                    last_error TEXT,
                    updated_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache (
                    resource TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS form_responses (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS location_queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    payload TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to initialize database: {e}") from e
        finally:
            conn.close()

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory"""
        conn = sqlite3.connect(str(self.db_path))
        # Wait up to 5s on locks held by another thread
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA synchronous = FULL")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back and raise StorageError on failure"""
        try:
            conn = self.get_connection()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {operation}: {e}") from e
        try:
            yield conn
            conn.commit()
        except StorageError:
            conn.rollback()
            raise
        except (sqlite3.Error, TypeError, ValueError) as e:
            conn.rollback()
            raise StorageError(f"Failed to {operation}: {e}") from e
        finally:
            conn.close()

    # Settings functions
    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get a setting value from the database"""
        with self._transaction('read setting') as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row['value'] if row else default

    def set_setting(self, key: str, value: Optional[str]):
        """Set a setting value in the database"""
        with self._transaction('write setting') as conn:
            conn.execute("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value))

    def delete_setting(self, key: str):
        with self._transaction('delete setting') as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    def get_json_setting(self, key: str) -> Optional[Any]:
        raw = self.get_setting(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StorageError(f"Corrupted setting '{key}': {e}") from e

    def set_json_setting(self, key: str, value: Any):
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize setting '{key}': {e}") from e
        self.set_setting(key, raw)

    # Outbox functions
    def append(self, action: OutboxAction) -> None:
        """Add a new action to the end of the outbox"""
        try:
            data = json.dumps(action.data)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize payload for action {action.id}: {e}") from e

        with self._transaction('append outbox action') as conn:
            conn.execute("""
                INSERT INTO outbox (
                    id, type, data, status, retry_count, timestamp,
                    user_id, organization_id, client_generated_id, last_error, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                action.id,
                action.type.value,
                data,
                action.status.value,
                action.retry_count,
                action.timestamp,
                action.user_id,
                action.organization_id,
                action.client_generated_id,
                action.last_error,
                isoformat(utc_now())
            ))

    def update(self, action_id: str, fields: Dict[str, Any]) -> None:
        """Merge status fields into an existing action"""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise StorageError(f"Fields not updatable: {sorted(unknown)}")
        if not fields:
            return

        values = {
            key: value.value if isinstance(value, ActionStatus) else value
            for key, value in fields.items()
        }
        values['updated_at'] = isoformat(utc_now())

        # Keys are restricted to UPDATABLE_FIELDS above
        set_clause = ', '.join(f"{key} = ?" for key in values)

        with self._transaction('update outbox action') as conn:
            row = conn.execute("SELECT status FROM outbox WHERE id = ?", (action_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Outbox action {action_id} not found")

            new_status = values.get('status')
            if new_status is not None and not ActionStatus.is_valid_transition(row['status'], new_status):
                raise InvalidTransitionError(
                    f"Invalid status transition for action {action_id} from {row['status']} to {new_status}"
                )

            conn.execute(
                f"UPDATE outbox SET {set_clause} WHERE id = ?",
                list(values.values()) + [action_id]
            )

    def get(self, action_id: str) -> Optional[OutboxAction]:
        with self._transaction('read outbox action') as conn:
            row = conn.execute("SELECT * FROM outbox WHERE id = ?", (action_id,)).fetchone()
            return self._row_to_action(row) if row else None

    def list(self) -> List[OutboxAction]:
        """All actions in insertion order"""
        with self._transaction('read outbox') as conn:
            rows = conn.execute("SELECT * FROM outbox ORDER BY seq").fetchall()
            return [self._row_to_action(row) for row in rows]

    def remove_where(self, predicate: Callable[[OutboxAction], bool]) -> int:
        """Delete matching actions, return the number removed"""
        with self._transaction('prune outbox') as conn:
            rows = conn.execute("SELECT * FROM outbox ORDER BY seq").fetchall()
            doomed = [row['id'] for row in rows if predicate(self._row_to_action(row))]
            if not doomed:
                return 0
            placeholders = ','.join('?' * len(doomed))
            cursor = conn.execute(f"DELETE FROM outbox WHERE id IN ({placeholders})", doomed)
            return cursor.rowcount

    def count_outbox(self) -> int:
        with self._transaction('count outbox') as conn:
            return conn.execute("SELECT COUNT(*) FROM outbox").fetchone()[0]

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> OutboxAction:
        try:
            return OutboxAction.from_dict({
                'id': row['id'],
                'type': row['type'],
                'data': json.loads(row['data']),
                'status': row['status'],
                'retry_count': row['retry_count'],
                'timestamp': row['timestamp'],
                'user_id': row['user_id'],
                'organization_id': row['organization_id'],
                'client_generated_id': row['client_generated_id'],
                'last_error': row['last_error'],
            })
        except (ValueError, KeyError) as e:
            raise StorageError(f"Corrupted outbox row {row['id']}: {e}") from e

    # Last sync metadata
    def get_last_sync_time(self) -> Optional[str]:
        return self.get_setting(LAST_SYNC_KEY)

    def set_last_sync_time(self, timestamp: Optional[str] = None):
        self.set_setting(LAST_SYNC_KEY, timestamp or isoformat(utc_now()))

    # Cached reference data, last download wins
    def _store_value(self, resource: str, value: Any):
        """Replace the cached value for a resource"""
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize {resource}: {e}") from e

        with self._transaction(f'store {resource}') as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache (resource, payload, updated_at) VALUES (?, ?, ?)",
                (resource, payload, isoformat(utc_now()))
            )

    def _get_value(self, resource: str, default: Any = None) -> Any:
        with self._transaction(f'read {resource}') as conn:
            row = conn.execute("SELECT payload FROM cache WHERE resource = ?", (resource,)).fetchone()
            return json.loads(row['payload']) if row else default

    def _store_collection(self, resource: str, items: List[Dict[str, Any]]):
        items = list(items)
        self._store_value(resource, items)
        logger.debug(f"Cached {len(items)} {resource}")

    def _get_collection(self, resource: str) -> List[Dict[str, Any]]:
        return self._get_value(resource, [])

    def store_forms(self, forms: List[Dict[str, Any]]):
        self._store_collection(FORMS, forms)

    def get_forms(self) -> List[Dict[str, Any]]:
        return self._get_collection(FORMS)

    def get_form(self, form_id: str) -> Optional[Dict[str, Any]]:
        for form in self.get_forms():
            if form.get('id') == form_id:
                return form
        return None

    def store_outlets(self, outlets: List[Dict[str, Any]]):
        self._store_collection(OUTLETS, outlets)

    def get_outlets(self) -> List[Dict[str, Any]]:
        return self._get_collection(OUTLETS)

    def store_routes(self, routes: List[Dict[str, Any]]):
        self._store_collection(ROUTES, routes)

    def get_routes(self) -> List[Dict[str, Any]]:
        return self._get_collection(ROUTES)

    # Signed-in user's profile for offline screens
    def store_user_data(self, user_data: Dict[str, Any]):
        self._store_value(USER_DATA, user_data)

    def get_user_data(self) -> Optional[Dict[str, Any]]:
        return self._get_value(USER_DATA)

    # Cached form responses (drafts and completed submissions)
    def save_form_response(self, response: Dict[str, Any]):
        """Insert or replace a cached response keyed by its id"""
        response_id = response.get('id')
        if not response_id:
            raise StorageError("Form response must have an id")
        try:
            payload = json.dumps(response)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize form response {response_id}: {e}") from e

        with self._transaction('save form response') as conn:
            conn.execute(
                "INSERT OR REPLACE INTO form_responses (id, payload, updated_at) VALUES (?, ?, ?)",
                (response_id, payload, isoformat(utc_now()))
            )

    def get_form_response(self, response_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction('read form response') as conn:
            row = conn.execute("SELECT payload FROM form_responses WHERE id = ?", (response_id,)).fetchone()
            return json.loads(row['payload']) if row else None

    def get_form_responses(self) -> List[Dict[str, Any]]:
        with self._transaction('read form responses') as conn:
            rows = conn.execute("SELECT payload FROM form_responses ORDER BY updated_at").fetchall()
            return [json.loads(row['payload']) for row in rows]

    def get_form_response_for_visit(self, visit_id: str) -> Optional[Dict[str, Any]]:
        """Cached response recorded against an outlet visit, if any"""
        for response in self.get_form_responses():
            if response.get('visit_id') == visit_id:
                return response
        return None

    def clear_all_data(self):
        """Wipe the outbox, cached reference data, responses, user data and last sync time.

        The patrol location queue and current patrol session are left alone.
        """
        with self._transaction('clear local data') as conn:
            conn.execute("DELETE FROM outbox")
            conn.execute(
                f"DELETE FROM cache WHERE resource IN ({','.join('?' * len(CACHED_RESOURCES))})",
                CACHED_RESOURCES
            )
            conn.execute("DELETE FROM form_responses")
            conn.execute("DELETE FROM settings WHERE key = ?", (LAST_SYNC_KEY,))
        logger.info("Cleared all offline data")

    # Patrol location queue
    def append_location(self, update: LocationUpdate, limit: int) -> None:
        """Queue a location ping, keeping only the most recent `limit` entries"""
        try:
            payload = json.dumps(update.to_dict())
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize location update: {e}") from e

        with self._transaction('queue location') as conn:
            conn.execute("INSERT INTO location_queue (payload) VALUES (?)", (payload,))
            conn.execute("""
                DELETE FROM location_queue WHERE seq NOT IN (
                    SELECT seq FROM location_queue ORDER BY seq DESC LIMIT ?
                )
            """, (limit,))

    def get_queued_locations(self) -> List[tuple]:
        """Return (seq, LocationUpdate) pairs in queue order"""
        with self._transaction('read location queue') as conn:
            rows = conn.execute("SELECT seq, payload FROM location_queue ORDER BY seq").fetchall()
            return [(row['seq'], LocationUpdate.from_dict(json.loads(row['payload']))) for row in rows]

    def clear_locations_through(self, seq: int) -> int:
        """Drop queued pings up to and including seq"""
        with self._transaction('clear location queue') as conn:
            return conn.execute("DELETE FROM location_queue WHERE seq <= ?", (seq,)).rowcount

    # Diagnostics
    def get_storage_stats(self) -> StorageStats:
        with self._transaction('read storage stats') as conn:
            outbox_count = conn.execute("SELECT COUNT(*) FROM outbox").fetchone()[0]
            responses_count = conn.execute("SELECT COUNT(*) FROM form_responses").fetchone()[0]

        return StorageStats(
            outbox_count=outbox_count,
            forms_count=len(self.get_forms()),
            responses_count=responses_count,
            last_sync=self.get_last_sync_time()
        )
