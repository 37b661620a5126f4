"""
Shared data models for the WorkforceOne offline sync client.
Used by the local store, the outbox and the sync engine.
"""

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

MAX_RETRIES = 3


class ActionType(Enum):
    """Closed set of offline-capable mutations"""
    FORM_RESPONSE = "form_response"
    ATTENDANCE = "attendance"
    OUTLET_VISIT = "outlet_visit"
    LEAVE_REQUEST = "leave_request"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"


class ActionStatus(Enum):
    """Lifecycle states of an outbox action"""
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def is_valid_transition(cls, from_state: str, to_state: str) -> bool:
        """Check if state transition is valid"""
        if from_state == to_state:
            return True

        # PENDING -> SYNCING (pass picked it up)
        # SYNCING -> COMPLETED | PENDING (retry eligible) | FAILED (retries exhausted)
        # FAILED -> PENDING (explicit retry)
        # FAILED -> SYNCING (failed below max retries stays drain-eligible)
        valid_transitions = {
            cls.PENDING.value: [cls.SYNCING.value],
            cls.SYNCING.value: [cls.COMPLETED.value, cls.PENDING.value, cls.FAILED.value],
            cls.FAILED.value: [cls.PENDING.value, cls.SYNCING.value],
            cls.COMPLETED.value: [],
        }

        return to_state in valid_transitions.get(from_state, [])


@dataclass
class OutboxAction:
    """A durable record of one pending remote mutation"""
    type: ActionType
    data: Dict[str, Any]
    user_id: str
    organization_id: str
    timestamp: str  # ISO timestamp of the user action, never reset on retry
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ActionStatus = ActionStatus.PENDING
    retry_count: int = 0
    # Reserved idempotency key; sent to no endpoint yet
    client_generated_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type.value
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboxAction':
        values = dict(data)
        values['type'] = ActionType(values['type'])
        values['status'] = ActionStatus(values['status'])
        return cls(**values)


@dataclass
class SyncResult:
    """Aggregated outcome of one sync pass"""
    success: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncStatus:
    """Derived view for display only"""
    is_online: bool = False
    is_syncing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StorageStats:
    """Read-only projection over the local store for diagnostics"""
    outbox_count: int = 0
    forms_count: int = 0
    responses_count: int = 0
    last_sync: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ApiResponse:
    """Remote API result: data on success, error message otherwise"""
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class LocationUpdate:
    """A single GPS ping recorded during a patrol"""
    session_id: str
    latitude: float
    longitude: float
    accuracy: float
    timestamp: str
    battery_level: Optional[int] = None
    is_checkpoint_scan: bool = False
    checkpoint_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Row shape of the patrol_locations table"""
        return {
            'session_id': self.session_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy_meters': self.accuracy,
            'timestamp': self.timestamp,
            'battery_level': self.battery_level,
            'is_checkpoint_scan': bool(self.is_checkpoint_scan),
            'checkpoint_id': self.checkpoint_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocationUpdate':
        return cls(**data)


@dataclass
class PatrolSession:
    """The guard's active patrol, persisted locally across restarts"""
    id: str
    guard_id: str
    organization_id: str
    route_id: str
    start_time: str
    status: str = "active"  # active | paused | completed
    assignment_id: Optional[str] = None
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PatrolSession':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# Configuration models
@dataclass
class SyncConfig:
    """Sync client configuration with validation"""
    supabase_url: str = ""
    api_key: str = ""
    access_token: str = ""
    sync_interval: int = 300  # seconds
    timeout: int = 10  # seconds
    max_retries: int = MAX_RETRIES
    connection_check_interval: int = 30  # seconds
    location_interval: int = 600  # seconds between background patrol pings
    location_queue_limit: int = 50

    def __post_init__(self) -> None:
        """Validate configuration after initialization"""
        if self.supabase_url:
            if not self.supabase_url.startswith(('http://', 'https://')):
                raise ValueError("Invalid Supabase URL: must start with http:// or https://")
            self.supabase_url = self.supabase_url.rstrip('/')

        if not (5 <= self.sync_interval <= 3600):
            raise ValueError(f"Sync interval must be between 5 and 3600 seconds, got {self.sync_interval}")

        if not (1 <= self.timeout <= 120):
            raise ValueError(f"Timeout must be between 1 and 120 seconds, got {self.timeout}")

        if not (1 <= self.max_retries <= 20):
            raise ValueError(f"Max retries must be between 1 and 20, got {self.max_retries}")

        if not (1 <= self.connection_check_interval <= 3600):
            raise ValueError(
                f"Connection check interval must be between 1 and 3600 seconds, got {self.connection_check_interval}"
            )

        if not (0 <= self.location_interval <= 86400):
            raise ValueError(f"Location interval must be between 0 and 86400 seconds, got {self.location_interval}")

        if not (1 <= self.location_queue_limit <= 10000):
            raise ValueError(f"Location queue limit must be between 1 and 10000, got {self.location_queue_limit}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConfig':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
