"""
Shared utility functions for the WorkforceOne offline sync client.
"""

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional, Union

from platformdirs import user_data_dir

APP_NAME = "WorkforceOne"


def get_data_path(relative_path: str) -> Path:
    """Get absolute path to writable data files (database, logs).

    Resolves to the per-user data directory returned by
    ``platformdirs.user_data_dir`` so the outbox survives app updates.
    """
    base_path = Path(user_data_dir(APP_NAME))
    base_path.mkdir(parents=True, exist_ok=True)
    return base_path / relative_path


def utc_now() -> datetime:
    """Timezone-aware current UTC time (default clock for services)"""
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Format datetime as ISO-8601 with a trailing Z for UTC values"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_datetime(dt_str: str) -> Optional[datetime]:
    """Parse an ISO timestamp, return None if invalid"""
    if not dt_str:
        return None
    try:
        parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_date(d: Union[date, str, None]) -> Optional[str]:
    """Format date to YYYY-MM-DD, passing strings through"""
    if d is None:
        return None
    if isinstance(d, datetime):
        return d.date().isoformat()
    if isinstance(d, date):
        return d.isoformat()
    return str(d)


def to_int_optional(value: Union[str, int, None]) -> Optional[int]:
    """Convert string to int, return None if invalid"""
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None
