#!/usr/bin/env python3
"""
WorkforceOne Offline Sync Launcher
Provides simple entry points for running and inspecting the sync client.
"""

import sys
from pathlib import Path

# Add the project root to Python path for clean imports
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

USAGE = """WorkforceOne Offline Sync Launcher

Usage:
  python launcher.py run                          # Run the sync service headless
  python launcher.py sync                         # Run one sync pass now
  python launcher.py status                       # Show connectivity and queue status
  python launcher.py stats                        # Show local storage statistics
  python launcher.py clear completed|failed|all   # Remove actions from the outbox
  python launcher.py clear data                   # Wipe all offline data
  python launcher.py retry-failed                 # Give failed actions a fresh retry budget
  python launcher.py configure key=value ...      # Update sync settings
"""


def _build_service():
    from PyQt6.QtCore import QCoreApplication

    from wfo_client.sync_service import SyncService
    from wfo_shared.local_store import LocalStore

    app = QCoreApplication.instance() or QCoreApplication(sys.argv)
    return app, SyncService(LocalStore())


def run_service() -> int:
    app, service = _build_service()
    if not service.start():
        print("Sync service is not configured. Use 'configure supabase_url=... api_key=...'")
        return 1
    print("Sync service running, press Ctrl+C to stop")
    try:
        return app.exec()
    except KeyboardInterrupt:
        return 0
    finally:
        service.stop()


def run_sync() -> int:
    _, service = _build_service()
    if not service.is_configured():
        print("Sync service is not configured")
        return 1

    from wfo_shared.local_store import StorageError

    service.monitor.check_connection()
    try:
        result = service.sync_data()
    except StorageError as e:
        print(f"Sync failed, local outbox unreadable: {e}")
        return 1

    if result.skipped:
        print("Sync skipped: offline or already syncing")
        return 1

    print(f"Synced {result.success} actions, {result.failed} failed")
    for error in result.errors:
        print(f"  {error}")
    return 0 if result.failed == 0 else 1


def show_status() -> int:
    _, service = _build_service()
    if service.is_configured():
        service.monitor.check_connection()

    status = service.get_sync_status()
    print(f"Online:  {status.is_online}")
    print(f"Syncing: {status.is_syncing}")
    for action in service.outbox.list():
        error = f" - {action.last_error}" if action.last_error else ""
        print(f"  {action.timestamp} {action.type.value:<14} {action.status.value:<9} "
              f"retries={action.retry_count}{error}")
    return 0


def show_stats() -> int:
    _, service = _build_service()
    stats = service.get_storage_stats()
    print(f"Outbox actions:  {stats.outbox_count}")
    print(f"Cached forms:    {stats.forms_count}")
    print(f"Form responses:  {stats.responses_count}")
    print(f"Last sync:       {stats.last_sync or 'never'}")
    return 0


def clear_outbox(which: str) -> int:
    _, service = _build_service()
    if which == 'data':
        service.clear_all_data()
        print("Cleared outbox, cached data and last sync time")
        return 0

    handlers = {
        'completed': service.clear_completed,
        'failed': service.clear_failed,
        'all': service.clear_all,
    }
    if which not in handlers:
        print(f"Unknown clear target: {which}")
        print("Use 'completed', 'failed', 'all' or 'data'")
        return 1

    removed = handlers[which]()
    print(f"Removed {removed} {which} actions" if which != 'all' else f"Removed {removed} actions")
    return 0


def retry_failed() -> int:
    _, service = _build_service()
    count = service.outbox.retry_failed()
    print(f"Reset {count} failed actions to pending")
    return 0


def configure(assignments) -> int:
    from wfo_client.sync_service import load_config, save_config
    from wfo_shared.local_store import LocalStore
    from wfo_shared.models import SyncConfig

    store = LocalStore()
    values = load_config(store).to_dict()

    if not assignments:
        for key, value in values.items():
            if key in ('api_key', 'access_token') and value:
                value = f"{value[:8]}..."
            print(f"{key} = {value}")
        return 0

    for assignment in assignments:
        key, sep, raw = assignment.partition('=')
        if not sep or key not in values:
            print(f"Invalid setting: {assignment}")
            return 1
        values[key] = int(raw) if isinstance(values[key], int) and raw.lstrip('-').isdigit() else raw

    try:
        config = SyncConfig.from_dict(values)
    except (ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}")
        return 1

    save_config(store, config)
    print("Configuration saved")
    return 0


def main(argv=None) -> int:
    """Main launcher with command-line arguments"""
    args = list(sys.argv[1:] if argv is None else argv)

    if not args:
        print(USAGE)
        return 1

    command = args[0].lower()

    if command == 'run':
        return run_service()
    elif command == 'sync':
        return run_sync()
    elif command == 'status':
        return show_status()
    elif command == 'stats':
        return show_stats()
    elif command == 'clear':
        if len(args) < 2:
            print("Usage: python launcher.py clear completed|failed|all|data")
            return 1
        return clear_outbox(args[1].lower())
    elif command == 'retry-failed':
        return retry_failed()
    elif command == 'configure':
        return configure(args[1:])
    else:
        print(f"Unknown command: {command}")
        print("Use 'run', 'sync', 'status', 'stats', 'clear', 'retry-failed' or 'configure'")
        return 1


if __name__ == '__main__':
    sys.exit(main())
