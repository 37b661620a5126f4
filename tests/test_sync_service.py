"""Tests for the sync engine."""
import threading

import pytest
import requests

from wfo_client.sync_service import SyncService, load_config
from wfo_shared.local_store import StorageError
from wfo_shared.models import ActionStatus, ActionType, SyncConfig

LEAVE = {
    'employee_id': 'u1',
    'start_date': '2024-06-01',
    'end_date': '2024-06-03',
    'reason': 'vacation',
}


def enqueue_leave(service: SyncService, reason: str = 'vacation'):
    return service.enqueue(ActionType.LEAVE_REQUEST, dict(LEAVE, reason=reason), 'u1', 'org-1')


class TestSyncPass:

    def test_leave_request_round_trip(self, service, remote, store):
        service.enqueue(ActionType.LEAVE_REQUEST, dict(LEAVE, status='approved'), 'u1', 'org-1')

        result = service.sync_data()

        assert (result.success, result.failed, result.errors) == (1, 0, [])
        assert store.list() == []
        [(method, table, row, _)] = remote.calls
        assert (method, table) == ('insert', 'leave_requests')
        assert row['status'] == 'pending'
        assert row['employee_id'] == 'u1'

    def test_offline_is_noop(self, service, remote, monitor, store):
        monitor.set_online(False)
        enqueue_leave(service)

        result = service.sync_data()

        assert result.skipped
        assert (result.success, result.failed) == (0, 0)
        assert remote.calls == []
        assert store.list()[0].status == ActionStatus.PENDING

    def test_processes_in_enqueue_order(self, service, remote):
        for reason in ('A', 'B', 'C'):
            enqueue_leave(service, reason)

        service.sync_data()

        assert [c[2]['reason'] for c in remote.calls] == ['A', 'B', 'C']

    def test_completed_actions_pruned_and_last_sync_recorded(self, service, store):
        enqueue_leave(service)

        service.sync_data()

        assert store.count_outbox() == 0
        assert store.get_last_sync_time() == '2024-06-01T09:30:00Z'

    def test_retry_ceiling(self, service, remote, store):
        remote.errors[('insert', 'leave_requests')] = 'HTTP 500: down'
        action = enqueue_leave(service)

        for expected in (1, 2):
            service.sync_data()
            stored = store.get(action.id)
            assert stored.status == ActionStatus.PENDING
            assert stored.retry_count == expected

        result = service.sync_data()
        stored = store.get(action.id)
        assert result.failed == 1
        assert stored.status == ActionStatus.FAILED
        assert stored.retry_count == 3
        assert stored.last_error == 'Leave request insert: HTTP 500: down'

        # Exhausted actions are left alone by later passes
        result = service.sync_data()
        assert (result.success, result.failed) == (0, 0)
        assert len(remote.calls) == 3
        assert store.get(action.id).status == ActionStatus.FAILED
        assert store.get(action.id).retry_count == 3

    def test_one_failure_does_not_affect_others(self, service, remote, store):
        remote.errors[('insert', 'leave_requests')] = 'HTTP 500: down'
        service.enqueue(ActionType.ATTENDANCE, {'status': 'present'}, 'u1', 'org-1')
        failing = enqueue_leave(service)
        service.enqueue(ActionType.CHECK_OUT, {'check_out_time': '2024-06-01T17:00:00Z'}, 'u1', 'org-1')

        result = service.sync_data()

        assert (result.success, result.failed) == (2, 1)
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"leave_request ({failing.id}):")
        assert [a.id for a in store.list()] == [failing.id]
        assert [(c[0], c[1]) for c in remote.calls] == [
            ('upsert', 'attendance'), ('insert', 'leave_requests'), ('upsert', 'attendance')
        ]

    def test_raising_remote_does_not_affect_others(self, service, remote, store):
        remote.errors[('insert', 'leave_requests')] = requests.ConnectionError('connection reset')
        service.enqueue(ActionType.ATTENDANCE, {'status': 'present'}, 'u1', 'org-1')
        failing = enqueue_leave(service)
        service.enqueue(ActionType.CHECK_OUT, {'check_out_time': '2024-06-01T17:00:00Z'}, 'u1', 'org-1')

        result = service.sync_data()

        assert (result.success, result.failed) == (2, 1)
        [stored] = store.list()
        assert stored.id == failing.id
        assert stored.status == ActionStatus.PENDING
        assert stored.retry_count == 1
        assert 'connection reset' in stored.last_error
        assert len(remote.calls_to('upsert', 'attendance')) == 2

    def test_side_effect_failure_still_completes(self, service, remote, store):
        remote.data[('select_single', 'outlet_visits')] = {'route_stop_id': 'stop-1'}
        remote.errors[('update', 'route_stops')] = 'HTTP 500: down'
        service.enqueue(ActionType.FORM_RESPONSE, {
            'form_id': 'form-1', 'responses': {'q1': 'yes'}, 'visit_id': 'visit-1'
        }, 'u1', 'org-1')
        service.enqueue(ActionType.OUTLET_VISIT, {
            'visit_id': 'visit-2', 'form_completed': True, 'route_stop_id': 'stop-2'
        }, 'u1', 'org-1')

        result = service.sync_data()

        assert (result.success, result.failed) == (2, 0)
        assert store.list() == []

    def test_single_flight(self, service, remote, store):
        entered, release = threading.Event(), threading.Event()
        original_insert = remote.insert

        def blocking_insert(*args, **kwargs):
            entered.set()
            release.wait(5)
            return original_insert(*args, **kwargs)

        remote.insert = blocking_insert
        enqueue_leave(service)

        results = []
        worker = threading.Thread(target=lambda: results.append(service.sync_data()))
        worker.start()
        try:
            assert entered.wait(5)
            assert service.is_syncing

            concurrent = service.sync_data()
            assert concurrent.skipped
            assert (concurrent.success, concurrent.failed) == (0, 0)
        finally:
            release.set()
            worker.join(5)

        assert results[0].success == 1
        assert service.is_syncing is False
        assert len(remote.calls_to('insert')) == 1
        # Gate is open again
        assert service.sync_data().skipped is False

    def test_queue_read_failure_propagates_and_resets(self, service, monkeypatch):
        def broken():
            raise StorageError("database disk image is malformed")

        monkeypatch.setattr(service.outbox, 'pending_and_failed', broken)

        with pytest.raises(StorageError):
            service.sync_data()
        assert service.is_syncing is False
        assert service.last_error == "database disk image is malformed"

        monkeypatch.undo()
        assert service.sync_data().skipped is False

    def test_unmarkable_action_counts_as_failed(self, service, remote, monkeypatch):
        def broken(action_id):
            raise StorageError("disk full")

        monkeypatch.setattr(service.outbox, 'mark_syncing', broken)
        enqueue_leave(service)

        result = service.sync_data()

        assert result.failed == 1
        assert remote.calls == []

    def test_sync_finished_signal(self, service):
        finished = []
        service.sync_finished.connect(finished.append)
        enqueue_leave(service)

        service.sync_data()

        assert finished == [{'success': 1, 'failed': 0, 'errors': [], 'skipped': False}]


class TestForceAndRetry:

    def test_force_sync_offline(self, service, monitor):
        monitor.set_online(False)
        assert service.force_sync() is False

    def test_force_sync_reports_failures(self, service, remote):
        remote.errors[('insert', 'leave_requests')] = 'HTTP 500: down'
        enqueue_leave(service)
        assert service.force_sync() is False

    def test_force_sync_success(self, service):
        enqueue_leave(service)
        assert service.force_sync() is True

    def test_retry_failed_resyncs_when_online(self, service, store):
        action = enqueue_leave(service)
        service.outbox.mark_syncing(action.id)
        service.outbox.mark_failed(action.id, 3, 'HTTP 500: down')

        assert service.retry_failed() == 1
        assert store.list() == []


class TestLifecycle:

    def test_start_requires_configuration(self, store, remote, monitor):
        svc = SyncService(store, api=remote, monitor=monitor, config=SyncConfig(),
                          background_runner=lambda fn: fn())
        assert svc.start() is False
        assert svc.is_running is False

    def test_start_recovers_and_syncs(self, service, store, remote):
        action = enqueue_leave(service)
        store.update(action.id, {'status': ActionStatus.SYNCING})

        assert service.start() is True

        assert service.is_running
        assert store.list() == []
        assert len(remote.calls) == 1

    def test_start_leaves_live_pass_actions_alone(self, service, store, remote):
        action = enqueue_leave(service)
        store.update(action.id, {'status': ActionStatus.SYNCING})

        service._sync_lock.acquire()
        try:
            assert service.start() is True
            assert store.get(action.id).status == ActionStatus.SYNCING
            assert remote.calls == []
        finally:
            service._sync_lock.release()
            service.stop()

    def test_going_online_triggers_sync(self, service, monitor, remote, store):
        monitor.set_online(False)
        enqueue_leave(service)
        assert remote.calls == []

        monitor.set_online(True)

        assert len(remote.calls) == 1
        assert store.list() == []

    def test_update_config_persists(self, service, store):
        new_config = SyncConfig(supabase_url="https://other.supabase.co/", api_key="key-2", sync_interval=60)

        service.update_config(new_config)

        loaded = load_config(store)
        assert loaded.supabase_url == "https://other.supabase.co"
        assert loaded.api_key == "key-2"
        assert loaded.sync_interval == 60
        assert service.is_running is False


class TestReferenceData:

    def test_download_fresh_data(self, service, remote, store):
        remote.data[('select', 'forms')] = [{'id': 'form-1'}]
        remote.data[('select', 'outlets')] = [{'id': 'outlet-1'}, {'id': 'outlet-2'}]
        remote.data[('select', 'routes')] = [{'id': 'route-1', 'route_stops': []}]

        assert service.download_fresh_data('u1', 'org-1') is True

        assert store.get_forms() == [{'id': 'form-1'}]
        assert len(store.get_outlets()) == 2
        assert store.get_routes()[0]['id'] == 'route-1'
        forms_call = remote.calls_to('select', 'forms')[0]
        assert forms_call[3]['in_filters'] == {'status': ['active', 'draft']}
        assert forms_call[3]['filters'] == {'organization_id': 'org-1'}

    def test_download_aborts_on_error(self, service, remote, store):
        remote.data[('select', 'forms')] = [{'id': 'form-1'}]
        remote.errors[('select', 'outlets')] = 'HTTP 500: down'

        assert service.download_fresh_data('u1', 'org-1') is False
        assert remote.calls_to('select', 'routes') == []

    def test_download_offline(self, service, monitor, remote):
        monitor.set_online(False)
        assert service.download_fresh_data('u1', 'org-1') is False
        assert remote.calls == []


class TestUiSurface:

    def test_status_and_stats(self, service, monitor):
        enqueue_leave(service)

        assert service.get_sync_status().to_dict() == {'is_online': True, 'is_syncing': False}
        assert service.get_storage_stats().outbox_count == 1

    def test_clear_operations(self, service, store):
        done, failed, pending = [enqueue_leave(service, r) for r in 'ABC']
        service.outbox.mark_syncing(done.id)
        service.outbox.mark_syncing(failed.id)
        service.outbox.mark_completed(done.id)
        service.outbox.mark_failed(failed.id, 3, 'boom')

        assert service.clear_completed() == 1
        assert service.clear_failed() == 1
        assert [a.id for a in store.list()] == [pending.id]
        assert service.clear_all() == 1
