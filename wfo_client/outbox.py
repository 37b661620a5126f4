"""
Outbox queue: action-lifecycle operations over the local store.
The UI side only enqueues; the sync engine is the only writer of status fields.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from wfo_shared.local_store import LocalStore
from wfo_shared.logging_config import get_client_logger
from wfo_shared.models import (MAX_RETRIES, ActionStatus, ActionType,
                               OutboxAction)
from wfo_shared.utils import isoformat, utc_now

logger = get_client_logger()


class OutboxQueue:
    """Ordered collection of pending mutations backed by a LocalStore"""

    def __init__(self, store: LocalStore, max_retries: int = MAX_RETRIES,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.max_retries = max_retries
        self._clock = clock or utc_now

    def enqueue(self, action_type: Union[ActionType, str], data: Dict[str, Any],
                user_id: str, organization_id: str) -> OutboxAction:
        """Record a user action for later transmission and return the stored record.

        Raises:
            ValueError: unknown action type
            StorageError: the action could not be persisted (nothing was queued)
        """
        action = OutboxAction(
            type=ActionType(action_type),
            data=dict(data),
            user_id=user_id,
            organization_id=organization_id,
            timestamp=isoformat(self._clock()),
        )
        self.store.append(action)
        logger.info(f"Queued {action.type.value} action {action.id}")
        return action

    def mark_syncing(self, action_id: str):
        self.store.update(action_id, {'status': ActionStatus.SYNCING})

    def mark_completed(self, action_id: str):
        self.store.update(action_id, {'status': ActionStatus.COMPLETED, 'last_error': None})

    def mark_failed(self, action_id: str, retry_count: int, error: Optional[str] = None):
        """Record a terminal failure with its final retry count"""
        self.store.update(action_id, {
            'status': ActionStatus.FAILED,
            'retry_count': retry_count,
            'last_error': error,
        })

    def mark_pending(self, action_id: str, retry_count: int, error: Optional[str] = None):
        """Return an action to the drain set after a retry-eligible failure"""
        self.store.update(action_id, {
            'status': ActionStatus.PENDING,
            'retry_count': retry_count,
            'last_error': error,
        })

    def record_failure(self, action: OutboxAction, error: str) -> ActionStatus:
        """Apply the retry policy to a failed attempt and return the new status"""
        new_retry_count = action.retry_count + 1

        if new_retry_count >= self.max_retries:
            self.mark_failed(action.id, new_retry_count, error)
            logger.warning(f"Action {action.id} failed after {self.max_retries} retries")
            return ActionStatus.FAILED

        self.mark_pending(action.id, new_retry_count, error)
        logger.info(f"Action {action.id} will retry (attempt {new_retry_count + 1}/{self.max_retries})")
        return ActionStatus.PENDING

    def list(self) -> List[OutboxAction]:
        return self.store.list()

    def pending_and_failed(self) -> List[OutboxAction]:
        """Actions eligible for the next pass, in insertion order.

        Failed actions are included only while below the retry ceiling, so an
        exhausted action is never drained automatically.
        """
        return [
            action for action in self.store.list()
            if action.status == ActionStatus.PENDING
            or (action.status == ActionStatus.FAILED and action.retry_count < self.max_retries)
        ]

    def recover_interrupted(self) -> int:
        """Return actions stranded in `syncing` by a killed pass to `pending`"""
        stranded = [a for a in self.store.list() if a.status == ActionStatus.SYNCING]
        for action in stranded:
            self.store.update(action.id, {'status': ActionStatus.PENDING})
        if stranded:
            logger.info(f"Recovered {len(stranded)} interrupted actions")
        return len(stranded)

    def retry_failed(self) -> int:
        """Give every failed action a fresh retry budget"""
        failed = [a for a in self.store.list() if a.status == ActionStatus.FAILED]
        for action in failed:
            self.store.update(action.id, {'status': ActionStatus.PENDING, 'retry_count': 0})
        if failed:
            logger.info(f"Reset {len(failed)} failed actions to pending")
        return len(failed)

    def prune_completed(self) -> int:
        return self.store.remove_where(lambda a: a.status == ActionStatus.COMPLETED)

    def prune_failed(self) -> int:
        return self.store.remove_where(lambda a: a.status == ActionStatus.FAILED)

    def prune_all(self) -> int:
        return self.store.remove_where(lambda a: True)
