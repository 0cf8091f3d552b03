"""Worker step: claim a queued operation, check it for conflicts, apply it"""
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.clock import Clock, system_clock
from app.core.exceptions import CoordinationStoreError
from app.schemas.sync import (
    DeviceKey,
    OperationType,
    ProcessOutcome,
    ProcessResult,
    QueueItem,
    QueueStatus,
)
from app.services.client_state_service import ClientStateService
from app.services.conflict_service import ConflictResolutionService
from app.services.message_log import MessageLog
from app.services.offline_queue_service import OfflineQueueService

logger = logging.getLogger(__name__)


class OperationRejected(Exception):
    """The log refused the operation, e.g. its target does not exist yet"""


class OperationProcessor:
    def __init__(
        self,
        log: MessageLog,
        queue: OfflineQueueService,
        conflicts: ConflictResolutionService,
        client_states: ClientStateService,
        clock: Clock = system_clock,
    ):
        self.log = log
        self.queue = queue
        self.conflicts = conflicts
        self.client_states = client_states
        self.clock = clock

    def process_next(self, device_key: DeviceKey) -> Optional[ProcessResult]:
        """Process one due item from the device queue; None when nothing is due"""
        item = self.queue.dequeue(device_key)
        if not item:
            return None
        return self.process_item(device_key, item)

    def drain(self, device_key: DeviceKey, max_items: int = 100) -> List[ProcessResult]:
        results = []
        for _ in range(max_items):
            result = self.process_next(device_key)
            if result is None:
                break
            results.append(result)
        return results

    def process_item(self, device_key: DeviceKey, item: QueueItem) -> ProcessResult:
        operation = item.operation
        result = ProcessResult(
            queue_item_id=item.id,
            operation_id=operation.id,
            outcome=ProcessOutcome.APPLIED,
        )

        if operation.is_expired(self.clock.now()):
            self.queue.clear_expired_operations(device_key)
            self.client_states.remove_pending_operation(device_key, operation.id)
            result.outcome = ProcessOutcome.EXPIRED
            logger.info(f"Dropped expired operation {operation.id}")
            return result

        try:
            conflicts = self.conflicts.detect_conflicts(device_key.user_id, device_key.tenant_id, operation)
            if conflicts:
                for conflict in conflicts:
                    self.client_states.add_conflict_resolution(device_key, conflict)
                result.outcome = ProcessOutcome.CONFLICT
                result.conflicts = conflicts
            else:
                self._apply(device_key, item)

            self.queue.mark_completed(device_key, item.id)
            self.client_states.remove_pending_operation(device_key, operation.id)
            return result

        except (SQLAlchemyError, CoordinationStoreError, OperationRejected) as e:
            if isinstance(e, SQLAlchemyError):
                self.log.db.rollback()
            logger.error(f"Failed to process operation {operation.id}: {e}")
            updated = self.queue.mark_failed(device_key, item.id, str(e))
            result.error = str(e)
            if updated is not None and updated.status == QueueStatus.FAILED:
                result.outcome = ProcessOutcome.FAILED
            else:
                result.outcome = ProcessOutcome.RETRYING
            return result

    def _apply(self, device_key: DeviceKey, item: QueueItem) -> None:
        operation = item.operation
        payload = operation.payload
        user_id = device_key.user_id

        if operation.type == OperationType.SEND_MESSAGE:
            if self.log.get_conversation(payload.conversation_id) is None:
                raise OperationRejected(f"Conversation {payload.conversation_id} not found")
            self.log.append_message(
                device_key.tenant_id,
                payload.conversation_id,
                user_id,
                payload.content,
                message_type=payload.message_type,
                client_message_id=payload.client_message_id or operation.id,
            )
        elif operation.type == OperationType.EDIT_MESSAGE:
            self.log.apply_message_state(payload.message_id, content=payload.content)
        elif operation.type == OperationType.DELETE_MESSAGE:
            self.log.apply_message_state(payload.message_id, is_deleted=True)
        elif operation.type == OperationType.REACTION:
            if self.log.set_reaction(payload.message_id, user_id, payload.emoji, payload.remove) is None:
                raise OperationRejected(f"Message {payload.message_id} not found")
        elif operation.type == OperationType.READ_RECEIPT:
            self.log.mark_read(payload.conversation_id, user_id, payload.sequence_number)
        elif operation.type == OperationType.JOIN_CONVERSATION:
            if self.log.add_member(payload.conversation_id, user_id) is None:
                raise OperationRejected(f"Conversation {payload.conversation_id} not found")
        elif operation.type == OperationType.LEAVE_CONVERSATION:
            self.log.remove_member(payload.conversation_id, user_id)

        logger.debug(f"Applied {operation.type} operation {operation.id}")
