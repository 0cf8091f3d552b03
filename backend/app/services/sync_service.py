"""Delta sync: the ordered changes a device has to pull to catch up"""
import logging
import time
from typing import Optional

from app.core.clock import Clock, system_clock
from app.core.config import get_settings
from app.core.coordination import CoordinationStore
from app.schemas.sync import (
    DeviceKey,
    SyncMetrics,
    SyncRequest,
    SyncResponse,
)
from app.services.client_state_service import ClientStateService
from app.services.conflict_service import ConflictResolutionService
from app.services.message_log import MessageLog
from app.services.offline_queue_service import OfflineQueueService

logger = logging.getLogger(__name__)

settings = get_settings()


def metrics_key(tenant_id: str, user_id: str) -> str:
    return f"sync:metrics:{tenant_id}:{user_id}"


class SyncService:
    def __init__(
        self,
        log: MessageLog,
        store: CoordinationStore,
        client_states: Optional[ClientStateService] = None,
        clock: Clock = system_clock,
        batch_size: Optional[int] = None,
    ):
        self.log = log
        self.store = store
        self.client_states = client_states or ClientStateService(store, clock)
        self.clock = clock
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE

    def perform_delta_sync(self, user_id: str, tenant_id: str, request: SyncRequest) -> SyncResponse:
        """Return one page of changes after ``request.last_sequence_number``.

        Messages (including edits and soft deletes) and tombstones of hard
        deleted items are merged by sequence and capped at the batch size.
        ``has_more`` tells the device to call again with ``next_cursor``.
        """
        started = time.perf_counter()
        cursor = request.last_sequence_number
        conversation_ids = request.conversation_ids or None

        current_sequence = self.log.current_sequence(tenant_id)
        messages = self.log.messages_since(tenant_id, cursor, conversation_ids, self.batch_size)
        tombstones = self.log.tombstones_since(tenant_id, cursor, conversation_ids, self.batch_size)

        entries = sorted(
            [(message.change_sequence, "message", message) for message in messages]
            + [(tombstone.sequence_number, "tombstone", tombstone) for tombstone in tombstones],
            key=lambda entry: entry[0],
        )[:self.batch_size]

        message_page = [self.log.message_snapshot(row) for _, kind, row in entries if kind == "message"]
        deleted_items = [self.log.tombstone_item(row) for _, kind, row in entries if kind == "tombstone"]

        has_more = len(entries) >= self.batch_size
        next_cursor = entries[-1][0] if entries else cursor

        touched = list(dict.fromkeys(
            [message.conversation_id for message in message_page] + list(request.conversation_ids or [])
        ))
        conversations = [
            self.log.conversation_snapshot(conversation)
            for conversation in self.log.get_conversations(tenant_id, touched)
        ]

        now = self.clock.now()
        metrics = SyncMetrics(
            messages_count=len(message_page),
            conversations_count=len(conversations),
            deleted_items_count=len(deleted_items),
            sync_duration_ms=(time.perf_counter() - started) * 1000,
            last_sync_sequence=current_sequence,
            timestamp=now,
        )
        self.record_sync_metrics(user_id, tenant_id, metrics)

        # Prune pending operations against what the device has now absorbed
        device_key = DeviceKey(tenant_id, user_id, request.device_id)
        absorbed = next_cursor if has_more else max(current_sequence, cursor)
        if self.client_states.get_client_state(device_key) is None:
            self.client_states.update_client_state(device_key, last_sync_timestamp=now)
        self.client_states.reconcile(device_key, absorbed)

        logger.info(
            f"Delta sync for user {user_id} device {request.device_id}: "
            f"{len(message_page)} messages, {len(deleted_items)} deletions after {cursor}, has_more={has_more}"
        )
        return SyncResponse(
            messages=message_page,
            conversations=conversations,
            deleted_items=deleted_items,
            current_sequence_number=current_sequence,
            has_more=has_more,
            next_cursor=next_cursor,
            server_timestamp=now,
            metrics=metrics,
        )

    def record_sync_metrics(self, user_id: str, tenant_id: str, metrics: SyncMetrics) -> None:
        self.store.set(metrics_key(tenant_id, user_id), metrics.model_dump_json(), ttl=settings.METRICS_TTL_SECONDS)

    def get_sync_metrics(self, user_id: str, tenant_id: str) -> Optional[SyncMetrics]:
        raw = self.store.get(metrics_key(tenant_id, user_id))
        return SyncMetrics.model_validate_json(raw) if raw else None

    def reset_sync_state(self, user_id: str, tenant_id: str) -> None:
        """Forget everything the core holds for a user: states, queues, conflicts, metrics"""
        self.client_states.clear_user_state(tenant_id, user_id)
        OfflineQueueService(self.store, self.clock).clear_queue(tenant_id, user_id)
        ConflictResolutionService(self.log, self.store, clock=self.clock).clear_conflicts(user_id, tenant_id)
        self.store.delete(metrics_key(tenant_id, user_id))
        logger.info(f"Reset sync state for user {user_id}")
