"""Per-device offline operation queue.

Items live in the coordination store as JSON detail records plus a sorted-set
priority index per device. Index score is ``scheduled_at_ms`` shifted by a
priority offset, so items scheduled at the same instant come out HIGH, NORMAL,
LOW and then FIFO. Dequeue is a single atomic claim against the store.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from app.core.clock import Clock, system_clock, to_epoch_ms
from app.core.config import get_settings
from app.core.coordination import CoordinationStore
from app.core.exceptions import (
    CoordinationStoreError,
    DuplicateOperationError,
    InvalidOperationError,
    InvalidQueueStateError,
    OperationExpiredError,
    QueueItemNotFoundError,
)
from app.schemas.sync import (
    DeviceKey,
    OperationType,
    PendingOperation,
    QueueItem,
    QueuePriority,
    QueueStatus,
    QueueStatusCounts,
)

logger = logging.getLogger(__name__)

settings = get_settings()


def queue_key(key: DeviceKey) -> str:
    return f"sync:queue:{key.tenant_id}:{key.user_id}:{key.device_id}"


def item_key_prefix(key: DeviceKey) -> str:
    return f"sync:item:{key.tenant_id}:{key.user_id}:{key.device_id}:"


def operation_marker_key(key: DeviceKey, operation_id: str) -> str:
    return f"sync:opid:{key.tenant_id}:{key.user_id}:{key.device_id}:{operation_id}"


def sequence_key(key: DeviceKey) -> str:
    return f"sync:seq:{key.tenant_id}:{key.user_id}:{key.device_id}"


def events_channel(tenant_id: str, user_id: str) -> str:
    return f"sync:events:{tenant_id}:{user_id}"


def _device_key_from_item_key(key: str) -> DeviceKey:
    # sync:item:{tenant}:{user}:{device}:{item_id}
    _, _, tenant_id, user_id, device_id, _ = key.split(":", 5)
    return DeviceKey(tenant_id, user_id, device_id)


class OfflineQueueService:
    PRIORITY_SIGN = {
        QueuePriority.HIGH: -1,
        QueuePriority.NORMAL: 0,
        QueuePriority.LOW: 1,
    }

    def __init__(self, store: CoordinationStore, clock: Clock = system_clock):
        self.store = store
        self.clock = clock
        self.max_attempts = settings.QUEUE_MAX_ATTEMPTS
        self.retry_delays = list(settings.QUEUE_RETRY_DELAYS)

    # Enqueue / dequeue
    def enqueue(
        self,
        device_key: DeviceKey,
        operation: PendingOperation,
        priority: QueuePriority = QueuePriority.NORMAL,
    ) -> str:
        """Persist an operation and schedule it for immediate processing"""
        if not device_key.is_key_safe():
            raise InvalidOperationError(f"Invalid device key {device_key}: ids must be non-empty and free of ':*?[]'")

        now = self.clock.now()
        if operation.is_expired(now):
            raise OperationExpiredError(f"Operation {operation.id} expired at {operation.ttl.isoformat()}")

        ttl = self._ttl_seconds(operation, now)
        marker = operation_marker_key(device_key, operation.id)
        if not self.store.set(marker, "1", ttl=ttl, nx=True):
            raise DuplicateOperationError(f"Operation {operation.id} already submitted by device {device_key.device_id}")

        written = [marker]
        try:
            # Equal scores are ordered by member, so the id leads with the enqueue
            # time and a per-device counter to keep same-millisecond items FIFO.
            now_ms = to_epoch_ms(now)
            counter = sequence_key(device_key)
            enqueue_seq = self.store.incr(counter) % 1_000_000
            self.store.expire(counter, settings.QUEUE_TTL_SECONDS)

            item = QueueItem(
                id=f"{device_key.device_id}_{now_ms}-{enqueue_seq:06d}_{operation.id}",
                operation=operation,
                priority=priority,
                status=QueueStatus.PENDING,
                attempts=0,
                created_at=now,
                scheduled_at=now,
                scheduled_at_ms=now_ms,
            )
            written.append(item_key_prefix(device_key) + item.id)
            self._save(device_key, item, ttl)
            self._index(device_key, item)
        except CoordinationStoreError:
            # Release the operation id so the device can submit it again
            logger.error(f"Failed to persist operation {operation.id} for device {device_key.device_id}")
            self.store.delete(*written)
            raise

        self._publish(device_key, "operation_enqueued", item)
        logger.debug(f"Enqueued operation {operation.id} with priority {priority.value}")
        return item.id

    def dequeue(self, device_key: DeviceKey) -> Optional[QueueItem]:
        """Claim the highest-priority due item, or None if nothing is due"""
        claimed = self.store.claim_due(
            queue_key(device_key),
            item_key_prefix(device_key),
            self.clock.now_ms(),
            settings.QUEUE_CLAIM_SCAN_LIMIT,
        )
        if not claimed:
            return None

        _, raw = claimed
        item = QueueItem.model_validate_json(raw)
        now = self.clock.now()
        item.status = QueueStatus.PROCESSING
        item.attempts += 1
        item.claimed_at = now
        self._save(device_key, item, self._ttl_seconds(item.operation, now))

        logger.debug(f"Dequeued operation {item.operation.id}, attempt {item.attempts}")
        return item

    # Outcomes
    def mark_completed(self, device_key: DeviceKey, item_id: str) -> Optional[QueueItem]:
        item = self.get_item(device_key, item_id)
        if not item:
            return None

        item.status = QueueStatus.COMPLETED
        self.store.zrem(queue_key(device_key), item_id)
        self._save(device_key, item, settings.COMPLETED_RETENTION_SECONDS)
        logger.debug(f"Marked operation {item.operation.id} as completed")
        return item

    def mark_failed(self, device_key: DeviceKey, item_id: str, error: str) -> Optional[QueueItem]:
        """Schedule a retry with backoff, or fail the item once attempts are exhausted"""
        item = self.get_item(device_key, item_id)
        if not item:
            return None
        if item.status in (QueueStatus.COMPLETED, QueueStatus.FAILED):
            raise InvalidQueueStateError(f"Queue item {item_id} is already {item.status.value}")

        now = self.clock.now()
        item.last_error = error
        item.claimed_at = None

        if item.attempts >= self.max_attempts:
            item.status = QueueStatus.FAILED
            self.store.zrem(queue_key(device_key), item_id)
            self._save(device_key, item, settings.FAILED_RETENTION_SECONDS)
            self._publish(device_key, "operation_failed", item)
            logger.warning(f"Operation {item.operation.id} failed after {item.attempts} attempts: {error}")
            return item

        delay = self.retry_delay(item.attempts)
        item.status = QueueStatus.PENDING
        item.schedule(now + timedelta(seconds=delay))
        self._save(device_key, item, self._ttl_seconds(item.operation, now))
        self._index(device_key, item)

        logger.debug(f"Scheduled retry for operation {item.operation.id} in {delay}s")
        return item

    def retry_delay(self, attempts: int) -> int:
        """Backoff delay in seconds after the given number of attempts"""
        index = min(max(attempts, 1) - 1, len(self.retry_delays) - 1)
        return self.retry_delays[index]

    def retry_failed(self, device_key: DeviceKey, item_id: str) -> QueueItem:
        item = self.get_item(device_key, item_id)
        if not item:
            raise QueueItemNotFoundError(f"Queue item {item_id} not found")
        if item.status != QueueStatus.FAILED:
            raise InvalidQueueStateError(f"Queue item {item_id} is {item.status.value}, not failed")

        now = self.clock.now()
        if item.operation.is_expired(now):
            self._purge(device_key, item)
            raise QueueItemNotFoundError(f"Queue item {item_id} expired")

        item.status = QueueStatus.PENDING
        item.attempts = 0
        item.last_error = None
        item.schedule(now)
        self._save(device_key, item, self._ttl_seconds(item.operation, now))
        self._index(device_key, item)

        logger.info(f"Retrying failed operation {item.operation.id}")
        return item

    # Reads
    def get_item(self, device_key: DeviceKey, item_id: str) -> Optional[QueueItem]:
        raw = self.store.get(item_key_prefix(device_key) + item_id)
        if raw is None:
            return None
        return QueueItem.model_validate_json(raw)

    def list_items(self, device_key: DeviceKey) -> List[QueueItem]:
        items = []
        for key in self.store.scan_keys(item_key_prefix(device_key) + "*"):
            raw = self.store.get(key)
            if raw is not None:
                items.append(QueueItem.model_validate_json(raw))
        return items

    def get_queue_status(self, device_key: DeviceKey) -> QueueStatusCounts:
        counts = QueueStatusCounts()
        for item in self.list_items(device_key):
            setattr(counts, item.status.value, getattr(counts, item.status.value) + 1)
        return counts

    def get_failed_operations(self, device_key: DeviceKey) -> List[QueueItem]:
        failed = [item for item in self.list_items(device_key) if item.status == QueueStatus.FAILED]
        return sorted(failed, key=lambda item: item.created_at, reverse=True)

    def get_operations_by_type(self, device_key: DeviceKey, operation_type: OperationType) -> List[QueueItem]:
        items = [item for item in self.list_items(device_key) if item.operation.type == operation_type]
        return sorted(items, key=lambda item: item.created_at)

    # Cleanup
    def clear_expired_operations(self, device_key: DeviceKey) -> int:
        """Delete every item whose operation ttl elapsed, whatever its status"""
        now = self.clock.now()
        cleared = 0
        for item in self.list_items(device_key):
            if item.operation.is_expired(now):
                self._purge(device_key, item)
                cleared += 1

        if cleared:
            logger.info(f"Cleared {cleared} expired operations for device {device_key.device_id}")
        return cleared

    def purge_expired_operations(self) -> int:
        """Sweep every device queue for expired operations"""
        devices = {_device_key_from_item_key(key) for key in self.store.scan_keys("sync:item:*")}
        return sum(self.clear_expired_operations(device_key) for device_key in devices)

    def reclaim_stale_processing(self, visibility_timeout: Optional[int] = None) -> int:
        """Return abandoned items to the index.

        An item is abandoned when it has been processing longer than the
        visibility timeout (its worker died), or when it has been due for
        longer than the timeout while missing from the index (a claim was
        interrupted before the item was marked processing). The attempt
        already counted for a dead worker is kept.
        """
        timeout = timedelta(seconds=visibility_timeout or settings.PROCESSING_VISIBILITY_TIMEOUT_SECONDS)
        now = self.clock.now()
        reclaimed = 0

        for key in self.store.scan_keys("sync:item:*"):
            raw = self.store.get(key)
            if raw is None:
                continue
            item = QueueItem.model_validate_json(raw)
            device_key = _device_key_from_item_key(key)
            if item.operation.is_expired(now):
                continue

            if item.status == QueueStatus.PROCESSING:
                if not item.claimed_at or now - item.claimed_at < timeout:
                    continue
                if item.attempts >= self.max_attempts:
                    self.mark_failed(device_key, item.id, "Worker did not finish within the visibility timeout")
                    reclaimed += 1
                    continue
                item.status = QueueStatus.PENDING
                item.claimed_at = None
                item.schedule(now)
                self._save(device_key, item, self._ttl_seconds(item.operation, now))
            elif item.status == QueueStatus.PENDING:
                if now - item.scheduled_at < timeout:
                    continue
                if self.store.zscore(queue_key(device_key), item.id) is not None:
                    continue
            else:
                continue

            self._index(device_key, item)
            reclaimed += 1

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} abandoned queue items")
        return reclaimed

    def clear_all_operations(self, device_key: DeviceKey) -> None:
        keys = self.store.scan_keys(item_key_prefix(device_key) + "*")
        keys += self.store.scan_keys(operation_marker_key(device_key, "*"))
        self.store.delete(queue_key(device_key), sequence_key(device_key), *keys)
        logger.info(f"Cleared all operations for device {device_key.device_id}")

    def clear_queue(self, tenant_id: str, user_id: str) -> None:
        """Clear the queues of every device of a user"""
        keys = []
        for prefix in ("queue", "item", "opid", "seq"):
            keys += self.store.scan_keys(f"sync:{prefix}:{tenant_id}:{user_id}:*")
        if keys:
            self.store.delete(*keys)
        logger.info(f"Cleared offline queue for user {user_id} in tenant {tenant_id}")

    # Internals
    def priority_score(self, priority: QueuePriority, scheduled_at_ms: int) -> int:
        return scheduled_at_ms + self.PRIORITY_SIGN[priority] * settings.QUEUE_PRIORITY_OFFSET_MS

    def _index(self, device_key: DeviceKey, item: QueueItem) -> None:
        index = queue_key(device_key)
        self.store.zadd(index, item.id, self.priority_score(item.priority, item.scheduled_at_ms))
        self.store.expire(index, settings.QUEUE_TTL_SECONDS)

    def _save(self, device_key: DeviceKey, item: QueueItem, ttl: int) -> None:
        self.store.set(item_key_prefix(device_key) + item.id, item.model_dump_json(), ttl=ttl)

    def _purge(self, device_key: DeviceKey, item: QueueItem) -> None:
        self.store.zrem(queue_key(device_key), item.id)
        self.store.delete(item_key_prefix(device_key) + item.id)

    def _ttl_seconds(self, operation: PendingOperation, now: datetime) -> int:
        remaining = int((operation.ttl - now).total_seconds())
        return max(1, min(settings.QUEUE_TTL_SECONDS, remaining))

    def _publish(self, device_key: DeviceKey, event: str, item: QueueItem) -> None:
        message = json.dumps({
            "event": event,
            "device_id": device_key.device_id,
            "queue_item_id": item.id,
            "operation_id": item.operation.id,
            "status": item.status.value,
        })
        self.store.publish(events_channel(device_key.tenant_id, device_key.user_id), message)
