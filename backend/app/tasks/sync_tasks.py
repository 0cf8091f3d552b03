import logging
from typing import Optional

from app.tasks import celery_app
from app.core.coordination import get_coordination_store
from app.core.database import SessionLocal
from app.schemas.sync import DeviceKey, QueueStatus
from app.services.client_state_service import ClientStateService
from app.services.conflict_service import ConflictResolutionService
from app.services.message_log import MessageLog
from app.services.offline_queue_service import OfflineQueueService
from app.services.operation_processor import OperationProcessor

logger = logging.getLogger(__name__)


def build_processor(db, store=None) -> OperationProcessor:
    store = store or get_coordination_store()
    log = MessageLog(db)
    client_states = ClientStateService(store)
    return OperationProcessor(
        log=log,
        queue=OfflineQueueService(store),
        conflicts=ConflictResolutionService(log, store, client_states),
        client_states=client_states,
    )


@celery_app.task
def process_device_queue(tenant_id: str, user_id: str, device_id: str, max_items: int = 100) -> dict:
    """
    Drain the due operations of one device queue.

    Items backing off after a failed attempt are not due yet, so the task
    schedules itself again for the earliest of them.
    """
    device_key = DeviceKey(tenant_id, user_id, device_id)
    db = SessionLocal()
    try:
        processor = build_processor(db)
        results = processor.drain(device_key, max_items=max_items)

        outcomes = {}
        for result in results:
            outcomes[result.outcome.value] = outcomes.get(result.outcome.value, 0) + 1

        logger.info(f"Processed {len(results)} operations for device {device_id}: {outcomes}")

        countdown = next_due_in(processor.queue, device_key)
        if countdown is not None:
            process_device_queue.apply_async(args=[tenant_id, user_id, device_id, max_items], countdown=countdown)
        return {"status": "success", "processed": len(results), "outcomes": outcomes}

    finally:
        db.close()


def next_due_in(queue: OfflineQueueService, device_key: DeviceKey) -> Optional[float]:
    """Seconds until the next pending item is due (at least one), or None if nothing is pending"""
    pending = [item.scheduled_at for item in queue.list_items(device_key) if item.status == QueueStatus.PENDING]
    if not pending:
        return None
    return max(1.0, (min(pending) - queue.clock.now()).total_seconds())


def dispatch_device_queue(device_key: DeviceKey) -> None:
    """Hand a device queue to a worker. Queued items survive a broker outage."""
    try:
        process_device_queue.delay(device_key.tenant_id, device_key.user_id, device_key.device_id)
    except Exception as e:
        logger.warning(f"Could not dispatch queue processing for device {device_key.device_id}: {e}")


@celery_app.task
def cleanup_stale_client_states() -> dict:
    """
    Delete device states that have not synced within the retention window.
    """
    cleaned = ClientStateService(get_coordination_store()).cleanup_stale_states()
    return {"status": "success", "cleaned": cleaned}


@celery_app.task
def purge_expired_operations() -> dict:
    purged = OfflineQueueService(get_coordination_store()).purge_expired_operations()
    return {"status": "success", "purged": purged}


@celery_app.task
def reclaim_stale_processing() -> dict:
    """
    Put items abandoned by crashed workers back on their queues.
    """
    reclaimed = OfflineQueueService(get_coordination_store()).reclaim_stale_processing()
    return {"status": "success", "reclaimed": reclaimed}
