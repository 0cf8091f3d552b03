"""Offline sync API endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from app.api.v1.dependencies import SyncContext, SyncServices, get_sync_context, get_sync_services
from app.core.exceptions import (
    ConflictNotFoundError,
    DuplicateOperationError,
    InvalidOperationError,
    InvalidQueueStateError,
    QueueItemNotFoundError,
    StaleMessageVersionError,
    UnsupportedStrategyError,
)
from app.schemas.sync import (
    CleanupResult,
    ClientState,
    ClientStateUpdate,
    ConflictResolution,
    DeviceKey,
    EnqueueRequest,
    EnqueueResponse,
    ProcessResult,
    QueueItem,
    QueueStatusCounts,
    ReconcileRequest,
    ReconcileResult,
    ResolveConflictRequest,
    SyncMetrics,
    SyncRequest,
    SyncResponse,
    is_safe_key_part,
)
from app.tasks.sync_tasks import dispatch_device_queue

router = APIRouter(prefix="/sync", tags=["Sync"])


def _device_key(context: SyncContext, device_id: str) -> DeviceKey:
    if not is_safe_key_part(device_id):
        raise HTTPException(status_code=422, detail="Device id must be non-empty and free of ':*?[]'")
    return DeviceKey(context.tenant_id, context.user_id, device_id)


# Delta sync
@router.post("/delta", response_model=SyncResponse)
def perform_delta_sync(
    data: SyncRequest,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Pull the changes after the device's last sequence number"""
    _device_key(context, data.device_id)
    return services.sync.perform_delta_sync(context.user_id, context.tenant_id, data)


@router.get("/metrics", response_model=Optional[SyncMetrics])
def get_sync_metrics(
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    return services.sync.get_sync_metrics(context.user_id, context.tenant_id)


@router.post("/force-reset")
def force_sync_reset(
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Forget every device state, queue, conflict and metric of the user"""
    services.sync.reset_sync_state(context.user_id, context.tenant_id)
    return {"message": "Sync state reset"}


@router.post("/cleanup/expired", response_model=CleanupResult)
def cleanup_expired(
    device_id: Optional[str] = None,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Drop expired operations from one device, or from every device of the user"""
    if device_id is not None:
        device_keys = [_device_key(context, device_id)]
    else:
        device_keys = [
            DeviceKey(context.tenant_id, context.user_id, state.device_id)
            for state in services.client_states.get_device_states(context.tenant_id, context.user_id)
        ]

    result = CleanupResult(expired_operations=0, expired_states=0)
    for device_key in device_keys:
        result.expired_operations += services.queue.clear_expired_operations(device_key)
        result.expired_states += services.client_states.clear_expired_operations(device_key)
    return result


# Client state
@router.get("/devices", response_model=List[ClientState])
def get_device_states(
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Get the sync checkpoints of every device of the user"""
    return services.client_states.get_device_states(context.tenant_id, context.user_id)


@router.get("/state/{device_id}", response_model=ClientState)
def get_client_state(
    device_id: str,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Get a device's sync checkpoint"""
    state = services.client_states.get_client_state(_device_key(context, device_id))
    if not state:
        raise HTTPException(status_code=404, detail="Client state not found")
    return state


@router.put("/state/{device_id}", response_model=ClientState)
def update_client_state(
    device_id: str,
    data: ClientStateUpdate,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Record a device checkpoint; the sequence number never moves backwards"""
    return services.client_states.update_client_state(
        _device_key(context, device_id),
        **data.model_dump(exclude_none=True),
    )


@router.post("/state/{device_id}/reconcile", response_model=ReconcileResult)
def reconcile_client_state(
    device_id: str,
    data: ReconcileRequest,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Reconcile a device's pending operations against a server sequence"""
    return services.client_states.reconcile(_device_key(context, device_id), data.server_sequence_number)


@router.delete("/state/{device_id}")
def reset_client_state(
    device_id: str,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Forget a device, e.g. on logout"""
    device_key = _device_key(context, device_id)
    services.client_states.reset_client_state(device_key)
    services.queue.clear_all_operations(device_key)
    return {"message": "Client state reset"}


# Offline queue
@router.post("/queue/{device_id}", response_model=EnqueueResponse)
def enqueue_operation(
    device_id: str,
    data: EnqueueRequest,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Queue an offline operation and hand the queue to a worker"""
    if data.operation.device_id != device_id:
        raise HTTPException(status_code=422, detail="Operation device does not match the queue")

    device_key = _device_key(context, device_id)
    try:
        item_id = services.queue.enqueue(device_key, data.operation, data.priority)
    except DuplicateOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidOperationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    services.client_states.add_pending_operation(device_key, data.operation)
    dispatch_device_queue(device_key)
    return EnqueueResponse(queue_item_id=item_id)


@router.get("/queue/{device_id}/status", response_model=QueueStatusCounts)
def get_queue_status(
    device_id: str,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    return services.queue.get_queue_status(_device_key(context, device_id))


@router.get("/queue/{device_id}/failed", response_model=List[QueueItem])
def get_failed_operations(
    device_id: str,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    return services.queue.get_failed_operations(_device_key(context, device_id))


@router.post("/queue/{device_id}/items/{item_id}/retry", response_model=QueueItem)
def retry_failed_operation(
    device_id: str,
    item_id: str,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Re-queue an operation that exhausted its retries"""
    device_key = _device_key(context, device_id)
    try:
        item = services.queue.retry_failed(device_key, item_id)
    except QueueItemNotFoundError:
        raise HTTPException(status_code=404, detail="Queue item not found")
    except InvalidQueueStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    dispatch_device_queue(device_key)
    return item


@router.delete("/queue/{device_id}/clear")
def clear_queue(
    device_id: str,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Drop every queued operation of a device"""
    services.queue.clear_all_operations(_device_key(context, device_id))
    return {"message": "Queue cleared"}


@router.post("/queue/{device_id}/process", response_model=List[ProcessResult])
def process_queue(
    device_id: str,
    max_items: int = 100,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Process the device's due operations in-request"""
    return services.processor.drain(_device_key(context, device_id), max_items=max_items)


# Conflicts
@router.get("/conflicts", response_model=List[ConflictResolution])
def get_conflicts(
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Get unresolved conflicts"""
    return services.conflicts.get_conflicts(context.user_id, context.tenant_id)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResolution)
def resolve_conflict(
    conflict_id: str,
    data: ResolveConflictRequest,
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    """Resolve a conflict with the given strategy"""
    try:
        return services.conflicts.resolve_conflict(context.user_id, context.tenant_id, conflict_id, data.strategy)
    except ConflictNotFoundError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except UnsupportedStrategyError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StaleMessageVersionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/conflicts")
def clear_conflicts(
    context: SyncContext = Depends(get_sync_context),
    services: SyncServices = Depends(get_sync_services),
):
    services.conflicts.clear_conflicts(context.user_id, context.tenant_id)
    return {"message": "Conflicts cleared"}
