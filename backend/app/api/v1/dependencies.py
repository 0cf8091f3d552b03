from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.coordination import CoordinationStore, get_coordination_store
from app.core.database import get_db
from app.schemas.sync import is_safe_key_part
from app.services.client_state_service import ClientStateService
from app.services.conflict_service import ConflictResolutionService
from app.services.message_log import MessageLog
from app.services.offline_queue_service import OfflineQueueService
from app.services.operation_processor import OperationProcessor
from app.services.sync_service import SyncService


@dataclass
class SyncContext:
    """Identity resolved by the host application's auth layer"""
    tenant_id: str
    user_id: str


async def get_sync_context(
    x_tenant_id: str = Header(None),
    x_user_id: str = Header(None),
) -> SyncContext:
    """Read tenant and user from the headers set by the upstream gateway."""
    if not x_tenant_id or not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID and X-User-ID headers are required"
        )
    if not (is_safe_key_part(x_tenant_id) and is_safe_key_part(x_user_id)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant and user ids must be free of ':*?[]'"
        )
    return SyncContext(tenant_id=x_tenant_id, user_id=x_user_id)


def get_store() -> CoordinationStore:
    return get_coordination_store()


def get_clock() -> Clock:
    return system_clock


@dataclass
class SyncServices:
    log: MessageLog
    queue: OfflineQueueService
    client_states: ClientStateService
    conflicts: ConflictResolutionService
    sync: SyncService
    processor: OperationProcessor


def get_sync_services(
    db: Session = Depends(get_db),
    store: CoordinationStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> SyncServices:
    log = MessageLog(db, clock)
    queue = OfflineQueueService(store, clock)
    client_states = ClientStateService(store, clock)
    conflicts = ConflictResolutionService(log, store, client_states, clock=clock)
    return SyncServices(
        log=log,
        queue=queue,
        client_states=client_states,
        conflicts=conflicts,
        sync=SyncService(log, store, client_states, clock),
        processor=OperationProcessor(log, queue, conflicts, client_states, clock),
    )
