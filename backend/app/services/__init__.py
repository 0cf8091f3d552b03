from app.services.message_log import MessageLog
from app.services.offline_queue_service import OfflineQueueService
from app.services.client_state_service import ClientStateService
from app.services.conflict_service import ConflictResolutionService
from app.services.sync_service import SyncService
from app.services.operation_processor import OperationProcessor

__all__ = [
    "MessageLog",
    "OfflineQueueService",
    "ClientStateService",
    "ConflictResolutionService",
    "SyncService",
    "OperationProcessor",
]
