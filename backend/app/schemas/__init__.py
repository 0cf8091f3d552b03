from app.schemas.sync import (
    OperationType, QueuePriority, QueueStatus, ConflictType, ResolutionStrategy,
    DeviceKey, PendingOperation, QueueItem, QueueStatusCounts,
    MessageSnapshot, SequenceSnapshot, MessageChanges, ConflictResolution,
    ClientState, ReconcileResult, SyncRequest, SyncResponse, SyncMetrics,
    ProcessOutcome, ProcessResult,
)

__all__ = [
    "OperationType", "QueuePriority", "QueueStatus", "ConflictType", "ResolutionStrategy",
    "DeviceKey", "PendingOperation", "QueueItem", "QueueStatusCounts",
    "MessageSnapshot", "SequenceSnapshot", "MessageChanges", "ConflictResolution",
    "ClientState", "ReconcileResult", "SyncRequest", "SyncResponse", "SyncMetrics",
    "ProcessOutcome", "ProcessResult",
]
