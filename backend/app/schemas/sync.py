"""Offline sync schemas: operations, queue items, client state, conflicts, delta sync"""
import enum
from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import AfterValidator, BaseModel, Field, TypeAdapter, model_validator

from app.core.clock import to_epoch_ms


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_naive_utc)]


class OperationType(str, enum.Enum):
    SEND_MESSAGE = "send_message"
    EDIT_MESSAGE = "edit_message"
    DELETE_MESSAGE = "delete_message"
    REACTION = "reaction"
    READ_RECEIPT = "read_receipt"
    JOIN_CONVERSATION = "join_conversation"
    LEAVE_CONVERSATION = "leave_conversation"


class QueuePriority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConflictType(str, enum.Enum):
    EDIT_CONFLICT = "edit_conflict"
    DELETE_CONFLICT = "delete_conflict"
    SEQUENCE_CONFLICT = "sequence_conflict"


class ResolutionStrategy(str, enum.Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE = "merge"
    MANUAL = "manual"


# Store keys join ids with ":" and sweeps match them with glob patterns
KEY_RESERVED_CHARS = frozenset(":*?[]")


def is_safe_key_part(value: str) -> bool:
    return bool(value) and not KEY_RESERVED_CHARS.intersection(value)


class DeviceKey(NamedTuple):
    tenant_id: str
    user_id: str
    device_id: str

    def is_key_safe(self) -> bool:
        return all(is_safe_key_part(part) for part in self)


# Operation payloads, one per operation type

class OperationPayload(BaseModel):
    # Sequence number the client believed was current when it created the operation
    base_sequence_number: Optional[int] = None


class SendMessagePayload(OperationPayload):
    conversation_id: str
    content: str
    message_type: str = "text"
    client_message_id: Optional[str] = None


class EditMessagePayload(OperationPayload):
    message_id: str
    content: str
    edited_at: UtcDatetime  # client's last known edit time


class DeleteMessagePayload(OperationPayload):
    message_id: str


class ReactionPayload(OperationPayload):
    message_id: str
    emoji: str = Field(min_length=1, max_length=32)
    remove: bool = False


class ReadReceiptPayload(OperationPayload):
    conversation_id: str
    sequence_number: int = Field(ge=0)


class MembershipPayload(OperationPayload):
    conversation_id: str


class BaseOperation(BaseModel):
    id: str = Field(min_length=1)
    device_id: str
    timestamp: UtcDatetime
    ttl: UtcDatetime

    @model_validator(mode="after")
    def check_ttl(self):
        if self.ttl <= self.timestamp:
            raise ValueError("ttl must be later than timestamp")
        return self

    def is_expired(self, now: datetime) -> bool:
        return self.ttl <= now


class SendMessageOperation(BaseOperation):
    type: Literal["send_message"] = "send_message"
    payload: SendMessagePayload


class EditMessageOperation(BaseOperation):
    type: Literal["edit_message"] = "edit_message"
    payload: EditMessagePayload


class DeleteMessageOperation(BaseOperation):
    type: Literal["delete_message"] = "delete_message"
    payload: DeleteMessagePayload


class ReactionOperation(BaseOperation):
    type: Literal["reaction"] = "reaction"
    payload: ReactionPayload


class ReadReceiptOperation(BaseOperation):
    type: Literal["read_receipt"] = "read_receipt"
    payload: ReadReceiptPayload


class JoinConversationOperation(BaseOperation):
    type: Literal["join_conversation"] = "join_conversation"
    payload: MembershipPayload


class LeaveConversationOperation(BaseOperation):
    type: Literal["leave_conversation"] = "leave_conversation"
    payload: MembershipPayload


PendingOperation = Annotated[
    Union[
        SendMessageOperation,
        EditMessageOperation,
        DeleteMessageOperation,
        ReactionOperation,
        ReadReceiptOperation,
        JoinConversationOperation,
        LeaveConversationOperation,
    ],
    Field(discriminator="type"),
]

pending_operation_adapter = TypeAdapter(PendingOperation)


class QueueItem(BaseModel):
    """Durable, schedulable wrapper around a pending operation"""
    id: str
    operation: PendingOperation
    priority: QueuePriority = QueuePriority.NORMAL
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    created_at: UtcDatetime
    scheduled_at: UtcDatetime
    scheduled_at_ms: int  # read by the atomic claim script
    claimed_at: Optional[UtcDatetime] = None
    last_error: Optional[str] = None

    def schedule(self, at: datetime) -> None:
        self.scheduled_at = at
        self.scheduled_at_ms = to_epoch_ms(at)


class QueueStatusCounts(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


# Conflict snapshots

class AttachmentSnapshot(BaseModel):
    id: str
    filename: str
    mime_type: str
    size: int = 0


class MessageSnapshot(BaseModel):
    kind: Literal["message"] = "message"
    id: str
    conversation_id: str
    sender_id: Optional[str] = None
    content: str
    message_type: str = "text"
    sequence_number: int
    change_sequence: Optional[int] = None
    created_at: UtcDatetime
    edited_at: Optional[UtcDatetime] = None
    is_deleted: bool = False
    version: int = 1
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    attachments: List[AttachmentSnapshot] = Field(default_factory=list)


class SequenceSnapshot(BaseModel):
    kind: Literal["sequence"] = "sequence"
    conversation_id: str
    sequence_number: int


ServerVersion = Annotated[Union[MessageSnapshot, SequenceSnapshot], Field(discriminator="kind")]


class MessageChanges(BaseModel):
    """Fields a client changed; unset fields mean 'keep the server value'"""
    content: Optional[str] = None
    edited_at: Optional[UtcDatetime] = None
    is_deleted: Optional[bool] = None
    sequence_number: Optional[int] = None


class ConflictResolution(BaseModel):
    id: Optional[str] = None
    message_id: str
    conflict_type: ConflictType
    server_version: Optional[ServerVersion] = None
    client_version: MessageChanges = Field(default_factory=MessageChanges)
    resolution: ResolutionStrategy
    resolved_message: Optional[ServerVersion] = None
    device_id: Optional[str] = None
    operation_id: Optional[str] = None
    timestamp: UtcDatetime


class ClientState(BaseModel):
    device_id: str
    user_id: str
    tenant_id: str
    last_sync_timestamp: UtcDatetime
    last_sequence_number: int = 0
    pending_operations: List[PendingOperation] = Field(default_factory=list)
    conflict_resolutions: List[ConflictResolution] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    valid_operations: List[PendingOperation] = Field(default_factory=list)
    stale_operations: List[PendingOperation] = Field(default_factory=list)
    conflicts_detected: bool = False


# Delta sync

class SyncRequest(BaseModel):
    device_id: str
    last_sequence_number: int = Field(0, ge=0)
    conversation_ids: Optional[List[str]] = None
    client_timestamp: Optional[UtcDatetime] = None


class ParticipantSnapshot(BaseModel):
    user_id: str
    role: str
    joined_at: Optional[UtcDatetime] = None
    last_read_sequence: Optional[int] = None


class ConversationSnapshot(BaseModel):
    id: str
    name: Optional[str] = None
    type: str
    participants: List[ParticipantSnapshot] = Field(default_factory=list)
    last_message_at: Optional[UtcDatetime] = None
    last_sequence_number: int = 0
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None


class DeletedItem(BaseModel):
    entity_type: str
    entity_id: str
    conversation_id: Optional[str] = None
    sequence_number: int
    deleted_at: UtcDatetime


class SyncMetrics(BaseModel):
    messages_count: int
    conversations_count: int
    deleted_items_count: int
    sync_duration_ms: float
    last_sync_sequence: int
    timestamp: UtcDatetime


class SyncResponse(BaseModel):
    messages: List[MessageSnapshot]
    conversations: List[ConversationSnapshot]
    deleted_items: List[DeletedItem]
    current_sequence_number: int
    has_more: bool
    next_cursor: Optional[int] = None
    server_timestamp: UtcDatetime
    metrics: SyncMetrics


# Worker results

class ProcessOutcome(str, enum.Enum):
    APPLIED = "applied"
    CONFLICT = "conflict"
    RETRYING = "retrying"
    FAILED = "failed"
    EXPIRED = "expired"


class ProcessResult(BaseModel):
    queue_item_id: str
    operation_id: str
    outcome: ProcessOutcome
    conflicts: List[ConflictResolution] = Field(default_factory=list)
    error: Optional[str] = None


# API request/response bodies

class EnqueueRequest(BaseModel):
    operation: PendingOperation
    priority: QueuePriority = QueuePriority.NORMAL


class EnqueueResponse(BaseModel):
    queue_item_id: str


class ReconcileRequest(BaseModel):
    server_sequence_number: int = Field(ge=0)


class ResolveConflictRequest(BaseModel):
    strategy: ResolutionStrategy


class ClientStateUpdate(BaseModel):
    last_sequence_number: Optional[int] = Field(default=None, ge=0)
    last_sync_timestamp: Optional[UtcDatetime] = None


class CleanupResult(BaseModel):
    expired_operations: int
    expired_states: int
