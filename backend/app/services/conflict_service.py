"""Conflict detection and resolution against the authoritative message log"""
import json
import logging
from typing import Dict, List, Optional

from app.core.clock import Clock, system_clock
from app.core.config import get_settings
from app.core.coordination import CoordinationStore
from app.core.exceptions import ConflictNotFoundError, StaleMessageVersionError, UnsupportedStrategyError
from app.schemas.sync import (
    ConflictResolution,
    ConflictType,
    DeviceKey,
    MessageChanges,
    MessageSnapshot,
    OperationType,
    PendingOperation,
    ResolutionStrategy,
    SequenceSnapshot,
)
from app.services.client_state_service import ClientStateService
from app.services.message_log import MessageLog
from app.services.offline_queue_service import events_channel
from app.services.resolution_policies import DEFAULT_POLICIES, ResolutionPolicy

logger = logging.getLogger(__name__)

settings = get_settings()


def conflicts_key(tenant_id: str, user_id: str) -> str:
    return f"sync:conflicts:{tenant_id}:{user_id}"


def conflict_sequence_key(tenant_id: str, user_id: str) -> str:
    return f"sync:conflict-seq:{tenant_id}:{user_id}"


class ConflictResolutionService:
    def __init__(
        self,
        log: MessageLog,
        store: CoordinationStore,
        client_states: Optional[ClientStateService] = None,
        policies: Optional[Dict[ResolutionStrategy, ResolutionPolicy]] = None,
        clock: Clock = system_clock,
    ):
        self.log = log
        self.store = store
        self.client_states = client_states
        self.policies = dict(policies or DEFAULT_POLICIES)
        self.clock = clock

    # Detection
    def detect_conflicts(
        self,
        user_id: str,
        tenant_id: str,
        operation: PendingOperation,
    ) -> List[ConflictResolution]:
        if operation.type == OperationType.SEND_MESSAGE:
            conflicts = self._detect_sequence_conflicts(operation)
        elif operation.type == OperationType.EDIT_MESSAGE:
            conflicts = self._detect_edit_conflicts(operation)
        elif operation.type == OperationType.DELETE_MESSAGE:
            conflicts = self._detect_delete_conflicts(operation)
        else:
            conflicts = []

        if conflicts:
            self._store_conflicts(user_id, tenant_id, conflicts)
            logger.info(
                f"Detected {len(conflicts)} conflict(s) for operation {operation.id}: "
                f"{', '.join(c.conflict_type.value for c in conflicts)}"
            )
        return conflicts

    def _detect_sequence_conflicts(self, operation) -> List[ConflictResolution]:
        payload = operation.payload
        if payload.base_sequence_number is None:
            return []

        server_sequence = self.log.conversation_last_sequence(payload.conversation_id)
        if server_sequence is None:
            return []

        # The message lands right after the client's base only if nothing
        # else was written to the conversation in between.
        if server_sequence > payload.base_sequence_number:
            server_version = SequenceSnapshot(
                conversation_id=payload.conversation_id,
                sequence_number=server_sequence,
            )
            return [self._conflict(
                operation,
                message_id=operation.id,
                conflict_type=ConflictType.SEQUENCE_CONFLICT,
                server_version=server_version,
                client_version=MessageChanges(
                    content=payload.content,
                    sequence_number=payload.base_sequence_number,
                ),
                resolution=ResolutionStrategy.SERVER_WINS,
                resolved_message=server_version,
            )]
        return []

    def _detect_edit_conflicts(self, operation) -> List[ConflictResolution]:
        payload = operation.payload
        client_version = MessageChanges(content=payload.content, edited_at=payload.edited_at)
        message = self.log.get_message(payload.message_id)

        if not message or message.deleted_at is not None:
            snapshot = self.log.message_snapshot(message) if message else None
            return [self._conflict(
                operation,
                message_id=payload.message_id,
                conflict_type=ConflictType.DELETE_CONFLICT,
                server_version=snapshot,
                client_version=client_version,
                resolution=ResolutionStrategy.SERVER_WINS,
                resolved_message=snapshot,
            )]

        server_edit_time = message.edited_at or message.created_at
        if server_edit_time > payload.edited_at:
            snapshot = self.log.message_snapshot(message)
            return [self._conflict(
                operation,
                message_id=payload.message_id,
                conflict_type=ConflictType.EDIT_CONFLICT,
                server_version=snapshot,
                client_version=client_version,
                resolution=ResolutionStrategy.MANUAL,
                resolved_message=snapshot,
            )]
        return []

    def _detect_delete_conflicts(self, operation) -> List[ConflictResolution]:
        message = self.log.get_message(operation.payload.message_id)
        if not message or message.deleted_at is not None:
            # Already gone: deleting again is a no-op
            return []

        snapshot = self.log.message_snapshot(message)
        return [self._conflict(
            operation,
            message_id=message.id,
            conflict_type=ConflictType.DELETE_CONFLICT,
            server_version=snapshot,
            client_version=MessageChanges(is_deleted=True),
            resolution=ResolutionStrategy.MANUAL,
            resolved_message=snapshot,
        )]

    def _conflict(self, operation, **fields) -> ConflictResolution:
        return ConflictResolution(
            device_id=operation.device_id,
            operation_id=operation.id,
            timestamp=self.clock.now(),
            **fields,
        )

    def _store_conflicts(self, user_id: str, tenant_id: str, conflicts: List[ConflictResolution]) -> None:
        key = conflicts_key(tenant_id, user_id)
        for conflict in conflicts:
            n = self.store.incr(conflict_sequence_key(tenant_id, user_id))
            conflict.id = f"{conflict.message_id}:{conflict.conflict_type.value}:{n}"
            self.store.hset(key, conflict.id, conflict.model_dump_json())
        self.store.expire(key, settings.CONFLICT_TTL_SECONDS)
        self.store.expire(conflict_sequence_key(tenant_id, user_id), settings.CONFLICT_TTL_SECONDS)

        self.store.publish(events_channel(tenant_id, user_id), json.dumps({
            "event": "conflicts_detected",
            "conflict_ids": [conflict.id for conflict in conflicts],
        }))

    # Resolution
    def resolve_conflict(
        self,
        user_id: str,
        tenant_id: str,
        conflict_id: str,
        strategy: ResolutionStrategy,
    ) -> ConflictResolution:
        """Resolve a stored conflict, apply the outcome to the log and forget it"""
        raw = self.store.hget(conflicts_key(tenant_id, user_id), conflict_id)
        if raw is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")

        policy = self.policies.get(strategy)
        if policy is None:
            logger.warning(f"Unsupported resolution strategy {strategy} for conflict {conflict_id}")
            raise UnsupportedStrategyError(f"Unsupported resolution strategy: {strategy}")

        conflict = ConflictResolution.model_validate_json(raw)
        resolved = conflict.model_copy(update={
            "resolution": strategy,
            "resolved_message": policy.resolve(conflict),
            "timestamp": self.clock.now(),
        })

        try:
            self._apply_resolution(resolved)
        except StaleMessageVersionError:
            logger.warning(f"Message {conflict.message_id} changed since conflict {conflict_id} was detected")
            self._refresh_server_version(user_id, tenant_id, conflict)
            raise

        if self.client_states and resolved.device_id:
            self.client_states.add_conflict_resolution(
                DeviceKey(tenant_id, user_id, resolved.device_id),
                resolved,
            )

        self.store.hdel(conflicts_key(tenant_id, user_id), conflict_id)
        return resolved

    def _apply_resolution(self, resolution: ConflictResolution) -> None:
        """Write the accepted message state while the message is still at the snapshot's version"""
        resolved = resolution.resolved_message
        if not isinstance(resolved, MessageSnapshot):
            return

        message = self.log.apply_message_state(
            resolved.id,
            content=resolved.content,
            is_deleted=resolved.is_deleted,
            expected_version=resolved.version,
        )
        if message is None:
            logger.warning(f"Message {resolved.id} disappeared before its conflict resolution was applied")
            return
        logger.info(f"Applied conflict resolution for message {resolution.message_id}")

    def _refresh_server_version(self, user_id: str, tenant_id: str, conflict: ConflictResolution) -> None:
        """Keep the conflict open with the message's current state as the server side"""
        message = self.log.get_message(conflict.message_id)
        if not message:
            return
        snapshot = self.log.message_snapshot(message)
        refreshed = conflict.model_copy(update={"server_version": snapshot, "resolved_message": snapshot})
        self.store.hset(conflicts_key(tenant_id, user_id), conflict.id, refreshed.model_dump_json())

    # Administration
    def get_conflicts(self, user_id: str, tenant_id: str) -> List[ConflictResolution]:
        stored = self.store.hgetall(conflicts_key(tenant_id, user_id))
        conflicts = [ConflictResolution.model_validate_json(raw) for raw in stored.values()]
        return sorted(conflicts, key=lambda conflict: conflict.timestamp)

    def remove_conflict(self, user_id: str, tenant_id: str, conflict_id: str) -> bool:
        return bool(self.store.hdel(conflicts_key(tenant_id, user_id), conflict_id))

    def clear_conflicts(self, user_id: str, tenant_id: str) -> None:
        self.store.delete(conflicts_key(tenant_id, user_id), conflict_sequence_key(tenant_id, user_id))
        logger.info(f"Cleared conflicts for user {user_id} in tenant {tenant_id}")
