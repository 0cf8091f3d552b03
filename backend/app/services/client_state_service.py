"""Per-device sync checkpoints kept in the coordination store"""
import logging
from datetime import timedelta
from typing import Any, List, Optional

from app.core.clock import Clock, system_clock
from app.core.config import get_settings
from app.core.coordination import CoordinationStore
from app.schemas.sync import (
    ClientState,
    ConflictResolution,
    DeviceKey,
    PendingOperation,
    ReconcileResult,
)

logger = logging.getLogger(__name__)

settings = get_settings()


def state_key(key: DeviceKey) -> str:
    return f"sync:state:{key.tenant_id}:{key.user_id}:{key.device_id}"


class ClientStateService:
    def __init__(self, store: CoordinationStore, clock: Clock = system_clock):
        self.store = store
        self.clock = clock

    def get_client_state(self, device_key: DeviceKey) -> Optional[ClientState]:
        raw = self.store.get(state_key(device_key))
        if raw is None:
            return None
        return ClientState.model_validate_json(raw)

    def update_client_state(self, device_key: DeviceKey, **updates: Any) -> ClientState:
        """Merge fields into the device state, creating a default state if absent.

        ``last_sync_timestamp`` is only changed when passed explicitly, and
        ``last_sequence_number`` never moves backwards.
        """
        current = self.get_client_state(device_key) or ClientState(
            device_id=device_key.device_id,
            user_id=device_key.user_id,
            tenant_id=device_key.tenant_id,
            last_sync_timestamp=self.clock.now(),
        )

        if "last_sequence_number" in updates:
            updates["last_sequence_number"] = max(current.last_sequence_number, updates["last_sequence_number"])

        state = ClientState.model_validate({**current.model_dump(), **updates})
        self._save(device_key, state)
        logger.debug(f"Updated client state for device {device_key.device_id}")
        return state

    # Pending operations
    def add_pending_operation(self, device_key: DeviceKey, operation: PendingOperation) -> ClientState:
        now = self.clock.now()
        state = self.get_client_state(device_key)
        operations = [op for op in (state.pending_operations if state else []) if not op.is_expired(now)]
        operations = [op for op in operations if op.id != operation.id]
        operations.append(operation)

        logger.debug(f"Added pending operation {operation.id} for device {device_key.device_id}")
        return self.update_client_state(device_key, pending_operations=operations)

    def remove_pending_operation(self, device_key: DeviceKey, operation_id: str) -> Optional[ClientState]:
        state = self.get_client_state(device_key)
        if not state:
            return None

        now = self.clock.now()
        operations = [
            op for op in state.pending_operations
            if op.id != operation_id and not op.is_expired(now)
        ]
        logger.debug(f"Removed pending operation {operation_id} for device {device_key.device_id}")
        return self.update_client_state(device_key, pending_operations=operations)

    def get_pending_operations(self, device_key: DeviceKey) -> List[PendingOperation]:
        state = self.get_client_state(device_key)
        if not state:
            return []
        now = self.clock.now()
        return [op for op in state.pending_operations if not op.is_expired(now)]

    def clear_expired_operations(self, device_key: DeviceKey) -> int:
        state = self.get_client_state(device_key)
        if not state:
            return 0

        now = self.clock.now()
        valid = [op for op in state.pending_operations if not op.is_expired(now)]
        expired = len(state.pending_operations) - len(valid)
        if expired:
            self.update_client_state(device_key, pending_operations=valid)
            logger.debug(f"Cleared {expired} expired operations for device {device_key.device_id}")
        return expired

    # Reconciliation
    def reconcile(self, device_key: DeviceKey, server_sequence_number: int) -> ReconcileResult:
        """Split tracked operations into valid and stale against the server watermark.

        An operation is stale when its ttl elapsed, or when it was built on a
        sequence number older than the server's; the latter also sets
        ``conflicts_detected``. Only valid operations are kept, and the
        device checkpoint advances to ``server_sequence_number``.
        """
        state = self.get_client_state(device_key)
        if not state:
            return ReconcileResult()

        now = self.clock.now()
        result = ReconcileResult()
        for operation in state.pending_operations:
            if operation.is_expired(now):
                result.stale_operations.append(operation)
                continue

            base = operation.payload.base_sequence_number
            if base is not None and base < server_sequence_number:
                result.stale_operations.append(operation)
                result.conflicts_detected = True
                continue

            result.valid_operations.append(operation)

        self.update_client_state(
            device_key,
            pending_operations=result.valid_operations,
            last_sequence_number=server_sequence_number,
            last_sync_timestamp=now,
        )

        logger.info(
            f"State reconciliation for device {device_key.device_id}: "
            f"{len(result.valid_operations)} valid, {len(result.stale_operations)} stale operations"
        )
        return result

    # Conflict history
    def add_conflict_resolution(self, device_key: DeviceKey, resolution: ConflictResolution) -> ClientState:
        """Record a conflict in the device history; a later record with the same id replaces the earlier one"""
        state = self.get_client_state(device_key)
        history = list(state.conflict_resolutions) if state else []
        if resolution.id:
            history = [entry for entry in history if entry.id != resolution.id]
        history.append(resolution)
        history = history[-settings.CONFLICT_HISTORY_LIMIT:]

        logger.debug(f"Added conflict resolution for message {resolution.message_id}")
        return self.update_client_state(device_key, conflict_resolutions=history)

    def get_conflict_resolutions(self, device_key: DeviceKey) -> List[ConflictResolution]:
        state = self.get_client_state(device_key)
        return list(state.conflict_resolutions) if state else []

    # Device lifecycle
    def reset_client_state(self, device_key: DeviceKey) -> None:
        self.store.delete(state_key(device_key))
        logger.info(f"Reset client state for device {device_key.device_id}")

    def clear_user_state(self, tenant_id: str, user_id: str) -> None:
        keys = self.store.scan_keys(f"sync:state:{tenant_id}:{user_id}:*")
        if keys:
            self.store.delete(*keys)
        logger.info(f"Cleared sync state for user {user_id} in tenant {tenant_id}")

    def get_device_states(self, tenant_id: str, user_id: str) -> List[ClientState]:
        states = []
        for key in self.store.scan_keys(f"sync:state:{tenant_id}:{user_id}:*"):
            raw = self.store.get(key)
            if raw is not None:
                states.append(ClientState.model_validate_json(raw))
        return states

    def cleanup_stale_states(self) -> int:
        """Delete every device state not synced within the retention window"""
        threshold = self.clock.now() - timedelta(days=settings.STATE_RETENTION_DAYS)
        cleaned = 0
        for key in self.store.scan_keys("sync:state:*"):
            raw = self.store.get(key)
            if raw is None:
                continue
            state = ClientState.model_validate_json(raw)
            if state.last_sync_timestamp < threshold:
                self.store.delete(key)
                cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale client states")
        return cleaned

    def _save(self, device_key: DeviceKey, state: ClientState) -> None:
        self.store.set(state_key(device_key), state.model_dump_json(), ttl=settings.STATE_TTL_SECONDS)
