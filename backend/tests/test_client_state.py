"""
Tests for per-device client state
"""
from datetime import timedelta

from app.schemas.sync import ConflictResolution, ConflictType, DeviceKey, ResolutionStrategy


class TestClientStateUpdates:
    """Reading and merging device state"""

    def test_missing_state(self, client_states, device_key):
        assert client_states.get_client_state(device_key) is None

    def test_update_creates_default_state(self, client_states, device_key, clock):
        state = client_states.update_client_state(device_key, last_sequence_number=5)

        assert state.device_id == device_key.device_id
        assert state.user_id == device_key.user_id
        assert state.tenant_id == device_key.tenant_id
        assert state.last_sequence_number == 5
        assert state.last_sync_timestamp == clock.now()
        assert client_states.get_client_state(device_key) == state

    def test_update_does_not_touch_sync_timestamp(self, client_states, device_key, clock):
        created = client_states.update_client_state(device_key)
        clock.advance(minutes=5)

        updated = client_states.update_client_state(device_key, last_sequence_number=3)

        assert updated.last_sync_timestamp == created.last_sync_timestamp

    def test_sequence_number_never_decreases(self, client_states, device_key):
        client_states.update_client_state(device_key, last_sequence_number=10)

        state = client_states.update_client_state(device_key, last_sequence_number=4)

        assert state.last_sequence_number == 10


class TestPendingOperations:
    """Tracking operations the device has not seen applied"""

    def test_add_and_remove(self, client_states, device_key, make_operation):
        first = make_operation("read_receipt", conversation_id="c1", sequence_number=1)
        second = make_operation("read_receipt", conversation_id="c1", sequence_number=2)
        client_states.add_pending_operation(device_key, first)
        client_states.add_pending_operation(device_key, second)

        client_states.remove_pending_operation(device_key, first.id)

        assert [op.id for op in client_states.get_pending_operations(device_key)] == [second.id]

    def test_add_replaces_same_id(self, client_states, device_key, make_operation):
        operation = make_operation("read_receipt", conversation_id="c1", sequence_number=1, op_id="op-a")
        client_states.add_pending_operation(device_key, operation)
        client_states.add_pending_operation(device_key, operation)

        assert len(client_states.get_pending_operations(device_key)) == 1

    def test_remove_without_state(self, client_states, device_key):
        assert client_states.remove_pending_operation(device_key, "op-1") is None

    def test_expired_operations_hidden_and_cleared(self, client_states, device_key, make_operation, clock):
        short = make_operation("read_receipt", conversation_id="c1", sequence_number=1, ttl=timedelta(seconds=5))
        long = make_operation("read_receipt", conversation_id="c1", sequence_number=2)
        client_states.add_pending_operation(device_key, short)
        client_states.add_pending_operation(device_key, long)
        clock.advance(seconds=10)

        assert [op.id for op in client_states.get_pending_operations(device_key)] == [long.id]
        assert client_states.clear_expired_operations(device_key) == 1
        assert client_states.clear_expired_operations(device_key) == 0


class TestReconcile:
    """Splitting pending operations against the server sequence"""

    def test_reconcile_without_state(self, client_states, device_key):
        result = client_states.reconcile(device_key, 10)

        assert result.valid_operations == []
        assert result.stale_operations == []
        assert result.conflicts_detected is False
        assert client_states.get_client_state(device_key) is None

    def test_reconcile_classifies_operations(self, client_states, device_key, make_operation, clock):
        valid = make_operation("send_message", conversation_id="c1", content="a", base_sequence_number=10)
        no_base = make_operation("read_receipt", conversation_id="c1", sequence_number=1)
        outdated = make_operation("send_message", conversation_id="c1", content="b", base_sequence_number=7)
        expiring = make_operation("send_message", conversation_id="c1", content="c", ttl=timedelta(seconds=5))
        for operation in (valid, no_base, outdated, expiring):
            client_states.add_pending_operation(device_key, operation)
        clock.advance(seconds=10)

        result = client_states.reconcile(device_key, 10)

        assert [op.id for op in result.valid_operations] == [valid.id, no_base.id]
        assert {op.id for op in result.stale_operations} == {outdated.id, expiring.id}
        assert result.conflicts_detected is True

        state = client_states.get_client_state(device_key)
        assert state.last_sequence_number == 10
        assert state.last_sync_timestamp == clock.now()
        assert [op.id for op in state.pending_operations] == [valid.id, no_base.id]

    def test_expiry_alone_is_not_a_conflict(self, client_states, device_key, make_operation, clock):
        client_states.add_pending_operation(
            device_key,
            make_operation("read_receipt", conversation_id="c1", sequence_number=1, ttl=timedelta(seconds=5)),
        )
        clock.advance(seconds=10)

        result = client_states.reconcile(device_key, 3)

        assert len(result.stale_operations) == 1
        assert result.conflicts_detected is False


class TestConflictHistory:
    """Per-device record of resolved conflicts"""

    def _resolution(self, clock, n):
        return ConflictResolution(
            message_id=f"m{n}",
            conflict_type=ConflictType.EDIT_CONFLICT,
            resolution=ResolutionStrategy.SERVER_WINS,
            timestamp=clock.now(),
        )

    def test_history_is_bounded(self, client_states, device_key, clock):
        for n in range(105):
            client_states.add_conflict_resolution(device_key, self._resolution(clock, n))

        history = client_states.get_conflict_resolutions(device_key)

        assert len(history) == 100
        assert history[0].message_id == "m5"
        assert history[-1].message_id == "m104"

    def test_resolution_replaces_detected_entry(self, client_states, device_key, clock):
        detected = self._resolution(clock, 1).model_copy(update={
            "id": "m1:edit_conflict:1",
            "resolution": ResolutionStrategy.MANUAL,
        })
        client_states.add_conflict_resolution(device_key, detected)
        client_states.add_conflict_resolution(device_key, self._resolution(clock, 2))

        resolved = detected.model_copy(update={"resolution": ResolutionStrategy.CLIENT_WINS})
        client_states.add_conflict_resolution(device_key, resolved)

        history = client_states.get_conflict_resolutions(device_key)
        assert [(c.message_id, c.resolution) for c in history] == [
            ("m2", ResolutionStrategy.SERVER_WINS),
            ("m1", ResolutionStrategy.CLIENT_WINS),
        ]


class TestDeviceLifecycle:
    """Reset and staleness cleanup"""

    def test_reset_client_state(self, client_states, device_key):
        client_states.update_client_state(device_key, last_sequence_number=1)

        client_states.reset_client_state(device_key)

        assert client_states.get_client_state(device_key) is None

    def test_device_states_and_clear_user(self, client_states, device_key):
        other_device = DeviceKey(device_key.tenant_id, device_key.user_id, "device-2")
        other_user = DeviceKey(device_key.tenant_id, "someone-else", "device-1")
        for key in (device_key, other_device, other_user):
            client_states.update_client_state(key)

        devices = client_states.get_device_states(device_key.tenant_id, device_key.user_id)
        assert {state.device_id for state in devices} == {"device-1", "device-2"}

        client_states.clear_user_state(device_key.tenant_id, device_key.user_id)
        assert client_states.get_device_states(device_key.tenant_id, device_key.user_id) == []
        assert client_states.get_client_state(other_user) is not None

    def test_cleanup_stale_states(self, client_states, device_key, clock):
        fresh = DeviceKey(device_key.tenant_id, device_key.user_id, "device-2")
        client_states.update_client_state(device_key)
        clock.advance(days=6)
        # Rewriting refreshes the store TTL but keeps the old sync timestamp
        client_states.update_client_state(device_key, last_sequence_number=1)
        client_states.update_client_state(fresh)
        clock.advance(days=2)

        assert client_states.cleanup_stale_states() == 1
        assert client_states.get_client_state(device_key) is None
        assert client_states.get_client_state(fresh) is not None
