"""
Tests for the sync HTTP endpoints
"""
from datetime import timedelta

API = "/api/v1/sync"


def _operation(clock, op_id, type, payload, device_id="device-1", ttl=timedelta(hours=1)):
    now = clock.now()
    return {
        "id": op_id,
        "type": type,
        "device_id": device_id,
        "timestamp": now.isoformat(),
        "ttl": (now + ttl).isoformat(),
        "payload": payload,
    }


def _enqueue(client, headers, operation, priority="normal", device_id="device-1"):
    return client.post(
        f"{API}/queue/{device_id}",
        json={"operation": operation, "priority": priority},
        headers=headers,
    )


class TestHeaders:
    """Identity headers"""

    def test_missing_identity_headers(self, client):
        response = client.post(f"{API}/delta", json={"device_id": "device-1"})
        assert response.status_code == 400

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_identity_with_key_delimiter(self, client):
        headers = {"X-Tenant-ID": "tenant:1", "X-User-ID": "test-user-id"}
        response = client.get(f"{API}/devices", headers=headers)
        assert response.status_code == 400


class TestQueueEndpoints:
    """Submitting and inspecting offline operations"""

    def test_enqueue_and_status(self, client, sync_headers, clock, conversation):
        operation = _operation(clock, "op-1", "send_message", {"conversation_id": conversation.id, "content": "hi"})

        response = _enqueue(client, sync_headers, operation, priority="high")
        assert response.status_code == 200
        assert response.json()["queue_item_id"].endswith("_op-1")

        status = client.get(f"{API}/queue/device-1/status", headers=sync_headers).json()
        assert status == {"pending": 1, "processing": 0, "completed": 0, "failed": 0}

        state = client.get(f"{API}/state/device-1", headers=sync_headers).json()
        assert [op["id"] for op in state["pending_operations"]] == ["op-1"]

    def test_device_mismatch(self, client, sync_headers, clock):
        operation = _operation(clock, "op-1", "delete_message", {"message_id": "m1"}, device_id="device-2")

        assert _enqueue(client, sync_headers, operation).status_code == 422

    def test_duplicate_operation(self, client, sync_headers, clock):
        operation = _operation(clock, "op-1", "delete_message", {"message_id": "m1"})

        assert _enqueue(client, sync_headers, operation).status_code == 200
        assert _enqueue(client, sync_headers, operation).status_code == 409

    def test_expired_operation(self, client, sync_headers, clock):
        operation = _operation(clock, "op-1", "delete_message", {"message_id": "m1"}, ttl=timedelta(seconds=5))
        clock.advance(seconds=10)

        assert _enqueue(client, sync_headers, operation).status_code == 422

    def test_unknown_operation_type(self, client, sync_headers, clock):
        operation = _operation(clock, "op-1", "typing_indicator", {})

        assert _enqueue(client, sync_headers, operation).status_code == 422

    def test_enqueue_dispatches_worker(self, client, sync_headers, clock, dispatched, device_key):
        operation = _operation(clock, "op-1", "delete_message", {"message_id": "m1"})

        assert _enqueue(client, sync_headers, operation).status_code == 200
        assert _enqueue(client, sync_headers, operation).status_code == 409

        dispatched.assert_called_once_with(device_key)

    def test_device_id_with_key_delimiter(self, client, sync_headers, clock, dispatched):
        operation = _operation(clock, "op-1", "delete_message", {"message_id": "m1"}, device_id="tablet:2")

        assert _enqueue(client, sync_headers, operation, device_id="tablet:2").status_code == 422
        assert client.get(f"{API}/queue/tablet:2/status", headers=sync_headers).status_code == 422
        dispatched.assert_not_called()

    def test_clear_queue(self, client, sync_headers, clock):
        _enqueue(client, sync_headers, _operation(clock, "op-1", "delete_message", {"message_id": "m1"}))
        _enqueue(client, sync_headers, _operation(clock, "op-2", "delete_message", {"message_id": "m2"}))

        response = client.delete(f"{API}/queue/device-1/clear", headers=sync_headers)

        assert response.status_code == 200
        status = client.get(f"{API}/queue/device-1/status", headers=sync_headers).json()
        assert status == {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        # The operation ids are free again
        operation = _operation(clock, "op-1", "delete_message", {"message_id": "m1"})
        assert _enqueue(client, sync_headers, operation).status_code == 200

    def test_process_then_delta_sync(self, client, sync_headers, clock, conversation):
        operation = _operation(clock, "op-1", "send_message", {"conversation_id": conversation.id, "content": "hi"})
        _enqueue(client, sync_headers, operation)

        results = client.post(f"{API}/queue/device-1/process", headers=sync_headers).json()
        assert [r["outcome"] for r in results] == ["applied"]

        response = client.post(
            f"{API}/delta",
            json={"device_id": "device-1", "last_sequence_number": 0},
            headers=sync_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert [m["content"] for m in data["messages"]] == ["hi"]
        assert data["current_sequence_number"] == 1
        assert data["has_more"] is False
        assert data["conversations"][0]["id"] == conversation.id

        metrics = client.get(f"{API}/metrics", headers=sync_headers).json()
        assert metrics["messages_count"] == 1

        state = client.get(f"{API}/state/device-1", headers=sync_headers).json()
        assert state["last_sequence_number"] == 1
        assert state["pending_operations"] == []

    def test_failed_operation_retry(self, client, sync_headers, clock, dispatched):
        operation = _operation(clock, "op-1", "reaction", {"message_id": "missing", "emoji": "+1"})
        item_id = _enqueue(client, sync_headers, operation).json()["queue_item_id"]

        for _ in range(5):
            client.post(f"{API}/queue/device-1/process", headers=sync_headers)
            clock.advance(seconds=30)

        failed = client.get(f"{API}/queue/device-1/failed", headers=sync_headers).json()
        assert [item["id"] for item in failed] == [item_id]
        assert failed[0]["attempts"] == 5

        response = client.post(f"{API}/queue/device-1/items/{item_id}/retry", headers=sync_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["attempts"] == 0
        assert dispatched.call_count == 2

        response = client.post(f"{API}/queue/device-1/items/{item_id}/retry", headers=sync_headers)
        assert response.status_code == 409

        response = client.post(f"{API}/queue/device-1/items/missing/retry", headers=sync_headers)
        assert response.status_code == 404


class TestClientStateEndpoints:
    """Device checkpoints"""

    def test_unknown_device(self, client, sync_headers):
        response = client.get(f"{API}/state/device-1", headers=sync_headers)
        assert response.status_code == 404

    def test_reconcile(self, client, sync_headers, clock):
        stale = _operation(clock, "op-1", "send_message", {"conversation_id": "c1", "content": "a", "base_sequence_number": 2})
        fresh = _operation(clock, "op-2", "send_message", {"conversation_id": "c1", "content": "b", "base_sequence_number": 9})
        _enqueue(client, sync_headers, stale)
        _enqueue(client, sync_headers, fresh)

        response = client.post(
            f"{API}/state/device-1/reconcile",
            json={"server_sequence_number": 9},
            headers=sync_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert [op["id"] for op in data["valid_operations"]] == ["op-2"]
        assert [op["id"] for op in data["stale_operations"]] == ["op-1"]
        assert data["conflicts_detected"] is True

    def test_reset_device(self, client, sync_headers, clock):
        _enqueue(client, sync_headers, _operation(clock, "op-1", "delete_message", {"message_id": "m1"}))

        response = client.delete(f"{API}/state/device-1", headers=sync_headers)

        assert response.status_code == 200
        assert client.get(f"{API}/state/device-1", headers=sync_headers).status_code == 404
        status = client.get(f"{API}/queue/device-1/status", headers=sync_headers).json()
        assert status["pending"] == 0

    def test_update_state(self, client, sync_headers, clock):
        response = client.put(
            f"{API}/state/device-1",
            json={"last_sequence_number": 12},
            headers=sync_headers,
        )
        assert response.status_code == 200
        assert response.json()["last_sequence_number"] == 12

        synced_at = clock.advance(minutes=5)
        response = client.put(
            f"{API}/state/device-1",
            json={"last_sequence_number": 3, "last_sync_timestamp": synced_at.isoformat()},
            headers=sync_headers,
        )
        data = response.json()
        assert data["last_sequence_number"] == 12
        assert data["last_sync_timestamp"].startswith(synced_at.isoformat())

        assert client.put(
            f"{API}/state/device-1", json={"last_sequence_number": -1}, headers=sync_headers
        ).status_code == 422

    def test_list_devices(self, client, sync_headers):
        for device_id in ("device-1", "device-2"):
            client.put(f"{API}/state/{device_id}", json={}, headers=sync_headers)
        other_user = {**sync_headers, "X-User-ID": "other-user-id"}
        client.put(f"{API}/state/device-3", json={}, headers=other_user)

        response = client.get(f"{API}/devices", headers=sync_headers)

        assert response.status_code == 200
        assert sorted(state["device_id"] for state in response.json()) == ["device-1", "device-2"]

    def test_force_reset(self, client, sync_headers, clock, message_log, conversation, device_key):
        message = message_log.append_message(device_key.tenant_id, conversation.id, device_key.user_id, "oops")
        _enqueue(client, sync_headers, _operation(clock, "op-1", "delete_message", {"message_id": message.id}))
        client.post(f"{API}/queue/device-1/process", headers=sync_headers)
        _enqueue(client, sync_headers, _operation(clock, "op-2", "delete_message", {"message_id": "m2"}))
        client.post(f"{API}/delta", json={"device_id": "device-2"}, headers=sync_headers)

        response = client.post(f"{API}/force-reset", headers=sync_headers)

        assert response.status_code == 200
        assert client.get(f"{API}/devices", headers=sync_headers).json() == []
        assert client.get(f"{API}/conflicts", headers=sync_headers).json() == []
        assert client.get(f"{API}/metrics", headers=sync_headers).json() is None
        status = client.get(f"{API}/queue/device-1/status", headers=sync_headers).json()
        assert status["pending"] == 0

    def test_cleanup_expired(self, client, sync_headers, clock, conversation):
        short = timedelta(seconds=10)
        sent = _operation(clock, "op-1", "send_message", {"conversation_id": conversation.id, "content": "hi"}, ttl=short)
        _enqueue(client, sync_headers, sent)
        client.post(f"{API}/queue/device-1/process", headers=sync_headers)
        waiting = _operation(clock, "op-2", "delete_message", {"message_id": "m2"}, ttl=short)
        _enqueue(client, sync_headers, waiting)
        clock.advance(seconds=20)

        response = client.post(f"{API}/cleanup/expired", headers=sync_headers)

        assert response.status_code == 200
        # op-1 is a completed queue item, op-2 is only left in the device state
        assert response.json() == {"expired_operations": 1, "expired_states": 1}
        state = client.get(f"{API}/state/device-1", headers=sync_headers).json()
        assert state["pending_operations"] == []

        response = client.post(f"{API}/cleanup/expired", params={"device_id": "device-1"}, headers=sync_headers)
        assert response.json() == {"expired_operations": 0, "expired_states": 0}


class TestConflictEndpoints:
    """Listing and resolving conflicts"""

    def _delete_conflict(self, client, sync_headers, clock, message_log, conversation, device_key):
        message = message_log.append_message(device_key.tenant_id, conversation.id, device_key.user_id, "oops")
        _enqueue(client, sync_headers, _operation(clock, "op-1", "delete_message", {"message_id": message.id}))
        results = client.post(f"{API}/queue/device-1/process", headers=sync_headers).json()
        assert results[0]["outcome"] == "conflict"
        return message

    def test_list_and_resolve(self, client, sync_headers, clock, message_log, db, conversation, device_key):
        message = self._delete_conflict(client, sync_headers, clock, message_log, conversation, device_key)

        conflicts = client.get(f"{API}/conflicts", headers=sync_headers).json()
        assert len(conflicts) == 1
        assert conflicts[0]["conflict_type"] == "delete_conflict"
        assert conflicts[0]["resolution"] == "manual"
        assert conflicts[0]["server_version"]["kind"] == "message"

        response = client.post(
            f"{API}/conflicts/{conflicts[0]['id']}/resolve",
            json={"strategy": "client_wins"},
            headers=sync_headers,
        )
        assert response.status_code == 200
        assert response.json()["resolved_message"]["is_deleted"] is True

        db.expire_all()
        assert message_log.get_message(message.id).deleted_at is not None
        assert client.get(f"{API}/conflicts", headers=sync_headers).json() == []

    def test_resolve_errors(self, client, sync_headers, clock, message_log, conversation, device_key):
        self._delete_conflict(client, sync_headers, clock, message_log, conversation, device_key)
        conflict_id = client.get(f"{API}/conflicts", headers=sync_headers).json()[0]["id"]

        response = client.post(
            f"{API}/conflicts/{conflict_id}/resolve",
            json={"strategy": "manual"},
            headers=sync_headers,
        )
        assert response.status_code == 422

        response = client.post(
            f"{API}/conflicts/missing/resolve",
            json={"strategy": "server_wins"},
            headers=sync_headers,
        )
        assert response.status_code == 404

    def test_clear_conflicts(self, client, sync_headers, clock, message_log, conversation, device_key):
        self._delete_conflict(client, sync_headers, clock, message_log, conversation, device_key)

        assert client.delete(f"{API}/conflicts", headers=sync_headers).status_code == 200
        assert client.get(f"{API}/conflicts", headers=sync_headers).json() == []

    def test_resolve_after_newer_server_edit(self, client, sync_headers, clock, message_log, db, conversation, device_key):
        message = message_log.append_message(device_key.tenant_id, conversation.id, "other-user-id", "original")
        t1 = clock.advance(minutes=1)
        clock.advance(minutes=1)
        message_log.apply_message_state(message.id, content="server edit")
        edit = _operation(clock, "op-1", "edit_message", {
            "message_id": message.id, "content": "client edit", "edited_at": t1.isoformat(),
        })
        _enqueue(client, sync_headers, edit)
        client.post(f"{API}/queue/device-1/process", headers=sync_headers)
        conflict_id = client.get(f"{API}/conflicts", headers=sync_headers).json()[0]["id"]
        message_log.apply_message_state(message.id, content="server edit 2")

        response = client.post(
            f"{API}/conflicts/{conflict_id}/resolve",
            json={"strategy": "server_wins"},
            headers=sync_headers,
        )

        assert response.status_code == 409
        db.expire_all()
        assert message_log.get_message(message.id).content == "server edit 2"
        [conflict] = client.get(f"{API}/conflicts", headers=sync_headers).json()
        assert conflict["server_version"]["content"] == "server edit 2"
