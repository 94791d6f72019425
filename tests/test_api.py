"""HTTP routes and the websocket endpoint, backed by the in-memory redis fake."""

from __future__ import annotations

import asyncio
import threading
import weakref
from collections import OrderedDict
from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import constants
from app import _pending_leaves, app, end_session
from backend import redis_backend
from connection_registry import connection_registry
from fakes import FakeRedis, FakeStream, stored_record
from session_manager import session_manager


@pytest.fixture
def fake_store(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    store = FakeRedis()
    monkeypatch.setattr(redis_backend, "redis_client", store)
    monkeypatch.setattr(session_manager, "_last_known", OrderedDict())
    monkeypatch.setattr(session_manager, "_locks", weakref.WeakValueDictionary())
    monkeypatch.setattr(connection_registry, "_streams", {})
    monkeypatch.setattr(constants, "ADMIN_KEY", "secret")
    return store


@pytest.fixture
def client(fake_store: FakeRedis):
    # One client context keeps every connection on the same event loop
    with TestClient(app) as test_client:
        yield test_client


def _create_room(client: TestClient, tickets: list[str]) -> str:
    response = client.post("/api/create-room", json={"ticketIds": tickets})
    assert response.status_code == 200
    return response.json()["roomId"]


def _ws_url(room_id: str, name: str, gamemaster: bool = False) -> str:
    return f"/api/ws?roomId={room_id}&name={name}&gamemaster={'true' if gamemaster else 'false'}"


def _receive_json_within(websocket, timeout: float = 5.0) -> dict[str, Any]:
    """receive_json with a deadline, for messages sent after another socket closes."""
    outcome: dict[str, Any] = {}

    def _receive() -> None:
        try:
            outcome["message"] = websocket.receive_json()
        except Exception as e:  # surfaced below
            outcome["error"] = e

    thread = threading.Thread(target=_receive, daemon=True)
    thread.start()
    thread.join(timeout)
    if "error" in outcome:
        raise outcome["error"]
    assert "message" in outcome, f"no message within {timeout}s"
    return outcome["message"]


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": constants.VERSION}


def test_create_room_returns_room_id(client: TestClient, fake_store: FakeRedis) -> None:
    room_id = _create_room(client, ["T1", "T2"])

    assert f"room:{room_id}" in fake_store.data
    details = client.get(f"/api/rooms/{room_id}").json()
    assert [ticket["ID"] for ticket in details["Tickets"]] == ["T1", "T2"]
    assert details["CurrentTicket"] == 0
    assert details["VotesRevealed"] is False


@pytest.mark.parametrize("body", [{"ticketIds": []}, {"ticketIds": ["  ", ""]}, {}])
def test_create_room_without_tickets_is_bad_request(client: TestClient, fake_store: FakeRedis, body) -> None:
    response = client.post("/api/create-room", json=body)

    assert response.status_code == 400
    assert fake_store.data == {}


def test_create_room_with_repeated_ticket_id_is_bad_request(client: TestClient, fake_store: FakeRedis) -> None:
    response = client.post("/api/create-room", json={"ticketIds": ["A", "B", "A"]})

    assert response.status_code == 400
    assert fake_store.data == {}


def test_unknown_room_details_is_not_found(client: TestClient) -> None:
    assert client.get("/api/rooms/nope").status_code == 404


def test_admin_routes_require_key(client: TestClient, fake_store: FakeRedis) -> None:
    _create_room(client, ["T1"])

    assert client.delete("/api/rooms", params={"key": "wrong"}).status_code == 401
    assert client.get("/api/status").status_code == 401
    assert len(fake_store.data) == 1


def test_admin_status_and_bulk_delete(client: TestClient, fake_store: FakeRedis) -> None:
    _create_room(client, ["T1"])
    _create_room(client, ["T2"])

    status = client.get("/api/status", params={"key": "secret"})
    assert status.json() == {"activeRooms": 2, "totalUsers": 0}

    deleted = client.delete("/api/rooms", params={"key": "secret"})
    assert deleted.json() == {"deleted": 2}
    assert fake_store.data == {}


def test_ws_missing_params_is_refused(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/ws?roomId=abc"):
            pass
    assert exc_info.value.code == 1008


def test_ws_unknown_room_is_refused(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(_ws_url("missing", "alice")):
            pass
    assert exc_info.value.code == 1008


def test_ws_voting_round(client: TestClient, fake_store: FakeRedis) -> None:
    room_id = _create_room(client, ["A", "B"])

    with client.websocket_connect(_ws_url(room_id, "gm", gamemaster=True)) as gm_ws:
        joined = gm_ws.receive_json()
        assert joined["type"] == "roomState"
        assert joined["payload"]["GameMaster"] == "gm"

        with client.websocket_connect(_ws_url(room_id, "voter1")) as voter_ws:
            assert set(voter_ws.receive_json()["payload"]["Users"]) == {"gm", "voter1"}
            gm_ws.receive_json()

            voter_ws.send_json({"type": "vote", "payload": {"ticketId": "A", "vote": 3}})
            voter_ws.receive_json()
            gm_ws.receive_json()

            gm_ws.send_json({"type": "reveal"})
            state = voter_ws.receive_json()["payload"]
            assert state["Tickets"][0]["Votes"] == {"voter1": 3}
            assert state["VotesRevealed"] is True
            assert state["CurrentTicket"] == 0
            gm_ws.receive_json()

            gm_ws.send_json({"type": "next"})
            state = voter_ws.receive_json()["payload"]
            assert state["CurrentTicket"] == 1
            assert state["VotesRevealed"] is False
            gm_ws.receive_json()

        after_leave = _receive_json_within(gm_ws)["payload"]
        assert set(after_leave["Users"]) == {"gm"}
        assert after_leave["Tickets"][0]["Votes"] == {"voter1": 3}


def test_ws_duplicate_live_name_is_refused(client: TestClient) -> None:
    room_id = _create_room(client, ["A"])

    with client.websocket_connect(_ws_url(room_id, "alice")) as alice_ws:
        alice_ws.receive_json()
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(_ws_url(room_id, "alice")):
                pass
        assert exc_info.value.code == 1008


def test_ws_bad_messages_do_not_close_connection(client: TestClient) -> None:
    room_id = _create_room(client, ["A"])

    with client.websocket_connect(_ws_url(room_id, "bob")) as bob_ws:
        bob_ws.receive_json()
        bob_ws.send_text("not json")
        bob_ws.send_json({"type": "unknown"})
        bob_ws.send_json({"type": "vote", "payload": {"ticketId": "A", "vote": 2}})
        state = bob_ws.receive_json()["payload"]
        assert state["Tickets"][0]["Votes"] == {"bob": 2}


def test_ws_game_master_disconnect_vacates_role(client: TestClient, fake_store: FakeRedis) -> None:
    room_id = _create_room(client, ["A"])

    with client.websocket_connect(_ws_url(room_id, "bob")) as bob_ws:
        bob_ws.receive_json()
        with client.websocket_connect(_ws_url(room_id, "alice", gamemaster=True)) as alice_ws:
            alice_ws.receive_json()
            bob_ws.receive_json()
        assert _receive_json_within(bob_ws)["payload"]["GameMaster"] == ""

        with client.websocket_connect(_ws_url(room_id, "carol", gamemaster=True)) as carol_ws:
            assert _receive_json_within(carol_ws)["payload"]["GameMaster"] == "carol"


def test_leave_completes_when_connection_task_is_cancelled(fake_store: FakeRedis) -> None:
    bob = FakeStream("bob")
    alice = FakeStream("alice")

    async def _run() -> str:
        room_id = await session_manager.create_room(["A"])
        await session_manager.join(room_id, "bob", stream=bob)
        await session_manager.join(room_id, "alice", True, stream=alice)

        connection = asyncio.create_task(end_session(alice, room_id, "alice"))
        await asyncio.sleep(0)
        connection.cancel()
        with pytest.raises(asyncio.CancelledError):
            await connection
        await asyncio.gather(*list(_pending_leaves))
        return room_id

    room_id = asyncio.run(_run())

    assert stored_record(fake_store, room_id)["GameMaster"] == ""
    assert bob.last_payload["GameMaster"] == ""
    assert bob.last_payload["Users"] == {"bob": "bob"}
    assert alice.closed is True
    assert connection_registry.get(room_id, "alice") is None
