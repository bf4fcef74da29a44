import pytest
from starlette.websockets import WebSocketDisconnect

from omnichannel import main

from .utils import add_conversation, seed, token_for


def test_invalid_token_closes_with_4401(client):
    with client.websocket_connect("/ws?token=garbage") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    assert exc.value.code == 4401


def test_missing_token_closes_with_4401(client):
    with client.websocket_connect("/ws") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    assert exc.value.code == 4401


def test_ping_pong_and_invalid_frames(client):
    with client.websocket_connect(f"/ws?token={token_for()}&instanceId=inst1") as ws:
        ws.send_json({"event": "ping"})
        assert ws.receive_json()["event"] == "pong"
        ws.send_text("not json")
        assert ws.receive_json() == {"event": "error", "data": {"message": "Invalid frame"}}


def test_rooms_follow_allowed_instances_and_are_released(client):
    manager = main.runtime.connection_manager
    token = token_for(user_id="u7", allowed_instances=["inst1"])
    with client.websocket_connect(f"/ws?token={token}&instanceId=inst1,inst2") as ws:
        ws.send_json({"event": "ping"})
        ws.receive_json()
        assert "instance:t1:inst1" in manager.rooms
        assert "instance:t1:inst2" not in manager.rooms
        assert "user:t1:u7" in manager.rooms
        assert "role:t1:agent" in manager.rooms
    assert "user:t1:u7" not in manager.rooms


def test_internal_note_round_trip_over_socket(db_manager, client):
    seed(add_conversation(db_manager, "c1", tenant_id="t1", instance_id="inst1"))
    with client.websocket_connect(f"/ws?token={token_for(tenant_id='t1')}&instanceId=inst1") as ws:
        ws.send_json({"event": "message:send", "data": {"conversationId": "c1", "content": "note", "isInternal": True}})
        frame = ws.receive_json()
    assert frame["event"] == "message:new"
    assert frame["data"]["conversationId"] == "c1"
    assert frame["data"]["isInternal"] is True
