"""
tests.test_ws_protocol
~~~~~~~~~~~~~~~~~~~~~~

``/ws/collab`` 端点集成测试 —— 通过 TestClient 走完整的帧协议。
"""
from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from tests.fakes import make_room, presence_ids
from zcoder.main import create_app, init_app_state


def send(ws: Any, event: str, **data: Any) -> None:
    ws.send_json({"event": event, "data": data})


def receive_until(ws: Any, event: str) -> dict[str, Any]:
    """读取下行帧直到出现指定事件，返回该帧的 data。"""
    for _ in range(20):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]
    raise AssertionError(f"未收到事件 {event}")


@pytest.fixture()
def client(room_repo, chat_repo, activity_repo, user_repo) -> Iterator[TestClient]:
    app = create_app(lifespan_handler=None)
    registry = init_app_state(
        app, rooms=room_repo, chats=chat_repo, activities=activity_repo, users=user_repo, idle_grace=0,
    )
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(registry.close)


class TestCollabWebSocket:

    def test_invalid_frame_keeps_connection_open(self, client) -> None:
        with client.websocket_connect("/ws/collab") as ws:
            ws.send_text("oops")
            assert ws.receive_json() == {"event": "error", "data": {"message": "无效的消息格式"}}

            send(ws, "join-room", roomId="ghost", userId="alice")
            assert ws.receive_json() == {"event": "error", "data": {"message": "房间不存在"}}

    def test_join_snapshot(self, client, room_repo) -> None:
        room_repo.put(make_room())

        with client.websocket_connect("/ws/collab") as ws:
            send(ws, "join-room", roomId="room-1", userId="alice")
            joined = ws.receive_json()
            assert joined["event"] == "room-joined"
            assert joined["data"]["room"]["id"] == "room-1"
            assert joined["data"]["sharedCode"]["version"] == 0
            assert joined["data"]["chatHistory"] == []
            presence = ws.receive_json()
            assert presence["event"] == "active-users"
            assert presence_ids(presence["data"]) == ["alice"]

    def test_end_to_end_collaboration(self, client) -> None:
        """A 建房并绑定 → B 加入并绑定 → A 改代码、发消息 → B 断开。"""
        room = client.post(
            "/api/rooms", json={"name": "Pair", "maxParticipants": 2}, headers={"X-User-Id": "alice"},
        ).json()["data"]
        room_id = room["id"]

        with client.websocket_connect("/ws/collab") as c1:
            send(c1, "join-room", roomId=room_id, userId="alice")
            assert presence_ids(receive_until(c1, "active-users")) == ["alice"]

            assert client.post(f"/api/rooms/{room_id}/join", headers={"X-User-Id": "bob"}).status_code == 200
            with client.websocket_connect("/ws/collab") as c2:
                send(c2, "join-room", roomId=room_id, userId="bob")
                assert presence_ids(receive_until(c2, "active-users")) == ["alice", "bob"]
                assert receive_until(c1, "user-joined")["user"]["id"] == "bob"
                assert presence_ids(receive_until(c1, "active-users")) == ["alice", "bob"]

                send(c1, "code-change", roomId=room_id, code="print(1)", language="python")
                update = receive_until(c2, "code-update")
                assert update["code"] == "print(1)"
                assert update["language"] == "python"
                assert update["version"] == 1
                assert update["user"]["id"] == "alice"

                send(c2, "chat-message", roomId=room_id, message="nice")
                for ws in (c1, c2):
                    chat = receive_until(ws, "chat-message")
                    assert chat["message"] == "nice"
                    assert chat["user"]["id"] == "bob"

            # B 断开后 A 收到离开通知与新的在线名单
            assert receive_until(c1, "user-left")["user"]["id"] == "bob"
            assert presence_ids(receive_until(c1, "active-users")) == ["alice"]

        history = client.get(f"/api/rooms/{room_id}/chat", headers={"X-User-Id": "alice"}).json()["data"]
        assert [m["message"] for m in history["messages"]] == ["nice"]

    def test_live_rooms_lists_bound_sessions(self, client, room_repo) -> None:
        room_repo.put(make_room())

        with client.websocket_connect("/ws/collab") as ws:
            send(ws, "join-room", roomId="room-1", userId="alice")
            receive_until(ws, "active-users")

            data = client.get("/api/live/rooms").json()["data"]
            assert data == [{
                "roomId": "room-1",
                "onlineCount": 1,
                "activeUsers": ["alice"],
                "documentVersion": 0,
            }]
