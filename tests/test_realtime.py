"""
tests/test_realtime.py -- WebSocket handshake authentication and channel fan-out.

Covers:
  - Handshake rejected with close code 4401 (no token, bad token)
  - Token via query parameter or Authorization header
  - Token-only by default: a terminated session's token still connects
  - REALTIME_REQUIRE_SESSION=true also checks the session table
  - Personal-channel relay of time events, room joins, typing, unknown events
  - Binary frames answered with a bad_message error
  - Forced termination and password reset push session:terminated to the user's connections
  - ChannelHub bookkeeping
"""

from __future__ import annotations

import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from auth.realtime import AUTH_FAILED_CLOSE_CODE, ChannelHub, personal_channel
from core.config import get_settings
from tests.conftest import ADMIN_EMAIL, ADMIN_PASSWORD, MEMBER_PASSWORD

WS = "/api/v1/realtime"


def _sync(ws) -> None:
    """Round-trip a ping so every earlier message on this socket has been handled."""
    ws.send_json({"event": "ping", "data": None})
    assert ws.receive_json() == {"event": "pong", "data": None}


class TestHandshake:
    def test_missing_token_rejected(self, api):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api.client.websocket_connect(WS):
                pass
        assert exc_info.value.code == AUTH_FAILED_CLOSE_CODE

    def test_invalid_token_rejected(self, api):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api.client.websocket_connect(f"{WS}?token=garbage"):
                pass
        assert exc_info.value.code == AUTH_FAILED_CLOSE_CODE

    def test_query_token_accepted(self, api):
        token = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={token}") as ws:
            _sync(ws)

    def test_header_token_accepted(self, api):
        with api.client.websocket_connect(WS, headers=api.admin_headers()) as ws:
            _sync(ws)

    def test_terminated_session_still_connects_by_default(self, api):
        body = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        api.state.sessions.terminate(body["session_id"])
        with api.client.websocket_connect(f"{WS}?token={body['token']}") as ws:
            _sync(ws)

    def test_require_session_rejects_terminated_session(self, api, monkeypatch):
        monkeypatch.setattr(get_settings(), "realtime_require_session", True)
        body = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        api.state.sessions.terminate(body["session_id"])
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api.client.websocket_connect(f"{WS}?token={body['token']}"):
                pass
        assert exc_info.value.code == AUTH_FAILED_CLOSE_CODE

    def test_require_session_accepts_live_session(self, api, monkeypatch):
        monkeypatch.setattr(get_settings(), "realtime_require_session", True)
        token = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={token}") as ws:
            _sync(ws)


class TestMessages:
    def test_time_events_relay_to_other_connections(self, api):
        token = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={token}") as first:
            with api.client.websocket_connect(f"{WS}?token={token}") as second:
                _sync(first)
                _sync(second)
                first.send_json({"event": "time:start", "data": {"task_id": 12}})
                assert second.receive_json() == {"event": "time:started", "data": {"task_id": 12}}
                first.send_json({"event": "time:stop", "data": {"task_id": 12}})
                assert second.receive_json() == {"event": "time:stopped", "data": {"task_id": 12}}
                # The sender gets nothing back but the next pong.
                _sync(first)

    def test_typing_reaches_room_members_only(self, api):
        member = api.create_user("m@example.com")
        admin_token = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)["token"]
        member_token = api.login("m@example.com", MEMBER_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={admin_token}") as admin_ws:
            with api.client.websocket_connect(f"{WS}?token={member_token}") as member_ws:
                member_ws.send_json({"event": "project:join", "data": 7})
                _sync(member_ws)

                # Not a member of the room yet: dropped silently.
                admin_ws.send_json({"event": "user:typing", "data": {"room": "project:7"}})
                _sync(admin_ws)

                admin_ws.send_json({"event": "project:join", "data": 7})
                admin_ws.send_json({"event": "user:typing", "data": {"room": "project:7"}})
                _sync(admin_ws)
                message = member_ws.receive_json()
                assert message["event"] == "user:typing"
                assert message["data"]["room"] == "project:7"
                assert message["data"]["user_id"] != member.id

    def test_typing_cannot_target_personal_channel(self, api):
        member = api.create_user("m@example.com")
        admin_token = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)["token"]
        member_token = api.login("m@example.com", MEMBER_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={admin_token}") as admin_ws:
            with api.client.websocket_connect(f"{WS}?token={member_token}") as member_ws:
                _sync(member_ws)
                admin_ws.send_json({"event": "user:typing", "data": {"room": personal_channel(member.id)}})
                _sync(admin_ws)
                _sync(member_ws)

    def test_unknown_event(self, api):
        with api.client.websocket_connect(WS, headers=api.admin_headers()) as ws:
            ws.send_json({"event": "files:delete", "data": 1})
            assert ws.receive_json() == {"event": "error", "data": {"code": "unknown_event", "event": "files:delete"}}

    def test_malformed_messages(self, api):
        with api.client.websocket_connect(WS, headers=api.admin_headers()) as ws:
            ws.send_text("{not json")
            assert ws.receive_json()["data"]["code"] == "bad_message"
            ws.send_json(["event"])
            assert ws.receive_json()["data"]["code"] == "bad_message"

    def test_binary_frame_gets_error_event(self, api):
        with api.client.websocket_connect(WS, headers=api.admin_headers()) as ws:
            ws.send_bytes(b"\x00\x01")
            assert ws.receive_json() == {"event": "error", "data": {"code": "bad_message"}}
            # The connection stays usable afterwards.
            _sync(ws)


class TestTerminationPush:
    def test_admin_termination_notifies_user(self, api):
        member = api.create_user("m@example.com")
        member_token = api.login("m@example.com", MEMBER_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={member_token}") as ws:
            _sync(ws)
            resp = api.client.delete(f"/api/v1/admin/users/{member.id}/sessions", headers=api.admin_headers())
            assert resp.status_code == 200
            message = ws.receive_json()
            assert message["event"] == "session:terminated"
            assert message["data"]["reason"] == "admin"

    def test_password_reset_notifies_user(self, api):
        member = api.create_user("m@example.com")
        member_token = api.login("m@example.com", MEMBER_PASSWORD)["token"]
        with api.client.websocket_connect(f"{WS}?token={member_token}") as ws:
            _sync(ws)
            resp = api.client.post(
                f"/api/v1/admin/users/{member.id}/reset-password",
                json={"new_password": "Replaced123"},
                headers=api.admin_headers(),
            )
            assert resp.status_code == 200
            message = ws.receive_json()
            assert message == {"event": "session:terminated", "data": {"session_id": None, "reason": "password_reset"}}


class FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list = []
        self.fail = fail

    async def send_json(self, payload) -> None:
        if self.fail:
            raise RuntimeError("closed")
        self.sent.append(payload)


class TestChannelHub:
    def test_join_leave(self):
        hub = ChannelHub()
        a, b = FakeSocket(), FakeSocket()
        hub.join("project:1", a)
        hub.join("project:1", b)
        hub.join("task:2", a)
        assert hub.connection_count("project:1") == 2
        assert hub.is_member("task:2", a)
        hub.leave("project:1", b)
        assert hub.connection_count("project:1") == 1
        hub.leave_all(a)
        assert hub.connection_count("project:1") == 0
        assert not hub.is_member("task:2", a)

    def test_emit_excludes_sender(self):
        hub = ChannelHub()
        a, b = FakeSocket(), FakeSocket()
        hub.join("user:1", a)
        hub.join("user:1", b)
        sent = asyncio.run(hub.emit("user:1", "time:started", {"x": 1}, exclude=a))
        assert sent == 1
        assert a.sent == []
        assert b.sent == [{"event": "time:started", "data": {"x": 1}}]

    def test_emit_to_empty_channel(self):
        assert asyncio.run(ChannelHub().emit_to_user(42, "session:terminated", {})) == 0

    def test_failing_connection_is_dropped(self):
        hub = ChannelHub()
        good, bad = FakeSocket(), FakeSocket(fail=True)
        hub.join("project:9", good)
        hub.join("project:9", bad)
        assert asyncio.run(hub.emit("project:9", "update", {})) == 1
        assert hub.connection_count("project:9") == 1
        assert not hub.is_member("project:9", bad)
