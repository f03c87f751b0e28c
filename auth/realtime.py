"""
auth/realtime.py -- Connection-time authentication and channels for the push transport.

Handshake (authenticate_handshake):
  The token comes from the ``token`` query parameter (the handshake auth
  payload; browsers cannot set headers on a WebSocket) or from an
  ``Authorization: Bearer`` header. It is decoded by the same TokenCodec as
  the request gate. Authentication happens once; messages on an open
  connection are not re-authenticated.

  By default only the token is checked, not the session table. A token whose
  session was terminated or has expired therefore still opens a connection
  until the token's own exp passes. Setting REALTIME_REQUIRE_SESSION=true
  makes the handshake also run RequestGate.validate_session() (without the
  sliding-window touch).

Channels (ChannelHub):
  Every authenticated connection joins its personal channel ``user:<id>``.
  Clients may join ``project:<id>`` and ``task:<id>`` rooms. The hub is
  transport state only -- it never caches session or lockout state.

  Single-process only: fan-out across several server processes would need a
  shared broker, which this service does not run.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from starlette.websockets import WebSocket

from auth.errors import MissingToken
from auth.gate import RequestGate, extract_bearer
from auth.models import AuthContext, OriginMeta
from auth.tokens import TokenCodec

logger = logging.getLogger("pmoaccess.auth.realtime")

# Close code sent when the handshake is rejected (4000-4999 is application space).
AUTH_FAILED_CLOSE_CODE = 4401


def personal_channel(user_id: int) -> str:
    return f"user:{user_id}"


def authenticate_handshake(
    websocket: WebSocket,
    codec: TokenCodec,
    gate: RequestGate | None = None,
    require_session: bool = False,
) -> AuthContext:
    """Authenticate a WebSocket handshake. Raises an AuthError subclass on failure."""
    token = websocket.query_params.get("token") or extract_bearer(websocket.headers.get("authorization"))
    if not token:
        raise MissingToken("Authentication token required.")
    ctx = codec.decode(token)
    if require_session and gate is not None:
        origin = OriginMeta(
            ip_address=websocket.client.host if websocket.client else None,
            user_agent=websocket.headers.get("user-agent"),
        )
        gate.validate_session(ctx, origin)
    return ctx


class ChannelHub:
    """In-process registry of open connections per channel."""

    def __init__(self) -> None:
        self._channels: dict[str, set[WebSocket]] = defaultdict(set)
        self._memberships: dict[WebSocket, set[str]] = defaultdict(set)

    def join(self, channel: str, websocket: WebSocket) -> None:
        self._channels[channel].add(websocket)
        self._memberships[websocket].add(channel)

    def leave(self, channel: str, websocket: WebSocket) -> None:
        members = self._channels.get(channel)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self._channels[channel]
        self._memberships.get(websocket, set()).discard(channel)

    def leave_all(self, websocket: WebSocket) -> None:
        for channel in list(self._memberships.pop(websocket, set())):
            members = self._channels.get(channel)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self._channels[channel]

    def is_member(self, channel: str, websocket: WebSocket) -> bool:
        return channel in self._memberships.get(websocket, set())

    def connection_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def emit(self, channel: str, event: str, data: Any, exclude: WebSocket | None = None) -> int:
        """Send {"event", "data"} to every connection in channel. Returns the number reached.

        A connection that fails to receive is dropped from the hub.
        """
        sent = 0
        for websocket in list(self._channels.get(channel, ())):
            if websocket is exclude:
                continue
            try:
                await websocket.send_json({"event": event, "data": data})
                sent += 1
            except Exception:
                logger.warning("Dropping unreachable realtime connection on %s", channel)
                self.leave_all(websocket)
        return sent

    async def emit_to_user(self, user_id: int, event: str, data: Any) -> int:
        return await self.emit(personal_channel(user_id), event, data)


# ---------------------------------------------------------------------------
# Client message handling
# ---------------------------------------------------------------------------

_RELAYED = {"time:start": "time:started", "time:stop": "time:stopped"}
_ROOM_PREFIX = {"project": "project:", "task": "task:"}


async def handle_message(hub: ChannelHub, websocket: WebSocket, ctx: AuthContext, message: Any) -> None:
    """Route one client message. Messages are JSON objects {"event": str, "data": any}."""
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        await websocket.send_json({"event": "error", "data": {"code": "bad_message"}})
        return

    event: str = message["event"]
    data = message.get("data")

    if event == "ping":
        await websocket.send_json({"event": "pong", "data": data})
        return

    if event in _RELAYED:
        logger.info("User %s %s", ctx.user_id, event)
        await hub.emit(personal_channel(ctx.user_id), _RELAYED[event], data, exclude=websocket)
        return

    kind, _, action = event.partition(":")
    if kind in _ROOM_PREFIX and action in ("join", "leave") and isinstance(data, (str, int)):
        channel = f"{_ROOM_PREFIX[kind]}{data}"
        if action == "join":
            hub.join(channel, websocket)
            logger.info("User %s joined %s", ctx.user_id, channel)
        else:
            hub.leave(channel, websocket)
        return

    if event == "user:typing" and isinstance(data, dict):
        room = data.get("room")
        # Only rooms this connection has joined; the personal channel of
        # another user is never reachable this way.
        if isinstance(room, str) and hub.is_member(room, websocket):
            await hub.emit(room, "user:typing", {**data, "user_id": ctx.user_id}, exclude=websocket)
        return

    await websocket.send_json({"event": "error", "data": {"code": "unknown_event", "event": event}})
