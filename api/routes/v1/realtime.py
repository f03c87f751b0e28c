"""
api/routes/v1/realtime.py -- WebSocket push channel.

  WS /api/v1/realtime?token=<bearer token>

The handshake is authenticated once (auth/realtime.py). A rejected handshake
is closed with code 4401 before accept, and nothing about it is retained.
Accepted connections join their personal channel and exchange JSON messages
of the form {"event": str, "data": any}.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from auth.errors import AuthError
from auth.realtime import AUTH_FAILED_CLOSE_CODE, ChannelHub, authenticate_handshake, handle_message, personal_channel
from core.config import get_settings

logger = logging.getLogger("pmoaccess.api.realtime")

router = APIRouter()


@router.websocket("/realtime")
async def realtime(websocket: WebSocket) -> None:
    state = websocket.app.state
    try:
        ctx = await run_in_threadpool(
            authenticate_handshake,
            websocket,
            state.codec,
            state.gate,
            get_settings().realtime_require_session,
        )
    except AuthError as exc:
        logger.warning("Realtime handshake rejected (%s)", exc.code)
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason=exc.code)
        return

    await websocket.accept()
    hub: ChannelHub = state.hub
    hub.join(personal_channel(ctx.user_id), websocket)
    logger.info("Realtime connection opened for user %s", ctx.user_id)
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                logger.info("Realtime connection closed for user %s", ctx.user_id)
                return
            raw = frame.get("text")
            if raw is None:
                # Binary frames are not part of the protocol.
                await websocket.send_json({"event": "error", "data": {"code": "bad_message"}})
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"code": "bad_message"}})
                continue
            await handle_message(hub, websocket, ctx, message)
    except WebSocketDisconnect:
        logger.info("Realtime connection closed for user %s", ctx.user_id)
    finally:
        hub.leave_all(websocket)
