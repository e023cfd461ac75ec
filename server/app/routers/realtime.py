"""Realtime transcription WebSocket endpoint.

Accepts client sockets, applies admission control against the session
registry, resolves the requested language and hands the socket to a
``TranscriptionSession`` for the rest of its life.
"""
from __future__ import annotations

import json
import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..services.languages import language_from_query
from ..services.realtime_session import (
    TranscriptionSession,
    WebSocketClientChannel,
    capacity_event,
)
from ..services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def derive_session_id(websocket: WebSocket, registry: SessionRegistry) -> str:
    """Use the handshake key as session id, or a fresh uuid if it is missing or taken."""
    key = (websocket.headers.get("sec-websocket-key") or "").strip()
    if key and key not in registry:
        return key
    return uuid.uuid4().hex


@router.websocket("/")
@router.websocket("/ws")
async def realtime_transcription_gateway(websocket: WebSocket) -> None:
    """Relay PCM audio to Speechmatics and transcript events back to the client."""
    state = websocket.app.state
    registry: SessionRegistry = state.session_registry
    settings = state.settings

    await websocket.accept()
    session_id = derive_session_id(websocket, registry)
    logger.info("New connection: %s", session_id)

    if not registry.admit(session_id):
        logger.info("Rejecting session %s - server busy", session_id)
        await websocket.send_text(json.dumps(capacity_event()))
        await websocket.close()
        return

    query_string = websocket.scope.get("query_string", b"").decode("latin-1")
    language = language_from_query(query_string, settings.default_language)
    session = TranscriptionSession(
        session_id,
        language,
        WebSocketClientChannel(websocket),
        state.upstream_factory,
        registry,
        keepalive_interval=settings.keepalive_interval,
        max_delay=settings.rt_max_delay,
    )
    registry.attach(session_id, session)
    session.start()

    reason = "client closed"
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("Client disconnected [%s] (code=%s)", session_id, message.get("code"))
                break
            payload = message.get("bytes")
            if payload is None:
                payload = message.get("text")
            if payload is None:
                continue
            await session.handle_client_frame(payload)
    except WebSocketDisconnect as exc:
        logger.info("Client disconnected [%s] (code=%s)", session_id, exc.code)
    except Exception as exc:
        reason = f"client error: {exc}"
        logger.exception("Client error [%s]", session_id)
        try:
            await session.client.close(code=1011)
        except Exception as close_exc:
            logger.debug("Client socket already gone [%s]: %s", session_id, close_exc)
    finally:
        await session.teardown(reason)
