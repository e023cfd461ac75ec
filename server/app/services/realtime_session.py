"""Realtime transcription session management.

A ``TranscriptionSession`` pairs one client WebSocket with one Speechmatics
realtime connection. Audio flows client -> upstream, transcript events flow
upstream -> client, and every exit path converges on ``teardown``.
"""
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from .session_registry import SessionRegistry
from .speechmatics_realtime import (
    PCM_S16LE_16K,
    AudioFormat,
    SpeechmaticsRealtimeClient,
    TranscriptionConfig,
    UpstreamEvent,
    UpstreamEventKind,
)

logger = logging.getLogger(__name__)

CAPACITY_MESSAGE = "Server at capacity. Please try again later."

ClientPayload = Union[bytes, str]
UpstreamFactory = Callable[[], SpeechmaticsRealtimeClient]


class SessionState(Enum):
    """Lifecycle states for a relay session."""
    INIT = "init"
    UPSTREAM_CONNECTING = "upstream_connecting"
    UPSTREAM_OPEN = "upstream_open"
    # Upstream went away but the client is still attached.
    UPSTREAM_CLOSED = "upstream_closed"
    CLOSED = "closed"


class ClientChannel(Protocol):
    """The client-facing half of a session."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def check_alive(self) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class WebSocketClientChannel:
    """``ClientChannel`` backed by a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, payload: dict[str, Any]) -> None:
        await self._websocket.send_text(json.dumps(payload))

    async def check_alive(self) -> None:
        """Raise ``ConnectionError`` if the socket is no longer connected.

        Nothing is sent on the wire. ASGI has no ping message, so the actual
        keepalive ping is emitted by uvicorn on ``ws_ping_interval``, which
        ``main()`` sets to the keepalive interval. The session's liveness task
        is therefore a connection-state check only.
        """
        if not self.is_open:
            raise ConnectionError("client socket is not connected")

    async def close(self, code: int = 1000) -> None:
        if self._websocket.application_state == WebSocketState.CONNECTED:
            await self._websocket.close(code=code)


def error_event(message: str, detail: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "error", "message": message}
    if detail is not None:
        payload["detail"] = detail
    return payload


def capacity_event() -> dict[str, Any]:
    return error_event(CAPACITY_MESSAGE)


def ready_event(audio_format: AudioFormat) -> dict[str, Any]:
    return {
        "type": "ready",
        "message": "Connected to Speechmatics. You can start streaming audio.",
        "audio_format": audio_format.to_dict(),
    }


def disconnected_event(code: Optional[int], reason: str) -> dict[str, Any]:
    return {
        "type": "speechmatics_disconnected",
        "message": "Speechmatics connection closed",
        "code": code,
        "reason": reason,
    }


def client_event_for(event: UpstreamEvent) -> Optional[dict[str, Any]]:
    """Normalize an upstream application message into the client vocabulary."""
    kind = event.kind
    if kind is UpstreamEventKind.PARTIAL:
        return {"type": "partial", "transcript": event.transcript}
    if kind is UpstreamEventKind.FINAL:
        return {"type": "final", "transcript": event.transcript}
    if kind is UpstreamEventKind.RECOGNITION_STARTED:
        return {"type": "recognition_started", "message": "Speechmatics recognition started"}
    if kind is UpstreamEventKind.WARNING:
        return {"type": "warning", "message": event.message}
    if kind is UpstreamEventKind.ERROR:
        return error_event(event.message, detail=event.raw)
    return None


def decode_control_message(payload: ClientPayload) -> Optional[dict[str, Any]]:
    """Return the JSON object carried by ``payload``, or None if it is audio."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


class TranscriptionSession:
    """One client <-> Speechmatics pairing and its lifecycle."""

    def __init__(
        self,
        session_id: str,
        language: str,
        client: ClientChannel,
        upstream_factory: UpstreamFactory,
        registry: SessionRegistry,
        *,
        keepalive_interval: float = 30.0,
        max_delay: float = 2.0,
        audio_format: AudioFormat = PCM_S16LE_16K,
    ) -> None:
        self.id = session_id
        self.language = language
        self.client = client
        self.upstream: Optional[SpeechmaticsRealtimeClient] = None
        self.state = SessionState.INIT
        self.closed = False
        self.audio_received = False
        self.forwarded_frames = 0
        self.dropped_frames = 0
        self.audio_format = audio_format
        self._upstream_factory = upstream_factory
        self._registry = registry
        self._keepalive_interval = keepalive_interval
        self._max_delay = max_delay
        self._liveness_task: Optional[asyncio.Task[None]] = None
        self._upstream_task: Optional[asyncio.Task[None]] = None
        self._send_lock = asyncio.Lock()

    def start(self) -> None:
        """Start the liveness timer and begin opening the upstream connection."""
        if self._upstream_task is not None or self.closed:
            return
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        self._upstream_task = asyncio.create_task(self._run_upstream())

    def _set_state(self, state: SessionState) -> None:
        # CLOSED is terminal.
        if state is self.state or self.state is SessionState.CLOSED:
            return
        logger.info(f"[Session {self.id}] State: {self.state.value} -> {state.value}")
        self.state = state

    def transcription_config(self) -> TranscriptionConfig:
        return TranscriptionConfig(language=self.language, max_delay=self._max_delay)

    async def _send_client(self, payload: dict[str, Any]) -> bool:
        if self.closed or not self.client.is_open:
            return False
        try:
            async with self._send_lock:
                await self.client.send_json(payload)
        except Exception as exc:
            logger.warning("[Session %s] Failed sending %s to client: %s", self.id, payload.get("type"), exc)
            return False
        return True

    async def _run_upstream(self) -> None:
        self._set_state(SessionState.UPSTREAM_CONNECTING)
        try:
            self.upstream = self._upstream_factory()
            await self.upstream.connect()
        except Exception as exc:
            logger.exception("[Session %s] Speechmatics setup failed", self.id)
            await self._fail_setup(exc)
            return

        if self.closed:
            # Client left while the handshake was in flight.
            await self.upstream.close()
            return

        try:
            await self.upstream.start_recognition(self.transcription_config(), self.audio_format)
        except Exception as exc:
            logger.exception("[Session %s] StartRecognition failed", self.id)
            await self._fail_setup(exc)
            return
        if self.closed:
            return

        logger.info("[Session %s] Speechmatics connected (language=%s)", self.id, self.language)
        self._set_state(SessionState.UPSTREAM_OPEN)
        await self._send_client(ready_event(self.audio_format))
        await self._pump_upstream()

    async def _fail_setup(self, exc: Exception) -> None:
        if self.closed:
            return
        await self._send_client(error_event(f"Failed to connect to transcription service: {exc}"))
        try:
            await self.client.close(code=1011)
        except Exception:
            logger.exception("[Session %s] Failed closing client after setup error", self.id)
        await self.teardown("upstream setup failed")

    async def _pump_upstream(self) -> None:
        upstream = self.upstream
        if upstream is None or not upstream.is_open:
            return
        async for event in upstream.events():
            if self.closed:
                return
            await self._relay_upstream_event(event)

    async def _relay_upstream_event(self, event: UpstreamEvent) -> None:
        if event.kind is UpstreamEventKind.CLOSED:
            logger.info("[Session %s] Speechmatics closed (code=%s reason=%r)", self.id, event.code, event.reason)
            await self._release_upstream()
            await self._send_client(disconnected_event(event.code, event.reason))
            return
        if event.kind is UpstreamEventKind.FAILED:
            logger.error("[Session %s] Speechmatics transport error: %s", self.id, event.message)
            await self._release_upstream()
            await self._send_client(error_event("Connection error", detail=event.message))
            return

        payload = client_event_for(event)
        if payload is None:
            logger.debug("[Session %s] Ignoring Speechmatics message %r", self.id, event.message_type)
            return
        if event.kind is UpstreamEventKind.ERROR:
            logger.error("[Session %s] Speechmatics error: %s", self.id, event.message)
        elif event.kind is UpstreamEventKind.WARNING:
            logger.warning("[Session %s] Speechmatics warning: %s", self.id, event.message)
        await self._send_client(payload)

    async def _release_upstream(self) -> None:
        self._set_state(SessionState.UPSTREAM_CLOSED)
        if self.upstream is None:
            return
        try:
            await self.upstream.close()
        except Exception:
            logger.exception("[Session %s] Failed closing Speechmatics socket", self.id)

    async def handle_client_frame(self, payload: ClientPayload) -> None:
        """Classify one inbound client frame and forward it upstream if it is audio.

        JSON objects are client configuration: accepted and not forwarded.
        Everything else is treated as PCM audio.
        """
        if self.closed:
            return

        control = decode_control_message(payload)
        if control is not None:
            logger.debug("[Session %s] Client config message ignored: %s", self.id, sorted(control))
            return

        frame = payload if isinstance(payload, bytes) else payload.encode("utf-8")
        upstream = self.upstream
        if self.state is not SessionState.UPSTREAM_OPEN or upstream is None or not upstream.is_open:
            self.dropped_frames += 1
            if self.dropped_frames == 1:
                logger.warning("[Session %s] Speechmatics not ready; dropping audio", self.id)
            return

        try:
            await upstream.send_audio(frame)
        except Exception as exc:
            # The upstream feed reports the transport failure to the client.
            self.dropped_frames += 1
            logger.warning("[Session %s] Failed forwarding audio: %s", self.id, exc)
            return

        self.forwarded_frames += 1
        if not self.audio_received:
            self.audio_received = True
            logger.info("[Session %s] First audio frame forwarded (%d bytes)", self.id, len(frame))

    async def _liveness_loop(self) -> None:
        """Periodic client state check; failures are logged, never fatal."""
        while not self.closed:
            await asyncio.sleep(self._keepalive_interval)
            if self.closed or not self.client.is_open:
                continue
            try:
                await self.client.check_alive()
            except Exception as exc:
                logger.debug("[Session %s] Liveness check failed: %s", self.id, exc)

    async def teardown(self, reason: str = "client closed") -> None:
        """Release every resource of the session. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        logger.info("[Session %s] Tearing down: %s", self.id, reason)
        self._set_state(SessionState.CLOSED)
        try:
            _cancel(self._liveness_task)
            upstream = self.upstream
            if upstream is not None:
                if upstream.is_open:
                    try:
                        await upstream.end_of_stream()
                    except Exception as exc:
                        logger.warning("[Session %s] Failed sending EndOfStream: %s", self.id, exc)
                try:
                    await upstream.close()
                except Exception:
                    logger.exception("[Session %s] Failed closing Speechmatics socket", self.id)
            _cancel(self._upstream_task)
        finally:
            self._registry.remove(self.id)
            logger.info(
                "[Session %s] Closed (audio_received=%s forwarded=%d dropped=%d)",
                self.id,
                self.audio_received,
                self.forwarded_frames,
                self.dropped_frames,
            )


def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
