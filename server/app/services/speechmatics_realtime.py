"""Client for the Speechmatics realtime transcription socket.

One client is opened per relay session. It turns the session's start intent
into a ``StartRecognition`` message, forwards raw PCM frames, and exposes the
upstream messages as a typed event feed that always ends with exactly one
``closed`` or ``failed`` event.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

try:
    from ..config import Settings
except ImportError:  # pragma: no cover - script-style execution fallback
    from app.config import Settings

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class AudioFormat:
    """Raw PCM descriptor sent with ``StartRecognition``."""

    type: str = "raw"
    encoding: str = "pcm_s16le"
    sample_rate: int = 16_000

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "encoding": self.encoding, "sample_rate": self.sample_rate}


PCM_S16LE_16K = AudioFormat()


@dataclass(frozen=True)
class TranscriptionConfig:
    language: str
    operating_point: str = "enhanced"
    diarization: str = "none"
    enable_partials: bool = True
    max_delay: float = 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "operating_point": self.operating_point,
            "diarization": self.diarization,
            "enable_partials": self.enable_partials,
            "max_delay": self.max_delay,
        }


class UpstreamState(Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class UpstreamEventKind(Enum):
    RECOGNITION_STARTED = "recognition_started"
    PARTIAL = "partial"
    FINAL = "final"
    WARNING = "warning"
    ERROR = "error"
    OTHER = "other"
    # Terminal kinds: the feed yields exactly one of these last.
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class UpstreamEvent:
    kind: UpstreamEventKind
    message_type: str = ""
    transcript: str = ""
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    code: Optional[int] = None
    reason: str = ""


_TRANSCRIPT_MESSAGES = {
    "AddPartialTranscript": UpstreamEventKind.PARTIAL,
    "AddTranscript": UpstreamEventKind.FINAL,
}


def parse_upstream_message(payload: str | bytes) -> UpstreamEvent:
    """Translate one upstream frame into an ``UpstreamEvent``.

    Anything that is not a recognised JSON message comes back as ``OTHER`` so
    the caller can log and skip it.
    """
    try:
        data = json.loads(payload)
    except (TypeError, ValueError, UnicodeDecodeError):
        return UpstreamEvent(kind=UpstreamEventKind.OTHER)
    if not isinstance(data, dict):
        return UpstreamEvent(kind=UpstreamEventKind.OTHER)

    message_type = str(data.get("message") or "")
    if message_type in _TRANSCRIPT_MESSAGES:
        metadata = data.get("metadata") or {}
        transcript = metadata.get("transcript") if isinstance(metadata, dict) else None
        return UpstreamEvent(
            kind=_TRANSCRIPT_MESSAGES[message_type],
            message_type=message_type,
            transcript=transcript if isinstance(transcript, str) else "",
            raw=data,
        )
    if message_type == "RecognitionStarted":
        return UpstreamEvent(
            kind=UpstreamEventKind.RECOGNITION_STARTED,
            message_type=message_type,
            message=str(data.get("id") or ""),
            raw=data,
        )
    if message_type == "Warning":
        return UpstreamEvent(
            kind=UpstreamEventKind.WARNING,
            message_type=message_type,
            message=str(data.get("reason") or "Speechmatics warning"),
            raw=data,
        )
    if message_type == "Error":
        return UpstreamEvent(
            kind=UpstreamEventKind.ERROR,
            message_type=message_type,
            message=str(data.get("reason") or "Speechmatics error"),
            raw=data,
        )
    return UpstreamEvent(kind=UpstreamEventKind.OTHER, message_type=message_type, raw=data)


class SpeechmaticsRealtimeClient:
    """Duplex connection to the Speechmatics realtime API for a single session."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
        connector: Optional[Connector] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("SPEECHMATICS_API_KEY missing; cannot open realtime session")
        self._url = url
        self._api_key = api_key
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        self._connector = connector or ws_connect
        self._ws: Any = None
        self._state = UpstreamState.UNCONNECTED
        self._seq_no = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SpeechmaticsRealtimeClient":
        return cls(settings.speechmatics_rt_url, settings.speechmatics_api_key or "")

    @property
    def state(self) -> UpstreamState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is UpstreamState.OPEN

    @property
    def last_seq_no(self) -> int:
        """Number of audio frames sent so far."""
        return self._seq_no

    async def connect(self) -> None:
        if self._state is not UpstreamState.UNCONNECTED:
            raise RuntimeError(f"Cannot connect from state {self._state.value}")
        self._state = UpstreamState.CONNECTING
        try:
            self._ws = await self._connector(
                self._url,
                additional_headers={"Authorization": f"Bearer {self._api_key}"},
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
                max_size=None,
            )
        except Exception:
            self._state = UpstreamState.ERRORED
            raise
        self._state = UpstreamState.OPEN
        logger.info("Connected to Speechmatics realtime at %s", self._url)

    async def start_recognition(
        self, config: TranscriptionConfig, audio_format: AudioFormat = PCM_S16LE_16K
    ) -> None:
        await self._send_json(
            {
                "message": "StartRecognition",
                "transcription_config": config.to_dict(),
                "audio_format": audio_format.to_dict(),
            }
        )

    async def send_audio(self, frame: bytes) -> None:
        self._require_open()
        await self._ws.send(frame)
        self._seq_no += 1

    async def end_of_stream(self) -> None:
        """Tell Speechmatics no more audio is coming so it can flush final results."""
        await self._send_json({"message": "EndOfStream", "last_seq_no": self._seq_no})

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        self._require_open()
        ws = self._ws
        try:
            async for payload in ws:
                event = parse_upstream_message(payload)
                if event.kind is UpstreamEventKind.OTHER:
                    logger.debug("Ignoring Speechmatics message %r", event.message_type or "<unparsed>")
                yield event
        except ConnectionClosed as exc:
            if self._state is UpstreamState.OPEN:
                self._state = UpstreamState.CLOSED
            code = exc.rcvd.code if exc.rcvd is not None else 1006
            reason = exc.rcvd.reason if exc.rcvd is not None else ""
            yield UpstreamEvent(kind=UpstreamEventKind.CLOSED, code=code, reason=reason)
            return
        except Exception as exc:
            self._state = UpstreamState.ERRORED
            logger.exception("Speechmatics socket failed")
            yield UpstreamEvent(kind=UpstreamEventKind.FAILED, message=str(exc) or exc.__class__.__name__)
            return

        if self._state is UpstreamState.OPEN:
            self._state = UpstreamState.CLOSED
        yield UpstreamEvent(
            kind=UpstreamEventKind.CLOSED,
            code=getattr(ws, "close_code", None),
            reason=getattr(ws, "close_reason", None) or "",
        )

    async def close(self) -> None:
        if self._state is UpstreamState.OPEN:
            self._state = UpstreamState.CLOSED
        if self._ws is not None:
            await self._ws.close()

    async def _send_json(self, message: dict[str, Any]) -> None:
        self._require_open()
        await self._ws.send(json.dumps(message))

    def _require_open(self) -> None:
        if self._state is not UpstreamState.OPEN or self._ws is None:
            raise RuntimeError(f"Speechmatics connection is {self._state.value}")
