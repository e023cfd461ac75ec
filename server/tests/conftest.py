from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable, Optional

import pytest

from app.services.speechmatics_realtime import UpstreamEvent


class FakeClientChannel:
    """Records everything the session sends to the client."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.open = True
        self.close_codes: list[int] = []
        self.liveness_checks = 0

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, payload: dict[str, Any]) -> None:
        if not self.open:
            raise RuntimeError("client closed")
        self.sent.append(payload)

    async def check_alive(self) -> None:
        self.liveness_checks += 1

    async def close(self, code: int = 1000) -> None:
        self.open = False
        self.close_codes.append(code)


class FakeUpstream:
    """Stands in for ``SpeechmaticsRealtimeClient``."""

    def __init__(
        self,
        *,
        events: Iterable[UpstreamEvent] = (),
        connect_error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.sent_audio: list[bytes] = []
        self.started_with: Optional[tuple[Any, Any]] = None
        self.end_of_stream_calls = 0
        self.close_calls = 0
        self._open = False
        self._initial_events = list(events)
        self._connect_error = connect_error
        self._gate = gate
        self._queue: Optional[asyncio.Queue] = None

    @property
    def is_open(self) -> bool:
        return self._open

    def _events_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def connect(self) -> None:
        if self._gate is not None:
            await self._gate.wait()
        if self._connect_error is not None:
            raise self._connect_error
        self._open = True

    async def start_recognition(self, config: Any, audio_format: Any) -> None:
        self.started_with = (config, audio_format)
        for event in self._initial_events:
            self.push(event)

    async def send_audio(self, frame: bytes) -> None:
        self.sent_audio.append(frame)

    async def end_of_stream(self) -> None:
        self.end_of_stream_calls += 1

    async def close(self) -> None:
        self.close_calls += 1
        self._open = False
        self._events_queue().put_nowait(None)

    def push(self, event: UpstreamEvent) -> None:
        self._events_queue().put_nowait(event)

    async def events(self):
        queue = self._events_queue()
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event


async def wait_until(condition: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def client_channel() -> FakeClientChannel:
    return FakeClientChannel()


@pytest.fixture
def fake_upstream_cls() -> type[FakeUpstream]:
    return FakeUpstream


@pytest.fixture
def settle() -> Callable[..., Any]:
    return wait_until
