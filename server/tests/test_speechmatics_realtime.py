from __future__ import annotations

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from app.services.speechmatics_realtime import (
    SpeechmaticsRealtimeClient,
    TranscriptionConfig,
    UpstreamEventKind,
    UpstreamState,
    parse_upstream_message,
)


def _run(coro):  # noqa: ANN001
    return asyncio.run(coro)


class FakeSocket:
    def __init__(self, incoming=(), *, fail_with=None, close_code=1000, close_reason=""):
        self.sent = []
        self.closed = False
        self.close_code = close_code
        self.close_reason = close_reason
        self._incoming = list(incoming)
        self._fail_with = fail_with

    async def send(self, data):  # noqa: ANN001
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._incoming:
            yield message
        if self._fail_with is not None:
            raise self._fail_with


def _client(socket, captured=None):
    async def connector(url, **kwargs):  # noqa: ANN001, ANN003
        if captured is not None:
            captured["url"] = url
            captured.update(kwargs)
        return socket

    return SpeechmaticsRealtimeClient("wss://rt.example/v2", "secret", connector=connector)


def test_parse_transcripts_and_control_messages():
    partial = parse_upstream_message(
        json.dumps({"message": "AddPartialTranscript", "metadata": {"transcript": "hello"}})
    )
    assert partial.kind is UpstreamEventKind.PARTIAL
    assert partial.transcript == "hello"

    final = parse_upstream_message(json.dumps({"message": "AddTranscript", "metadata": {}}))
    assert final.kind is UpstreamEventKind.FINAL
    assert final.transcript == ""

    error = parse_upstream_message(json.dumps({"message": "Error", "type": "not_authorised"}))
    assert error.kind is UpstreamEventKind.ERROR
    assert error.message == "Speechmatics error"
    assert error.raw["type"] == "not_authorised"

    assert parse_upstream_message(json.dumps({"message": "EndOfTranscript"})).kind is UpstreamEventKind.OTHER
    assert parse_upstream_message("not json").kind is UpstreamEventKind.OTHER
    assert parse_upstream_message(b"\x00\x01\x02").kind is UpstreamEventKind.OTHER


def test_connect_sends_bearer_auth_and_start_recognition():
    async def scenario():
        socket = FakeSocket()
        captured = {}
        client = _client(socket, captured)
        assert client.state is UpstreamState.UNCONNECTED

        await client.connect()
        assert client.is_open
        assert captured["url"] == "wss://rt.example/v2"
        assert captured["additional_headers"] == {"Authorization": "Bearer secret"}

        await client.start_recognition(TranscriptionConfig(language="de", max_delay=1.5))
        start = json.loads(socket.sent[0])
        assert start["message"] == "StartRecognition"
        assert start["transcription_config"] == {
            "language": "de",
            "operating_point": "enhanced",
            "diarization": "none",
            "enable_partials": True,
            "max_delay": 1.5,
        }
        assert start["audio_format"] == {"type": "raw", "encoding": "pcm_s16le", "sample_rate": 16000}

    _run(scenario())


def test_end_of_stream_reports_last_sequence_number():
    async def scenario():
        socket = FakeSocket()
        client = _client(socket)
        await client.connect()
        await client.send_audio(b"\x00\x01")
        await client.send_audio(b"\x02\x03")
        await client.end_of_stream()
        await client.close()

        assert socket.sent[:2] == [b"\x00\x01", b"\x02\x03"]
        assert json.loads(socket.sent[2]) == {"message": "EndOfStream", "last_seq_no": 2}
        assert socket.closed is True
        assert client.state is UpstreamState.CLOSED

    _run(scenario())


def test_event_feed_ends_with_closed_event():
    async def scenario():
        socket = FakeSocket(
            [json.dumps({"message": "RecognitionStarted", "id": "r1"})],
            close_code=1000,
            close_reason="done",
        )
        client = _client(socket)
        await client.connect()
        return [event async for event in client.events()], client

    events, client = _run(scenario())
    assert [event.kind for event in events] == [UpstreamEventKind.RECOGNITION_STARTED, UpstreamEventKind.CLOSED]
    assert (events[-1].code, events[-1].reason) == (1000, "done")
    assert client.is_open is False


def test_abnormal_close_carries_code_and_reason():
    async def scenario():
        socket = FakeSocket(fail_with=ConnectionClosedError(Close(4001, "not_authorised"), None))
        client = _client(socket)
        await client.connect()
        return [event async for event in client.events()]

    events = _run(scenario())
    assert len(events) == 1
    assert events[0].kind is UpstreamEventKind.CLOSED
    assert (events[0].code, events[0].reason) == (4001, "not_authorised")


def test_transport_error_yields_failed_event():
    async def scenario():
        socket = FakeSocket(fail_with=OSError("connection reset"))
        client = _client(socket)
        await client.connect()
        return [event async for event in client.events()], client

    events, client = _run(scenario())
    assert [event.kind for event in events] == [UpstreamEventKind.FAILED]
    assert events[0].message == "connection reset"
    assert client.state is UpstreamState.ERRORED


def test_connect_failure_marks_client_errored():
    async def connector(url, **kwargs):  # noqa: ANN001, ANN003
        raise OSError("dns failure")

    async def scenario():
        client = SpeechmaticsRealtimeClient("wss://rt.example/v2", "secret", connector=connector)
        with pytest.raises(OSError):
            await client.connect()
        return client

    client = _run(scenario())
    assert client.state is UpstreamState.ERRORED
    assert client.is_open is False


def test_missing_api_key_rejected():
    with pytest.raises(RuntimeError):
        SpeechmaticsRealtimeClient("wss://rt.example/v2", "")
