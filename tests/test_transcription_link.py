from __future__ import annotations

import asyncio
import logging
from urllib.parse import parse_qs, urlparse

import pytest

from agents.errors import LinkOpenError, LinkRuntimeError
from config.settings import Settings
from fakes import FakeBackendSocket, FakeConnector, results_message, wait_until
from speech.pending_audio import PendingAudioBuffer
from speech.transcription_link import (
    DeepgramConfig,
    LinkState,
    TranscriptEvent,
    TranscriptionLink,
    parse_backend_message,
)


class Recorder:
    def __init__(self) -> None:
        self.opened = 0
        self.closed = 0
        self.transcripts: list[TranscriptEvent] = []
        self.errors: list[Exception] = []

    def link(self, connector: FakeConnector, buffer: PendingAudioBuffer | None = None) -> TranscriptionLink:
        return TranscriptionLink(
            buffer=buffer if buffer is not None else PendingAudioBuffer(),
            on_open=self._on_open,
            on_transcript=self.transcripts.append,
            on_error=self.errors.append,
            on_close=self._on_close,
            connector=connector,
        )

    def _on_open(self) -> None:
        self.opened += 1

    def _on_close(self) -> None:
        self.closed += 1


def _config(**overrides) -> DeepgramConfig:
    values = {"api_key": "dg-test", "drain_delay_seconds": 0.2, "open_timeout_seconds": 1.0}
    values.update(overrides)
    return DeepgramConfig(**values)


def test_build_url_carries_stream_parameters():
    url = _config().build_url()
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert url.startswith("wss://api.deepgram.com/v1/listen?")
    assert query["model"] == ["nova-3"]
    assert query["encoding"] == ["mulaw"]
    assert query["sample_rate"] == ["8000"]
    assert query["channels"] == ["1"]
    assert query["interim_results"] == ["true"]
    assert _config().headers() == {"Authorization": "Token dg-test"}


def test_config_from_settings_requires_api_key():
    with pytest.raises(ValueError, match="Deepgram API key"):
        DeepgramConfig.from_settings(Settings(deepgram_api_key=None))

    cfg = DeepgramConfig.from_settings(Settings(deepgram_api_key="abc", drain_delay_seconds=2.0))
    assert cfg.api_key == "abc"
    assert cfg.drain_delay_seconds == 2.0


def test_parse_backend_message_variants():
    event = parse_backend_message(results_message("  hi there ", is_final=False))
    assert event == TranscriptEvent(text="  hi there ", is_final=False, speech_final=False)

    missing = parse_backend_message(results_message(None))
    assert missing is not None and missing.is_blank

    assert parse_backend_message('{"type": "Metadata", "request_id": "r1"}') is None

    with pytest.raises(ValueError):
        parse_backend_message("not json")
    with pytest.raises(ValueError):
        parse_backend_message("[1, 2]")


def test_submit_before_open_is_buffered_then_flushed_in_order():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector(gated=True)
        buffer = PendingAudioBuffer()
        link = recorder.link(connector, buffer)
        link.open(_config())

        assert link.submit(b"a") is True
        assert link.submit(b"b") is True
        await asyncio.sleep(0.01)
        assert connector.socket.audio == []
        assert len(buffer) == 2

        connector.release()
        await wait_until(lambda: recorder.opened == 1)
        assert buffer.drained
        assert link.submit(b"c") is True
        assert link.state is LinkState.STREAMING

        await wait_until(lambda: len(connector.socket.audio) == 3)
        await link.close()
        return recorder, connector

    recorder, connector = asyncio.run(scenario())
    assert connector.socket.audio == [b"a", b"b", b"c"]
    assert connector.socket.close_stream_count() == 1
    assert connector.socket.closed is True
    assert recorder.closed == 1


def test_close_twice_sends_close_stream_once():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)

        await asyncio.gather(link.close(), link.close())
        await link.close()
        return recorder, connector, link

    recorder, connector, link = asyncio.run(scenario())
    assert connector.socket.close_stream_count() == 1
    assert recorder.closed == 1
    assert link.state is LinkState.CLOSED


def test_submit_after_close_is_dropped():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)
        await link.close()
        return link.submit(b"late"), connector

    accepted, connector = asyncio.run(scenario())
    assert accepted is False
    assert connector.socket.audio == []


def test_trailing_transcripts_are_delivered_during_drain():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector(FakeBackendSocket(final_transcript="last words"))
        link = recorder.link(connector)
        link.open(_config(drain_delay_seconds=5.0))
        await wait_until(lambda: recorder.opened == 1)
        link.submit(b"audio")
        await asyncio.wait_for(link.close(), timeout=1.0)
        return recorder

    recorder = asyncio.run(scenario())
    assert [t.text for t in recorder.transcripts] == ["last words"]
    assert recorder.closed == 1


def test_malformed_backend_message_does_not_tear_down_link():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)

        connector.socket.push("{{ definitely not json")
        connector.socket.push(results_message("hello"))
        await wait_until(lambda: len(recorder.transcripts) == 1)
        state = link.state
        await link.close()
        return recorder, state

    recorder, state = asyncio.run(scenario())
    assert state is LinkState.OPEN
    assert recorder.transcripts[0].text == "hello"
    assert recorder.errors == []


def test_open_failure_reports_link_open_error():
    async def scenario():
        recorder = Recorder()
        buffer = PendingAudioBuffer()
        link = recorder.link(FakeConnector(error=OSError("connection refused")), buffer)
        link.open(_config())
        link.submit(b"early")
        await wait_until(lambda: recorder.errors)
        state = link.state
        await link.close()
        return recorder, state, buffer

    recorder, state, buffer = asyncio.run(scenario())
    assert state is LinkState.ERROR
    assert isinstance(recorder.errors[0], LinkOpenError)
    assert recorder.closed == 1
    assert buffer.drained and len(buffer) == 0


def test_open_timeout_reports_link_open_error():
    async def scenario():
        recorder = Recorder()
        link = recorder.link(FakeConnector(gated=True))
        link.open(_config(open_timeout_seconds=0.05))
        await wait_until(lambda: recorder.errors)
        await link.close()
        return recorder

    recorder = asyncio.run(scenario())
    assert isinstance(recorder.errors[0], LinkOpenError)
    assert "Timed out" in str(recorder.errors[0])
    assert recorder.opened == 0


def test_receive_failure_reports_runtime_error():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)

        connector.socket.fail(ConnectionResetError("reset by peer"))
        await wait_until(lambda: recorder.errors)
        state = link.state
        accepted = link.submit(b"after-error")
        await link.close()
        return recorder, state, accepted

    recorder, state, accepted = asyncio.run(scenario())
    assert state is LinkState.ERROR
    assert isinstance(recorder.errors[0], LinkRuntimeError)
    assert accepted is False
    assert recorder.closed == 1


def test_send_failure_reports_runtime_error():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)

        connector.socket.fail_send = True
        link.submit(b"doomed")
        await wait_until(lambda: recorder.errors)
        await link.close()
        return recorder

    recorder = asyncio.run(scenario())
    assert isinstance(recorder.errors[0], LinkRuntimeError)


def test_backend_closing_connection_fires_on_close_once():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)

        connector.socket.end()
        await wait_until(lambda: recorder.closed == 1)
        state = link.state
        await link.close()
        return recorder, state

    recorder, state = asyncio.run(scenario())
    assert state is LinkState.CLOSED
    assert recorder.closed == 1
    assert recorder.errors == []


def test_close_waits_for_queued_audio_before_draining():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector(FakeBackendSocket(send_delay=0.005))
        link = recorder.link(connector)
        link.open(_config(drain_delay_seconds=0.05))
        await wait_until(lambda: recorder.opened == 1)

        for i in range(40):
            assert link.submit(f"frame-{i}".encode()) is True
        await asyncio.wait_for(link.close(), timeout=2.0)
        return recorder, connector

    recorder, connector = asyncio.run(scenario())
    assert connector.socket.audio == [f"frame-{i}".encode() for i in range(40)]
    assert connector.socket.close_stream_count() == 1
    assert connector.socket.sent[-1] == '{"type": "CloseStream"}'
    assert recorder.closed == 1


def test_audio_still_queued_when_flush_times_out_is_reported(caplog):
    caplog.set_level(logging.WARNING)

    async def scenario():
        recorder = Recorder()
        connector = FakeConnector(FakeBackendSocket(send_delay=0.02))
        link = recorder.link(connector)
        link.open(_config(open_timeout_seconds=0.05, drain_delay_seconds=0.05))
        await wait_until(lambda: recorder.opened == 1)

        for i in range(40):
            link.submit(f"frame-{i}".encode())
        await asyncio.wait_for(link.close(), timeout=2.0)
        return recorder, connector, link

    recorder, connector, link = asyncio.run(scenario())
    assert len(connector.socket.audio) < 40
    assert "flushing queued audio" in caplog.text
    assert "queued audio frames" in caplog.text
    assert link.state is LinkState.CLOSED
    assert recorder.closed == 1


def test_abort_closes_the_socket():
    async def scenario():
        recorder = Recorder()
        connector = FakeConnector()
        link = recorder.link(connector)
        link.open(_config())
        await wait_until(lambda: recorder.opened == 1)

        link.abort()
        await wait_until(lambda: connector.socket.closed)
        return link

    link = asyncio.run(scenario())
    assert link.state is LinkState.CLOSED
    assert link.submit(b"late") is False
