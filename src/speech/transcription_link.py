"""Streaming connection to the Deepgram live transcription API.

One ``TranscriptionLink`` serves exactly one call. Audio submitted before the
socket is open is parked in a ``PendingAudioBuffer`` and flushed, in order, in
the same step that marks the link open. After that, audio goes through a
single outbound queue so the backend sees bytes in submission order.

The link never touches session state. It reports through four callbacks
(``on_open``, ``on_transcript``, ``on_error``, ``on_close``) which are expected
to be cheap and non-blocking.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlencode

from websockets.asyncio.client import connect

from agents.errors import LinkOpenError, LinkRuntimeError, RelayError
from config.settings import Settings
from speech.pending_audio import PendingAudioBuffer

LOGGER = logging.getLogger(__name__)

CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


class LinkState(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


class BackendSocket(Protocol):
    """The subset of a websockets client connection the link relies on."""

    async def send(self, message: str | bytes) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str, dict[str, str]], Awaitable[BackendSocket]]


async def connect_websocket(url: str, headers: dict[str, str]) -> BackendSocket:
    return await connect(
        url,
        additional_headers=headers,
        max_size=2**22,
        ping_interval=20,
        ping_timeout=20,
        open_timeout=None,
    )


def _flag(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class DeepgramConfig:
    api_key: str
    url: str = "wss://api.deepgram.com/v1/listen"
    model: str = "nova-3"
    language: str = "en-US"
    encoding: str = "mulaw"
    sample_rate: int = 8000
    channels: int = 1
    smart_format: bool = True
    punctuate: bool = True
    interim_results: bool = True
    open_timeout_seconds: float = 10.0
    drain_delay_seconds: float = 1.5

    @classmethod
    def from_settings(cls, settings: Settings) -> DeepgramConfig:
        if not settings.deepgram_api_key:
            raise ValueError("Deepgram API key must be configured for live transcription.")
        return cls(
            api_key=settings.deepgram_api_key,
            url=settings.deepgram_url,
            model=settings.deepgram_model,
            language=settings.deepgram_language,
            encoding=settings.deepgram_encoding,
            sample_rate=settings.deepgram_sample_rate,
            channels=settings.deepgram_channels,
            smart_format=settings.deepgram_smart_format,
            punctuate=settings.deepgram_punctuate,
            interim_results=settings.deepgram_interim_results,
            open_timeout_seconds=settings.link_open_timeout_seconds,
            drain_delay_seconds=settings.drain_delay_seconds,
        )

    def build_url(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "smart_format": _flag(self.smart_format),
            "punctuate": _flag(self.punctuate),
            "interim_results": _flag(self.interim_results),
            "encoding": self.encoding,
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
        }
        return f"{self.url}?{urlencode(params)}"

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}"}


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool = True
    speech_final: bool = False

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


def parse_backend_message(raw: str | bytes) -> TranscriptEvent | None:
    """Parse one Deepgram message; returns None for non-transcript messages.

    Raises ValueError when the message is not a JSON object.
    """

    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Transcription message is not a JSON object.")
    if data.get("type") != "Results":
        return None

    channel = data.get("channel")
    alternatives = channel.get("alternatives") if isinstance(channel, dict) else None
    transcript = ""
    if isinstance(alternatives, list) and alternatives and isinstance(alternatives[0], dict):
        value = alternatives[0].get("transcript")
        if isinstance(value, str):
            transcript = value

    return TranscriptEvent(
        text=transcript,
        is_final=bool(data.get("is_final", True)),
        speech_final=bool(data.get("speech_final", False)),
    )


class TranscriptionLink:
    """Lifecycle: pending -> open -> streaming -> closing -> closed, or error."""

    def __init__(
        self,
        *,
        buffer: PendingAudioBuffer,
        on_open: Callable[[], None],
        on_transcript: Callable[[TranscriptEvent], None],
        on_error: Callable[[RelayError], None],
        on_close: Callable[[], None],
        connector: Connector | None = None,
    ) -> None:
        self._buffer = buffer
        self._on_open = on_open
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._on_close = on_close
        self._connector = connector or connect_websocket

        self.call_sid = "unknown"
        self._config: DeepgramConfig | None = None
        self._state = LinkState.PENDING
        self._ws: BackendSocket | None = None
        self._outbox: asyncio.Queue[bytes | str | None] = asyncio.Queue()
        self._connect_task: asyncio.Task[None] | None = None
        self._send_task: asyncio.Task[None] | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._remote_closed = asyncio.Event()
        self._sender_finished = asyncio.Event()
        self._close_socket_task: asyncio.Task[None] | None = None
        self._close_requested = False
        self._close_notified = False
        self.bytes_sent = 0

    @property
    def state(self) -> LinkState:
        return self._state

    def open(self, config: DeepgramConfig) -> asyncio.Task[None]:
        """Start connecting; completion is reported through ``on_open``."""

        if self._connect_task is not None:
            raise RuntimeError("Transcription link has already been opened.")
        self._config = config
        self._connect_task = asyncio.create_task(self._connect(config))
        return self._connect_task

    def submit(self, frame: bytes) -> bool:
        """Queue audio for the backend. Returns False when the frame was dropped."""

        if self._close_requested or self._state in (LinkState.CLOSING, LinkState.CLOSED, LinkState.ERROR):
            LOGGER.warning(
                "Dropping %d audio bytes for call_sid=%s: transcription link is %s",
                len(frame),
                self.call_sid,
                "closing" if self._close_requested else self._state.value,
            )
            return False

        if self._state is LinkState.PENDING:
            self._buffer.enqueue(frame)
            return True

        self._outbox.put_nowait(frame)
        self._state = LinkState.STREAMING
        return True

    async def close(self) -> None:
        """Finish the stream, wait out the drain delay, then release the socket."""

        if self._close_requested:
            return
        self._close_requested = True

        if self._state is LinkState.PENDING and self._connect_task is not None:
            # Let the connection attempt finish so buffered audio is flushed.
            await asyncio.wait({self._connect_task})

        if self._state in (LinkState.OPEN, LinkState.STREAMING):
            self._state = LinkState.CLOSING
            self._outbox.put_nowait(CLOSE_STREAM_MESSAGE)
            await self._wait_for_sender()
            drain_delay = self._config.drain_delay_seconds if self._config else 0.0
            LOGGER.info(
                "Draining transcription link for call_sid=%s (up to %.2fs)",
                self.call_sid,
                drain_delay,
            )
            try:
                await asyncio.wait_for(self._remote_closed.wait(), timeout=drain_delay)
            except asyncio.TimeoutError:
                pass

        await self._release()
        self._state = LinkState.CLOSED
        LOGGER.info(
            "Transcription link closed for call_sid=%s (%d bytes sent)",
            self.call_sid,
            self.bytes_sent,
        )
        self._notify_closed()

    def abort(self) -> None:
        """Tear everything down without awaiting; used when the owning session is cancelled."""

        self._close_requested = True
        for task in (self._connect_task, self._send_task, self._recv_task):
            if task is not None and not task.done():
                task.cancel()
        ws = self._ws
        self._ws = None
        if ws is not None:
            self._close_socket_task = asyncio.create_task(ws.close())
        self._buffer.discard()
        self._state = LinkState.CLOSED

    async def _connect(self, config: DeepgramConfig) -> None:
        try:
            ws = await asyncio.wait_for(
                self._connector(config.build_url(), config.headers()),
                timeout=config.open_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._fail(
                LinkOpenError(
                    f"Timed out after {config.open_timeout_seconds:.1f}s opening transcription connection."
                )
            )
            return
        except Exception as exc:
            self._fail(LinkOpenError(f"Transcription connection failed: {exc!r}"))
            return

        self._ws = ws
        # Flush and state change happen in one step; nothing can interleave.
        flushed = self._buffer.drain_into(self._outbox.put_nowait)
        self._state = LinkState.OPEN
        self._send_task = asyncio.create_task(self._send_loop(ws))
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        LOGGER.info(
            "Transcription link open for call_sid=%s (flushed %d pending frames)",
            self.call_sid,
            flushed,
        )
        self._on_open()

    async def _send_loop(self, ws: BackendSocket) -> None:
        try:
            while True:
                item = await self._outbox.get()
                if item is None:
                    return
                try:
                    await ws.send(item)
                except Exception as exc:
                    if self._close_requested:
                        LOGGER.debug("Send after close for call_sid=%s failed: %r", self.call_sid, exc)
                    else:
                        self._fail(LinkRuntimeError(f"Sending audio failed: {exc!r}"))
                    return
                if isinstance(item, bytes):
                    self.bytes_sent += len(item)
                elif item == CLOSE_STREAM_MESSAGE:
                    return
        finally:
            self._sender_finished.set()

    async def _wait_for_sender(self) -> None:
        # The drain window only starts once CloseStream is on the wire.
        flush_timeout = self._config.open_timeout_seconds if self._config else 0.0
        try:
            await asyncio.wait_for(self._sender_finished.wait(), timeout=flush_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Timed out after %.1fs flushing queued audio for call_sid=%s",
                flush_timeout,
                self.call_sid,
            )

    async def _recv_loop(self, ws: BackendSocket) -> None:
        try:
            async for raw in ws:
                try:
                    event = parse_backend_message(raw)
                except ValueError:
                    LOGGER.warning(
                        "Ignoring malformed transcription message for call_sid=%s: %.200r",
                        self.call_sid,
                        raw,
                    )
                    continue
                if event is not None:
                    self._on_transcript(event)
        except Exception as exc:
            if not self._close_requested:
                self._fail(LinkRuntimeError(f"Receiving transcripts failed: {exc!r}"))
                return
            LOGGER.debug("Transcription socket for call_sid=%s ended with %r while closing", self.call_sid, exc)

        self._remote_closed.set()
        if self._close_requested or self._state in (LinkState.ERROR, LinkState.CLOSED):
            return
        LOGGER.info("Transcription backend closed the connection for call_sid=%s", self.call_sid)
        self._state = LinkState.CLOSED
        self._outbox.put_nowait(None)
        self._notify_closed()

    def _fail(self, error: RelayError) -> None:
        if self._state is LinkState.CLOSED:
            return
        self._state = LinkState.ERROR
        self._remote_closed.set()
        LOGGER.warning("Transcription link error for call_sid=%s: %s", self.call_sid, error)
        self._on_error(error)

    async def _release(self) -> None:
        dropped = self._buffer.discard() if not self._buffer.drained else 0
        if dropped:
            LOGGER.warning(
                "Discarded %d pending audio frames for call_sid=%s; link never opened",
                dropped,
                self.call_sid,
            )

        tasks = [t for t in (self._send_task, self._recv_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        unsent = 0
        while not self._outbox.empty():
            if isinstance(self._outbox.get_nowait(), bytes):
                unsent += 1
        if unsent:
            LOGGER.warning(
                "Dropped %d queued audio frames for call_sid=%s; backend did not accept them in time",
                unsent,
                self.call_sid,
            )

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                LOGGER.debug("Closing transcription socket for call_sid=%s failed: %r", self.call_sid, exc)

    def _notify_closed(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        self._on_close()
