"""Per-call orchestration: Twilio audio in, Deepgram transcripts out, replies on the side.

A ``CallSession`` owns one frame decoder, one pending-audio buffer and one
transcription link. All of its state is mutated by a single loop that consumes
``SessionEvent`` messages; the inbound reader task and the link callbacks only
enqueue. Reply generation runs in its own tasks and never feeds back into the
audio path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Callable
from enum import Enum

from agents.errors import DecodeError, EmptyPayloadError, RelayError
from agents.reply_generator import GeneratedReply, ReplyGenerator
from calls.events import (
    InboundClosed,
    InboundMessage,
    LinkClosed,
    LinkFailed,
    LinkOpened,
    SessionEvent,
    TranscriptReceived,
)
from integrations.twilio_streaming import (
    IgnoredEvent,
    MediaFrame,
    StartEvent,
    StopEvent,
    TwilioFrameDecoder,
)
from speech.pending_audio import PendingAudioBuffer
from speech.transcription_link import (
    Connector,
    DeepgramConfig,
    LinkState,
    TranscriptEvent,
    TranscriptionLink,
)

LOGGER = logging.getLogger(__name__)

ReplySink = Callable[[str, GeneratedReply], None]


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


class CallSession:
    """One call's audio -> transcript -> reply pipeline."""

    def __init__(
        self,
        *,
        link_config: DeepgramConfig,
        reply_generator: ReplyGenerator,
        connector: Connector | None = None,
        reply_sink: ReplySink | None = None,
        reply_on_interim: bool = False,
        pending_audio_max_frames: int | None = None,
    ) -> None:
        self.call_sid = "unknown"
        self._state = SessionState.INITIALIZING
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()

        self._decoder = TwilioFrameDecoder()
        self._pending_audio = PendingAudioBuffer(max_frames=pending_audio_max_frames)
        self._link_config = link_config
        self._link = TranscriptionLink(
            buffer=self._pending_audio,
            on_open=lambda: self._events.put_nowait(LinkOpened()),
            on_transcript=lambda event: self._events.put_nowait(TranscriptReceived(event)),
            on_error=lambda error: self._events.put_nowait(LinkFailed(error)),
            on_close=lambda: self._events.put_nowait(LinkClosed()),
            connector=connector,
        )

        self._reply_generator = reply_generator
        self._reply_sink = reply_sink
        self._reply_on_interim = reply_on_interim
        self._reply_tasks: set[asyncio.Task[None]] = set()

        self._close_requested = False
        self._drain_task: asyncio.Task[None] | None = None
        self._inbound_closed = False
        self._link_closed = False

        self.frames_forwarded = 0
        self.frames_dropped = 0
        self.sequence_gaps = 0
        self._last_sequence: int | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def link_state(self) -> LinkState:
        return self._link.state

    @property
    def pending_audio(self) -> PendingAudioBuffer:
        return self._pending_audio

    async def run(self, inbound: AsyncIterable[str | bytes]) -> None:
        """Drive the call until both the inbound stream and the link are closed."""

        LOGGER.info("Inbound media stream accepted; opening transcription link")
        self._link.open(self._link_config)
        reader = asyncio.create_task(self._read_inbound(inbound))
        try:
            while self._state is not SessionState.CLOSED:
                event = await self._events.get()
                self._dispatch(event)
                self._maybe_finish()

            if self._drain_task is not None:
                await self._drain_task
            if self._reply_tasks:
                await asyncio.gather(*self._reply_tasks, return_exceptions=True)
        finally:
            if not reader.done():
                reader.cancel()
            if self._state is not SessionState.CLOSED:
                LOGGER.warning("Call session for call_sid=%s aborted in state %s", self.call_sid, self._state.value)
                if self._drain_task is not None and not self._drain_task.done():
                    self._drain_task.cancel()
                self._link.abort()
                for task in self._reply_tasks:
                    task.cancel()
                self._state = SessionState.CLOSED

    async def _read_inbound(self, inbound: AsyncIterable[str | bytes]) -> None:
        reason = "inbound stream closed"
        try:
            async for message in inbound:
                self._events.put_nowait(InboundMessage(message))
        except Exception as exc:
            reason = f"inbound stream failed: {exc!r}"
        finally:
            self._events.put_nowait(InboundClosed(reason))

    def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, InboundMessage):
            self._on_inbound_message(event.raw)
        elif isinstance(event, TranscriptReceived):
            self._on_transcript(event.event)
        elif isinstance(event, LinkOpened):
            self._on_link_opened()
        elif isinstance(event, LinkFailed):
            self._on_link_failed(event.error)
        elif isinstance(event, LinkClosed):
            self._on_link_closed()
        elif isinstance(event, InboundClosed):
            self._on_inbound_closed(event.reason)

    def _on_inbound_message(self, raw: str | bytes) -> None:
        try:
            frame = self._decoder.decode(raw)
        except EmptyPayloadError:
            LOGGER.debug("Dropping empty media payload for call_sid=%s", self.call_sid)
            return
        except DecodeError as exc:
            LOGGER.warning("Discarding malformed inbound message for call_sid=%s: %s", self.call_sid, exc)
            return

        if isinstance(frame, MediaFrame):
            self._track_sequence(frame)
            self._forward_audio(frame)
        elif isinstance(frame, StartEvent):
            self.call_sid = frame.call_sid
            self._link.call_sid = frame.call_sid
            LOGGER.info("Stream started call_sid=%s stream_sid=%s", frame.call_sid, frame.stream_sid)
            if frame.custom_parameters:
                LOGGER.info("Stream parameters for call_sid=%s: %s", frame.call_sid, frame.custom_parameters)
        elif isinstance(frame, StopEvent):
            LOGGER.info("Stream stop received for call_sid=%s", self.call_sid)
            self._begin_drain("stop event")
        elif isinstance(frame, IgnoredEvent):
            LOGGER.debug("Ignoring inbound %r event for call_sid=%s", frame.event, self.call_sid)

    def _track_sequence(self, frame: MediaFrame) -> None:
        if frame.sequence_number is None:
            return
        last = self._last_sequence
        self._last_sequence = frame.sequence_number
        if last is not None and frame.sequence_number > last + 1:
            self.sequence_gaps += 1
            LOGGER.warning(
                "Media sequence gap for call_sid=%s: %d -> %d",
                self.call_sid,
                last,
                frame.sequence_number,
            )

    def _forward_audio(self, frame: MediaFrame) -> None:
        if frame.track != "inbound":
            return
        if self._state in (SessionState.DRAINING, SessionState.CLOSED):
            self.frames_dropped += 1
            log = LOGGER.warning if self.frames_dropped == 1 else LOGGER.debug
            log(
                "Dropping %d audio bytes for call_sid=%s: session is %s",
                len(frame.payload),
                self.call_sid,
                self._state.value,
            )
            return

        LOGGER.debug("Audio chunk call_sid=%s bytes=%d", self.call_sid, len(frame.payload))
        if self._link.submit(frame.payload):
            self.frames_forwarded += 1
        else:
            self.frames_dropped += 1

    def _on_transcript(self, event: TranscriptEvent) -> None:
        if self._state is SessionState.CLOSED or event.is_blank:
            return
        text = event.text.strip()
        if not event.is_final and not self._reply_on_interim:
            LOGGER.debug("Interim transcript call_sid=%s: %s", self.call_sid, text)
            return

        LOGGER.info(
            "Transcript call_sid=%s final=%s speech_final=%s: %s",
            self.call_sid,
            event.is_final,
            event.speech_final,
            text,
        )
        task = asyncio.create_task(self._reply(text))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _reply(self, transcript: str) -> None:
        reply = await self._reply_generator.generate(transcript)
        LOGGER.info("Reply call_sid=%s fallback=%s: %s", self.call_sid, reply.is_fallback, reply.text)
        if self._reply_sink is None:
            return
        try:
            self._reply_sink(self.call_sid, reply)
        except Exception:
            LOGGER.exception("Reply sink failed for call_sid=%s", self.call_sid)

    def _on_link_opened(self) -> None:
        if self._state is SessionState.INITIALIZING:
            self._set_state(SessionState.STREAMING, "transcription link open")

    def _on_link_failed(self, error: RelayError) -> None:
        LOGGER.warning("Transcription link failed for call_sid=%s: %s", self.call_sid, error)
        self._begin_drain(type(error).__name__)

    def _on_link_closed(self) -> None:
        self._link_closed = True
        self._begin_drain("transcription link closed")

    def _on_inbound_closed(self, reason: str) -> None:
        self._inbound_closed = True
        LOGGER.info("Inbound media stream for call_sid=%s ended: %s", self.call_sid, reason)
        self._begin_drain(reason)

    def _begin_drain(self, reason: str) -> None:
        if self._close_requested:
            return
        self._close_requested = True
        self._set_state(SessionState.DRAINING, reason)
        self._drain_task = asyncio.create_task(self._link.close())

    def _maybe_finish(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        if self._inbound_closed and self._link_closed:
            self._set_state(SessionState.CLOSED, "inbound stream and transcription link closed")
            LOGGER.info(
                "Call session for call_sid=%s finished: %d frames forwarded, %d dropped",
                self.call_sid,
                self.frames_forwarded,
                self.frames_dropped,
            )

    def _set_state(self, state: SessionState, reason: str) -> None:
        LOGGER.info(
            "Call session call_sid=%s %s -> %s (%s)",
            self.call_sid,
            self._state.value,
            state.value,
            reason,
        )
        self._state = state
