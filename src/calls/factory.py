"""Process-wide builder for per-call sessions."""

from __future__ import annotations

from agents.reply_generator import ReplyGenerator
from calls.session import CallSession, ReplySink
from config.settings import Settings
from llm.factory import build_llm_client
from speech.transcription_link import Connector, DeepgramConfig


class CallSessionFactory:
    """Holds immutable configuration and shared clients; creates one session per call."""

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
        self.link_config = link_config
        self.reply_generator = reply_generator
        self._connector = connector
        self._reply_sink = reply_sink
        self._reply_on_interim = reply_on_interim
        self._pending_audio_max_frames = pending_audio_max_frames

    @classmethod
    def from_settings(cls, settings: Settings) -> CallSessionFactory:
        return cls(
            link_config=DeepgramConfig.from_settings(settings),
            reply_generator=ReplyGenerator.from_settings(build_llm_client(settings), settings),
            reply_on_interim=settings.reply_on_interim,
            pending_audio_max_frames=settings.pending_audio_max_frames,
        )

    def create(self) -> CallSession:
        return CallSession(
            link_config=self.link_config,
            reply_generator=self.reply_generator,
            connector=self._connector,
            reply_sink=self._reply_sink,
            reply_on_interim=self._reply_on_interim,
            pending_audio_max_frames=self._pending_audio_max_frames,
        )
