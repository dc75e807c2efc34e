"""Messages consumed by a call session's event loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from agents.errors import RelayError
from speech.transcription_link import TranscriptEvent


@dataclass(frozen=True)
class InboundMessage:
    raw: str | bytes


@dataclass(frozen=True)
class InboundClosed:
    reason: str = "inbound stream closed"


@dataclass(frozen=True)
class LinkOpened:
    pass


@dataclass(frozen=True)
class TranscriptReceived:
    event: TranscriptEvent


@dataclass(frozen=True)
class LinkFailed:
    error: RelayError


@dataclass(frozen=True)
class LinkClosed:
    pass


SessionEvent = Union[InboundMessage, InboundClosed, LinkOpened, TranscriptReceived, LinkFailed, LinkClosed]
