"""Decoding of Twilio Media Streams WebSocket messages.

Twilio sends one JSON object per message with an ``event`` discriminant:
``connected``, ``start``, ``media``, ``mark`` and ``stop``. Only ``start``,
``media`` and ``stop`` matter to the relay; everything else decodes to an
``IgnoredEvent`` so new event kinds never break a running call.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Union

from agents.errors import DecodeError, EmptyPayloadError


@dataclass(frozen=True)
class StartEvent:
    call_sid: str
    stream_sid: str | None = None
    custom_parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MediaFrame:
    payload: bytes
    track: str = "inbound"
    sequence_number: int | None = None


@dataclass(frozen=True)
class StopEvent:
    pass


@dataclass(frozen=True)
class IgnoredEvent:
    event: str


InboundEvent = Union[StartEvent, MediaFrame, StopEvent, IgnoredEvent]


def parse_twilio_ws_message(text: str | bytes) -> dict[str, Any]:
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"Message is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise DecodeError("Message is not a JSON object.")
    return message


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TwilioFrameDecoder:
    """Turns raw Media Streams messages into typed inbound events."""

    def __init__(self) -> None:
        self.frames_decoded = 0

    def decode(self, raw: str | bytes) -> InboundEvent:
        message = parse_twilio_ws_message(raw)
        event = message.get("event")
        if not isinstance(event, str) or not event:
            raise DecodeError("Message has no event discriminant.")

        if event == "start":
            return self._decode_start(message)
        if event == "media":
            return self._decode_media(message)
        if event == "stop":
            return StopEvent()
        return IgnoredEvent(event=event)

    @staticmethod
    def _decode_start(message: dict[str, Any]) -> StartEvent:
        start = message.get("start")
        if not isinstance(start, dict):
            raise DecodeError("Start event has no start block.")
        call_sid = start.get("callSid")
        if not isinstance(call_sid, str) or not call_sid:
            raise DecodeError("Start event has no callSid.")

        stream_sid = start.get("streamSid") or message.get("streamSid")
        params = start.get("customParameters") or {}
        return StartEvent(
            call_sid=call_sid,
            stream_sid=str(stream_sid) if stream_sid else None,
            custom_parameters={str(k): str(v) for k, v in params.items()} if isinstance(params, dict) else {},
        )

    def _decode_media(self, message: dict[str, Any]) -> MediaFrame:
        media = message.get("media")
        if not isinstance(media, dict):
            raise DecodeError("Media event has no media block.")
        payload_b64 = media.get("payload")
        if not isinstance(payload_b64, str):
            raise DecodeError("Media event has no base64 payload.")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"Media payload is not valid base64: {exc}") from exc
        if not payload:
            raise EmptyPayloadError()

        self.frames_decoded += 1
        return MediaFrame(
            payload=payload,
            track=str(media.get("track") or "inbound"),
            sequence_number=_as_int(message.get("sequenceNumber")),
        )
