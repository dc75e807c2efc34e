from __future__ import annotations

import json

import pytest

from agents.errors import DecodeError, EmptyPayloadError
from fakes import media_message, start_message, stop_message
from integrations.twilio_streaming import (
    IgnoredEvent,
    MediaFrame,
    StartEvent,
    StopEvent,
    TwilioFrameDecoder,
)


def test_start_event_carries_call_sid():
    event = TwilioFrameDecoder().decode(start_message("CA123"))
    assert isinstance(event, StartEvent)
    assert event.call_sid == "CA123"
    assert event.stream_sid == "MZ0001"


def test_media_event_decodes_base64_payload():
    decoder = TwilioFrameDecoder()
    # Common mu-law 'silence' byte is 0xFF.
    event = decoder.decode(media_message(b"\xFF" * 160))
    assert isinstance(event, MediaFrame)
    assert event.payload == b"\xFF" * 160
    assert event.track == "inbound"
    assert decoder.frames_decoded == 1


def test_stop_event():
    assert isinstance(TwilioFrameDecoder().decode(stop_message()), StopEvent)


def test_empty_payload_is_its_own_condition():
    decoder = TwilioFrameDecoder()
    with pytest.raises(EmptyPayloadError):
        decoder.decode(media_message(b""))
    assert decoder.frames_decoded == 0


@pytest.mark.parametrize("event", ["connected", "mark", "dtmf", "something-new"])
def test_unknown_events_are_ignored(event):
    decoded = TwilioFrameDecoder().decode(json.dumps({"event": event}))
    assert decoded == IgnoredEvent(event=event)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        "{}",
        '{"event": 5}',
        '{"event": "start"}',
        '{"event": "start", "start": {}}',
        '{"event": "media"}',
        '{"event": "media", "media": {"payload": 12}}',
        '{"event": "media", "media": {"payload": "@@not base64@@"}}',
    ],
)
def test_malformed_messages_raise_decode_error(raw):
    with pytest.raises(DecodeError):
        TwilioFrameDecoder().decode(raw)


def test_decoder_accepts_bytes_messages():
    event = TwilioFrameDecoder().decode(media_message(b"abc").encode("utf-8"))
    assert isinstance(event, MediaFrame)
    assert event.payload == b"abc"
