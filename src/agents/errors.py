"""Domain-specific exceptions for the call relay.

These exceptions are safe to import from API layers without pulling in network clients.
"""

from __future__ import annotations


class RelayError(Exception):
    status_code: int = 500
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class DecodeError(RelayError):
    status_code = 400
    default_detail = "Malformed media stream message."


class EmptyPayloadError(RelayError):
    status_code = 400
    default_detail = "Media payload is empty."


class PendingBufferClosedError(RelayError):
    default_detail = "Pending audio buffer has already been drained."


class LinkOpenError(RelayError):
    status_code = 503
    default_detail = "Transcription connection could not be opened."


class LinkRuntimeError(RelayError):
    status_code = 503
    default_detail = "Transcription connection failed."


class GeneratorError(RelayError):
    status_code = 503
    default_detail = "Reply generation failed."


class OutboundCallError(RelayError):
    status_code = 503
    default_detail = "Outbound call could not be placed."
