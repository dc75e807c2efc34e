"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that greets the caller and waits for a key press.
- Gather callback that starts a Media Stream towards the relay WebSocket.
- The Media Stream WebSocket itself, one call session per connection.
- An endpoint to place outbound calls.
"""

from __future__ import annotations

import logging
from typing import Annotated
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, WebSocket

from agents.errors import OutboundCallError
from api.dependencies import get_session_factory
from api.schemas import OutboundCallRequest, OutboundCallResponse
from config.settings import get_settings
from integrations.twilio_client import TwilioConfig, build_twilio_client, get_twilio_config, place_call

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _public_url(request: Request, path: str) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return f"{settings.public_base_url.rstrip('/')}{path}"
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return str(request.base_url).rstrip("/") + path


def _twiml_gather_keypress(*, say_text: str, action_url: str, language: str) -> str:
    say = escape(say_text)
    action = escape(action_url)
    lang = escape(language)
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"<Gather input=\"dtmf\" numDigits=\"1\" timeout=\"5\" action=\"{action}\" method=\"POST\">"
        f"<Say language=\"{lang}\">{say}</Say>"
        "</Gather>"
        "</Response>"
    )


def _twiml_start_stream(*, stream_url: str, say_text: str, pause_seconds: int, language: str) -> str:
    stream = escape(stream_url)
    say = escape(say_text)
    lang = escape(language)
    pause = max(1, int(pause_seconds))
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Start>"
        f"<Stream url=\"{stream}\" />"
        "</Start>"
        f"<Say language=\"{lang}\">{say}</Say>"
        f"<Pause length=\"{pause}\" />"
        "</Response>"
    )


@router.post("/voice")
async def twilio_voice_webhook(request: Request) -> Response:
    settings = get_settings()
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    LOGGER.info("Incoming call call_sid=%s", call_sid)

    return _twiml_response(
        _twiml_gather_keypress(
            say_text=settings.twilio_greeting,
            action_url=_public_url(request, "/api/twilio/gather-response"),
            language=settings.twilio_say_language,
        )
    )


@router.post("/gather-response")
async def twilio_gather_response(request: Request) -> Response:
    settings = get_settings()
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    LOGGER.info("Key pressed for call_sid=%s; starting media stream", call_sid)

    # WebSocket endpoint must be publicly reachable (wss:// recommended).
    stream_url = _to_ws_url(_public_url(request, "/api/twilio/stream"))
    return _twiml_response(
        _twiml_start_stream(
            stream_url=stream_url,
            say_text=settings.twilio_stream_prompt,
            pause_seconds=settings.twilio_stream_pause_seconds,
            language=settings.twilio_say_language,
        )
    )


@router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    factory=Depends(get_session_factory),
) -> None:
    await websocket.accept()
    session = factory.create()
    await session.run(websocket.iter_text())


def get_twilio_cfg() -> TwilioConfig:
    try:
        return get_twilio_config()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def get_twilio_client(cfg: TwilioConfig = Depends(get_twilio_cfg)):
    return build_twilio_client(cfg)


@router.post("/calls", response_model=OutboundCallResponse)
async def create_outbound_call(
    payload: OutboundCallRequest,
    x_api_key: Annotated[str | None, Header()] = None,
    twilio_client=Depends(get_twilio_client),
    cfg: TwilioConfig = Depends(get_twilio_cfg),
) -> OutboundCallResponse:
    settings = get_settings()

    if settings.twilio_call_api_key and x_api_key != settings.twilio_call_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        call_sid = place_call(twilio_client, cfg, payload.to_number)
    except OutboundCallError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return OutboundCallResponse(call_sid=call_sid, to_number=payload.to_number)
