"""Entry point for the Twilio to Deepgram call relay service."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Call Transcript Relay",
    description="Relays Twilio call audio to live transcription and answers each transcript with an LLM reply.",
)
app.include_router(api_router, prefix="/api")
