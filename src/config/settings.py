"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Deepgram live transcription
    deepgram_api_key: str | None = Field(default=None)
    deepgram_url: str = Field(default="wss://api.deepgram.com/v1/listen")
    deepgram_model: str = Field(default="nova-3")
    deepgram_language: str = Field(default="en-US")
    # Twilio Media Streams deliver 8kHz mono mu-law.
    deepgram_encoding: str = Field(default="mulaw")
    deepgram_sample_rate: int = Field(default=8000, gt=0)
    deepgram_channels: int = Field(default=1, ge=1)
    deepgram_smart_format: bool = Field(default=True)
    deepgram_punctuate: bool = Field(default=True)
    deepgram_interim_results: bool = Field(default=True)

    # Relay behaviour
    link_open_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound for establishing the transcription connection.",
    )
    drain_delay_seconds: float = Field(
        default=1.5,
        ge=0.0,
        description="Grace period after end-of-audio during which trailing transcripts are processed.",
    )
    pending_audio_max_frames: int = Field(
        default=1500,
        ge=1,
        description="High-water mark for audio held before the transcription connection opens.",
    )
    reply_on_interim: bool = Field(
        default=False,
        description="If true, interim transcripts trigger replies as well as final ones.",
    )

    # LLM connectivity
    llm_provider: Literal["openai", "self_hosted_vllm"] = Field(default="openai")
    llm_endpoint: str | None = Field(
        default=None, description="Base URL for a self-hosted or proxied inference server."
    )
    llm_api_key: str | None = Field(default=None)
    llm_model: str = Field(default="gpt-4o")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=256, gt=0)
    reply_timeout_seconds: float = Field(default=15.0, gt=0.0)
    reply_system_prompt: str = Field(default="You are Ava, a friendly real estate assistant.")
    reply_fallback_text: str = Field(default="Sorry, could you repeat that?")

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +1647...")
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_say_language: str = Field(default="en-US")
    twilio_greeting: str = Field(default="Hi, I'm Ava. Press any key to start talking.")
    twilio_stream_prompt: str = Field(default="You may begin speaking now.")
    twilio_stream_pause_seconds: int = Field(
        default=999,
        ge=1,
        description="How long Twilio keeps the call open while the media stream runs.",
    )
    twilio_call_api_key: str | None = Field(
        default=None,
        description="Optional API key required to call the outbound call endpoint.",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
