"""Turns a caller transcript into a spoken-style reply.

Replies are best-effort: any failure of the language model degrades to a fixed
fallback sentence so the call keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from config.settings import Settings
from llm.base import BaseLLMClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedReply:
    transcript: str
    text: str
    is_fallback: bool = False


class ReplyGenerator:
    """Stateless request/response wrapper around a chat-completion client."""

    def __init__(
        self,
        llm: BaseLLMClient,
        *,
        system_prompt: str,
        fallback_text: str,
        temperature: float = 0.7,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._llm = llm
        self._system_prompt = system_prompt
        self.fallback_text = fallback_text
        self._temperature = temperature
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, llm: BaseLLMClient, settings: Settings) -> ReplyGenerator:
        return cls(
            llm,
            system_prompt=settings.reply_system_prompt,
            fallback_text=settings.reply_fallback_text,
            temperature=settings.llm_temperature,
            timeout_seconds=settings.reply_timeout_seconds,
        )

    def build_messages(self, text: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self._system_prompt},
            {"role": "user", "content": text},
        ]

    async def generate(self, text: str) -> GeneratedReply:
        transcript = text.strip()
        if not transcript:
            raise ValueError("Cannot generate a reply for an empty transcript.")

        try:
            reply = await asyncio.wait_for(
                self._llm.chat(self.build_messages(transcript), temperature=self._temperature),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Reply generation timed out after %.1fs", self._timeout)
            return self._fallback(transcript)
        except Exception:
            LOGGER.exception("Reply generation failed")
            return self._fallback(transcript)

        reply = (reply or "").strip()
        if not reply:
            LOGGER.warning("Reply generation returned no text")
            return self._fallback(transcript)
        return GeneratedReply(transcript=transcript, text=reply)

    def _fallback(self, transcript: str) -> GeneratedReply:
        return GeneratedReply(transcript=transcript, text=self.fallback_text, is_fallback=True)
