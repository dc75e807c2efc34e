from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass

from agents.errors import OutboundCallError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    public_base_url: str

    @property
    def voice_url(self) -> str:
        return f"{self.public_base_url}/api/twilio/voice"


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials are not configured")
    if not settings.twilio_from_number:
        raise ValueError("Twilio from-number is not configured")
    if not settings.public_base_url:
        raise ValueError("PUBLIC_BASE_URL is required for Twilio callbacks")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url.rstrip("/"),
    )


def build_twilio_client(cfg: TwilioConfig | None = None):
    from twilio.rest import Client

    cfg = cfg or get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


def place_call(twilio_client, cfg: TwilioConfig, to_number: str) -> str:
    """Dial ``to_number`` and point the call at our voice webhook; returns the call SID."""

    LOGGER.info("Placing outbound call to %s", to_number)
    try:
        call = twilio_client.calls.create(
            to=to_number,
            from_=cfg.from_number,
            url=cfg.voice_url,
            method="POST",
        )
    except Exception as exc:
        LOGGER.exception("Outbound call to %s failed", to_number)
        raise OutboundCallError(f"Outbound call to {to_number} failed: {exc}") from exc

    LOGGER.info("Call initiated to %s, call_sid=%s", to_number, call.sid)
    return str(call.sid)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Place an outbound call that streams into the relay")
    parser.add_argument("to_number", help="E.164 phone number, e.g. +16475551234")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = _parse_args()
    cfg = get_twilio_config()
    place_call(build_twilio_client(cfg), cfg, args.to_number)


if __name__ == "__main__":
    main()
