"""API-facing Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"


class OutboundCallRequest(BaseModel):
    to_number: str = Field(description="E.164 phone number, e.g. +1647...")


class OutboundCallResponse(BaseModel):
    call_sid: str
    to_number: str
