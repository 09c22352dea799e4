"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ReplyRequest(BaseModel):
    """Inbound visitor message from a channel adapter."""

    message: str = Field(..., min_length=1, max_length=4000, description="The visitor's message")
    store_message: bool = Field(
        True,
        description="Append the message to the conversation before replying. "
        "Set to false when the channel adapter already stored it.",
    )


class ReplyResponse(BaseModel):
    """The agent's reply plus usage accounting for the cycle."""

    reply: str = Field(..., description="The agent's response message")
    tokens_used: int = Field(0, ge=0)
    credits_used: int = Field(0, ge=0)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "konsul-engine"
