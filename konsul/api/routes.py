"""FastAPI route definitions for the reply engine."""

from __future__ import annotations

import asyncio
import logging
from fastapi import APIRouter, HTTPException, Request

from konsul.agent import Orchestrator
from konsul.api.schemas import HealthResponse, ReplyRequest, ReplyResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request) -> Orchestrator:
    """Retrieve the orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The engine is still starting up. Please try again in a moment.",
        )
    return orchestrator


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post(
    "/agents/{agent_id}/conversations/{conversation_id}/reply",
    response_model=ReplyResponse,
)
async def reply(agent_id: str, conversation_id: str, body: ReplyRequest, http_request: Request):
    """Generate the agent's reply to a visitor message.

    ``generate_reply`` is a synchronous blocking call (model, embedding and
    integration round trips), so it is offloaded to a worker thread to keep
    the event loop responsive.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    store = orchestrator.store

    conversation = store.get_conversation(conversation_id)
    if conversation is None or conversation.agent_id != agent_id:
        raise HTTPException(status_code=404, detail="Conversation not found.")

    result = await asyncio.to_thread(
        orchestrator.generate_reply, agent_id, conversation_id, body.message,
        store_message=body.store_message,
    )
    logger.info(
        "[%s] Reply for %s: %d tokens, %d credits",
        request_id, conversation_id, result.tokens_used, result.credits_used,
    )
    return ReplyResponse(**result.model_dump())
