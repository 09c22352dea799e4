"""Shared test fixtures for the Konsul test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage

from konsul.models import AgentConfig, ContactRecord, ConversationState, Workspace
from konsul.services.store import InMemoryStore


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts."""
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-123")
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.pop("COHERE_API_KEY", None)
    os.environ.pop("RESEND_API_KEY", None)


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make


@pytest.fixture
def make_agent():
    """Factory fixture for agent configs with sensible defaults."""

    def _make(**overrides) -> AgentConfig:
        data = {
            "id": "agent-1",
            "workspace_id": "ws-1",
            "name": "Sofia",
            "personality_prompt": "Be warm and concise.",
            "job_company": "Acme Rentals",
            "model": "gpt-4o-mini",
        }
        data.update(overrides)
        return AgentConfig.model_validate(data)

    return _make


@pytest.fixture
def store(make_agent) -> InMemoryStore:
    """A workspace with one agent, one contact and one empty conversation."""
    s = InMemoryStore()
    s.add_workspace(Workspace(id="ws-1", name="Acme", owner_email="owner@acme.test", credit_balance=100))
    s.add_agent(make_agent())
    s.add_contact(ContactRecord(id="contact-1", workspace_id="ws-1", name="Visitor"))
    s.add_conversation(ConversationState(id="conv-1", agent_id="agent-1", contact_id="contact-1"))
    return s


def ai_message(content: str = "", tool_calls: list[dict] | None = None, tokens: int = 0) -> AIMessage:
    """Build an AIMessage as a chat model would return it."""
    return AIMessage(
        content=content,
        tool_calls=tool_calls or [],
        usage_metadata={"input_tokens": tokens, "output_tokens": 0, "total_tokens": tokens},
    )


def scripted_model_factory(*responses):
    """Return a ``model_factory`` whose models answer with ``responses`` in order.

    An ``Exception`` instance in ``responses`` is raised instead of returned.
    The factory records every model name it was asked to build in ``.built``.
    """
    queue = list(responses)

    def _invoke(_messages):
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def factory(model, **kwargs):
        factory.built.append(model)
        chat_model = MagicMock()
        chat_model.invoke.side_effect = _invoke
        chat_model.bind_tools.return_value = chat_model
        return chat_model

    factory.built = []
    return factory
