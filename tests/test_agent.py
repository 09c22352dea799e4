"""Tests for the reply orchestrator.

Covers:
  - Final reply persistence, usage and credits
  - Tool loop execution and the round-trip cap
  - Provider failure and configuration-error replies
  - Unknown agents / conversations and contact auto-creation
  - History conversion and per-conversation locking
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

from conftest import ai_message, scripted_model_factory
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from konsul.agent import (
    APOLOGY_MESSAGE,
    LOOP_FALLBACK_MESSAGE,
    ConversationLocks,
    Orchestrator,
    build_history,
)
from konsul.models import ConversationState, Message, MessageRole

UPDATE_NAME_CALL = {"name": "update_contact", "args": {"updates": {"name": "Omar"}}, "id": "call_1"}


def _orchestrator(store, factory, **kwargs):
    return Orchestrator(store, model_factory=factory, notifier=MagicMock(), **kwargs)


def _recording_factory(*responses):
    """A factory returning one mock chat model, so calls can be inspected."""
    chat_model = MagicMock()
    chat_model.bind_tools.return_value = chat_model
    chat_model.invoke.side_effect = list(responses)
    factory = MagicMock(return_value=chat_model)
    return factory, chat_model


# ── Final replies ────────────────────────────────────────────────────


class TestFinalReply:
    def test_reply_is_persisted_with_usage(self, store):
        orchestrator = _orchestrator(store, scripted_model_factory(ai_message("Hello! How can I help?", tokens=250)))

        result = orchestrator.generate_reply("agent-1", "conv-1", "Hi")

        assert result.reply == "Hello! How can I help?"
        assert result.tokens_used == 250
        assert result.credits_used == 3

        conversation = store.get_conversation("conv-1")
        stored = conversation.messages[-1]
        assert stored.role is MessageRole.AGENT
        assert stored.content == "Hello! How can I help?"
        assert stored.metadata["model"] == "gpt-4o-mini"
        assert stored.metadata["tokens_used"] == 250
        assert conversation.last_message_at is not None

    def test_credits_are_decremented_once(self, store):
        orchestrator = _orchestrator(store, scripted_model_factory(ai_message("Hi", tokens=101)))

        orchestrator.generate_reply("agent-1", "conv-1", "Hi")

        workspace = store.get_workspace("ws-1")
        assert workspace.credit_balance == 98
        assert workspace.credits_used == 2
        assert len(store.usage) == 1
        assert store.usage[0].credits_used == 2

    def test_system_prompt_and_user_message_reach_the_model(self, store):
        factory, chat_model = _recording_factory(ai_message("Hi there"))
        orchestrator = _orchestrator(store, factory)

        orchestrator.generate_reply("agent-1", "conv-1", "What do you rent?")

        messages = chat_model.invoke.call_args[0][0]
        assert isinstance(messages[0], SystemMessage)
        assert "**Sofia**" in messages[0].content
        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "What do you rent?"


# ── Tool loop ────────────────────────────────────────────────────────


class TestToolLoop:
    def test_tool_result_feeds_final_reply(self, store):
        factory = scripted_model_factory(
            ai_message(tool_calls=[UPDATE_NAME_CALL], tokens=100),
            ai_message("Nice to meet you, Omar!", tokens=120),
        )
        orchestrator = _orchestrator(store, factory)

        result = orchestrator.generate_reply("agent-1", "conv-1", "Omar")

        assert result.reply == "Nice to meet you, Omar!"
        assert result.tokens_used == 220
        assert store.get_contact("contact-1").name == "Omar"
        assert store.get_conversation("conv-1").messages[-1].metadata["tools_called"] == ["update_contact"]

    def test_loop_stops_after_three_round_trips(self, store):
        factory, chat_model = _recording_factory(*[
            ai_message(tool_calls=[UPDATE_NAME_CALL], tokens=50) for _ in range(5)
        ])
        orchestrator = _orchestrator(store, factory)

        result = orchestrator.generate_reply("agent-1", "conv-1", "Omar")

        assert chat_model.invoke.call_count == 3
        assert result.reply == LOOP_FALLBACK_MESSAGE
        assert result.tokens_used == 150
        assert result.credits_used == 2

    def test_loop_cap_keeps_last_text(self, store):
        factory, _ = _recording_factory(*[
            ai_message("Let me save that.", tool_calls=[UPDATE_NAME_CALL]) for _ in range(3)
        ])
        orchestrator = _orchestrator(store, factory)

        assert orchestrator.generate_reply("agent-1", "conv-1", "Omar").reply == "Let me save that."

    def test_escalation_tool_not_offered_without_transfer(self, store):
        factory, chat_model = _recording_factory(ai_message("Sure"))
        orchestrator = _orchestrator(store, factory)

        orchestrator.generate_reply("agent-1", "conv-1", "I want a human")

        tools = chat_model.bind_tools.call_args[0][0]
        assert [t["function"]["name"] for t in tools] == ["update_contact"]


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    def test_every_provider_failing_yields_apology(self, store, make_agent):
        store.add_agent(make_agent(model="claude-haiku-4-5"))
        factory = scripted_model_factory(*[RuntimeError("503") for _ in range(4)])
        orchestrator = _orchestrator(store, factory)

        result = orchestrator.generate_reply("agent-1", "conv-1", "Hi")

        assert result.reply == APOLOGY_MESSAGE
        assert result.tokens_used == 0
        assert result.credits_used == 0
        assert factory.built == [
            "claude-haiku-4-5", "claude-haiku-4-5-001", "claude-haiku-4-5-latest", "gpt-4o-mini",
        ]
        assert store.get_workspace("ws-1").credit_balance == 100

    def test_fallback_family_answers_when_variants_fail(self, store, make_agent):
        store.add_agent(make_agent(model="claude-haiku-4-5"))
        factory = scripted_model_factory(
            RuntimeError("503"), RuntimeError("503"), RuntimeError("503"), ai_message("Hello", tokens=10),
        )
        result = _orchestrator(store, factory).generate_reply("agent-1", "conv-1", "Hi")

        assert result.reply == "Hello"
        assert store.get_conversation("conv-1").messages[-1].metadata["model"] == "gpt-4o-mini"

    def test_missing_credential_yields_config_error(self, store, make_agent, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        store.add_agent(make_agent(model="claude-haiku-4-5"))
        factory = scripted_model_factory()

        result = _orchestrator(store, factory).generate_reply("agent-1", "conv-1", "Hi")

        assert "not configured correctly" in result.reply
        assert "ANTHROPIC_API_KEY" in result.reply
        assert factory.built == []
        assert store.get_conversation("conv-1").messages == []
        assert store.usage == []

    def test_unknown_agent_yields_apology(self, store):
        result = _orchestrator(store, scripted_model_factory()).generate_reply("nope", "conv-1", "Hi")
        assert result.reply == APOLOGY_MESSAGE
        assert store.get_conversation("conv-1").messages == []

    def test_conversation_of_another_agent_yields_apology(self, store, make_agent):
        store.add_agent(make_agent(id="agent-2"))
        result = _orchestrator(store, scripted_model_factory()).generate_reply("agent-2", "conv-1", "Hi")
        assert result.reply == APOLOGY_MESSAGE

    def test_unexpected_error_never_escapes(self, store):
        orchestrator = _orchestrator(store, scripted_model_factory())
        with patch("konsul.agent.build_catalog", side_effect=RuntimeError("boom")):
            result = orchestrator.generate_reply("agent-1", "conv-1", "Hi")
        assert result.reply == APOLOGY_MESSAGE
        assert len(orchestrator.locks) == 0


# ── Cycle inputs ─────────────────────────────────────────────────────


class TestCycleInputs:
    def test_contact_is_created_for_anonymous_conversation(self, store):
        store.add_conversation(ConversationState(id="conv-2", agent_id="agent-1"))
        orchestrator = _orchestrator(store, scripted_model_factory(ai_message("Hi")))

        orchestrator.generate_reply("agent-1", "conv-2", "Hello")

        contact_id = store.get_conversation("conv-2").contact_id
        assert contact_id is not None
        assert store.get_contact(contact_id).name == "Visitor"

    def test_smart_retrieval_passages_enter_the_prompt(self, store, make_agent):
        store.add_agent(make_agent(smart_retrieval=True))
        retriever = MagicMock()
        retriever.retrieve.return_value = ["Rent is $500 per month."]
        factory, chat_model = _recording_factory(ai_message("It is $500."))
        orchestrator = _orchestrator(store, factory, retriever=retriever)

        orchestrator.generate_reply("agent-1", "conv-1", "How much is rent?")

        retriever.retrieve.assert_called_once_with("agent-1", "How much is rent?")
        assert "Rent is $500 per month." in chat_model.invoke.call_args[0][0][0].content
        assert store.get_conversation("conv-1").messages[-1].metadata["knowledge_passages"] == 1

    def test_retrieval_skipped_without_smart_retrieval(self, store):
        retriever = MagicMock()
        orchestrator = _orchestrator(store, scripted_model_factory(ai_message("Hi")), retriever=retriever)

        orchestrator.generate_reply("agent-1", "conv-1", "Hello")

        retriever.retrieve.assert_not_called()


class TestInboundStorage:
    def test_message_is_stored_before_the_reply(self, store):
        orchestrator = _orchestrator(store, scripted_model_factory(ai_message("Hello!")))

        orchestrator.generate_reply("agent-1", "conv-1", "Hi", store_message=True)

        messages = store.get_conversation("conv-1").messages
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "Hi"),
            (MessageRole.AGENT, "Hello!"),
        ]

    def test_queued_messages_are_stored_and_answered_in_order(self, store):
        entered = threading.Event()
        release = threading.Event()
        human_turns: list[list[str]] = []

        def _invoke(messages):
            human_turns.append([m.content for m in messages if isinstance(m, HumanMessage)])
            if len(human_turns) == 1:
                entered.set()
                release.wait(timeout=5)
            return ai_message(f"reply {len(human_turns)}")

        chat_model = MagicMock()
        chat_model.bind_tools.return_value = chat_model
        chat_model.invoke.side_effect = _invoke
        orchestrator = _orchestrator(store, MagicMock(return_value=chat_model))

        def send(text):
            return threading.Thread(
                target=orchestrator.generate_reply,
                args=("agent-1", "conv-1", text),
                kwargs={"store_message": True},
            )

        first = send("A")
        first.start()
        entered.wait(timeout=5)
        second = send("B")
        second.start()
        time.sleep(0.05)
        assert [m.content for m in store.get_conversation("conv-1").messages] == ["A"]

        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert human_turns == [["A"], ["A", "B"]]
        messages = store.get_conversation("conv-1").messages
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "A"),
            (MessageRole.AGENT, "reply 1"),
            (MessageRole.USER, "B"),
            (MessageRole.AGENT, "reply 2"),
        ]

    def test_unknown_conversation_stores_nothing(self, store):
        orchestrator = _orchestrator(store, scripted_model_factory())

        result = orchestrator.generate_reply("agent-1", "nope", "Hi", store_message=True)

        assert result.reply == APOLOGY_MESSAGE
        assert store.get_conversation("nope") is None


class TestBuildHistory:
    def test_trailing_copy_of_inbound_message_is_dropped(self):
        messages = [
            Message(role=MessageRole.USER, content="Hi"),
            Message(role=MessageRole.AGENT, content="Hello!"),
            Message(role=MessageRole.USER, content="Prices?"),
        ]
        history = build_history(messages, "Prices?")
        assert [m.content for m in history] == ["Hi", "Hello!"]

    def test_human_agent_turns_are_prefixed(self):
        history = build_history([Message(role=MessageRole.HUMAN, content="I can help")], "ok")
        assert isinstance(history[0], AIMessage)
        assert history[0].content == "[Human agent]: I can help"

    def test_history_is_limited_to_most_recent(self):
        messages = [Message(role=MessageRole.USER, content=str(i)) for i in range(30)]
        history = build_history(messages, "new", limit=20)
        assert len(history) == 20
        assert history[0].content == "10"

    def test_zero_limit_gives_empty_history(self):
        assert build_history([Message(role=MessageRole.USER, content="a")], "b", limit=0) == []


class TestConversationLocks:
    def test_entries_are_released(self):
        locks = ConversationLocks()
        with locks.hold("a"):
            assert len(locks) == 1
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_same_conversation_is_serialized(self):
        locks = ConversationLocks()
        order: list[str] = []
        entered = threading.Event()
        release = threading.Event()

        def first():
            with locks.hold("conv"):
                entered.set()
                release.wait(timeout=5)
                order.append("first")

        def second():
            with locks.hold("conv"):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        entered.wait(timeout=5)
        t2 = threading.Thread(target=second)
        t2.start()
        time.sleep(0.05)
        assert order == []

        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)
        assert order == ["first", "second"]
        assert len(locks) == 0
