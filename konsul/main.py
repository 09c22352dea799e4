"""CLI entry point: chat with one agent of a JSON-seeded workspace.

For production, use the FastAPI server (konsul/server.py).

Usage:
    python -m konsul.main --workspace seed.json --agent agent-1
    python -m konsul.main --workspace seed.json --agent agent-1 --debug
"""

from __future__ import annotations

import argparse
import logging
import uuid

from konsul.agent import Orchestrator
from konsul.models import ConversationState, ConversationStatus
from konsul.services.store import InMemoryStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("konsul").setLevel(logging.DEBUG if debug else logging.INFO)


def _new_conversation(store: InMemoryStore, agent_id: str) -> str:
    conversation = ConversationState(id=str(uuid.uuid4()), agent_id=agent_id)
    store.add_conversation(conversation)
    logger.info("Started new conversation: %s", conversation.id)
    return conversation.id


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Konsul agent CLI")
    parser.add_argument("--workspace", required=True, help="JSON seed file for the in-memory store")
    parser.add_argument("--agent", required=True, help="ID of the agent to chat with")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    _configure_logging(debug=args.debug)

    store = InMemoryStore.from_json(args.workspace)
    agent = store.get_agent(args.agent)
    if agent is None:
        parser.error(f"agent {args.agent!r} not found in {args.workspace}")

    orchestrator = Orchestrator(store)
    conversation_id = _new_conversation(store, agent.id)

    print("\n" + "=" * 60)
    print(f"  {agent.name} - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break
        if user_input.lower() == "new":
            conversation_id = _new_conversation(store, agent.id)
            print(f"\n>> New conversation started: {conversation_id[:8]}...\n")
            continue

        result = orchestrator.generate_reply(agent.id, conversation_id, user_input, store_message=True)
        print(f"\n{agent.name}: {result.reply}")
        print(f"   ({result.tokens_used} tokens, {result.credits_used} credits)\n")

        status = store.get_conversation(conversation_id).status
        if status is not ConversationStatus.ACTIVE:
            print(f">> Conversation is now {status.value}.\n")


if __name__ == "__main__":
    main()
