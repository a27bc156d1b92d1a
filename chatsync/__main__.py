"""
Command line entry point: `python -m chatsync --user <id>`.

Opens a session, prints the conversation list and keeps printing it
whenever the synchronized state changes.
"""

import argparse
import asyncio
import sys

from chatsync.core.config import get_settings
from chatsync.core.logging import configure_logging
from chatsync.repositories.entity_store import StoreChange
from chatsync.session import ChatSession


def print_conversations(session: ChatSession) -> None:
    model = session.coordinator.read_model()
    print(f"\n== Conversations ({model.connection_state}) ==")
    if not model.conversations:
        print("  (none)")
    for summary in model.conversations:
        marker = "*" if summary.id == model.active_conversation_id else " "
        print(f"{marker} [{summary.id}] {summary.display_name}: {summary.preview}")
    for message in model.messages:
        status = " (sending)" if message.is_pending else ""
        print(f"    {message.sender_id}: {message.preview_text}{status}")
    for notice in session.coordinator.pop_notices():
        print(f"! {notice}")


async def run(user_id: str, conversation_id: str | None, follow: bool) -> int:
    session = ChatSession.from_settings(user_id)
    async with session:
        if conversation_id:
            result = await session.coordinator.open_conversation(conversation_id)
            if not result.ok:
                print(f"Could not open {conversation_id}: {result.error.message}", file=sys.stderr)
        print_conversations(session)
        if not follow:
            return 0

        changed = asyncio.Event()

        def on_change(change: StoreChange) -> None:
            changed.set()

        unsubscribe = session.coordinator.subscribe(on_change)
        try:
            while True:
                await changed.wait()
                changed.clear()
                print_conversations(session)
        finally:
            unsubscribe()


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatsync",
        description="Follow a user's conversations from the chat service.",
    )
    parser.add_argument("--user", required=True, help="Id of the signed-in user")
    parser.add_argument("--open", dest="conversation_id", help="Conversation to open")
    parser.add_argument(
        "--follow", action="store_true", help="Keep printing as the state changes"
    )
    return parser


def main() -> int:
    args = create_parser().parse_args()
    configure_logging(get_settings().LOG_LEVEL)
    try:
        return asyncio.run(run(args.user, args.conversation_id, args.follow))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
