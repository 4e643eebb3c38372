"""Console chat with the companion, for poking at a backend from a terminal."""
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from nomi.config import get_settings
from nomi.services.base import AuthSession, StaticSessionProvider
from nomi.services.context_service import ContextService
from nomi.services.session_manager import ChatSessionManager

HELP = """Commands:
  list            show conversations
  new             start a conversation
  open <n>        open conversation number n from the last list
  more            load older messages
  quit            summarize the open conversation and exit
Anything else is sent as a message."""


def build_manager(settings, sessions):
    if settings.storage_backend == "local":
        from nomi.database import set_db_path
        from nomi.services.local_store import LocalStore, OfflineChatExchange

        Path(settings.database_url).parent.mkdir(parents=True, exist_ok=True)
        set_db_path(settings.database_url)
        store = LocalStore()
        chat = OfflineChatExchange(store, settings.daily_message_limit)
    else:
        from nomi.services.edge_functions import EdgeFunctionClient
        from nomi.services.supabase_backend import SupabaseBackend

        store = SupabaseBackend(settings)
        chat = EdgeFunctionClient(settings)

    manager = ChatSessionManager(settings, sessions, store, store, store, chat)
    return manager, ContextService(sessions, store)


def print_messages(manager):
    for message in manager.messages:
        speaker = "you" if message.role == "user" else "nomi"
        print(f"  {speaker}: {message.content}")


async def chat_loop(settings, manager, context):
    if settings.storage_backend == "local":
        from nomi.database import init_db
        await init_db()

    if not await context.check_quiz_completion():
        print("(companion quiz not completed yet)")

    listed = []
    print(HELP)
    while True:
        line = (await asyncio.to_thread(input, "> ")).strip()
        if not line:
            continue
        if line == "quit":
            task = manager.summarize_conversation()
            if task is not None:
                await task
            return
        if line == "list":
            await manager.list_conversations()
            listed = list(manager.conversations)
            for group in manager.grouped_conversations:
                print(group.title)
                for conversation in group.conversations:
                    print(f"  [{listed.index(conversation)}] {conversation.title}")
        elif line == "new":
            conversation = await manager.create_conversation()
            if conversation:
                print(f"Started {conversation.title}")
        elif line.startswith("open "):
            try:
                conversation = listed[int(line.split()[1])]
            except (ValueError, IndexError):
                print("Unknown conversation")
                continue
            await manager.select_conversation(conversation)
            print_messages(manager)
        elif line == "more":
            if await manager.load_messages(load_more=True):
                print_messages(manager)
            else:
                print("No older messages")
        else:
            exchange = await manager.send_message(line)
            if exchange is not None and manager.last_error is None:
                print(f"  nomi: {manager.messages[-1].content}")
            print(f"  ({manager.daily_usage.current}/{manager.daily_usage.limit} today)")

        if manager.error_message:
            print(f"! {manager.error_message}")
            manager.clear_error()


def main():
    load_dotenv(Path(__file__).parent / ".env")
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    user_id = os.environ.get("NOMI_USER_ID", "")
    access_token = os.environ.get("NOMI_ACCESS_TOKEN", "")
    if not user_id or (settings.storage_backend == "supabase" and not access_token):
        print("Set NOMI_USER_ID and NOMI_ACCESS_TOKEN to sign in.")
        sys.exit(1)

    sessions = StaticSessionProvider(AuthSession(user_id=user_id, access_token=access_token))
    manager, context = build_manager(settings, sessions)

    async def run():
        async with manager:
            await chat_loop(settings, manager, context)

    try:
        asyncio.run(run())
    except (KeyboardInterrupt, EOFError):
        print("\nShutting down...")


if __name__ == "__main__":
    main()
