"""SQLite-backed stand-in for the hosted tables, RPC and chat function.

Used for offline development and as the store behind the test-suite.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from nomi.database import get_db
from nomi.errors import QuotaExceeded
from nomi.models.schemas import (
    ChatResponse,
    ContextData,
    Conversation,
    Message,
    QuizData,
    QUIZ_FIELDS,
    UsageInfo,
    utc_now,
)
from nomi.services.base import (
    AuthSession,
    ChatExchange,
    ContextStore,
    ConversationStore,
    MessageStore,
    UsageQuotaService,
)

logger = logging.getLogger(__name__)


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string, so text comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class LocalStore(ConversationStore, MessageStore, UsageQuotaService, ContextStore):

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    # --- Conversations ---

    async def list_conversations(self, session: AuthSession) -> list[Conversation]:
        async with get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC",
                (session.user_id,),
            )
            rows = await cursor.fetchall()
            return [Conversation.model_validate(dict(row)) for row in rows]

    async def insert_conversation(
        self, session: AuthSession, conversation: Conversation
    ) -> Conversation:
        async with get_db() as db:
            await db.execute(
                """INSERT INTO conversations
                   (id, user_id, title, created_at, updated_at, message_count, context_summary)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conversation.id, session.user_id, conversation.title,
                 to_db_timestamp(conversation.created_at),
                 to_db_timestamp(conversation.updated_at),
                 conversation.message_count, conversation.context_summary),
            )
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation.id,)
            )
            row = await cursor.fetchone()
            return Conversation.model_validate(dict(row))

    async def get_conversation(self, session: AuthSession, conversation_id: str) -> Conversation | None:
        async with get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, session.user_id),
            )
            row = await cursor.fetchone()
            return Conversation.model_validate(dict(row)) if row else None

    async def update_title(self, session: AuthSession, conversation_id: str, title: str):
        async with get_db() as db:
            await db.execute(
                "UPDATE conversations SET title = ? WHERE id = ? AND user_id = ?",
                (title, conversation_id, session.user_id),
            )
            await db.commit()

    async def delete_conversation(self, session: AuthSession, conversation_id: str):
        async with get_db() as db:
            await db.execute(
                """DELETE FROM messages WHERE conversation_id IN
                   (SELECT id FROM conversations WHERE id = ? AND user_id = ?)""",
                (conversation_id, session.user_id),
            )
            await db.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, session.user_id),
            )
            await db.commit()

    # --- Messages ---

    async def query_messages(
        self,
        session: AuthSession,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: int = 20,
        descending: bool = True,
    ) -> list[Message]:
        sql = """SELECT m.* FROM messages m
                 JOIN conversations c ON c.id = m.conversation_id
                 WHERE m.conversation_id = ? AND c.user_id = ?"""
        params: list = [conversation_id, session.user_id]
        if before is not None:
            sql += " AND m.created_at < ?"
            params.append(to_db_timestamp(before))
        direction = "DESC" if descending else "ASC"
        sql += f" ORDER BY m.created_at {direction}, m.rowid {direction} LIMIT ?"
        params.append(limit)
        async with get_db() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [Message.model_validate(dict(row)) for row in rows]

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        token_count: int = 0,
        created_at: datetime | None = None,
        count_towards_total: bool = False,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=created_at or self._clock(),
            token_count=token_count,
        )
        async with get_db() as db:
            await db.execute(
                """INSERT INTO messages
                   (id, conversation_id, role, content, created_at, token_count)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (message.id, conversation_id, role, content,
                 to_db_timestamp(message.created_at), token_count),
            )
            await db.execute(
                """UPDATE conversations SET
                   updated_at = MAX(updated_at, ?),
                   message_count = message_count + ?
                   WHERE id = ?""",
                (to_db_timestamp(message.created_at),
                 1 if count_towards_total else 0, conversation_id),
            )
            await db.commit()
        return message

    # --- Usage quota ---

    async def increment_daily_usage(self, session: AuthSession, limit: int) -> UsageInfo:
        usage_date = self._clock().astimezone(timezone.utc).date().isoformat()
        async with get_db() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT count FROM daily_usage WHERE user_id = ? AND usage_date = ?",
                    (session.user_id, usage_date),
                )
                row = await cursor.fetchone()
                current = row["count"] if row else 0
                if current >= limit:
                    raise QuotaExceeded(
                        current, limit,
                        "You've reached your daily message limit. Try again tomorrow.",
                    )
                await db.execute(
                    """INSERT INTO daily_usage (user_id, usage_date, count) VALUES (?, ?, 1)
                       ON CONFLICT(user_id, usage_date) DO UPDATE SET count = count + 1""",
                    (session.user_id, usage_date),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return UsageInfo(current=current + 1, limit=limit)

    async def get_daily_usage(self, session: AuthSession, limit: int) -> UsageInfo:
        usage_date = self._clock().astimezone(timezone.utc).date().isoformat()
        async with get_db() as db:
            cursor = await db.execute(
                "SELECT count FROM daily_usage WHERE user_id = ? AND usage_date = ?",
                (session.user_id, usage_date),
            )
            row = await cursor.fetchone()
        return UsageInfo(current=row["count"] if row else 0, limit=limit)

    # --- Companion context ---

    async def get_context(self, session: AuthSession) -> Optional[ContextData]:
        async with get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM context_data WHERE user_id = ?", (session.user_id,)
            )
            row = await cursor.fetchone()
            return ContextData.model_validate(dict(row)) if row else None

    async def save_context(self, session: AuthSession, quiz: QuizData):
        answers = quiz.answers()
        now = to_db_timestamp(self._clock())
        columns = ", ".join(QUIZ_FIELDS)
        placeholders = ", ".join("?" for _ in QUIZ_FIELDS)
        updates = ", ".join(f"{name} = excluded.{name}" for name in QUIZ_FIELDS)
        async with get_db() as db:
            await db.execute(
                f"""INSERT INTO context_data (id, user_id, {columns}, created_at, updated_at)
                    VALUES (?, ?, {placeholders}, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET {updates},
                    updated_at = excluded.updated_at""",
                (str(uuid.uuid4()), session.user_id,
                 *(answers[name] for name in QUIZ_FIELDS), now, now),
            )
            await db.commit()


class OfflineChatExchange(ChatExchange):
    """Answers chats locally so the client can run without the hosted function.

    Persists the user message and a reply produced by `responder`, the same
    rows the hosted chat function writes.
    """

    def __init__(
        self,
        store: LocalStore,
        daily_limit: int,
        responder: Callable[[str], str] | None = None,
    ):
        self._store = store
        self._daily_limit = daily_limit
        self._responder = responder or (lambda text: "I'm offline right now, but I'm still here for you.")
        self.summarized: list[str] = []

    async def send_chat(
        self, session: AuthSession, conversation_id: str, message: str
    ) -> ChatResponse:
        await self._store.add_message(
            conversation_id, "user", message, count_towards_total=True
        )
        reply = self._responder(message)
        tokens = len(reply.split())
        await self._store.add_message(conversation_id, "assistant", reply, token_count=tokens)
        usage = await self._store.get_daily_usage(session, self._daily_limit)
        return ChatResponse(message=reply, tokens_used=tokens, usage=usage)

    async def summarize(self, session: AuthSession, conversation_id: str):
        logger.debug(f"Offline summarize requested for {conversation_id}")
        self.summarized.append(conversation_id)
