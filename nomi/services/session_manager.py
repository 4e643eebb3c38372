"""Conversation, message and quota state for one signed-in user.

All mutation happens on the event loop that owns the manager; remote calls
are the only suspension points. Reads (`list_conversations`, `load_messages`)
are single-flight and degrade to an error message. `send_message` applies an
optimistic user message plus an empty assistant placeholder and either
confirms or rolls back that pair once the chat function answers.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Coroutine, Optional

from nomi.config import Settings
from nomi.errors import NomiError, QuotaExceeded, Unauthenticated
from nomi.models.exchange import PendingExchange
from nomi.models.schemas import (
    DEFAULT_TITLE,
    Conversation,
    ConversationGroup,
    Message,
    UsageInfo,
    utc_now,
)
from nomi.services.base import (
    AuthSession,
    ChatExchange,
    ConversationStore,
    MessageStore,
    SessionProvider,
    UsageQuotaService,
)
from nomi.services.grouping import group_conversations
from nomi.services.message_cache import MessageCache

logger = logging.getLogger(__name__)


class ChatSessionManager:

    def __init__(
        self,
        settings: Settings,
        sessions: SessionProvider,
        conversation_store: ConversationStore,
        message_store: MessageStore,
        usage_service: UsageQuotaService,
        chat: ChatExchange,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._settings = settings
        self._sessions = sessions
        self._conversation_store = conversation_store
        self._message_store = message_store
        self._usage_service = usage_service
        self._chat = chat
        self._clock = clock

        # Conversations
        self._conversations: list[Conversation] = []
        self._groups: list[ConversationGroup] = []
        self._current: Optional[Conversation] = None
        self.is_loading_conversations = False

        # Messages
        self._messages: list[Message] = []
        self._pending: dict[str, PendingExchange] = {}
        self.is_loading_messages = False
        self.has_loaded_messages = False
        self.is_sending_message = False
        self.message_text = ""

        # Pagination
        self._oldest_loaded_at: Optional[datetime] = None
        self.can_load_more_messages = True
        self._cache = MessageCache(settings.message_cache_size)

        # Usage & errors
        self.daily_usage = UsageInfo(current=0, limit=settings.daily_message_limit)
        self.error_message: Optional[str] = None
        self.last_error: Optional[NomiError] = None

        # Background work owned by this manager
        self._tasks: set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._closed = False

    # --- Read-only views ---

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return tuple(self._conversations)

    @property
    def grouped_conversations(self) -> tuple[ConversationGroup, ...]:
        return tuple(self._groups)

    @property
    def current_conversation(self) -> Optional[Conversation]:
        return self._current

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def oldest_loaded_at(self) -> Optional[datetime]:
        return self._oldest_loaded_at

    @property
    def is_near_daily_limit(self) -> bool:
        return self.daily_usage.current >= self._settings.usage_warning_threshold

    @property
    def is_closed(self) -> bool:
        return self._closed

    def cached_messages(self, conversation_id: str) -> Optional[tuple[Message, ...]]:
        return self._cache.get(conversation_id)

    # --- Errors ---

    def clear_error(self):
        self.error_message = None
        self.last_error = None

    def _record_error(self, error: NomiError, context: str | None = None):
        self.last_error = error
        self.error_message = f"{context}: {error.message}" if context else error.message

    def _require_session(self) -> AuthSession:
        session = self._sessions.current_session()
        if session is None:
            raise Unauthenticated()
        return session

    # --- Conversations ---

    async def list_conversations(self) -> tuple[ConversationGroup, ...]:
        if self.is_loading_conversations:
            return self.grouped_conversations
        self.is_loading_conversations = True

        try:
            session = self._require_session()
            conversations = await self._conversation_store.list_conversations(session)
        except NomiError as e:
            logger.error(f"Failed to load conversations: {e.message}")
            self._record_error(e, "Failed to load conversations")
            return self.grouped_conversations
        finally:
            self.is_loading_conversations = False

        if self._closed:
            return self.grouped_conversations

        self._conversations = sorted(
            (self._with_pending_bumps(c) for c in conversations),
            key=lambda c: c.updated_at,
            reverse=True,
        )
        if self._current is not None:
            refreshed = self._find_conversation(self._current.id)
            if refreshed is not None:
                self._current = refreshed
        self._regroup()
        logger.debug(f"Loaded {len(self._conversations)} conversations")
        return self.grouped_conversations

    async def create_conversation(self) -> Optional[Conversation]:
        try:
            session = self._require_session()
            now = self._clock()
            draft = Conversation(
                id=str(uuid.uuid4()),
                user_id=session.user_id,
                title=DEFAULT_TITLE,
                created_at=now,
                updated_at=now,
            )
            created = await self._conversation_store.insert_conversation(session, draft)
        except NomiError as e:
            logger.error(f"Failed to create conversation: {e.message}")
            self._record_error(e, "Failed to create conversation")
            return None

        if self._closed:
            return created

        self._conversations.insert(0, created)
        self._current = created
        self._messages = []
        self._reset_cursor()
        self.has_loaded_messages = True
        self._regroup()
        logger.info(f"Created conversation {created.id}")
        return created

    def select_conversation(self, conversation: Conversation) -> asyncio.Task:
        """Activate a conversation, show its cached page, and refresh in the background.

        Returns the refresh task. A refresh still running for an earlier
        selection is cancelled first.
        """
        known = self._find_conversation(conversation.id)
        if known is None:
            self._conversations.append(conversation)
            self._conversations.sort(key=lambda c: c.updated_at, reverse=True)
            self._regroup()
        self._current = known or conversation
        self._reset_cursor()
        self.has_loaded_messages = False

        cached = self._cache.get(conversation.id)
        self._messages = list(cached) if cached else []

        previous = self._refresh_task
        if previous is not None and not previous.done():
            previous.cancel()
        self._refresh_task = self._spawn(self._refresh_messages(conversation.id, previous))
        return self._refresh_task

    async def _refresh_messages(self, conversation_id: str, previous: Optional[asyncio.Task]):
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        await self.load_messages(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            session = self._require_session()
            await self._conversation_store.delete_conversation(session, conversation_id)
        except NomiError as e:
            logger.error(f"Failed to delete conversation {conversation_id}: {e.message}")
            self._record_error(e, "Failed to delete conversation")
            return False

        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        self._cache.discard(conversation_id)
        if self._current is not None and self._current.id == conversation_id:
            self._current = None
            self._messages = []
            self._reset_cursor()
            self.has_loaded_messages = False
        self._regroup()
        return True

    # --- Messages ---

    async def load_messages(
        self, conversation_id: Optional[str] = None, load_more: bool = False
    ) -> bool:
        """Fetch one page of history. Returns True when a page was applied."""
        if self.is_loading_messages:
            return False
        if conversation_id is None:
            if self._current is None:
                return False
            conversation_id = self._current.id
        if load_more:
            if self._current is None or self._current.id != conversation_id:
                return False
            if not self.can_load_more_messages or self._oldest_loaded_at is None:
                return False

        page_size = self._settings.message_page_size
        self.is_loading_messages = True
        try:
            session = self._require_session()
            page = await self._message_store.query_messages(
                session,
                conversation_id,
                before=self._oldest_loaded_at if load_more else None,
                limit=page_size,
                descending=True,
            )
        except NomiError as e:
            logger.error(f"Failed to load messages for {conversation_id}: {e.message}")
            self._record_error(e, "Failed to load messages")
            return False
        finally:
            self.is_loading_messages = False

        if self._closed:
            return False

        chronological = list(reversed(page))

        if self._current is None or self._current.id != conversation_id:
            # Selection moved on while loading; keep the page for the next visit.
            if not load_more:
                self._cache.put(conversation_id, chronological)
            return False

        if load_more:
            self._messages = chronological + self._messages
        else:
            self._messages = chronological + self._pending_messages(conversation_id, chronological)

        if page:
            self._oldest_loaded_at = page[-1].created_at
        elif not load_more:
            self._oldest_loaded_at = None
        if len(page) < page_size:
            self.can_load_more_messages = False
        elif not load_more:
            self.can_load_more_messages = True
        self.has_loaded_messages = True
        self._cache.put(conversation_id, self._messages)
        return True

    def _pending_messages(self, conversation_id: str, fetched: list[Message]) -> list[Message]:
        """Optimistic entries that a wholesale reload must not drop."""
        fetched_ids = {m.id for m in fetched}
        pending_ids = {
            message_id
            for exchange in self._pending.values()
            if exchange.conversation_id == conversation_id
            for message_id in exchange.message_ids
        }
        return [
            m for m in self._messages
            if m.id in pending_ids and m.id not in fetched_ids
        ]

    async def send_message(
        self, text: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> Optional[PendingExchange]:
        """Send `text` (or the draft in `message_text`) to the active conversation.

        Blank text or no active conversation is a silent no-op. Failures are
        reported through `error_message`/`last_error`; the returned exchange
        tells whether the optimistic pair was confirmed or rolled back.
        """
        body = (self.message_text if text is None else text).strip()
        conversation = self._current
        if not body or conversation is None:
            return None
        if conversation_id is not None and conversation_id != conversation.id:
            return None

        session = self._sessions.current_session()
        if session is None:
            self._record_error(Unauthenticated())
            return None

        self.message_text = ""
        self.is_sending_message = True
        try:
            return await self._run_exchange(session, conversation.id, body)
        finally:
            self.is_sending_message = False

    async def _run_exchange(
        self, session: AuthSession, conversation_id: str, text: str
    ) -> Optional[PendingExchange]:
        try:
            usage = await self._usage_service.increment_daily_usage(
                session, self._settings.daily_message_limit
            )
        except NomiError as e:
            if isinstance(e, QuotaExceeded):
                self.daily_usage = UsageInfo(current=e.current, limit=e.limit)
            logger.error(f"Daily usage increment failed: {e.message}")
            self._record_error(e)
            return None

        self.daily_usage = usage
        if usage.current > usage.limit:
            logger.warning(
                f"Usage counter past its limit after increment ({usage.current}/{usage.limit})"
            )
            self._record_error(QuotaExceeded(usage.current, usage.limit))
            return None

        exchange = self._begin_exchange(conversation_id, text)

        try:
            reply = await self._chat.send_chat(session, conversation_id, text)
        except NomiError as e:
            if self._closed:
                return exchange
            if isinstance(e, QuotaExceeded):
                self.daily_usage = UsageInfo(current=e.current, limit=e.limit)
            logger.error(f"Failed to send message: {e.message}")
            self._roll_back(exchange, e)
            return exchange

        if self._closed:
            return exchange

        self.daily_usage = reply.usage
        answered = Message(
            id=exchange.placeholder_id,
            conversation_id=conversation_id,
            role="assistant",
            content=reply.message,
            created_at=self._clock(),
            token_count=reply.tokens_used,
        )
        self._rewrite_log(
            conversation_id,
            lambda log: [answered if m.id == exchange.placeholder_id else m for m in log],
        )
        exchange.confirm()
        self._pending.pop(exchange.placeholder_id, None)
        self._bump_conversation(conversation_id, self._clock())
        await self._apply_first_message_title(session, conversation_id, text)
        return exchange

    def _begin_exchange(self, conversation_id: str, text: str) -> PendingExchange:
        now = self._clock()
        exchange = PendingExchange(
            conversation_id=conversation_id,
            text=text,
            user_message_id=str(uuid.uuid4()),
            placeholder_id=str(uuid.uuid4()),
            started_at=now,
        )
        self._messages.append(Message(
            id=exchange.user_message_id,
            conversation_id=conversation_id,
            role="user",
            content=text,
            created_at=now,
        ))
        self._messages.append(Message(
            id=exchange.placeholder_id,
            conversation_id=conversation_id,
            role="assistant",
            content="",
            created_at=now,
        ))
        self._pending[exchange.placeholder_id] = exchange
        self._bump_conversation(conversation_id, now, added_messages=1)
        return exchange

    def _roll_back(self, exchange: PendingExchange, error: NomiError):
        dropped = set(exchange.message_ids)
        self._rewrite_log(
            exchange.conversation_id,
            lambda log: [m for m in log if m.id not in dropped],
        )
        self._pending.pop(exchange.placeholder_id, None)
        exchange.roll_back(error)
        # updated_at stays bumped so it never moves backwards
        conversation = self._find_conversation(exchange.conversation_id)
        if conversation is not None and conversation.message_count > 0:
            self._replace_conversation(
                conversation.model_copy(update={"message_count": conversation.message_count - 1})
            )
            self._regroup()
        self._record_error(error)

    def _rewrite_log(self, conversation_id: str, rewrite: Callable[[list[Message]], list[Message]]):
        """Apply one transformation to the live log and the cached page."""
        if self._current is not None and self._current.id == conversation_id:
            self._messages = rewrite(self._messages)
            if self.has_loaded_messages or conversation_id in self._cache:
                self._cache.put(conversation_id, self._messages)
            return
        cached = self._cache.get(conversation_id)
        if cached is not None:
            self._cache.put(conversation_id, rewrite(list(cached)))

    async def _apply_first_message_title(self, session: AuthSession, conversation_id: str, text: str):
        conversation = self._find_conversation(conversation_id)
        if conversation is None or conversation.title != DEFAULT_TITLE:
            return

        limit = self._settings.title_max_length
        title = text[:limit] + ("..." if len(text) > limit else "")
        self._replace_conversation(conversation.model_copy(update={"title": title}))
        self._regroup()

        try:
            await self._conversation_store.update_title(session, conversation_id, title)
        except NomiError as e:
            logger.warning(f"Failed to save title for {conversation_id}: {e.message}")

    # --- Summarization ---

    def summarize_conversation(self, conversation_id: Optional[str] = None) -> Optional[asyncio.Task]:
        """Ask the backend to summarize in the background. Never raises."""
        if conversation_id is None:
            if self._current is None:
                return None
            conversation_id = self._current.id
        session = self._sessions.current_session()
        if session is None:
            logger.debug("Skipping summarize without a session")
            return None
        return self._spawn(self._summarize(session, conversation_id))

    async def _summarize(self, session: AuthSession, conversation_id: str):
        try:
            await self._chat.summarize(session, conversation_id)
        except NomiError as e:
            logger.warning(f"Failed to summarize conversation {conversation_id}: {e.message}")

    # --- Conversation list helpers ---

    def _find_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        if self._current is not None and self._current.id == conversation_id:
            return self._current
        return None

    def _with_pending_bumps(self, conversation: Conversation) -> Conversation:
        """Re-apply in-flight sends to a freshly fetched row."""
        exchanges = [e for e in self._pending.values() if e.conversation_id == conversation.id]
        if not exchanges:
            return conversation
        return conversation.model_copy(update={
            "updated_at": max(conversation.updated_at, *(e.started_at for e in exchanges)),
            "message_count": conversation.message_count + len(exchanges),
        })

    def _replace_conversation(self, updated: Conversation):
        self._conversations = [
            updated if c.id == updated.id else c for c in self._conversations
        ]
        if self._current is not None and self._current.id == updated.id:
            self._current = updated

    def _bump_conversation(self, conversation_id: str, at: datetime, added_messages: int = 0):
        conversation = self._find_conversation(conversation_id)
        if conversation is None:
            return
        self._replace_conversation(conversation.model_copy(update={
            "updated_at": max(conversation.updated_at, at),
            "message_count": conversation.message_count + added_messages,
        }))
        self._conversations.sort(key=lambda c: c.updated_at, reverse=True)
        self._regroup()

    def _regroup(self):
        self._groups = group_conversations(self._conversations, now=self._clock().astimezone())

    def _reset_cursor(self):
        self._oldest_loaded_at = None
        self.can_load_more_messages = True

    # --- Lifecycle ---

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def aclose(self):
        """Cancel background work; later results are ignored."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "ChatSessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

