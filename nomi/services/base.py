from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from nomi.models.schemas import (
    ChatResponse,
    ContextData,
    Conversation,
    Message,
    QuizData,
    UsageInfo,
)


@dataclass(frozen=True)
class AuthSession:
    """Identity and bearer credential for the signed-in user."""
    user_id: str
    access_token: str


class SessionProvider(ABC):
    @abstractmethod
    def current_session(self) -> Optional[AuthSession]:
        """Return the active session, or None when nobody is signed in."""
        ...


class StaticSessionProvider(SessionProvider):
    def __init__(self, session: Optional[AuthSession] = None):
        self._session = session

    def current_session(self) -> Optional[AuthSession]:
        return self._session

    def sign_in(self, session: AuthSession):
        self._session = session

    def sign_out(self):
        self._session = None


class ConversationStore(ABC):
    @abstractmethod
    async def list_conversations(self, session: AuthSession) -> list[Conversation]:
        """Conversations owned by the session user, newest update first."""
        ...

    @abstractmethod
    async def insert_conversation(
        self, session: AuthSession, conversation: Conversation
    ) -> Conversation:
        ...

    @abstractmethod
    async def update_title(self, session: AuthSession, conversation_id: str, title: str):
        ...

    @abstractmethod
    async def delete_conversation(self, session: AuthSession, conversation_id: str):
        ...


class MessageStore(ABC):
    @abstractmethod
    async def query_messages(
        self,
        session: AuthSession,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: int = 20,
        descending: bool = True,
    ) -> list[Message]:
        """Return at most `limit` messages, optionally strictly older than `before`."""
        ...


class UsageQuotaService(ABC):
    @abstractmethod
    async def increment_daily_usage(self, session: AuthSession, limit: int) -> UsageInfo:
        """Atomically advance today's counter and return the authoritative pair."""
        ...


class ChatExchange(ABC):
    @abstractmethod
    async def send_chat(
        self, session: AuthSession, conversation_id: str, message: str
    ) -> ChatResponse:
        ...

    @abstractmethod
    async def summarize(self, session: AuthSession, conversation_id: str):
        ...


class ContextStore(ABC):
    @abstractmethod
    async def get_context(self, session: AuthSession) -> Optional[ContextData]:
        ...

    @abstractmethod
    async def save_context(self, session: AuthSession, quiz: QuizData):
        """Insert the user's context row, or update it when one exists."""
        ...
