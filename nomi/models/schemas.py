from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TITLE = "New Chat"

QUIZ_FIELDS = (
    "struggle_duration",
    "current_relationship",
    "triggers",
    "vulnerable_situations",
    "post_use_feelings",
    "negative_effects",
    "motivation_for_change",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Conversations ---
class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    title: str = DEFAULT_TITLE
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    context_summary: Optional[str] = None


class ConversationGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    conversations: tuple[Conversation, ...]


# --- Messages ---
class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    token_count: int = 0


# --- Edge function payloads ---
class UsageInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: int = 0
    limit: int = 0


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId")
    message: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    tokens_used: int = Field(..., alias="tokensUsed")
    usage: UsageInfo


class RateLimitResponse(BaseModel):
    error: str
    usage: UsageInfo


class ErrorResponse(BaseModel):
    error: str


# --- Companion context (quiz answers) ---
class ContextData(BaseModel):
    id: Optional[str] = None
    user_id: str
    struggle_duration: Optional[str] = None
    current_relationship: Optional[str] = None
    triggers: Optional[str] = None
    vulnerable_situations: Optional[str] = None
    post_use_feelings: Optional[str] = None
    negative_effects: Optional[str] = None
    motivation_for_change: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        """True when every quiz answer is present and non-empty."""
        return all(getattr(self, name) for name in QUIZ_FIELDS)


class QuizData(BaseModel):
    struggle_duration: str = ""
    current_relationship: str = ""
    triggers: str = ""
    vulnerable_situations: str = ""
    post_use_feelings: str = ""
    negative_effects: str = ""
    motivation_for_change: str = ""

    @classmethod
    def from_context(cls, context: ContextData) -> "QuizData":
        return cls(**{name: getattr(context, name) or "" for name in QUIZ_FIELDS})

    def answers(self) -> dict:
        return self.model_dump(include=set(QUIZ_FIELDS))
