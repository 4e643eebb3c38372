import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from nomi.config import Settings
from nomi.errors import DecodeError
from nomi.models.schemas import ContextData, Conversation, Message, QuizData, UsageInfo
from nomi.services.base import (
    AuthSession,
    ContextStore,
    ConversationStore,
    MessageStore,
    UsageQuotaService,
)
from nomi.services.http_base import HTTPBackend

logger = logging.getLogger(__name__)


class SupabaseBackend(HTTPBackend, ConversationStore, MessageStore, UsageQuotaService, ContextStore):
    """Tables and RPCs of the hosted project, spoken over PostgREST."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        super().__init__(settings, client)
        self._rest_url = f"{settings.supabase_url.rstrip('/')}/rest/v1"
        self._tables = settings.tables
        self._rpc = settings.rpc_config

    def _table_url(self, key: str) -> str:
        return f"{self._rest_url}/{self._tables[key]}"

    async def _get_rows(self, session: AuthSession, key: str, params: dict) -> list:
        r = await self._send("GET", self._table_url(key), session, params=params)
        self._raise_for_status(r)
        rows = self._json(r)
        if not isinstance(rows, list):
            raise DecodeError(f"Expected a row list from {self._tables[key]}")
        return rows

    # --- Conversations ---

    async def list_conversations(self, session: AuthSession) -> list[Conversation]:
        rows = await self._get_rows(session, "conversations", {
            "select": "*",
            "user_id": f"eq.{session.user_id}",
            "order": "updated_at.desc",
        })
        return [self._decode(Conversation, row) for row in rows]

    async def insert_conversation(
        self, session: AuthSession, conversation: Conversation
    ) -> Conversation:
        r = await self._send(
            "POST", self._table_url("conversations"), session,
            json=conversation.model_dump(mode="json"),
            headers={"Prefer": "return=representation"},
        )
        self._raise_for_status(r)
        rows = self._json(r)
        if isinstance(rows, list):
            if len(rows) != 1:
                raise DecodeError(f"Insert returned {len(rows)} rows, expected 1")
            rows = rows[0]
        return self._decode(Conversation, rows)

    async def update_title(self, session: AuthSession, conversation_id: str, title: str):
        r = await self._send(
            "PATCH", self._table_url("conversations"), session,
            params={"id": f"eq.{conversation_id}"},
            json={"title": title},
        )
        self._raise_for_status(r)

    async def delete_conversation(self, session: AuthSession, conversation_id: str):
        r = await self._send(
            "DELETE", self._table_url("conversations"), session,
            params={"id": f"eq.{conversation_id}"},
        )
        self._raise_for_status(r)

    # --- Messages ---

    async def query_messages(
        self,
        session: AuthSession,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: int = 20,
        descending: bool = True,
    ) -> list[Message]:
        params = {
            "select": "*",
            "conversation_id": f"eq.{conversation_id}",
            "order": f"created_at.{'desc' if descending else 'asc'}",
            "limit": str(limit),
        }
        if before is not None:
            params["created_at"] = f"lt.{before.astimezone(timezone.utc).isoformat()}"
        rows = await self._get_rows(session, "messages", params)
        return [self._decode(Message, row) for row in rows]

    # --- Usage quota ---

    async def increment_daily_usage(self, session: AuthSession, limit: int) -> UsageInfo:
        url = f"{self._rest_url}/rpc/{self._rpc['increment_usage']}"
        r = await self._send("POST", url, session, json={self._rpc["limit_param"]: limit})
        self._raise_for_status(r)
        data = self._json(r)
        # Set-returning functions come back as a list
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise DecodeError("Usage increment returned no result")
        return self._decode(UsageInfo, data)

    # --- Companion context ---

    async def get_context(self, session: AuthSession) -> Optional[ContextData]:
        rows = await self._get_rows(session, "context", {
            "select": "*",
            "user_id": f"eq.{session.user_id}",
        })
        return self._decode(ContextData, rows[0]) if rows else None

    async def save_context(self, session: AuthSession, quiz: QuizData):
        existing = await self.get_context(session)
        if existing is None:
            r = await self._send(
                "POST", self._table_url("context"), session,
                json={"user_id": session.user_id, **quiz.answers()},
            )
        else:
            r = await self._send(
                "PATCH", self._table_url("context"), session,
                params={"user_id": f"eq.{session.user_id}"},
                json=quiz.answers(),
            )
        self._raise_for_status(r)
