import logging

import httpx

from nomi.config import Settings
from nomi.errors import QuotaExceeded, ServerError
from nomi.models.schemas import ChatRequest, ChatResponse, RateLimitResponse
from nomi.services.base import AuthSession, ChatExchange
from nomi.services.http_base import HTTPBackend

logger = logging.getLogger(__name__)


class EdgeFunctionClient(HTTPBackend, ChatExchange):
    """Client for the hosted chat and summarization functions."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        super().__init__(settings, client)
        self._base_url = settings.edge_functions_url
        self._functions = settings.edge_functions

    def _function_url(self, key: str) -> str:
        return f"{self._base_url}/{self._functions[key]}"

    async def send_chat(
        self, session: AuthSession, conversation_id: str, message: str
    ) -> ChatResponse:
        body = ChatRequest(conversation_id=conversation_id, message=message)
        r = await self._send(
            "POST", self._function_url("chat"), session,
            json=body.model_dump(by_alias=True),
        )

        if r.status_code == 429:
            limited = self._decode(RateLimitResponse, self._json(r))
            raise QuotaExceeded(limited.usage.current, limited.usage.limit, limited.error)

        if r.status_code != 200:
            raise ServerError(r.status_code, self._error_message(r))

        return self._decode(ChatResponse, self._json(r))

    async def summarize(self, session: AuthSession, conversation_id: str):
        r = await self._send(
            "POST", self._function_url("summarize"), session,
            json={"conversationId": conversation_id},
        )
        self._raise_for_status(r)
