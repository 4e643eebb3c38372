import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from pydantic import BaseModel, ValidationError

from nomi.config import Settings
from nomi.errors import DecodeError, ServerError, TransportError, Unauthenticated
from nomi.models.schemas import ErrorResponse
from nomi.services.base import AuthSession

logger = logging.getLogger(__name__)


class HTTPBackend:
    """Shared request plumbing for the hosted REST API and edge functions.

    Pass an `httpx.AsyncClient` to reuse one connection pool (or to inject a
    mock transport); otherwise a short-lived client is opened per call.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._http = client
        self._timeout = httpx.Timeout(settings.request_timeout)

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    def _headers(self, session: AuthSession) -> dict[str, str]:
        return {
            "apikey": self._settings.supabase_anon_key.get_secret_value(),
            "Authorization": f"Bearer {session.access_token}",
            "Content-Type": "application/json",
        }

    async def _send(
        self, method: str, url: str, session: AuthSession, **kwargs
    ) -> httpx.Response:
        headers = {**self._headers(session), **kwargs.pop("headers", {})}
        try:
            async with self._client() as client:
                return await client.request(
                    method, url, headers=headers, timeout=self._timeout, **kwargs
                )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(
                f"Response body is not JSON (status {response.status_code})",
                status=response.status_code,
            ) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        try:
            return ErrorResponse.model_validate(body).error
        except ValidationError:
            # PostgREST reports failures under "message"
            message = body.get("message")
            return message if isinstance(message, str) else None

    def _raise_for_status(self, response: httpx.Response):
        if response.is_success:
            return
        message = self._error_message(response)
        if response.status_code == 401:
            raise Unauthenticated(message)
        raise ServerError(response.status_code, message)

    @staticmethod
    def _decode(model: type[BaseModel], data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"Unexpected {model.__name__} payload: {e.error_count()} error(s)") from e
