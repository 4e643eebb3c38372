from unittest.mock import AsyncMock

import pytest

from nomi.errors import TransportError, Unauthenticated
from nomi.models.schemas import QuizData
from nomi.services.context_service import ContextService
from nomi.services.local_store import LocalStore

COMPLETE = QuizData(
    struggle_duration="over a year",
    current_relationship="married",
    triggers="stress at work",
    vulnerable_situations="alone at night",
    post_use_feelings="ashamed",
    negative_effects="less energy",
    motivation_for_change="be present for family",
)


class TestContextService:
    @pytest.mark.asyncio
    async def test_incomplete_without_row(self, initialized_db, sessions):
        service = ContextService(sessions, LocalStore())
        assert await service.check_quiz_completion() is False
        assert service.has_completed_quiz is False

    @pytest.mark.asyncio
    async def test_save_then_check(self, initialized_db, sessions):
        service = ContextService(sessions, LocalStore())
        await service.save_quiz_data(COMPLETE)
        assert service.has_completed_quiz

        fresh = ContextService(sessions, LocalStore())
        assert await fresh.check_quiz_completion() is True
        assert fresh.quiz_data == COMPLETE

    @pytest.mark.asyncio
    async def test_partial_answers_not_complete(self, initialized_db, sessions):
        store = LocalStore()
        await ContextService(sessions, store).save_quiz_data(QuizData(triggers="boredom"))

        fresh = ContextService(sessions, store)
        assert await fresh.check_quiz_completion() is False
        assert fresh.quiz_data == QuizData()

    @pytest.mark.asyncio
    async def test_lookup_failure_reports_incomplete(self, sessions):
        store = LocalStore()
        store.get_context = AsyncMock(side_effect=TransportError("offline"))
        service = ContextService(sessions, store)
        service.has_completed_quiz = True

        assert await service.check_quiz_completion() is False
        assert service.has_completed_quiz is False

    @pytest.mark.asyncio
    async def test_save_requires_session(self, initialized_db, sessions):
        sessions.sign_out()
        with pytest.raises(Unauthenticated):
            await ContextService(sessions, LocalStore()).save_quiz_data(COMPLETE)
