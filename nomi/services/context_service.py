import logging

from nomi.errors import NomiError, Unauthenticated
from nomi.models.schemas import QuizData
from nomi.services.base import ContextStore, SessionProvider

logger = logging.getLogger(__name__)


class ContextService:
    """Tracks the onboarding quiz that gives the companion its background."""

    def __init__(self, sessions: SessionProvider, store: ContextStore):
        self._sessions = sessions
        self._store = store
        self.has_completed_quiz = False
        self.quiz_data = QuizData()

    async def check_quiz_completion(self) -> bool:
        session = self._sessions.current_session()
        if session is None:
            return self.has_completed_quiz
        try:
            context = await self._store.get_context(session)
        except NomiError as e:
            logger.error(f"Failed to check quiz completion: {e.message}")
            self.has_completed_quiz = False
            return False

        self.has_completed_quiz = context is not None and context.is_complete
        if self.has_completed_quiz:
            self.quiz_data = QuizData.from_context(context)
        return self.has_completed_quiz

    async def save_quiz_data(self, quiz: QuizData | None = None):
        session = self._sessions.current_session()
        if session is None:
            raise Unauthenticated()
        if quiz is not None:
            self.quiz_data = quiz
        await self._store.save_context(session, self.quiz_data)
        self.has_completed_quiz = True
