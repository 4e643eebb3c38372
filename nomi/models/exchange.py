from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from nomi.models.schemas import utc_now


class ExchangeState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PendingExchange:
    """One optimistic user message plus its assistant placeholder.

    The pair is appended to the message log while PENDING and leaves that
    state exactly once: CONFIRMED when the reply is decoded, ROLLED_BACK
    when anything fails (both entries are removed from the log).
    """
    conversation_id: str
    text: str
    user_message_id: str
    placeholder_id: str
    started_at: datetime = field(default_factory=utc_now)
    state: ExchangeState = ExchangeState.PENDING
    error: Optional[Exception] = None

    @property
    def message_ids(self) -> tuple[str, str]:
        return (self.user_message_id, self.placeholder_id)

    def confirm(self):
        self._leave_pending(ExchangeState.CONFIRMED)

    def roll_back(self, error: Exception):
        self._leave_pending(ExchangeState.ROLLED_BACK)
        self.error = error

    def _leave_pending(self, target: ExchangeState):
        if self.state is not ExchangeState.PENDING:
            raise RuntimeError(
                f"Exchange already {self.state.value}, cannot move to {target.value}"
            )
        self.state = target
