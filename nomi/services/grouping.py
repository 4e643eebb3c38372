from datetime import datetime
from typing import Iterable, Optional

from nomi.models.schemas import Conversation, ConversationGroup

TODAY = "Today"
YESTERDAY = "Yesterday"
PREVIOUS_7_DAYS = "Previous 7 Days"
OLDER = "Older"

BUCKET_ORDER = (TODAY, YESTERDAY, PREVIOUS_7_DAYS, OLDER)


def bucket_for(updated_at: datetime, now: datetime) -> str:
    """Name the bucket for one timestamp by calendar days in `now`'s timezone.

    Timestamps later than today (clock skew) count as today.
    """
    local = updated_at.astimezone(now.tzinfo) if updated_at.tzinfo else updated_at
    days_ago = (now.date() - local.date()).days
    if days_ago <= 0:
        return TODAY
    if days_ago == 1:
        return YESTERDAY
    if days_ago <= 7:
        return PREVIOUS_7_DAYS
    return OLDER


def group_conversations(
    conversations: Iterable[Conversation], now: Optional[datetime] = None
) -> list[ConversationGroup]:
    """Partition conversations into date buckets, omitting empty ones.

    `now` defaults to the local wall clock. Relative order inside each
    bucket is preserved from the input.
    """
    if now is None:
        now = datetime.now().astimezone()
    elif now.tzinfo is None:
        now = now.astimezone()

    buckets: dict[str, list[Conversation]] = {name: [] for name in BUCKET_ORDER}
    for conversation in conversations:
        buckets[bucket_for(conversation.updated_at, now)].append(conversation)

    return [
        ConversationGroup(title=name, conversations=tuple(buckets[name]))
        for name in BUCKET_ORDER
        if buckets[name]
    ]
