from collections import OrderedDict
from typing import Optional

from nomi.models.schemas import Message


class MessageCache:
    """Least-recently-used store of the last message page per conversation."""

    def __init__(self, capacity: int = 32):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._entries: OrderedDict[str, tuple[Message, ...]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def get(self, conversation_id: str) -> Optional[tuple[Message, ...]]:
        messages = self._entries.get(conversation_id)
        if messages is not None:
            self._entries.move_to_end(conversation_id)
        return messages

    def put(self, conversation_id: str, messages) -> None:
        self._entries[conversation_id] = tuple(messages)
        self._entries.move_to_end(conversation_id)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def discard(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)
