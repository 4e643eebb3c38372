import pytest

from nomi.models.schemas import Message
from nomi.services.message_cache import MessageCache


def _msgs(conv_id: str, n: int = 1) -> list[Message]:
    return [Message(id=f"{conv_id}-{i}", conversation_id=conv_id, role="user", content=str(i)) for i in range(n)]


class TestMessageCache:
    def test_put_and_get(self):
        cache = MessageCache(capacity=2)
        cache.put("a", _msgs("a", 2))
        assert [m.id for m in cache.get("a")] == ["a-0", "a-1"]
        assert cache.get("missing") is None

    def test_evicts_least_recently_used(self):
        cache = MessageCache(capacity=2)
        cache.put("a", _msgs("a"))
        cache.put("b", _msgs("b"))
        cache.get("a")
        cache.put("c", _msgs("c"))

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_stored_page_is_a_snapshot(self):
        cache = MessageCache()
        page = _msgs("a", 1)
        cache.put("a", page)
        page.append(_msgs("a", 2)[1])
        assert len(cache.get("a")) == 1

    def test_discard(self):
        cache = MessageCache()
        cache.put("a", _msgs("a"))
        cache.discard("a")
        cache.discard("never-there")
        assert "a" not in cache

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            MessageCache(capacity=0)
