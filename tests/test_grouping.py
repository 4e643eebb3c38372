from datetime import datetime, timedelta, timezone

from nomi.models.schemas import Conversation
from nomi.services.grouping import bucket_for, group_conversations

UTC = timezone.utc
NOW = datetime(2025, 3, 10, 0, 30, tzinfo=UTC)


def _conv(conv_id: str, updated_at: datetime) -> Conversation:
    return Conversation(id=conv_id, user_id="user-1", created_at=updated_at, updated_at=updated_at)


class TestBucketFor:
    def test_calendar_days_not_elapsed_hours(self):
        # 31 minutes ago, but on the previous calendar day
        assert bucket_for(datetime(2025, 3, 9, 23, 59, tzinfo=UTC), NOW) == "Yesterday"
        assert bucket_for(datetime(2025, 3, 10, 0, 0, tzinfo=UTC), NOW) == "Today"

    def test_week_window_edges(self):
        assert bucket_for(datetime(2025, 3, 8, 23, 0, tzinfo=UTC), NOW) == "Previous 7 Days"
        assert bucket_for(datetime(2025, 3, 3, 1, 0, tzinfo=UTC), NOW) == "Previous 7 Days"
        assert bucket_for(datetime(2025, 3, 2, 23, 59, tzinfo=UTC), NOW) == "Older"

    def test_future_timestamp_counts_as_today(self):
        assert bucket_for(NOW + timedelta(days=2), NOW) == "Today"

    def test_uses_timezone_of_now(self):
        tokyo = timezone(timedelta(hours=9))
        local_now = datetime(2025, 3, 10, 8, 0, tzinfo=tokyo)
        # 23:30 UTC on the 9th is 08:30 on the 10th in Tokyo
        assert bucket_for(datetime(2025, 3, 9, 23, 30, tzinfo=UTC), local_now) == "Today"
        assert bucket_for(datetime(2025, 3, 9, 14, 0, tzinfo=UTC), local_now) == "Yesterday"


class TestGroupConversations:
    def test_empty_buckets_omitted(self):
        groups = group_conversations([_conv("a", NOW), _conv("b", NOW - timedelta(days=30))], now=NOW)
        assert [g.title for g in groups] == ["Today", "Older"]

    def test_no_conversations(self):
        assert group_conversations([], now=NOW) == []

    def test_order_within_bucket_preserved(self):
        convos = [
            _conv("newest", NOW),
            _conv("middle", NOW - timedelta(minutes=10)),
            _conv("oldest", NOW - timedelta(minutes=20)),
        ]
        groups = group_conversations(convos, now=NOW)
        assert [c.id for c in groups[0].conversations] == ["newest", "middle", "oldest"]

    def test_partition_is_disjoint_and_complete(self):
        convos = [_conv(f"c{h}", NOW - timedelta(hours=h)) for h in range(0, 24 * 20, 5)]
        groups = group_conversations(convos, now=NOW)

        seen = [c.id for g in groups for c in g.conversations]
        assert len(seen) == len(set(seen))
        assert set(seen) == {c.id for c in convos}
        assert [g.title for g in groups] == ["Today", "Yesterday", "Previous 7 Days", "Older"]
