"""
Unit tests for the stream models.

Covers validation, Helix parsing and the state transition helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from speedbot.models import ObservedStream, StreamRecord, StreamRecordError, Transition

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

HELIX_STREAM = {
    "id": "40952121085",
    "user_id": "101051819",
    "user_login": "afro",
    "user_name": "Afro",
    "game_id": "32982",
    "game_name": "Grand Theft Auto V",
    "type": "live",
    "title": "Any% glitchless attempts",
    "tags": ["English", "Speedrun"],
    "viewer_count": 1490,
    "thumbnail_url": "https://static-cdn.jtvnw.net/previews-ttv/live_user_afro-{width}x{height}.jpg",
}


class TestObservedStream:

    def test_from_helix(self):
        stream = ObservedStream.from_helix(HELIX_STREAM)

        assert stream.external_user_id == "101051819"
        assert stream.display_name == "Afro"
        assert stream.login_name == "afro"
        assert stream.stream_id == "40952121085"
        assert stream.tag_ids == frozenset({"English", "Speedrun"})
        assert stream.game_name == "Grand Theft Auto V"

    def test_from_helix_missing_optional_fields(self):
        stream = ObservedStream.from_helix({"user_id": 7, "title": None})

        assert stream.external_user_id == "7"
        assert stream.display_name == "7"
        assert stream.title == ""
        assert stream.tag_ids == frozenset()
        assert stream.stream_id is None

    def test_empty_user_id_rejected(self):
        with pytest.raises(ValidationError):
            ObservedStream(external_user_id="  ", display_name="x")

    def test_is_frozen(self):
        stream = ObservedStream(external_user_id="1", display_name="x")

        with pytest.raises(ValidationError):
            stream.title = "changed"


class TestStreamRecord:

    def _observed(self, name="Runner", game="Celeste"):
        return ObservedStream(external_user_id="1", display_name=name, game_name=game)

    def test_live_with_offline_since_rejected(self):
        with pytest.raises(StreamRecordError):
            StreamRecord(external_user_id="1", display_name="x", is_live=True, offline_since=T0)

    def test_naive_timestamps_become_utc(self):
        record = StreamRecord(
            external_user_id="1", display_name="x", last_notified_at=datetime(2024, 1, 1, 8, 0)
        )

        assert record.last_notified_at.tzinfo == timezone.utc

    def test_first_seen(self):
        record = StreamRecord.first_seen(self._observed(), T0)

        assert record.is_live
        assert record.offline_since is None
        assert record.last_notified_at == T0
        assert record.game_name == "Celeste"

    def test_gone_live_keeps_previous_notification(self):
        earlier = T0 - timedelta(hours=8)
        record = StreamRecord(
            external_user_id="1", display_name="Old", offline_since=T0 - timedelta(hours=1),
            last_notified_at=earlier,
        )

        updated = record.gone_live(self._observed(name="New"), None)

        assert updated.is_live
        assert updated.offline_since is None
        assert updated.last_notified_at == earlier
        assert updated.display_name == "New"
        assert record.is_live is False

    def test_gone_live_with_notification(self):
        record = StreamRecord(external_user_id="1", display_name="x", offline_since=T0)

        assert record.gone_live(self._observed(), T0).last_notified_at == T0

    def test_refreshed_keeps_state(self):
        record = StreamRecord(external_user_id="1", display_name="x", is_live=True, last_notified_at=T0)

        updated = record.refreshed(self._observed(name="Renamed", game=None))

        assert updated.display_name == "Renamed"
        assert updated.is_live
        assert updated.last_notified_at == T0

    def test_ended(self):
        record = StreamRecord(external_user_id="1", display_name="x", is_live=True)

        ended = record.ended(T0)

        assert ended.is_live is False
        assert ended.offline_since == T0


class TestTransition:

    def test_values(self):
        assert Transition.NEW == "new"
        assert Transition.GONE_LIVE == "gone_live"
        assert Transition.STILL_LIVE == "still_live"
        assert Transition.ENDED == "ended"
