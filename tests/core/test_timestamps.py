"""
Tests for timestamp and id helpers.
"""

from datetime import UTC, datetime, timedelta, timezone

from cadence.core.timestamps import ensure_utc, from_iso8601, generate_id, to_iso8601


class TestIso8601:
    def test_fixed_width(self):
        assert to_iso8601(datetime(2024, 1, 1, tzinfo=UTC)) == "2024-01-01T00:00:00.000000+00:00"

    def test_converts_offsets_to_utc(self):
        local = datetime(2024, 1, 1, 9, 0, tzinfo=timezone(timedelta(hours=-8)))
        assert to_iso8601(local) == "2024-01-01T17:00:00.000000+00:00"

    def test_lexical_order_is_chronological(self):
        early = to_iso8601(datetime(2024, 1, 1, 9, 0, 0, 5, tzinfo=UTC))
        late = to_iso8601(datetime(2024, 1, 1, 9, 0, 1, tzinfo=UTC))
        assert early < late

    def test_parse(self):
        parsed = from_iso8601("2024-01-01T17:00:00.000000+00:00")
        assert parsed == datetime(2024, 1, 1, 17, tzinfo=UTC)
        assert from_iso8601(None) is None

    def test_naive_taken_as_utc(self):
        assert ensure_utc(datetime(2024, 1, 1)).tzinfo is UTC


class TestGenerateId:
    def test_prefix_and_uniqueness(self):
        ids = {generate_id("run") for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("run_") and len(i) == 30 for i in ids)
