"""Tests for ULID minting and timestamp helpers."""

from datetime import datetime, timezone

import pytest

from chatcore.core.ids import (
    MonotonicClock,
    UlidGenerator,
    is_ulid,
    to_rfc3339,
)


class TestUlidGenerator:
    def test_format(self):
        value = UlidGenerator().new()
        assert len(value) == 26
        assert is_ulid(value)

    def test_monotonic_within_one_millisecond(self):
        gen = UlidGenerator()
        ids = [gen.new(now_ms=1_700_000_000_000) for _ in range(50)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 50

    def test_clock_going_backwards_keeps_order(self):
        gen = UlidGenerator()
        first = gen.new(now_ms=1_700_000_000_500)
        second = gen.new(now_ms=1_700_000_000_100)
        assert second > first

    def test_time_prefix(self):
        gen = UlidGenerator()
        assert gen.new(now_ms=0)[:10] == "0000000000"
        assert gen.new(now_ms=32)[:10] == "0000000010"

    def test_later_millisecond_sorts_later(self):
        gen = UlidGenerator()
        assert gen.new(now_ms=1000) < gen.new(now_ms=2000)

    @pytest.mark.parametrize(
        "value",
        [None, "", "abc", "01HZ0000000000000000000AAI", "01hz0000000000000000000aaa"],
    )
    def test_rejects_non_ulids(self, value):
        assert not is_ulid(value)


class TestTimestamps:
    def test_rfc3339_uses_z_suffix(self):
        ts = datetime(2024, 5, 1, 12, 30, 0, 123456)
        assert to_rfc3339(ts) == "2024-05-01T12:30:00.123456Z"

    def test_none(self):
        assert to_rfc3339(None) is None

    def test_aware_to_rfc3339(self):
        ts = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert to_rfc3339(ts) == "2024-05-01T12:30:00.000000Z"


class TestMonotonicClock:
    def test_strictly_increasing(self):
        clock = MonotonicClock()
        values = [clock.now() for _ in range(200)]
        assert all(b > a for a, b in zip(values, values[1:]))
