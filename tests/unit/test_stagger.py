"""Unit tests for golden-ratio stagger offsets and trigger sequences."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from heartbeat_trader import stagger
from heartbeat_trader.errors import InvalidArgument

T0 = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class TestOffsets:
    def test_golden_offset_formula(self):
        assert stagger.golden_offset(0, 300) == 0
        assert stagger.golden_offset(1, 300) == 185
        assert stagger.golden_offset(2, 300) == 70
        assert stagger.golden_offset(3, 300) == 256

    def test_offsets_within_interval(self):
        pairs = [(i, 300) for i in range(1, 50)]
        offsets = stagger.compute_offsets(pairs)
        assert all(0 <= o < 300 for o in offsets.values())

    def test_offsets_distinct_for_shared_interval(self):
        pairs = [(i, 300) for i in range(1, 101)]
        offsets = stagger.compute_offsets(pairs)
        assert len(set(offsets.values())) == 100

    def test_collision_probes_forward(self):
        """Index 5 with T=10 lands on 0 which index 0 holds, so it takes 1."""
        offsets = stagger.compute_offsets([(i, 10) for i in range(1, 7)])
        assert offsets == {1: 0, 2: 6, 3: 2, 4: 8, 5: 4, 6: 1}

    def test_more_traders_than_slots(self):
        offsets = stagger.compute_offsets([(i, 3) for i in range(1, 6)])
        assert len(offsets) == 5
        assert set(offsets.values()) <= {0, 1, 2}

    def test_deterministic(self):
        pairs = [(7, 60), (3, 300), (9, 60), (1, 900)]
        assert stagger.compute_offsets(pairs) == stagger.compute_offsets(pairs)

    def test_mixed_intervals(self):
        offsets = stagger.compute_offsets([(1, 60), (2, 300)])
        assert offsets[1] == 0
        assert offsets[2] == stagger.golden_offset(1, 300)

    @pytest.mark.parametrize("interval", [0, -60, 1.5, True, None])
    def test_invalid_interval(self, interval):
        with pytest.raises(InvalidArgument):
            stagger.golden_offset(1, interval)


class TestTriggers:
    def test_first_and_next(self):
        first = stagger.first_trigger(T0, 60, 15)
        assert first == T0 + timedelta(seconds=15)
        assert stagger.next_trigger(first, 60) == T0 + timedelta(seconds=75)

    def test_negative_offset(self):
        with pytest.raises(InvalidArgument):
            stagger.first_trigger(T0, 60, -1)

    def test_generate_inclusive(self):
        triggers = stagger.generate_triggers(T0, T0 + timedelta(seconds=190), 60, 10)
        assert triggers == [T0 + timedelta(seconds=s) for s in (10, 70, 130, 190)]

    def test_generate_empty_when_offset_past_end(self):
        assert stagger.generate_triggers(T0, T0 + timedelta(seconds=5), 60, 10) == []

    def test_triggers_between_aligns_to_anchor(self):
        anchor = T0 + timedelta(seconds=10)
        triggers = stagger.triggers_between(
            anchor, 60, T0 + timedelta(seconds=60), T0 + timedelta(seconds=210)
        )
        assert triggers == [T0 + timedelta(seconds=s) for s in (70, 130, 190)]

    def test_triggers_between_range_before_anchor(self):
        anchor = T0 + timedelta(seconds=100)
        triggers = stagger.triggers_between(anchor, 60, T0, T0 + timedelta(seconds=220))
        assert triggers == [anchor, anchor + timedelta(seconds=60), anchor + timedelta(seconds=120)]

    def test_advance_past_next_slot(self):
        nxt = stagger.advance_past(T0, 60, T0 + timedelta(seconds=30))
        assert nxt == T0 + timedelta(seconds=60)

    def test_advance_past_skips_missed(self):
        nxt = stagger.advance_past(T0, 60, T0 + timedelta(seconds=150))
        assert nxt == T0 + timedelta(seconds=180)

    def test_advance_past_strictly_after_now(self):
        nxt = stagger.advance_past(T0, 60, T0 + timedelta(seconds=60))
        assert nxt == T0 + timedelta(seconds=120)
