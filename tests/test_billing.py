"""
Unit tests for the billing engine.

Tests midpoint billing, the grace window and timeline marks.
"""

import pytest

from dance_timer.core.billing import (
    GRACE_PERIOD_SECONDS,
    billing_tier,
    calculate_cost,
    calculate_raw,
    current_song_index,
    effective_grace_seconds,
    grace_remaining_seconds,
    grace_saved_amount,
    is_in_grace_period,
    quote,
    song_count,
    song_duration_seconds,
    timeline_marks,
)
from dance_timer.storage.models import PriceTier

FOUR_MIN = (PriceTier(duration_minutes=4, price=20),)
THREE_MIN = (PriceTier(duration_minutes=3, price=10),)


class TestMidpointBilling:
    """Test cost and song count without the grace window in play."""

    @pytest.mark.parametrize("elapsed,expected", [
        (0, 0),
        (119, 0),
        (120, 20),
        (239, 20),
        (270, 20),
        (359, 20),
        (360, 40),
        (600, 60),
    ])
    def test_four_minute_song_costs(self, elapsed, expected):
        """A song is charged once its midpoint is reached."""
        assert calculate_cost(elapsed, FOUR_MIN) == expected

    def test_song_count_matches_cost(self):
        """Song count times price always equals the cost."""
        for elapsed in range(0, 1500):
            count = song_count(elapsed, FOUR_MIN)
            assert count * 20 == calculate_cost(elapsed, FOUR_MIN)

    def test_cost_never_decreases(self):
        """Cost is monotonic in elapsed time."""
        previous = 0.0
        for elapsed in range(0, 2000):
            cost = calculate_cost(elapsed, FOUR_MIN)
            assert cost >= previous
            previous = cost

    def test_shortest_tier_is_used(self):
        """Only the shortest tier defines the metered song."""
        tiers = (PriceTier(duration_minutes=4, price=20), PriceTier(duration_minutes=1, price=5))
        assert billing_tier(tiers).duration_minutes == 1
        assert song_duration_seconds(tiers) == 60
        assert calculate_cost(90, tiers) == 10

    def test_three_minute_song_outside_grace(self):
        """269 s on a 3 minute song is past the grace window."""
        result = quote(269, THREE_MIN)
        assert result.cost == 10
        assert result.song_count == 1
        assert not result.is_in_grace_period

    def test_same_inputs_same_result(self):
        """Billing is a pure function."""
        assert quote(777, FOUR_MIN) == quote(777, FOUR_MIN)


class TestNothingToBill:
    """Test rules that cannot produce a charge."""

    def test_no_tiers(self):
        """Without tiers every output is zero."""
        result = quote(500, ())
        assert result.cost == 0
        assert result.song_count == 0
        assert result.current_song_index == 0
        assert not result.is_in_grace_period
        assert billing_tier(()) is None

    def test_song_shorter_than_one_second(self):
        """A duration that rounds to zero seconds bills nothing."""
        tiers = (PriceTier(duration_minutes=0.005, price=10),)
        assert song_duration_seconds(tiers) == 0
        assert calculate_cost(1000, tiers) == 0
        assert list(timeline_marks(tiers)) == []

    def test_free_rule(self):
        """A zero price is billable but always costs nothing."""
        tiers = (PriceTier(duration_minutes=2, price=0),)
        assert calculate_cost(1000, tiers) == 0
        assert song_count(1000, tiers) == 8


class TestGraceWindow:
    """Test the stop buffer after each song boundary."""

    def test_grace_window_bounds(self):
        """Grace covers [k * period, k * period + 30) for k >= 1."""
        assert not is_in_grace_period(0, FOUR_MIN)
        assert not is_in_grace_period(29, FOUR_MIN)
        assert not is_in_grace_period(239, FOUR_MIN)
        assert is_in_grace_period(240, FOUR_MIN)
        assert is_in_grace_period(269, FOUR_MIN)
        assert not is_in_grace_period(270, FOUR_MIN)
        assert is_in_grace_period(480, FOUR_MIN)

    def test_grace_remaining(self):
        assert grace_remaining_seconds(240, FOUR_MIN) == 30
        assert grace_remaining_seconds(269, FOUR_MIN) == 1
        assert grace_remaining_seconds(270, FOUR_MIN) == 0

    def test_cost_held_during_grace(self):
        """Grace bills as one second before the boundary."""
        assert calculate_cost(240, FOUR_MIN) == calculate_cost(239, FOUR_MIN) == 20
        assert calculate_cost(269, FOUR_MIN) == 20

    def test_saved_amount_matches_raw_difference(self):
        """Saved amount is raw minus billed cost, and zero under midpoint billing."""
        for elapsed in range(240, 270):
            saved = grace_saved_amount(elapsed, FOUR_MIN)
            assert saved == calculate_raw(elapsed, FOUR_MIN) - calculate_cost(elapsed, FOUR_MIN)
            assert saved == 0

    def test_grace_capped_at_half_song(self):
        """A 30 second song gets a 15 second window."""
        tiers = (PriceTier(duration_minutes=0.5, price=1),)
        assert effective_grace_seconds(tiers) == 15
        assert is_in_grace_period(44, tiers)
        assert not is_in_grace_period(45, tiers)

    def test_grace_disabled(self):
        assert GRACE_PERIOD_SECONDS == 30
        assert not is_in_grace_period(240, FOUR_MIN, grace_seconds=0)

    def test_song_index_ignores_grace(self):
        """The current song advances at the real boundary."""
        assert current_song_index(0, FOUR_MIN) == 0
        assert current_song_index(239, FOUR_MIN) == 0
        assert current_song_index(240, FOUR_MIN) == 1

    def test_quote_in_grace(self):
        result = quote(240, FOUR_MIN)
        assert result.is_in_grace_period
        assert result.grace_remaining_seconds == 30
        assert result.raw_cost == 20
        assert result.cost == 20
        assert result.grace_saved_amount == 0


class TestTimelineMarks:
    """Test charge points for progress displays."""

    def test_marks_at_midpoints(self):
        marks = list(timeline_marks(FOUR_MIN, max_minutes=10))
        assert marks == [(2.0, 20), (6.0, 40), (10.0, 60)]

    def test_default_range_is_one_hour(self):
        marks = list(timeline_marks(FOUR_MIN))
        assert len(marks) == 15
        assert marks[-1] == (58.0, 300)

    def test_marks_can_be_iterated_again(self):
        marks = timeline_marks(THREE_MIN, max_minutes=20)
        assert list(marks) == list(marks)

    def test_no_marks_without_tiers(self):
        assert list(timeline_marks(())) == []
