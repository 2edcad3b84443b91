"""
Tests for display formatting.
"""

from datetime import datetime

import pytest

from dance_timer.core.formatting import (
    billing_summary_text,
    describe_state,
    format_cost,
    format_duration,
    format_start_time,
)
from dance_timer.core.timer_state import IDLE, Finished, Running
from dance_timer.storage.models import PriceTier

FOUR_MIN = (PriceTier(duration_minutes=4, price=20),)


class TestValueFormatting:
    """Test duration, cost and time formatting."""

    @pytest.mark.parametrize("seconds,expected", [
        (0, "0:00"),
        (65, "1:05"),
        (3725, "62:05"),
        (-3, "0:00"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_format_cost(self):
        assert format_cost(20.0) == "¥20"
        assert format_cost(12.5) == "¥12.5"
        assert format_cost(0) == "¥0"
        assert format_cost(7, symbol="$") == "$7"

    def test_format_start_time(self):
        assert format_start_time(datetime(2024, 5, 1, 9, 7)) == "09:07"


class TestBillingSummary:
    """Test the one-line billing status."""

    def test_in_grace(self):
        assert billing_summary_text(503, FOUR_MIN) == "Grace 7s · 2 songs · ¥40"

    def test_under_one_song(self):
        assert billing_summary_text(60, FOUR_MIN) == "Under 1 song · ¥0"

    def test_regular(self):
        assert billing_summary_text(400, FOUR_MIN) == "2 songs · ¥40"
        assert billing_summary_text(150, FOUR_MIN) == "1 song · ¥20"

    def test_no_tiers(self):
        assert billing_summary_text(400, ()) == ""


class TestDescribeState:
    """Test renderer text for each timer state."""

    def test_idle(self):
        assert describe_state(IDLE) == "Ready"

    def test_running(self):
        state = Running(elapsed_seconds=400, rule_name="4 min / 20", tiers=FOUR_MIN)
        assert describe_state(state) == "Dancing 6:40 · 4 min / 20 · 2 songs · ¥40"

    def test_paused_auto_started(self):
        state = Running(elapsed_seconds=5, rule_name="Free", is_paused=True, is_auto_started=True)
        assert describe_state(state) == "Paused 0:05 · Free (auto)"

    def test_finished(self):
        state = Finished(
            duration_seconds=250,
            cost=20,
            song_count=1,
            rule_name="4 min / 20",
            rule_id=1,
            start_time_millis=0,
            end_time_millis=250_000,
            is_grace_applied=True,
        )
        assert describe_state(state) == "Finished 4:10 · 1 song · ¥20 (grace applied)"

    def test_unknown_state(self):
        with pytest.raises(TypeError):
            describe_state(object())
