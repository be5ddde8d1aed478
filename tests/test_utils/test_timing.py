"""Tests for timing helpers."""

import pytest

from ilm.utils.timing import Timer, timed_section


class TestTimedSection:
    """Tests for timed_section."""

    def test_records_times(self):
        """Start, end and duration are filled in when the block exits."""
        with timed_section("work") as timing:
            assert timing.finished_at is None

        assert timing.finished_at >= timing.started_at
        assert timing.elapsed_seconds >= 0
        assert timing.to_dict()["name"] == "work"

    def test_completed_on_error(self):
        """Timing is completed even when the block raises."""
        with pytest.raises(ValueError):
            with timed_section("failing") as timing:
                raise ValueError("boom")

        assert timing.finished_at is not None


class TestTimer:
    """Tests for Timer."""

    def test_stop_returns_elapsed(self):
        """stop() returns non-negative elapsed seconds."""
        timer = Timer()

        assert timer.stop() >= 0
        assert timer.elapsed() >= 0

    def test_unstarted_timer(self):
        """A timer that was never started cannot be stopped."""
        timer = Timer(auto_start=False)

        with pytest.raises(RuntimeError, match="never started"):
            timer.stop()
