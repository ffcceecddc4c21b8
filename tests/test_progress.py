"""
Tests for progress tracking.
"""

from chainsync.progress import ProgressState, ProgressTracker, memory_usage_mb


def progress_lines(events):
    return [e for e in events if "progress:" in e.message]


class TestProgressState:

    def test_percent(self):
        assert ProgressState(processed_span=250, total_span=1000).percent == 25.0

    def test_empty_span_is_complete(self):
        assert ProgressState(total_span=0).percent == 100.0

    def test_percent_is_capped(self):
        assert ProgressState(processed_span=20, total_span=10).percent == 100.0


class TestProgressTracker:

    def test_throttles_small_steps(self, events):
        tracker = ProgressTracker(10000, label="Code migration")

        assert tracker.advance(9990, 10) is True
        assert tracker.advance(9985, 15) is False
        assert tracker.advance(9970, 30) is True

        lines = progress_lines(events)
        assert [e.message for e in lines] == [
            "Code migration progress: 0.1%",
            "Code migration progress: 0.3%",
        ]
        assert lines[0].context["boundary"] == 9990
        assert lines[0].context["memory_mb"] > 0

    def test_boundary_tracks_every_advance(self):
        tracker = ProgressTracker(10000)
        tracker.advance(9995, 5)
        tracker.advance(9991, 9)
        assert tracker.current_boundary == 9991

    def test_emission_count_is_bounded(self, events):
        """Advancing one key at a time over 10000 keys emits at most ~1000 lines."""
        tracker = ProgressTracker(10000)

        for processed in range(1, 10001):
            tracker.advance(10000 - processed, processed)

        assert tracker.emitted <= 1001
        assert len(progress_lines(events)) == tracker.emitted

    def test_finish(self, events):
        tracker = ProgressTracker(100, label="Balance sync")
        tracker.advance(40, 40)

        tracker.finish(37, updated=30)

        final = events[-1]
        assert final.message == "Balance sync completed: 37 rows processed (100.0%)"
        assert final.context == {"boundary": 40, "updated": 30}
        assert tracker.state.percent == 100.0


class TestMemoryUsage:

    def test_is_positive(self):
        assert memory_usage_mb() > 0

    def test_reports_current_not_peak_usage(self):
        before = memory_usage_mb()
        block = bytearray(200 * 1024 * 1024)
        block[::4096] = b"\x01" * len(block[::4096])
        during = memory_usage_mb()
        del block
        after = memory_usage_mb()

        assert during > before + 100
        assert after < during - 100
