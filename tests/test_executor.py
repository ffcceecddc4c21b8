"""
Tests for the bounded concurrency executor.
"""

import threading
import time

import pytest

from chainsync.executor import run_bounded


class InFlightCounter:
    def __init__(self, delay=0.005):
        self.delay = delay
        self.current = 0
        self.peak = 0
        self.lock = threading.Lock()

    def __call__(self, item):
        with self.lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        try:
            time.sleep(self.delay)
            return item * 2
        finally:
            with self.lock:
                self.current -= 1


class TestRunBounded:

    def test_never_exceeds_ceiling(self):
        """200 tasks under a ceiling of 50: never more than 50 at once, all 200 returned."""
        counter = InFlightCounter()
        outcomes = run_bounded(list(range(200)), counter, max_concurrency=50)

        assert counter.peak <= 50
        assert counter.peak > 1
        assert len(outcomes) == 200
        assert all(o.ok for o in outcomes)

    def test_results_follow_input_order(self):
        def slow_for_small(item):
            time.sleep(0.001 * (10 - item))
            return item

        outcomes = run_bounded(list(range(10)), slow_for_small, max_concurrency=10)
        assert [o.value for o in outcomes] == list(range(10))
        assert [o.item for o in outcomes] == list(range(10))

    def test_failure_does_not_cancel_siblings(self):
        def flaky(item):
            if item % 3 == 0:
                raise RuntimeError(f"bad {item}")
            return item

        outcomes = run_bounded(list(range(12)), flaky, max_concurrency=4)

        assert len(outcomes) == 12
        failed = [o.item for o in outcomes if not o.ok]
        assert failed == [0, 3, 6, 9]
        assert isinstance(outcomes[3].error, RuntimeError)
        assert [o.value for o in outcomes if o.ok] == [1, 2, 4, 5, 7, 8, 10, 11]

    def test_ceiling_of_one_is_sequential(self):
        counter = InFlightCounter(delay=0.001)
        run_bounded(list(range(20)), counter, max_concurrency=1)
        assert counter.peak == 1

    def test_empty_input(self):
        assert run_bounded([], lambda x: x, max_concurrency=5) == []

    def test_invalid_ceiling(self):
        with pytest.raises(ValueError):
            run_bounded([1], lambda x: x, max_concurrency=0)
