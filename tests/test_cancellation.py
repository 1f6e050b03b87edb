"""Tests for cancellation tokens, concurrent fan-out and progress reporting."""
import threading

import pytest

from db_analyser.analyzers import fan_out
from db_analyser.cancellation import CancellationToken
from db_analyser.errors import AnalysisCancelled
from db_analyser.progress import ProgressTracker


class TestCancellationToken:
    def test_callbacks_fire_once(self):
        token = CancellationToken()
        calls = []
        token.register(lambda: calls.append('a'))

        token.cancel()
        token.cancel()
        assert calls == ['a']
        with pytest.raises(AnalysisCancelled):
            token.raise_if_cancelled()

    def test_register_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        assert token.register(lambda: calls.append('late')) is None
        assert calls == ['late']

    def test_on_cancel_unregisters_after_block(self):
        token = CancellationToken()
        calls = []
        with token.on_cancel(lambda: calls.append('in flight')):
            pass
        token.cancel()
        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        token = CancellationToken()
        calls = []

        def broken():
            raise RuntimeError("driver already closed")

        token.register(broken)
        token.register(lambda: calls.append('second'))
        token.cancel()
        assert calls == ['second']

    def test_child_follows_parent_until_detached(self):
        parent = CancellationToken()
        child = CancellationToken(parent)
        detached = CancellationToken(parent)
        detached.detach()

        parent.cancel()
        assert child.cancelled
        assert not detached.cancelled

    def test_cancelling_child_leaves_parent(self):
        parent = CancellationToken()
        CancellationToken(parent).cancel()
        assert not parent.cancelled


class TestFanOut:
    def test_results_are_keyed_by_call(self):
        token = CancellationToken()
        results = fan_out({'a': lambda t: 1, 'b': lambda t: 2}, 2, token)
        assert results == {'a': 1, 'b': 2}

    def test_first_failure_cancels_siblings(self):
        started = threading.Event()
        observed = []

        def slow(child):
            started.set()
            observed.append(child.wait(timeout=5))
            child.raise_if_cancelled()

        def failing(child):
            assert started.wait(timeout=5)
            raise ValueError("bad catalog row")

        token = CancellationToken()
        with pytest.raises(ValueError):
            fan_out({'slow': slow, 'failing': failing}, 2, token)
        assert observed == [True]
        assert not token.cancelled

    def test_parent_cancellation_reaches_calls(self):
        token = CancellationToken()
        started = threading.Event()

        def waiting(child):
            started.set()
            child.wait(timeout=5)
            child.raise_if_cancelled()

        def cancel_when_started():
            started.wait(timeout=5)
            token.cancel()

        canceller = threading.Thread(target=cancel_when_started)
        canceller.start()
        with pytest.raises(AnalysisCancelled):
            fan_out({'waiting': waiting}, 1, token)
        canceller.join()

    def test_no_calls(self):
        assert fan_out({}, 4, CancellationToken()) == {}


class TestProgressTracker:
    def test_events_are_ordered(self):
        events = []
        tracker = ProgressTracker(4, events.append)
        threads = [threading.Thread(target=tracker.step_done, args=(f"step {i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert [e.current for e in events] == [1, 2, 3, 4]
        assert [e.percentage for e in events] == [25.0, 50.0, 75.0, 100.0]

    def test_failing_sink_is_ignored(self):
        def sink(event):
            raise RuntimeError("client went away")

        tracker = ProgressTracker(1, sink)
        tracker.step_done('schema')
        assert tracker.current == 1
