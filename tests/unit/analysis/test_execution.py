"""Unit tests for cancellation and index-keyed parallel execution."""

import threading
import time

import pytest

from netsynth.analysis.execution import CancellationToken, map_indexed
from netsynth.exceptions import AnalysisCancelledError


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initially_active(self) -> None:
        token = CancellationToken()

        assert token.cancelled is False
        token.raise_if_cancelled("fit")

    def test_cancel(self) -> None:
        token = CancellationToken()
        token.cancel()

        assert token.cancelled is True
        with pytest.raises(AnalysisCancelledError, match="fit was cancelled") as exc_info:
            token.raise_if_cancelled("fit")
        assert exc_info.value.operation == "fit"


class TestMapIndexed:
    """Tests for map_indexed."""

    def test_sequential_order(self) -> None:
        assert map_indexed(lambda x: x * x, range(5)) == [0, 1, 4, 9, 16]

    def test_parallel_preserves_input_order(self) -> None:
        """Results are merged by position, not completion order."""

        def slow_first(x: int) -> int:
            time.sleep(0.01 * (5 - x))
            return x

        assert map_indexed(slow_first, range(5), max_workers=5) == [0, 1, 2, 3, 4]

    def test_parallel_uses_threads(self) -> None:
        seen = set()
        lock = threading.Lock()

        def record(x: int) -> int:
            with lock:
                seen.add(threading.get_ident())
            time.sleep(0.01)
            return x

        map_indexed(record, range(8), max_workers=4)

        assert len(seen) > 1

    def test_empty(self) -> None:
        assert map_indexed(lambda x: x, [], max_workers=4) == []

    def test_cancelled_before_start(self) -> None:
        token = CancellationToken()
        token.cancel()
        calls = []

        with pytest.raises(AnalysisCancelledError, match="node splitting"):
            map_indexed(calls.append, range(3), token=token, operation="node splitting")
        assert calls == []

    def test_cancelled_midway(self) -> None:
        """Items after cancellation are not computed."""
        token = CancellationToken()
        calls = []

        def step(x: int) -> int:
            calls.append(x)
            if x == 1:
                token.cancel()
            return x

        with pytest.raises(AnalysisCancelledError):
            map_indexed(step, range(5), token=token)
        assert calls == [0, 1]

    def test_errors_propagate(self) -> None:
        def fail(x: int) -> int:
            if x == 2:
                raise ValueError("bad item")
            return x

        with pytest.raises(ValueError, match="bad item"):
            map_indexed(fail, range(4), max_workers=2)
