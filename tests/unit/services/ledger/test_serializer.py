"""Unit tests for MutationSerializer - per-key ordering and isolation."""

import threading
import time

import pytest

from lotbook.services.ledger.serializer import KeyState, MutationSerializer


@pytest.fixture
def serializer():
    serializer = MutationSerializer(max_workers=4)
    yield serializer
    serializer.shutdown(wait=True)


class TestOrdering:
    def test_items_for_one_key_run_in_submission_order(self, serializer: MutationSerializer) -> None:
        seen: list[int] = []
        futures = [serializer.submit("k1", lambda i=i: seen.append(i)) for i in range(200)]

        for future in futures:
            future.result(timeout=5)

        assert seen == list(range(200))

    def test_at_most_one_item_in_flight_per_key(self, serializer: MutationSerializer) -> None:
        lock = threading.Lock()
        active = 0
        peak = 0

        def work() -> None:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.001)
            with lock:
                active -= 1

        futures = [serializer.submit("k1", work) for _ in range(30)]
        for future in futures:
            future.result(timeout=5)

        assert peak == 1

    def test_distinct_keys_run_concurrently(self, serializer: MutationSerializer) -> None:
        # Both items must be in flight at once to pass the barrier
        barrier = threading.Barrier(2, timeout=5)

        first = serializer.submit("k1", barrier.wait)
        second = serializer.submit("k2", barrier.wait)

        first.result(timeout=5)
        second.result(timeout=5)

    def test_run_returns_result(self, serializer: MutationSerializer) -> None:
        assert serializer.run("k1", lambda: 42, timeout=5) == 42


class TestFailures:
    def test_exception_delivered_and_key_recovers(self, serializer: MutationSerializer) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        failed = serializer.submit("k1", boom)
        after = serializer.submit("k1", lambda: "ok")

        with pytest.raises(RuntimeError, match="boom"):
            failed.result(timeout=5)
        assert after.result(timeout=5) == "ok"
        assert isinstance(serializer.last_failure("k1"), RuntimeError)
        assert serializer.state("k1") == KeyState.IDLE

    def test_cancelled_queued_item_is_skipped(self, serializer: MutationSerializer) -> None:
        release = threading.Event()
        ran: list[str] = []

        blocker = serializer.submit("k1", lambda: release.wait(5))
        cancelled = serializer.submit("k1", lambda: ran.append("cancelled"))
        kept = serializer.submit("k1", lambda: ran.append("kept"))

        assert cancelled.cancel() is True
        release.set()
        blocker.result(timeout=5)
        kept.result(timeout=5)

        assert ran == ["kept"]

    def test_submit_after_shutdown(self) -> None:
        serializer = MutationSerializer(max_workers=1)
        serializer.shutdown()

        with pytest.raises(RuntimeError):
            serializer.submit("k1", lambda: None)

    def test_invalid_worker_count(self) -> None:
        with pytest.raises(ValueError):
            MutationSerializer(max_workers=0)


class TestIntrospection:
    def test_pending_and_state(self, serializer: MutationSerializer) -> None:
        started = threading.Event()
        release = threading.Event()

        def block() -> None:
            started.set()
            release.wait(5)

        blocker = serializer.submit("k1", block)
        serializer.submit("k1", lambda: None)
        started.wait(5)

        assert serializer.state("k1") == KeyState.PROCESSING
        assert serializer.pending("k1") == 1

        release.set()
        blocker.result(timeout=5)

    def test_unknown_key_is_idle(self, serializer: MutationSerializer) -> None:
        assert serializer.state("never-seen") == KeyState.IDLE
        assert serializer.pending("never-seen") == 0
