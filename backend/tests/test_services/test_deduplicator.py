"""Tests for the in-flight request deduplicator."""
import threading

import pytest
from citybingo.services.deduplicator import RequestDeduplicator


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dedup(clock):
    return RequestDeduplicator(stale_after_seconds=120, time_fn=clock)


class TestTryAcquire:
    def test_first_request_accepted(self, dedup):
        decision = dedup.try_acquire("nyc:nyc-1")
        assert decision.accepted is True
        assert decision.duplicate is False
        assert len(dedup) == 1

    def test_second_request_within_window_rejected(self, dedup, clock):
        first = dedup.try_acquire("nyc:nyc-1")
        clock.now += 12.5
        second = dedup.try_acquire("nyc:nyc-1")
        assert first.accepted is True
        assert second.accepted is False
        assert second.reason == "already being generated"
        assert second.elapsed_ms == 12500
        assert second.started_at == first.started_at

    def test_different_keys_are_independent(self, dedup):
        assert dedup.try_acquire("nyc:nyc-1").accepted
        assert dedup.try_acquire("nyc:nyc-2").accepted
        assert dedup.try_acquire("paris:nyc-1").accepted
        assert len(dedup) == 3

    def test_stale_record_taken_over(self, dedup, clock):
        dedup.try_acquire("nyc:nyc-1")
        clock.now += 121
        decision = dedup.try_acquire("nyc:nyc-1")
        assert decision.accepted is True
        assert decision.took_over_stale is True
        assert decision.started_at == clock.now

    def test_record_just_inside_window_still_blocks(self, dedup, clock):
        dedup.try_acquire("nyc:nyc-1")
        clock.now += 119.9
        assert dedup.try_acquire("nyc:nyc-1").duplicate

    def test_concurrent_acquire_exactly_one_wins(self):
        dedup = RequestDeduplicator()
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(dedup.try_acquire("nyc:nyc-1").accepted)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


class TestRelease:
    def test_release_allows_new_job(self, dedup):
        dedup.try_acquire("nyc:nyc-1")
        dedup.release("nyc:nyc-1")
        assert dedup.try_acquire("nyc:nyc-1").accepted

    def test_release_unknown_key_is_noop(self, dedup):
        dedup.release("nyc:missing")
        assert len(dedup) == 0

    def test_stale_job_does_not_evict_successor(self, dedup, clock):
        old = dedup.try_acquire("nyc:nyc-1")
        clock.now += 130
        new = dedup.try_acquire("nyc:nyc-1")
        dedup.release("nyc:nyc-1", started_at=old.started_at)
        assert [r.started_at for r in dedup.in_flight()] == [new.started_at]


class TestGuard:
    def test_guard_releases_on_success(self, dedup):
        with dedup.guard("nyc:nyc-1") as decision:
            assert decision.accepted
            assert len(dedup) == 1
        assert len(dedup) == 0

    def test_guard_releases_on_exception(self, dedup):
        with pytest.raises(RuntimeError):
            with dedup.guard("nyc:nyc-1"):
                raise RuntimeError("boom")
        assert len(dedup) == 0

    def test_rejected_guard_keeps_owner_record(self, dedup):
        dedup.try_acquire("nyc:nyc-1")
        with dedup.guard("nyc:nyc-1") as decision:
            assert decision.duplicate
        assert len(dedup) == 1


class TestInFlight:
    def test_in_flight_sorted_by_start(self, dedup, clock):
        dedup.try_acquire("nyc:b")
        clock.now += 1
        dedup.try_acquire("nyc:a")
        assert [r.key for r in dedup.in_flight()] == ["nyc:b", "nyc:a"]

    def test_reset_clears_everything(self, dedup):
        dedup.try_acquire("nyc:a")
        dedup.try_acquire("nyc:b")
        dedup.reset()
        assert dedup.in_flight() == []
