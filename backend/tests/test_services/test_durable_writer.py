"""Tests for the verified, retried durable writer."""
import asyncio
import threading

import pytest
from citybingo.services.durable_writer import DurableWriter
from citybingo.services.errors import PersistenceFailure, ReferenceNotFound
from citybingo.services.reference_store import SqlReferenceStore


class FlakyStore:
    """Durable store whose first ``drop_writes`` writes are silently lost."""

    def __init__(self, keys=("nyc-1",), drop_writes: int = 0):
        self.rows = {k: None for k in keys}
        self.drop_writes = drop_writes
        self.writes = 0

    def read(self, item_key):
        if item_key not in self.rows:
            raise ReferenceNotFound(item_key)
        return self.rows[item_key]

    def write(self, item_key, ref):
        if item_key not in self.rows:
            raise ReferenceNotFound(item_key)
        self.writes += 1
        if self.writes <= self.drop_writes:
            return
        self.rows[item_key] = ref


class GatedStore(FlakyStore):
    """Store whose write of ``block_ref`` waits until ``gate`` is set."""

    def __init__(self, block_ref: str, keys=("nyc-1",)):
        super().__init__(keys=keys)
        self.block_ref = block_ref
        self.entered = threading.Event()
        self.gate = threading.Event()

    def write(self, item_key, ref):
        if ref == self.block_ref:
            self.entered.set()
            self.gate.wait(5)
        super().write(item_key, ref)


class TestPersist:
    def test_first_attempt_verifies(self, fake_sleep):
        store = FlakyStore()
        writer = DurableWriter(store, sleep=fake_sleep)
        outcome = asyncio.run(writer.persist("nyc-1", "/images/a.png", started_at=1.0))
        assert outcome.attempts == 1
        assert outcome.superseded is False
        assert store.rows["nyc-1"] == "/images/a.png"
        assert fake_sleep.delays == []

    def test_two_silent_failures_then_success(self, fake_sleep):
        store = FlakyStore(drop_writes=2)
        writer = DurableWriter(store, sleep=fake_sleep)
        outcome = asyncio.run(writer.persist("nyc-1", "/images/a.png", started_at=1.0))
        assert outcome.attempts == 3
        assert store.rows["nyc-1"] == "/images/a.png"
        assert fake_sleep.total >= 1.5
        assert fake_sleep.delays == [0.5, 1.0]

    def test_never_persists_raises_verification_failed(self, fake_sleep):
        store = FlakyStore(drop_writes=100)
        writer = DurableWriter(store, sleep=fake_sleep)
        with pytest.raises(PersistenceFailure) as exc_info:
            asyncio.run(writer.persist("nyc-1", "/images/a.png", started_at=1.0))
        assert exc_info.value.reason == "VerificationFailed"
        assert exc_info.value.attempts == 3
        assert exc_info.value.code == "PersistenceFailure"
        assert fake_sleep.delays == [0.5, 1.0, 2.0]
        assert writer.intended("nyc-1") is None

    def test_missing_item_fails_without_retry(self, fake_sleep):
        writer = DurableWriter(FlakyStore(keys=()), sleep=fake_sleep)
        with pytest.raises(PersistenceFailure) as exc_info:
            asyncio.run(writer.persist("ghost", "/images/a.png"))
        assert exc_info.value.reason == "NotFound"
        assert fake_sleep.delays == []

    def test_older_job_is_superseded(self, fake_sleep):
        store = FlakyStore()
        writer = DurableWriter(store, sleep=fake_sleep)
        asyncio.run(writer.persist("nyc-1", "/images/new.png", started_at=20.0))
        outcome = asyncio.run(writer.persist("nyc-1", "/images/old.png", started_at=10.0))
        assert outcome.superseded is True
        assert store.rows["nyc-1"] == "/images/new.png"
        assert writer.intended("nyc-1") == "/images/new.png"

    def test_newer_job_overrides_older_value(self, fake_sleep):
        store = FlakyStore()
        writer = DurableWriter(store, sleep=fake_sleep)
        asyncio.run(writer.persist("nyc-1", "/images/first.png", started_at=10.0))
        asyncio.run(writer.persist("nyc-1", "/images/second.png", started_at=20.0))
        assert store.rows["nyc-1"] == "/images/second.png"

    def test_late_stale_write_is_restored_to_newer_reference(self, fake_sleep):
        store = GatedStore(block_ref="/images/old.png")
        writer = DurableWriter(store, sleep=fake_sleep)

        async def scenario():
            old_job = asyncio.ensure_future(writer.persist("nyc-1", "/images/old.png", started_at=10.0))
            await asyncio.to_thread(store.entered.wait, 5)
            new_outcome = await writer.persist("nyc-1", "/images/new.png", started_at=20.0)
            store.gate.set()
            return new_outcome, await old_job

        new_outcome, old_outcome = asyncio.run(scenario())
        assert new_outcome.superseded is False
        assert old_outcome.superseded is True
        assert store.rows["nyc-1"] == "/images/new.png"
        assert writer.intended("nyc-1") == "/images/new.png"


class TestIntentTracking:
    def test_finished_intents_are_bounded(self, fake_sleep):
        store = FlakyStore(keys=("nyc-1", "nyc-2", "nyc-3"))
        writer = DurableWriter(store, sleep=fake_sleep, max_tracked=2)
        for n, key in enumerate(("nyc-1", "nyc-2", "nyc-3"), start=1):
            asyncio.run(writer.persist(key, f"/images/{key}.png", started_at=float(n)))
        assert len(writer) == 2
        assert writer.intended("nyc-1") is None
        assert writer.intended("nyc-3") == "/images/nyc-3.png"

    def test_recent_intent_still_blocks_late_result(self, fake_sleep):
        store = FlakyStore(keys=("nyc-1", "nyc-2"))
        writer = DurableWriter(store, sleep=fake_sleep, max_tracked=2)
        asyncio.run(writer.persist("nyc-1", "/images/new.png", started_at=20.0))
        asyncio.run(writer.persist("nyc-2", "/images/other.png", started_at=21.0))
        outcome = asyncio.run(writer.persist("nyc-1", "/images/old.png", started_at=10.0))
        assert outcome.superseded is True
        assert store.rows["nyc-1"] == "/images/new.png"


class TestSqlReferenceStore:
    def test_round_trip_through_database(self, session_factory, seeded_city, fake_sleep):
        writer = DurableWriter(SqlReferenceStore(session_factory), sleep=fake_sleep)
        outcome = asyncio.run(writer.persist("nyc-1", "/images/nyc-nyc-1-x.png"))
        assert outcome.attempts == 1
        assert SqlReferenceStore(session_factory).read("nyc-1") == "/images/nyc-nyc-1-x.png"

    def test_unknown_item_raises(self, session_factory, seeded_city):
        with pytest.raises(ReferenceNotFound):
            SqlReferenceStore(session_factory).read("nyc-404")
