"""In-flight generation tracking to prevent duplicate concurrent jobs.

A single ``RequestDeduplicator`` instance is created per application and
injected into the request handlers. Every accepted job owns one
``InFlightRecord`` until it is released; records older than the staleness
threshold are treated as abandoned and may be taken over by a new job.
"""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_STALE_SECONDS = 120.0


@dataclass(frozen=True)
class InFlightRecord:
    key: str
    started_at: float


@dataclass(frozen=True)
class AcquireDecision:
    """Result of ``try_acquire``: accepted, or rejected with the elapsed time."""
    accepted: bool
    key: str
    started_at: float
    reason: str = ""
    elapsed_ms: int = 0
    took_over_stale: bool = False

    @property
    def duplicate(self) -> bool:
        return not self.accepted


class RequestDeduplicator:
    """Mutex-guarded table of in-flight generation jobs keyed by GenerationKey."""

    def __init__(
        self,
        stale_after_seconds: float = DEFAULT_STALE_SECONDS,
        time_fn: Callable[[], float] | None = None,
    ):
        self.stale_after_seconds = stale_after_seconds
        self._time_fn = time_fn or time.time
        self._lock = threading.Lock()
        self._records: dict[str, InFlightRecord] = {}

    def try_acquire(self, key: str) -> AcquireDecision:
        with self._lock:
            now = self._time_fn()
            existing = self._records.get(key)

            if existing is None:
                self._records[key] = InFlightRecord(key=key, started_at=now)
                return AcquireDecision(accepted=True, key=key, started_at=now)

            elapsed = max(0.0, now - existing.started_at)
            if elapsed < self.stale_after_seconds:
                return AcquireDecision(
                    accepted=False,
                    key=key,
                    started_at=existing.started_at,
                    reason="already being generated",
                    elapsed_ms=int(elapsed * 1000),
                )

            self._records[key] = InFlightRecord(key=key, started_at=now)

        logger.warning(
            "In-flight record for %s is %.0fs old; treating it as abandoned",
            key, elapsed,
        )
        return AcquireDecision(
            accepted=True, key=key, started_at=now,
            elapsed_ms=int(elapsed * 1000), took_over_stale=True,
        )

    def release(self, key: str, started_at: float | None = None) -> None:
        """Remove the record for *key*.

        With *started_at*, only the record created by that acquisition is
        removed, so a job whose record was taken over after going stale does
        not evict its successor.
        """
        with self._lock:
            existing = self._records.get(key)
            if existing is None:
                return
            if started_at is not None and existing.started_at != started_at:
                logger.info("Skipping release of %s: record belongs to a newer job", key)
                return
            del self._records[key]

    @contextmanager
    def guard(self, key: str) -> Iterator[AcquireDecision]:
        """Acquire *key* and release it on every exit path if it was accepted."""
        decision = self.try_acquire(key)
        try:
            yield decision
        finally:
            if decision.accepted:
                self.release(key, started_at=decision.started_at)

    def in_flight(self) -> list[InFlightRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.started_at)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
