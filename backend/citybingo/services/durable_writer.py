"""Verified, retried persistence of an item's artifact reference.

A successful ``write`` from the store is not trusted on its own: every
attempt re-reads the row and compares it with the value currently intended
for the key. Intents are ordered by job start time, so a job that finishes
after a newer job for the same item has already registered its reference
becomes a no-op instead of regressing the row. A job whose write lands after
a newer intent was registered writes the newer reference back before
returning.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field

from citybingo.services.errors import PersistenceFailure, ReferenceNotFound
from citybingo.services.reference_store import ReferenceStore
from citybingo.services.retry import (
    BackoffPolicy,
    RetryExhausted,
    RetryState,
    Sleep,
    retry_with_backoff,
)

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_POLICY = BackoffPolicy(max_attempts=3, base_delay=0.5, multiplier=2.0)
DEFAULT_MAX_TRACKED = 1024


@dataclass(frozen=True)
class _Intent:
    ref: str
    started_at: float


@dataclass
class PersistOutcome:
    key: str
    ref: str
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    superseded: bool = False


class _Superseded(Exception):
    """A newer job registered a different reference while we were retrying."""


class DurableWriter:
    """Gets ``store[key]`` to equal the intended reference, and proves it.

    Intents of finished jobs are kept so late stale results can still be
    recognised, up to ``max_tracked`` keys (least recently written first out;
    keys with a persist in progress are never evicted).
    """

    def __init__(
        self,
        store: ReferenceStore,
        policy: BackoffPolicy = DEFAULT_PERSIST_POLICY,
        sleep: Sleep = asyncio.sleep,
        max_tracked: int = DEFAULT_MAX_TRACKED,
    ):
        self.store = store
        self.policy = policy
        self.max_tracked = max_tracked
        self._sleep = sleep
        self._lock = threading.Lock()
        self._intents: OrderedDict[str, _Intent] = OrderedDict()
        self._active: dict[str, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._intents)

    # ── Intent registry ────────────────────────────────────────────────

    def _register_intent(self, key: str, ref: str, started_at: float) -> bool:
        """Record *ref* as intended unless a newer job already claimed *key*."""
        with self._lock:
            current = self._intents.get(key)
            if current is not None and current.started_at > started_at:
                return False
            self._intents[key] = _Intent(ref=ref, started_at=started_at)
            self._intents.move_to_end(key)
            self._active[key] = self._active.get(key, 0) + 1
            return True

    def _finish(self, key: str) -> None:
        with self._lock:
            remaining = self._active.get(key, 0) - 1
            if remaining > 0:
                self._active[key] = remaining
            else:
                self._active.pop(key, None)
            self._trim()

    def _trim(self) -> None:
        # Caller holds self._lock
        while len(self._intents) > self.max_tracked:
            idle = next((k for k in self._intents if k not in self._active), None)
            if idle is None:
                return
            del self._intents[idle]

    def intended(self, key: str) -> str | None:
        with self._lock:
            intent = self._intents.get(key)
            return intent.ref if intent else None

    def _is_current(self, key: str, ref: str, started_at: float) -> bool:
        with self._lock:
            intent = self._intents.get(key)
            return intent is not None and intent.ref == ref and intent.started_at == started_at

    def _forget(self, key: str, started_at: float) -> None:
        with self._lock:
            intent = self._intents.get(key)
            if intent is not None and intent.started_at == started_at:
                del self._intents[key]

    # ── Public API ─────────────────────────────────────────────────────

    async def persist(self, key: str, ref: str, started_at: float | None = None) -> PersistOutcome:
        """Write *ref* for *key* and verify it, retrying with backoff.

        Raises ``PersistenceFailure`` when the write never verifies or the
        item does not exist.
        """
        started_at = time.time() if started_at is None else started_at
        outcome = PersistOutcome(key=key, ref=ref)

        if not self._register_intent(key, ref, started_at):
            logger.info("Skipping stale write for %s: a newer job owns this item", key)
            outcome.superseded = True
            return outcome

        try:
            await self._persist_intent(key, ref, started_at, outcome)
        finally:
            self._finish(key)

        if not outcome.superseded:
            logger.info(
                "Persisted image reference for %s after %d attempt(s)", key, outcome.attempts,
            )
        return outcome

    async def _persist_intent(self, key: str, ref: str, started_at: float, outcome: PersistOutcome) -> None:
        state = RetryState()
        wrote = False

        async def _attempt(attempt: int) -> str | None:
            nonlocal wrote
            if not self._is_current(key, ref, started_at):
                raise _Superseded()
            wrote = True
            await asyncio.to_thread(self.store.write, key, ref)
            if not self._is_current(key, ref, started_at):
                raise _Superseded()
            return await asyncio.to_thread(self.store.read, key)

        def _verify(stored: str | None) -> bool:
            # Compare against whatever is intended *now*
            return stored is not None and stored == self.intended(key)

        async def _settle() -> str | None:
            stored = await asyncio.to_thread(self.store.read, key)
            return stored if _verify(stored) else None

        try:
            await retry_with_backoff(
                _attempt,
                self.policy,
                verify=_verify,
                retry_on=(Exception,),
                should_retry=lambda exc: not isinstance(exc, (ReferenceNotFound, _Superseded)),
                settle=_settle,
                sleep=self._sleep,
                label=f"persist {key}",
                state=state,
            )
        except _Superseded:
            logger.info("Write for %s superseded by a newer job after %d attempts", key, state.attempts)
            outcome.superseded = True
            if wrote:
                await self._restore(key)
        except ReferenceNotFound as exc:
            self._forget(key, started_at)
            raise PersistenceFailure(
                f"Item {key} does not exist in the durable store",
                reason="NotFound", attempts=state.attempts, detail=str(exc),
            ) from exc
        except RetryExhausted as exc:
            self._forget(key, started_at)
            last = state.last_error
            raise PersistenceFailure(
                f"Could not verify image reference for {key} after {state.attempts} attempts",
                reason="VerificationFailed",
                attempts=state.attempts,
                detail=f"{type(last).__name__}: {last}" if last else None,
            ) from exc
        finally:
            outcome.attempts = state.attempts
            outcome.delays = list(state.delays)

    async def _restore(self, key: str) -> None:
        """Write the currently intended reference back over our own stale write."""
        state = RetryState()

        async def _attempt(attempt: int) -> str | None:
            current = self.intended(key)
            if current is None:
                return None
            await asyncio.to_thread(self.store.write, key, current)
            return await asyncio.to_thread(self.store.read, key)

        def _verify(stored: str | None) -> bool:
            current = self.intended(key)
            return current is None or stored == current

        try:
            await retry_with_backoff(
                _attempt,
                self.policy,
                verify=_verify,
                retry_on=(Exception,),
                should_retry=lambda exc: not isinstance(exc, ReferenceNotFound),
                sleep=self._sleep,
                label=f"restore {key}",
                state=state,
            )
        except ReferenceNotFound as exc:
            raise PersistenceFailure(
                f"Item {key} does not exist in the durable store",
                reason="NotFound", attempts=state.attempts, detail=str(exc),
            ) from exc
        except RetryExhausted as exc:
            raise PersistenceFailure(
                f"Could not restore the current image reference for {key} after {state.attempts} attempts",
                reason="VerificationFailed", attempts=state.attempts,
            ) from exc
        logger.info("Restored current image reference for %s after a late stale write", key)
