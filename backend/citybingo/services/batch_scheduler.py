"""Paced fan-out of many generation requests (e.g. "regenerate all 25 images").

Two pacing policies are supported:
  - ``FixedBatchPolicy``: groups of N run fully in parallel, with a fixed
    delay between groups (bounds concurrency)
  - ``FixedSpacingPolicy``: job *i* starts at ``t0 + i * spacing`` no matter
    how long earlier jobs take (bounds the rate of new work)

The scheduler never fails because of an individual item: each job ends as
success, failure, or duplicate (rejected by the server's deduplicator).
A refresh callback runs every ``refresh_every`` completions and once more
at the end so an operator watching a long batch sees bounded staleness.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Union

from citybingo.services.errors import SchedulerAggregateFailure
from citybingo.services.work_items import WorkItem

logger = logging.getLogger(__name__)


class JobOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class FixedBatchPolicy:
    group_size: int = 3
    inter_batch_delay: float = 5.0

    def __post_init__(self):
        if self.group_size < 1:
            raise ValueError("group_size must be >= 1")
        if self.inter_batch_delay < 0:
            raise ValueError("inter_batch_delay must be >= 0")


@dataclass(frozen=True)
class FixedSpacingPolicy:
    spacing: float = 3.0

    def __post_init__(self):
        if self.spacing < 0:
            raise ValueError("spacing must be >= 0")


PacingPolicy = Union[FixedBatchPolicy, FixedSpacingPolicy]

Submit = Callable[[WorkItem], Awaitable[JobOutcome]]
Refresh = Callable[[], Awaitable[Any]]
Progress = Callable[[int, int, WorkItem, JobOutcome], Awaitable[Any]]


# ── Outcome tracker ────────────────────────────────────────────────────

@dataclass
class BatchOutcome:
    """Aggregate counters for one batch run."""
    total: int = 0
    success_count: int = 0
    failure_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0
    refresh_count: int = 0
    elapsed_seconds: float = 0.0
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def completed(self) -> int:
        return self.success_count + self.failure_count + self.duplicate_count

    def record(self, item: WorkItem, outcome: JobOutcome, error: str | None = None) -> None:
        if outcome is JobOutcome.SUCCESS:
            self.success_count += 1
        elif outcome is JobOutcome.DUPLICATE:
            self.duplicate_count += 1
        else:
            self.failure_count += 1
            if error:
                self.failures[item.key] = error

    def summary_line(self) -> str:
        return (
            f"total={self.total} success={self.success_count} "
            f"failed={self.failure_count} duplicates={self.duplicate_count} "
            f"skipped={self.skipped_count} refreshes={self.refresh_count} "
            f"elapsed={self.elapsed_seconds:.1f}s"
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "duplicate_count": self.duplicate_count,
            "skipped_count": self.skipped_count,
            "refresh_count": self.refresh_count,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "failures": dict(self.failures),
        }


# ── Scheduler ──────────────────────────────────────────────────────────

class ClientBatchScheduler:
    """Submits WorkItems under a pacing policy and aggregates their outcomes.

    Usage::

        scheduler = ClientBatchScheduler(refresh=client.refresh_state)
        outcome = await scheduler.run_batch(items, client.submit, FixedBatchPolicy(3, 5.0))
    """

    def __init__(
        self,
        refresh: Refresh | None = None,
        refresh_every: int = 5,
        progress: Progress | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.refresh = refresh
        self.refresh_every = max(1, refresh_every)
        self.progress = progress
        self._sleep = sleep
        self._clock = clock

    async def run_batch(
        self,
        items: Iterable[WorkItem] | Callable[[], Iterable[WorkItem]],
        submit: Submit,
        policy: PacingPolicy,
    ) -> BatchOutcome:
        started = self._clock()
        queue = self._materialise(items)

        outcome = BatchOutcome(total=len(queue))
        submitted: set[str] = set()
        unique: list[WorkItem] = []
        for item in queue:
            if item.key in submitted:
                logger.info("Skipping already submitted item %s", item.key)
                outcome.skipped_count += 1
                continue
            submitted.add(item.key)
            unique.append(item)
        outcome.total = len(unique)

        if not unique:
            logger.info("Batch has no items; nothing to submit")
            await self._refresh(outcome)
            return outcome

        logger.info("Batch starting: %d items, policy=%s", len(unique), policy)
        run = _Run(self, outcome, submit, len(unique))

        if isinstance(policy, FixedBatchPolicy):
            await self._run_fixed_batches(unique, policy, run)
        elif isinstance(policy, FixedSpacingPolicy):
            await self._run_fixed_spacing(unique, policy, run)
        else:
            raise SchedulerAggregateFailure(f"Unknown pacing policy: {policy!r}")

        await self._refresh(outcome)
        outcome.elapsed_seconds = self._clock() - started
        logger.info("Batch complete: %s", outcome.summary_line())
        return outcome

    # ── Policies ───────────────────────────────────────────────────────

    async def _run_fixed_batches(self, items: list[WorkItem], policy: FixedBatchPolicy, run: "_Run") -> None:
        total_groups = (len(items) + policy.group_size - 1) // policy.group_size
        for group_start in range(0, len(items), policy.group_size):
            group = items[group_start:group_start + policy.group_size]
            group_num = group_start // policy.group_size + 1
            logger.info("Group %d/%d: %d items", group_num, total_groups, len(group))

            await asyncio.gather(*(run.execute(item) for item in group))

            if group_num < total_groups and policy.inter_batch_delay > 0:
                await self._sleep(policy.inter_batch_delay)

    async def _run_fixed_spacing(self, items: list[WorkItem], policy: FixedSpacingPolicy, run: "_Run") -> None:
        t0 = self._clock()

        async def _start_at(index: int, item: WorkItem) -> None:
            wait = t0 + index * policy.spacing - self._clock()
            if wait > 0:
                await self._sleep(wait)
            await run.execute(item)

        await asyncio.gather(*(_start_at(i, item) for i, item in enumerate(items)))

    # ── Internal helpers ───────────────────────────────────────────────

    @staticmethod
    def _materialise(items: Iterable[WorkItem] | Callable[[], Iterable[WorkItem]]) -> list[WorkItem]:
        try:
            source = items() if callable(items) else items
            return list(source)
        except Exception as e:
            raise SchedulerAggregateFailure(f"Could not read batch items: {e}") from e

    async def _refresh(self, outcome: BatchOutcome) -> None:
        if self.refresh is None:
            return
        try:
            await self.refresh()
            outcome.refresh_count += 1
        except Exception as e:
            logger.warning("State refresh failed: %s", e)


class _Run:
    """Per-run mutable state shared by concurrently executing jobs."""

    def __init__(self, scheduler: ClientBatchScheduler, outcome: BatchOutcome, submit: Submit, total: int):
        self.scheduler = scheduler
        self.outcome = outcome
        self.submit = submit
        self.total = total
        self.completed = 0

    async def execute(self, item: WorkItem) -> None:
        started = self.scheduler._clock()
        error = None
        try:
            result = await self.submit(item)
            result = JobOutcome(result) if not isinstance(result, JobOutcome) else result
        except Exception as e:
            logger.error("Job %s failed: %s", item.key, e)
            result, error = JobOutcome.FAILURE, f"{type(e).__name__}: {e}"

        self.outcome.record(item, result, error)
        self.completed += 1
        logger.info(
            "Item %d/%d %s: %s (%.1fs)",
            self.completed, self.total, item.key, result.value, self.scheduler._clock() - started,
        )

        if self.scheduler.progress is not None:
            try:
                await self.scheduler.progress(self.completed, self.total, item, result)
            except Exception as e:
                logger.debug("Progress callback failed: %s", e)

        if self.completed % self.scheduler.refresh_every == 0 and self.completed < self.total:
            await self.scheduler._refresh(self.outcome)
