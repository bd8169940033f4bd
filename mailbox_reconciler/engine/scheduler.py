"""
Batch Scheduler — drives the per-target loop, sequentially or across a
bounded pool of concurrent workers, and owns the RunSummary.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from typing import TYPE_CHECKING, AsyncIterable, AsyncIterator, Iterable, Optional, Protocol, Union

from ..config import BATCH_SIZE
from .models import ErrorKind, RunOutcome, RunSummary, TargetObject

if TYPE_CHECKING:
    from ..reporting.progress import ProgressReporter

logger = logging.getLogger("mailbox_reconciler.scheduler")

Targets = Union[Iterable[TargetObject], AsyncIterable[TargetObject]]


class Processor(Protocol):
    mode: str

    async def process(self, target: TargetObject) -> RunOutcome: ...


async def _aiter(targets: Targets) -> AsyncIterator[TargetObject]:
    if hasattr(targets, "__aiter__"):
        async for t in targets:  # type: ignore[union-attr]
            yield t
    else:
        for t in targets:  # type: ignore[union-attr]
            yield t


class BatchScheduler:
    """
    concurrency == 1: one target at a time, in input order.
    concurrency > 1: fixed-size batches; within a batch at most
    ``concurrency`` targets are in flight. Outcomes are merged into the
    summary by the scheduler once the whole batch has rejoined.
    """

    def __init__(
        self,
        concurrency: int = 1,
        batch_size: int = BATCH_SIZE,
        reporter: Optional["ProgressReporter"] = None,
        dry_run: bool = True,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.reporter = reporter
        self.dry_run = dry_run

    async def run(self, targets: Targets, processor: Processor) -> RunSummary:
        summary = RunSummary(mode=processor.mode, dry_run=self.dry_run)
        if self.reporter:
            self.reporter.start(summary)

        if self.concurrency == 1:
            await self._run_sequential(targets, processor, summary)
        else:
            await self._run_batched(targets, processor, summary)

        summary.complete()
        return summary

    async def _run_sequential(self, targets: Targets, processor: Processor, summary: RunSummary):
        async for target in _aiter(targets):
            summary.record(await self._run_one(target, processor))
            if self.reporter:
                self.reporter.maybe_tick(summary)

    async def _run_batched(self, targets: Targets, processor: Processor, summary: RunSummary):
        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(target: TargetObject) -> RunOutcome:
            async with semaphore:
                return await self._run_one(target, processor)

        batch: list[TargetObject] = []
        batch_no = 0
        async for target in _aiter(targets):
            batch.append(target)
            if len(batch) >= self.batch_size:
                batch_no += 1
                await self._flush(batch, batch_no, worker, summary)
                batch = []
        if batch:
            batch_no += 1
            await self._flush(batch, batch_no, worker, summary)

    async def _flush(self, batch, batch_no, worker, summary: RunSummary):
        outcomes = await asyncio.gather(*(worker(t) for t in batch))
        summary.merge(list(outcomes))
        logger.debug(f"Batch {batch_no}: {len(outcomes)} targets merged")
        if self.reporter:
            self.reporter.maybe_tick(summary)
        gc.collect()

    async def _run_one(self, target: TargetObject, processor: Processor) -> RunOutcome:
        """Per-target failure boundary: nothing escapes into the batch."""
        try:
            return await processor.process(target)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {target.identifier}")
            return RunOutcome.failure(
                target.identifier,
                ErrorKind.UNEXPECTED,
                f"{type(e).__name__}: {e}",
                classification=target.classification,
            )
