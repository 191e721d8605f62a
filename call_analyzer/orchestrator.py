"""
Batch orchestration: selector -> bounded analysis -> normalize -> reconcile.

Records are pulled from the selector stream and processed batch_size at a
time. Within a batch each record is one task in the bounded runner. A failed
record is counted and reported; it never aborts the batch or the run. Only a
SelectionError (store unreachable while selecting) ends a run early.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from .models import AnalysisResult, RecordError, RunSummary, SourceRecord
from .normalizer import normalize
from .reconciler import STAGE_COMPLETION, ReconcileError
from .selector import ReanalysisFilter, RecordSelector, SelectionMode
from .task_runner import BoundedTaskRunner

logger = logging.getLogger(__name__)

AnalyzeFn = Callable[[SourceRecord], Awaitable[dict]]
ReconcileFn = Callable[[SourceRecord, AnalysisResult], Optional[Awaitable[None]]]


class BatchOrchestrator:
    """Drives the selected work set through analysis and reconciliation."""

    def __init__(
        self,
        selector: RecordSelector,
        analyze_fn: AnalyzeFn,
        reconcile_fn: ReconcileFn,
        batch_size: int = 20,
        max_concurrency: int = 5,
        batch_delay: float = 0.0,
        dry_run: bool = False,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.selector = selector
        self.analyze_fn = analyze_fn
        self.reconcile_fn = reconcile_fn
        self.batch_size = batch_size
        self.runner = BoundedTaskRunner(max_concurrency)
        self.batch_delay = batch_delay
        self.dry_run = dry_run
        self._failed_stages: Dict[str, str] = {}

    async def process_record(self, record: SourceRecord) -> AnalysisResult:
        """Analyze, normalize and (unless dry run) reconcile one record."""
        logger.info(f"[{record.id}] Analyzing transcript ({len(record.content or '')} chars)")
        payload = await self.analyze_fn(record)
        result = normalize(payload)
        if result.degraded:
            logger.warning(f"[{record.id}] Analysis degraded, storing placeholder result")

        if self.dry_run:
            logger.info(f"[{record.id}] Dry run, not writing: tags={result.tags_text}")
            return result

        try:
            written = self.reconcile_fn(record, result)
            if inspect.isawaitable(written):
                await written
        except ReconcileError as e:
            self._failed_stages[record.id] = e.stage
            raise
        return result

    async def run_batch(self, batch: List[SourceRecord], summary: RunSummary) -> None:
        """Run one batch and fold its outcomes into `summary`."""
        summary.batches += 1
        tasks = {}
        for record in batch:
            if not record.has_transcript:
                logger.warning(f"[{record.id}] Empty transcript, skipping")
                summary.skipped += 1
                continue
            tasks[record.id] = lambda record=record: self.process_record(record)

        outcomes = await self.runner.run(tasks)

        batch_failed = 0
        for key, outcome in outcomes.items():
            summary.processed += 1
            if outcome.ok:
                summary.succeeded += 1
                if outcome.value.degraded:
                    summary.degraded += 1
            else:
                summary.failed += 1
                batch_failed += 1
                summary.errors.append(
                    RecordError(id=key, error=outcome.error, stage=self._failed_stages.pop(key, None))
                )

        logger.info(
            f"Batch {summary.batches}: {len(outcomes) - batch_failed} succeeded, {batch_failed} failed, "
            f"{len(batch) - len(outcomes)} skipped | total processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed}"
        )

    async def run(
        self,
        mode: SelectionMode = SelectionMode.NORMAL,
        reanalysis_filter: Optional[ReanalysisFilter] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> RunSummary:
        """
        Process every selected record, batch by batch.

        Args:
            mode: Selection mode passed to the selector
            reanalysis_filter: Filter for reanalysis mode
            limit: Maximum records to take from the selector
            offset: Eligible records to skip, for resuming a previous run

        Returns:
            RunSummary with cumulative counts and the offset to resume from

        Raises:
            SelectionError: if the selector cannot read its stores
        """
        summary = RunSummary(start_offset=offset, next_offset=offset, dry_run=self.dry_run)
        self._failed_stages.clear()
        mode_label = mode.value if mode == SelectionMode.NORMAL else f"{mode.value} ({reanalysis_filter})"
        logger.info(
            f"Starting {mode_label} run: batch_size={self.batch_size}, "
            f"concurrency={self.runner.max_concurrency}, limit={limit}, offset={offset}"
            + (", dry run" if self.dry_run else "")
        )

        pending: List[SourceRecord] = []
        for page in self.selector.stream(mode, reanalysis_filter, limit, offset):
            pending.extend(page)
            while len(pending) >= self.batch_size:
                batch, pending = pending[: self.batch_size], pending[self.batch_size:]
                await self._run_batch_with_delay(batch, summary)
        if pending:
            await self._run_batch_with_delay(pending, summary)

        summary.next_offset = offset + self._records_left_eligible(summary, mode, reanalysis_filter)
        summary.completed_at = datetime.utcnow()
        logger.info(
            f"Run complete in {summary.elapsed_seconds:.1f}s: processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed} skipped={summary.skipped} "
            f"degraded={summary.degraded} batches={summary.batches} next_offset={summary.next_offset}"
        )
        for error in summary.errors:
            logger.error(f"  {error.id}: {error.error}")
        return summary

    async def _run_batch_with_delay(self, batch: List[SourceRecord], summary: RunSummary) -> None:
        if summary.batches and self.batch_delay:
            await asyncio.sleep(self.batch_delay)
        await self.run_batch(batch, summary)

    def _records_left_eligible(
        self,
        summary: RunSummary,
        mode: SelectionMode,
        reanalysis_filter: Optional[ReanalysisFilter],
    ) -> int:
        """How many of this run's records the selector will still yield next time.

        A failure at the completion marker stage comes after the call_log row
        was written, so that record is no longer selected in normal mode.
        """
        consumed = summary.processed + summary.skipped
        if self.dry_run:
            return consumed
        if mode == SelectionMode.REANALYSIS and reanalysis_filter and not reanalysis_filter.shrinks_on_success:
            return consumed
        still_failed = sum(1 for error in summary.errors if error.stage != STAGE_COMPLETION)
        return still_failed + summary.skipped
