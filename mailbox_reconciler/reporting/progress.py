"""
Progress/Outcome Reporter — periodic rate-and-counter snapshots during a run
and the final breakdown at the end. Purely observational.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import PROGRESS_INTERVAL
from ..engine.models import ActionStatus, MutationKind, RunSummary

logger = logging.getLogger("mailbox_reconciler.progress")


@dataclass
class ProgressSnapshot:
    processed: int
    rate: float             # targets/second since the previous tick
    elapsed: float          # seconds since run start
    counters: dict


class ProgressReporter:
    def __init__(
        self,
        interval: int = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        echo: bool = True,
    ):
        self.interval = max(1, interval)
        self.clock = clock
        self.echo = echo
        self.snapshots: list[ProgressSnapshot] = []
        self._started = clock()
        self._last_time = self._started
        self._last_processed = 0

    def start(self, summary: RunSummary):
        self._started = self.clock()
        self._last_time = self._started
        self._last_processed = summary.processed

    def maybe_tick(self, summary: RunSummary) -> Optional[ProgressSnapshot]:
        if summary.processed - self._last_processed >= self.interval:
            return self.tick(summary)
        return None

    def tick(self, summary: RunSummary) -> ProgressSnapshot:
        now = self.clock()
        window = now - self._last_time
        done = summary.processed - self._last_processed
        rate = done / window if window > 0 else 0.0

        snapshot = ProgressSnapshot(
            processed=summary.processed,
            rate=rate,
            elapsed=now - self._started,
            counters=summary.counters(),
        )
        self.snapshots.append(snapshot)
        self._last_time = now
        self._last_processed = summary.processed

        c = snapshot.counters
        line = (
            f"  ⏱  {c['processed']} processed ({rate:.1f}/s) — "
            f"ok {c['succeeded']}, already {c['already_satisfied']}, "
            f"ineligible {c['skipped_ineligible']}, exempt {c['skipped_exempt']}, "
            f"failed {c['failed_permanent']}+{c['failed_transient']}"
        )
        logger.info(line.strip())
        if self.echo:
            print(line)
        return snapshot

    def final(self, summary: RunSummary) -> str:
        """Render (and print) the end-of-run breakdown."""
        elapsed = self.clock() - self._started
        mode = "DRY-RUN" if summary.dry_run else "APPLY"
        suffix = " (simulated)" if summary.dry_run else ""
        applied = ActionStatus.SIMULATED if summary.dry_run else ActionStatus.APPLIED

        lines = [
            "=" * 70,
            f" RUN SUMMARY — {summary.mode} [{mode}]",
            "=" * 70,
            f"  Processed:              {summary.processed}",
            f"  Succeeded:              {summary.succeeded}",
            f"  Already satisfied:      {summary.already_satisfied}",
            f"  Skipped (ineligible):   {summary.skipped_ineligible}",
            f"  Skipped (exempt):       {summary.skipped_exempt}",
            f"  Failed (permanent):     {summary.failed_permanent}   ← needs manual fix",
            f"  Failed (transient):     {summary.failed_transient}   ← likely fine on next run",
            "",
        ]
        if summary.enumeration_failed:
            lines += [f"  ⚠️  Enumeration stopped early: {summary.enumeration_error}", ""]
        if summary.mode == "permissions":
            lines += [
                f"  Permissions added{suffix}:   "
                f"{summary.action_count(MutationKind.GRANT_PERMISSION, applied)}",
                f"  Permissions removed{suffix}: "
                f"{summary.action_count(MutationKind.REVOKE_PERMISSION, applied)}",
            ]
        else:
            lines += [
                f"  Policy assigned{suffix}:  "
                f"{summary.action_count(MutationKind.ASSIGN_POLICY, applied)}",
                f"  Policy already set:       "
                f"{summary.action_count(MutationKind.ASSIGN_POLICY, ActionStatus.ALREADY_SATISFIED)}",
                f"  Archive enabled{suffix}:  "
                f"{summary.action_count(MutationKind.ENABLE_ARCHIVE, applied)}",
                f"  Archive already enabled:  "
                f"{summary.action_count(MutationKind.ENABLE_ARCHIVE, ActionStatus.ALREADY_SATISFIED)}",
            ]
        rate = summary.processed / elapsed if elapsed > 0 else 0.0
        lines += ["", f"  Elapsed: {elapsed:.1f}s ({rate:.1f} targets/s)"]

        text = "\n".join(lines)
        if self.echo:
            print(text)
        logger.info(f"Run complete: {summary.counters()}")
        return text
