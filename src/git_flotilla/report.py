"""Thread-safe collection of execution outcomes into a ``SyncReport``."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Iterable

from .models import ExecutionOutcome, OutcomeStatus, SyncReport

logger = logging.getLogger(__name__)


class ReportAggregator:
    """Accumulates one outcome per project from any number of worker threads.

    The lock is held only while appending an outcome and bumping its counter.
    """

    def __init__(self, order: Iterable[str], *, dry_run: bool = False):
        self._order = {name: index for index, name in enumerate(order)}
        self._dry_run = dry_run
        self._lock = threading.Lock()
        self._outcomes: dict[str, ExecutionOutcome] = {}
        self._counts: Counter = Counter()
        self._untracked: list[str] = []
        self._notes: dict[str, str] = {}
        self._report: SyncReport | None = None

    @property
    def recorded(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def record(self, outcome: ExecutionOutcome) -> None:
        with self._lock:
            if self._report is not None:
                raise RuntimeError("report already finalized")
            if outcome.name not in self._order:
                raise ValueError(f"unknown project {outcome.name!r}")
            if outcome.name in self._outcomes:
                raise ValueError(f"outcome for {outcome.name!r} already recorded")
            self._outcomes[outcome.name] = outcome
            self._counts[outcome.status] += 1
        logger.debug("Recorded %s: %s", outcome.name, outcome.status)

    def add_untracked(self, path: str) -> None:
        with self._lock:
            if self._report is not None:
                raise RuntimeError("report already finalized")
            self._untracked.append(path)

    def add_note(self, key: str, text: str) -> None:
        with self._lock:
            self._notes[key] = text

    def finalize(self, *, cancelled: bool = False) -> SyncReport:
        """Freeze the aggregator and return the ordered report."""
        with self._lock:
            if self._report is not None:
                return self._report

            outcomes = tuple(sorted(self._outcomes.values(), key=lambda o: self._order[o.name]))
            counts = {status: self._counts[status] for status in OutcomeStatus}
            if sum(counts.values()) != len(outcomes):
                raise RuntimeError(
                    f"counter mismatch: {sum(counts.values())} counted, {len(outcomes)} recorded"
                )

            self._report = SyncReport(
                outcomes=outcomes,
                untracked=tuple(sorted(self._untracked)),
                total=len(outcomes),
                succeeded=counts[OutcomeStatus.SUCCEEDED],
                failed=counts[OutcomeStatus.FAILED],
                skipped=counts[OutcomeStatus.SKIPPED],
                conflicted=counts[OutcomeStatus.CONFLICT],
                cancelled=counts[OutcomeStatus.CANCELLED],
                planned=counts[OutcomeStatus.PLANNED],
                dry_run=self._dry_run,
                was_cancelled=cancelled,
                notes=dict(self._notes),
            )
            return self._report
