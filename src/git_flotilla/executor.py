"""Concurrent execution of a sync plan.

Actions that need no repository work (skips, invalid specs, conflict-blocked
updates) are recorded immediately. Everything else goes to a bounded thread
pool; each worker retries transient failures and records exactly one outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from threading import Event

from .errors import ConflictError, ErrorKind, VcsError
from .models import ActionKind, ExecutionOutcome, OutcomeStatus, SyncReport
from .planner import PlannedAction, SyncPlan
from .report import ReportAggregator
from .retry import Retrier, RetryPolicy
from .vcs import VersionControlClient

logger = logging.getLogger(__name__)

__all__ = ["ConcurrentExecutor", "RetryPolicy"]

OutcomeCallback = Callable[[ExecutionOutcome], None]


def _fetch_only(action: PlannedAction, no_checkout: bool) -> bool:
    return no_checkout and action.kind != ActionKind.CLONE and action.current.is_repository


def _may_override_conflict(action: PlannedAction, force: bool, no_checkout: bool = False) -> bool:
    """Whether a conflicting update can run without losing local work."""
    project = action.project
    if force or project.force:
        return True
    if not action.current.is_repository:
        return False
    if no_checkout:
        return True
    # A stash carries working-tree changes, not unpushed commits.
    return project.stash and not action.unpushed


class ConcurrentExecutor:
    """Runs planned actions with at most ``concurrency`` projects in flight."""

    def __init__(self, client: VersionControlClient, policy: RetryPolicy | None = None):
        self.client = client
        self.policy = policy or RetryPolicy()

    def execute(
        self,
        plan: SyncPlan,
        *,
        concurrency: int = 8,
        force: bool = False,
        no_checkout: bool = False,
        cancel: Event | None = None,
        dry_run: bool = False,
        on_outcome: OutcomeCallback | None = None,
    ) -> SyncReport:
        """Apply ``plan``; with ``no_checkout`` existing repositories are only fetched."""
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        cancel = cancel or Event()
        aggregator = ReportAggregator([a.name for a in plan.actions], dry_run=dry_run)
        for repo in plan.untracked:
            aggregator.add_untracked(repo.path)
        for name, notes in plan.diagnostics.items():
            aggregator.add_note(name, "; ".join(notes))

        def record(outcome: ExecutionOutcome) -> None:
            aggregator.record(outcome)
            if on_outcome is not None:
                on_outcome(outcome)

        work = []
        for action in plan.actions:
            outcome = self._immediate_outcome(action, force, dry_run, no_checkout)
            if outcome is None:
                work.append(action)
            else:
                record(outcome)

        if work:
            logger.info("Executing %d action(s) with concurrency %d", len(work), concurrency)
            with ThreadPoolExecutor(max_workers=concurrency) as pool:
                futures = [
                    pool.submit(self._worker, a, force, no_checkout, cancel, record) for a in work
                ]
                wait(futures)
            for future in futures:
                # Workers record their own outcome; this surfaces a bug in record().
                future.result()

        return aggregator.finalize(cancelled=cancel.is_set())

    # -------------------------------------------------------------------------

    @staticmethod
    def _outcome(action: PlannedAction, status: OutcomeStatus, **kwargs) -> ExecutionOutcome:
        kwargs.setdefault("message", action.note)
        kwargs.setdefault("target", action.target)
        return ExecutionOutcome(
            name=action.name,
            path=action.path,
            action=action.kind,
            status=status,
            **kwargs,
        )

    def _immediate_outcome(
        self, action: PlannedAction, force: bool, dry_run: bool, no_checkout: bool = False
    ) -> ExecutionOutcome | None:
        """Outcome for actions that involve no repository work, else None."""
        if action.interrupted:
            return self._outcome(action, OutcomeStatus.CANCELLED, error_kind=ErrorKind.CANCELLED)
        if action.kind == ActionKind.SKIP:
            return self._outcome(action, OutcomeStatus.SKIPPED, commit=action.current.commit)
        if action.kind == ActionKind.INVALID_SPEC:
            return self._outcome(action, OutcomeStatus.FAILED, error_kind=ErrorKind.RESOLUTION)
        if action.kind == ActionKind.UPDATE_WITH_CONFLICT and not _may_override_conflict(
            action, force, no_checkout
        ):
            logger.warning("%s: blocked by local changes (%s)", action.name, action.note)
            return self._outcome(
                action,
                OutcomeStatus.CONFLICT,
                error_kind=ErrorKind.LOCAL_CONFLICT,
                commit=action.current.commit,
            )
        if dry_run:
            return self._outcome(action, OutcomeStatus.PLANNED, commit=action.current.commit)
        return None

    def _worker(
        self,
        action: PlannedAction,
        force: bool,
        no_checkout: bool,
        cancel: Event,
        record: OutcomeCallback,
    ) -> None:
        started_at = datetime.now()
        start = time.monotonic()
        retrier = Retrier(self.policy, cancel)
        fetch_only = _fetch_only(action, no_checkout)

        def finish(status: OutcomeStatus, **kwargs) -> None:
            record(
                self._outcome(
                    action,
                    status,
                    attempts=retrier.attempts,
                    started_at=started_at,
                    duration=time.monotonic() - start,
                    **kwargs,
                )
            )

        if cancel.is_set():
            finish(OutcomeStatus.CANCELLED, error_kind=ErrorKind.CANCELLED, message="cancelled")
            return

        logger.info(
            "%s: %s -> %s%s",
            action.name,
            action.kind,
            (action.target or "")[:12],
            " (fetch only)" if fetch_only else "",
        )
        try:
            retrier.call(
                lambda remote: self._apply(action, remote, force, fetch_only, cancel),
                action.remotes,
                label=action.name,
            )
        except ConflictError as e:
            logger.warning("%s: %s", action.name, e.message)
            finish(
                OutcomeStatus.CONFLICT,
                error_kind=ErrorKind.LOCAL_CONFLICT,
                message=e.message,
                commit=e.commit or action.current.commit,
            )
        except VcsError as e:
            if e.kind == ErrorKind.CANCELLED:
                finish(OutcomeStatus.CANCELLED, error_kind=e.kind, message=e.message)
            else:
                logger.warning("%s: failed after %d attempt(s): %s", action.name, retrier.attempts, e)
                finish(OutcomeStatus.FAILED, error_kind=e.kind, message=e.message)
        except Exception as e:
            logger.exception("%s: unexpected error", action.name)
            finish(OutcomeStatus.FAILED, error_kind=ErrorKind.UNKNOWN, message=str(e))
        else:
            logger.info("%s: done", action.name)
            if fetch_only:
                finish(
                    OutcomeStatus.SUCCEEDED,
                    commit=action.current.commit,
                    message=f"fetched {(action.target or '')[:12]}; checkout skipped",
                )
            else:
                finish(OutcomeStatus.SUCCEEDED, commit=action.target)

    def _apply(
        self,
        action: PlannedAction,
        remote: str,
        force: bool,
        fetch_only: bool,
        cancel: Event,
    ) -> None:
        project = action.project
        selector = project.selector
        if fetch_only:
            self.client.fetch(
                action.current.path,
                remote,
                action.target,
                depth=project.depth,
                remote_name=project.remote_name,
                cancel=cancel,
            )
            return
        options = {
            "branch": selector.branch_name if selector else None,
            "depth": project.depth,
            "remote_name": project.remote_name,
            "exclude": project.exclude,
            "cancel": cancel,
        }
        if action.kind == ActionKind.CLONE or not action.current.is_repository:
            self.client.clone(remote, action.current.path, action.target, **options)
        else:
            force = force or project.force
            self.client.fetch_and_checkout(
                action.current.path,
                remote,
                action.target,
                force=force,
                stash=project.stash and not force,
                **options,
            )
