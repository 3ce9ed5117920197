"""Retry with exponential backoff across a project's remotes."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from threading import Event
from typing import TypeVar

from .config import DEFAULT_RETRY_ON, SyncSettings
from .errors import ConflictError, ErrorKind, ResolutionError, VcsError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry a transient failure and how long to wait."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    retry_on: frozenset[ErrorKind] = field(default=DEFAULT_RETRY_ON)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            backoff_factor=settings.backoff_factor,
            backoff_max=settings.backoff_max,
            retry_on=settings.retry_on,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_base * self.backoff_factor ** (attempt - 1), self.backoff_max)

    def should_retry(self, error: VcsError, attempt: int) -> bool:
        return attempt < self.max_attempts and error.kind in self.retry_on


class Retrier:
    """Runs one operation under a ``RetryPolicy``, counting attempts.

    Each attempt tries every remote in order and stops at the first success.
    Local conflicts and cancellation are never retried, nor is a selector
    that no remote can resolve.
    """

    def __init__(self, policy: RetryPolicy, cancel: Event | None = None):
        self.policy = policy
        self.cancel = cancel
        self.attempts = 0

    def _check_cancel(self, label: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise VcsError(ErrorKind.CANCELLED, f"{label} cancelled")

    def call(
        self, operation: Callable[[str], T], remotes: Sequence[str], label: str = ""
    ) -> tuple[T, str]:
        """Return ``(result, remote)`` or raise the last error."""
        if not remotes:
            raise VcsError(ErrorKind.NOT_FOUND, f"{label}: no remote configured")

        while True:
            self._check_cancel(label)
            self.attempts += 1
            last: VcsError | ResolutionError | None = None
            for remote in remotes:
                self._check_cancel(label)
                try:
                    return operation(remote), remote
                except ConflictError:
                    raise
                except VcsError as e:
                    if e.kind == ErrorKind.CANCELLED:
                        raise
                    logger.debug("%s: %s failed: %s", label, remote, e)
                    last = e
                except ResolutionError as e:
                    logger.debug("%s: %s failed: %s", label, remote, e)
                    last = e

            assert last is not None
            if isinstance(last, ResolutionError) or not self.policy.should_retry(
                last, self.attempts
            ):
                raise last

            delay = self.policy.delay(self.attempts)
            logger.warning(
                "%s: attempt %d/%d failed (%s), retrying in %.1fs",
                label,
                self.attempts,
                self.policy.max_attempts,
                last,
                delay,
            )
            if self.cancel is not None:
                if self.cancel.wait(delay):
                    raise VcsError(ErrorKind.CANCELLED, f"{label} cancelled")
            else:
                time.sleep(delay)
